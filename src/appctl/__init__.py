"""appctl: supervise a local dev app and drive its UI from an agent."""

__version__ = "0.1.0"
