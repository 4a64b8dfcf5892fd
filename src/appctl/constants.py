"""Global constants for appctl."""

# Supervised app defaults

DEFAULT_APP_COMMAND = ("pnpm", "dev")
DEFAULT_DEV_SERVER_URL = "http://localhost:1420"

# Companion socket opened by the app's GUI plugin once its webview is up
DEFAULT_SOCKET_PATH = "/tmp/appctl-gui.sock"
GUI_BRIDGE_ENV_VAR = "APPCTL_GUI_BRIDGE"
GUI_SOCKET_ENV_VAR = "APPCTL_GUI_SOCKET"

# Timeouts (seconds)

DEFAULT_START_TIMEOUT = 120.0
DEFAULT_READY_TIMEOUT = 60.0
READY_POLL_INTERVAL = 0.5
READY_PROBE_TIMEOUT = 2.0
GRACEFUL_SHUTDOWN_TIMEOUT = 5.0
FORCE_KILL_TIMEOUT = 2.0
DEFAULT_COMMAND_TIMEOUT = 10.0
CONNECT_TIMEOUT = 5.0
RUNNER_KILL_GRACE = 2.0
EXIT_POLL_INTERVAL = 0.05

# Logs

LOG_BUFFER_CAPACITY = 1000
LOG_QUERY_MAX_LIMIT = 500
DEFAULT_LOG_QUERY_LIMIT = 50

# Bridge framing

MAX_FRAME_BYTES = 64 * 1024 * 1024
