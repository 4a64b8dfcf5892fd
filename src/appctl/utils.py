import time

from rich.console import Console

# stdout belongs to the MCP stdio transport when serving, so diagnostics and
# log tails go to stderr.
console = Console(legacy_windows=False)
err_console = Console(stderr=True, legacy_windows=False)


def format_elapsed_ms(start_time_perf: float) -> str:
    """Format elapsed time since start_time_perf.

    If under 1 second, return milliseconds. Otherwise, return seconds and remaining milliseconds.
    """
    elapsed_seconds = time.perf_counter() - start_time_perf
    if elapsed_seconds < 1:
        return f"{int(elapsed_seconds * 1000)}ms"
    seconds = int(elapsed_seconds)
    remaining_ms = int((elapsed_seconds - seconds) * 1000)
    return f"{seconds}s {remaining_ms}ms"


def truncate_text(s: str, max_chars: int) -> str:
    """Keep the head and tail of long command output."""
    if max_chars <= 0:
        return ""
    if len(s) <= max_chars:
        return s
    head = s[: max(0, max_chars - 50)]
    tail = s[-40:] if max_chars >= 100 else ""
    return (
        f"{head}\n\n...[truncated {len(s) - len(head) - len(tail)} chars]...\n\n{tail}"
    )
