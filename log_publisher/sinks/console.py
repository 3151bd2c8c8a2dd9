"""
Terminal sink.

Color-coded, application-prefixed lines. Formatting is a pure function of the
level; the sink itself only owns the two output consoles.
"""
import sys
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.text import Text

from log_publisher.models import LogLevel

logger = structlog.get_logger(__name__)

LEVEL_STYLES = {
    LogLevel.INFO: "yellow",
    LogLevel.LOG: "cyan",
    LogLevel.ERROR: "red",
    LogLevel.CRITICAL: "white on red",
}

WARNING_STYLE = "magenta"


def style_for(level: LogLevel) -> str:
    """Rich style used for a level."""
    return LEVEL_STYLES.get(level, "cyan")


def format_line(level: LogLevel, app_name: str, message: str) -> str:
    """
    Build the plain text of a terminal line.

    Args:
        level: Log level
        app_name: Application name
        message: Log message

    Returns:
        str: "[app] message", with a CRITICAL marker for critical events
    """
    prefix = f"[{app_name}]"
    if level is LogLevel.CRITICAL:
        return f"{prefix} CRITICAL {message}"
    return f"{prefix} {message}"


def render_line(level: LogLevel, app_name: str, message: str) -> Text:
    """Styled terminal line for a level."""
    return Text(format_line(level, app_name, message), style=style_for(level))


class ConsoleSink:
    """
    Writes log lines to the terminal.

    INFO/LOG go to stdout; ERROR/CRITICAL and sink warnings go to stderr.
    Stream errors are swallowed: the terminal is the last-resort sink and has
    nowhere left to report to.
    """

    def __init__(
        self,
        app_name: str,
        stdout: Optional[Any] = None,
        stderr: Optional[Any] = None,
        colors: bool = True,
    ):
        """
        Initialize console sink.

        Args:
            app_name: Application name prefixed to every line
            stdout: Stream for informational lines (default: sys.stdout)
            stderr: Stream for error lines (default: sys.stderr)
            colors: Emit ANSI colors when the stream is a terminal
        """
        self.app_name = app_name
        self._out = self._make_console(stdout or sys.stdout, colors)
        self._err = self._make_console(stderr or sys.stderr, colors)

    @staticmethod
    def _make_console(stream: Any, colors: bool) -> Console:
        return Console(
            file=stream,
            highlight=False,
            markup=False,
            emoji=False,
            soft_wrap=True,
            no_color=not colors,
        )

    def write(self, level: LogLevel, message: str) -> None:
        """
        Print a log line for a level.

        Args:
            level: Log level
            message: Log message
        """
        console = self._err if level in (LogLevel.ERROR, LogLevel.CRITICAL) else self._out
        self._print(console, render_line(level, self.app_name, message))

    def warn(self, message: str) -> None:
        """Print a publisher warning (sink failure, remote disabled)."""
        self._print(self._err, Text(f"[{self.app_name}] WARNING {message}", style=WARNING_STYLE))

    def _print(self, console: Console, text: Text) -> None:
        try:
            console.print(text)
        except Exception as e:
            # Closed or broken stream
            logger.debug("console_write_failed", error=str(e))
