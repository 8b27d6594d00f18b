"""
Terminal color detection for the access log.

Detection runs once, when the server (or a test) builds a TerminalConfig,
and the result is handed to LoggerMiddleware. Nothing here is module-level
mutable state, so tests can pass a fixed config:

    LoggerMiddleware(terminal=TerminalConfig(is_tty=True, use_color=True))
"""

import os
from dataclasses import dataclass
from typing import Optional, TextIO


# ANSI escape sequences, bright variants for statuses and methods
COLORS = {
    "red": "\033[31;1m",
    "green": "\033[32;1m",
    "yellow": "\033[33m",
    "blue": "\033[34;1m",
    "magenta": "\033[35;1m",
    "cyan": "\033[36;1m",
    "white": "\033[37;1m",
    "reset": "\033[0m",
}


@dataclass(frozen=True)
class TerminalConfig:
    """Whether the log stream is a terminal, and whether color is wanted."""

    is_tty: bool = False
    use_color: bool = True

    @property
    def colored(self) -> bool:
        return self.is_tty and self.use_color

    def colorize(self, color: str, text: str) -> str:
        """Wrap `text` in the named ANSI color when colored output is on."""
        if not self.colored:
            return text
        return f"{COLORS[color]}{text}{COLORS['reset']}"


def detect_terminal(stream: TextIO, use_color: Optional[bool] = None) -> TerminalConfig:
    """
    Build a TerminalConfig for `stream`.

    `use_color` None means "color if the stream is a terminal and NO_COLOR
    is not set".
    """
    isatty = getattr(stream, "isatty", None)
    try:
        is_tty = bool(isatty and isatty())
    except ValueError:
        # Closed stream
        is_tty = False

    if use_color is None:
        use_color = "NO_COLOR" not in os.environ

    return TerminalConfig(is_tty=is_tty, use_color=use_color)


def status_color(status: int) -> str:
    """Color name for a status code: 2xx green, 3xx cyan, 4xx yellow, 5xx red."""
    if status < 200:
        return "blue"
    if status < 300:
        return "green"
    if status < 400:
        return "cyan"
    if status < 500:
        return "yellow"
    return "red"
