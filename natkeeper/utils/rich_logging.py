"""Rich logging integration for natkeeper.

Provides the Rich console handler used for interactive output and a file
formatter that strips Rich markup.
"""

from __future__ import annotations

import logging
import re
import sys

from rich.console import Console
from rich.logging import RichHandler

_MARKUP_PATTERN = re.compile(r"\[/?[^\]]+\]")

# Highlight gateway actions so they stand out in a busy console
ACTION_PATTERNS = [
    r"AddPortMapping",
    r"DeletePortMapping",
    r"GetExternalIPAddress",
    r"M-SEARCH",
]


class GatewayRichHandler(RichHandler):
    """RichHandler that colours SOAP action names and the calling function."""

    def _colorize_actions(self, message: str) -> str:
        for pattern in ACTION_PATTERNS:
            message = re.sub(
                pattern, lambda m: f"[bright_cyan]{m.group(0)}[/bright_cyan]", message
            )
        return message

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record with the function name and action names coloured."""
        try:
            message = self._colorize_actions(
                # Escape stray brackets coming from URLs or XML before adding markup
                record.getMessage().replace("[", r"\[")
            )
            func_name = getattr(record, "funcName", None)
            if func_name:
                message = f"[#ff69b4]{func_name}[/#ff69b4] {message}"
            record.msg = message
            record.args = ()
            super().emit(record)
        except Exception:
            self.handleError(record)


def strip_rich_markup(text: str) -> str:
    """Strip Rich markup from text for file logging.

    Args:
        text: Text with Rich markup

    Returns:
        Text without Rich markup

    """
    return _MARKUP_PATTERN.sub("", text)


class FileFormatter(logging.Formatter):
    """Formatter for file output that strips Rich markup."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, stripping Rich markup for file output."""
        return strip_rich_markup(super().format(record))


def create_rich_handler(
    console: Console | None = None,
    level: int | str = logging.INFO,
    show_path: bool = False,
    rich_tracebacks: bool = True,
) -> logging.Handler:
    """Create a RichHandler with action highlighting.

    Args:
        console: Optional Rich Console instance
        level: Log level
        show_path: Whether to show file paths in log output
        rich_tracebacks: Whether to use rich tracebacks

    Returns:
        Configured RichHandler instance

    """
    if console is None:
        console = Console(file=sys.stderr, markup=True)

    return GatewayRichHandler(
        console=console,
        level=level,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        markup=True,
    )
