import logging

from rich.console import Console
from rich.logging import RichHandler

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def configure_logging(log_level: str = "WARNING", no_color: bool = False) -> None:
    """Route all stackmap loggers to stderr through rich."""
    level = _LEVELS.get(log_level.upper(), logging.WARNING)
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=level == logging.DEBUG,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger("stackmap")
    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False
