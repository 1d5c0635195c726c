"""Logging configuration."""
import logging
from pathlib import Path

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Libraries whose debug output drowns out rule evaluation logs.
QUIET_LOGGERS = ("urllib3", "schedule")


def setup_logging(level="INFO", log_file=None):
    """Configure the `pulse` logger tree. Handlers are only attached once per process."""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger("pulse")
    root.setLevel(numeric_level)

    if not root.handlers:
        root.addHandler(RichHandler(level=numeric_level, rich_tracebacks=True, markup=False,
                                    show_path=numeric_level <= logging.DEBUG))
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
    return root
