"""Logging configuration."""

import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure root logging for the agent process."""
    level = logging.DEBUG if verbose else logging.INFO

    # Console handler with rich
    console_handler = RichHandler(
        rich_tracebacks=True,
        show_time=True,
        show_path=False,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers: list[logging.Handler] = [console_handler]

    # File handler
    if log_file:
        log_file = Path(log_file)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Cannot open log file {log_file}: {e}")
        else:
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # aiohttp access noise is never useful on a node
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
