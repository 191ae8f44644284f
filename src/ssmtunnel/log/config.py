import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger
from platformdirs import user_log_dir

from ssmtunnel.consts import APP_NAME, AUTHOR

console_format = "<green>{time:HH:mm:ss}</green> | <level>{message}</level>"
file_format = "{time:YYYY-MM-DD HH:mm:ss} - {name} - {level} - {message}"


def log_dir(base: Path | None = None) -> Path:
    path = base or Path(user_log_dir(APP_NAME, AUTHOR))
    path.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(verbose: bool = False, base_dir: Path | None = None) -> list[int]:
    """Console at INFO (DEBUG when verbose), plus an always-DEBUG rotating file."""
    logger.remove()
    console = logger.add(
        sys.stderr,
        format=console_format,
        level=logging.DEBUG if verbose else logging.INFO,
    )
    file = logger.add(
        log_dir(base_dir) / "tunnel.log",
        format=file_format,
        level=logging.DEBUG,
        rotation="5 MB",
        retention=3,
        encoding="utf-8",
    )
    return [console, file]


@contextmanager
def isolated_logging(verbose: bool = False, base_dir: Path | None = None) -> Iterator[None]:
    """Configure logging for one CLI command and drop the sinks afterwards."""
    handler_ids = configure_logging(verbose, base_dir)
    try:
        yield
    finally:
        for handler_id in handler_ids:
            logger.remove(handler_id)
