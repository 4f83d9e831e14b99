import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List

from .config import Settings

LOGGER_NAME = "livemetrics"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_log_path(path: str) -> Path:
    """Relative log paths are taken from the current working directory."""
    return Path(path).expanduser().resolve()


def _build_handlers(settings: Settings, formatter: logging.Formatter) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_path = resolve_log_path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(settings: Settings) -> logging.Logger:
    """
    Attach the stdout and rotating-file handlers to the ``livemetrics`` logger.
    An empty ``log_file`` keeps output on stdout only. Once handlers are
    attached, later calls return the logger unchanged.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)

    handlers = _build_handlers(settings, logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False

    destinations = [getattr(handler, "baseFilename", "stdout") for handler in handlers]
    logger.info("Logging initialized level=%s destinations=%s", logging.getLevelName(level), ",".join(destinations))
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
