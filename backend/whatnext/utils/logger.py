import logging

from ..core.config import settings

logger = logging.getLogger("whatnext")


def setup_logging(level: str = None) -> logging.Logger:
    """Attach the console handler to the package logger once."""
    logger.setLevel((level or settings.log_level or "INFO").upper())
    if not logger.handlers:
        console_handler = logging.StreamHandler()
        formatter = logging.Formatter("[%(levelname)s] %(asctime)s - %(name)s - %(message)s", "%Y-%m-%d %H:%M:%S")
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
    return logger
