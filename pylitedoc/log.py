# log.py
import logging
import sys
from pathlib import Path
from typing import Optional


def setup_logger(
    name: str = "pylitedoc",
    level: str = "INFO",
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Simple one-level logger setup

    Args:
      name: Logger name (module loggers are children of "pylitedoc")
      level: Log level (DEBUG, INFO, WARNING, ERROR)
      log_file: Optional path to a log file
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S"
    ))
    logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    return logger

# Library logger; silent unless the application configures it
logger = logging.getLogger("pylitedoc")
logger.addHandler(logging.NullHandler())
