"""
Centralized logging configuration for the engine.
Ensures consistent logging format and level across all modules.
"""

import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from .config_loader import resolve_path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str, log_dir: Optional[Path] = None, level: int = logging.INFO):
    """
    Configures and returns a logger with the specified name.

    Args:
        name (str): Name of the logger. ``"vaxtrack"`` configures every
            engine module, since they log under ``vaxtrack.<module>``.
        log_dir (Path, optional): Directory for a rotating log file. Console
            only when omitted.
        level (int): Logging level (default is logging.INFO).

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"{name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def configure_from_config(config: Dict[str, Any], name: str = "vaxtrack"):
    """Set up the package logger from the ``logging`` section of parameters.yaml."""
    section = config.get("logging", {})
    level = getattr(logging, str(section.get("level", "INFO")).upper(), logging.INFO)
    log_dir = section.get("log_dir")
    return get_logger(name, resolve_path(log_dir) if log_dir else None, level)
