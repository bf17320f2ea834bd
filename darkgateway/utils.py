"""
Utility functions for the darkgateway library
"""
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Callable, Any, Optional

from .exceptions import GatewayError


class LogConst:
    FORMAT = "%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
    MAX_BYTES = 5 * 1024 * 1024  # 5MB
    BACKUP_COUNT = 5


def setup_logging(level: str | int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the darkgateway logger for scripts.

    Logs go to the console, and also to a rotating file when log_file is given.
    """
    logger = logging.getLogger("darkgateway")
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LogConst.FORMAT, datefmt=LogConst.DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=LogConst.MAX_BYTES, backupCount=LogConst.BACKUP_COUNT)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def run_with_keyboard_interrupt(main_func: Callable[[], Any]) -> None:
    """
    Run an async main function with graceful KeyboardInterrupt handling.

    This function wraps asyncio.run() to catch KeyboardInterrupt (Ctrl+C) and
    provide a clean shutdown experience.

    Args:
        main_func: The async main function to run
    """
    try:
        asyncio.run(main_func())
    except KeyboardInterrupt:
        print("\n🛑 Interrupted by user (Ctrl+C)")
        sys.exit(0)
    except GatewayError as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
