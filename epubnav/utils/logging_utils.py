"""
Logging setup for the command line, and small helpers used when logging.

Addresses and markup can be long; sanitize_log_data keeps log lines readable.
"""
import inspect
import logging
import os
import time
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)


def _level(log_level: str) -> int:
    return getattr(logging, (log_level or 'INFO').upper(), logging.INFO)


def setup_file_logging(data_dir: Path, log_level: str = 'INFO', filename: str = "epubnav.log"):
    """
    Rotating file log under DATA_DIR/logs. Returns the log path, or "" without a data dir.

    Calling it again for the same file only updates the level of the handler already attached.
    """
    data_dir = Path(data_dir)
    if not data_dir.exists():
        logger.warning(f"Not setting up file logging because data dir '{data_dir}' is missing")
        return ""

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / filename

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == os.path.abspath(log_path):
            handler.setLevel(_level(log_level))
            return log_path

    file_handler = RotatingFileHandler(str(log_path), maxBytes=10*1024*1024, backupCount=5, encoding='utf-8')
    file_handler.setLevel(_level(log_level))
    file_handler.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s - %(name)s: %(message)s'))

    # Attach to the root logger so all module loggers go to the same file
    root_logger.addHandler(file_handler)
    return log_path


def setup_console_logging(log_level: str = 'INFO'):
    console_handler = logging.StreamHandler()
    console_handler.setLevel(_level(log_level))
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

    root_logger = logging.getLogger()
    root_logger.addHandler(console_handler)

    # Root passes everything through, handlers filter individually
    root_logger.setLevel(logging.DEBUG)
    return console_handler


def configure_logging(config) -> bool:
    """One-time logging setup for the command line; library code never calls this."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_epubnav_configured", False):
        return False

    setup_file_logging(config.data_dir, config.log_level)
    setup_console_logging(config.log_level)
    root_logger._epubnav_configured = True
    return True


def sanitize_log_data(data, limit: int = 100):
    """
    One-line rendering of `data` for log messages.

    Whitespace runs (newlines in markup, indentation) collapse to a single
    space; anything longer than `limit` keeps its first and last halves.
    """
    if data is None:
        return ""
    try:
        s = " ".join(str(data).split())
    except Exception:
        return "[unrepresentable]"
    if len(s) <= limit:
        return s
    half = limit // 2
    return f"{s[:half]}... [truncated] ...{s[-half:]}"


def time_execution(func):
    """Log how long a call took. Works on plain and async functions."""
    if inspect.iscoroutinefunction(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.time()
            result = await func(*args, **kwargs)
            logger.info(f"⏱️ [{func.__name__}] took {int((time.time() - start) * 1000)}ms")
            return result
        return async_wrapper

    @wraps(func)
    def wrapper(*args, **kwargs):
        start = time.time()
        result = func(*args, **kwargs)
        logger.info(f"⏱️ [{func.__name__}] took {int((time.time() - start) * 1000)}ms")
        return result
    return wrapper
