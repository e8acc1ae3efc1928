# apishield/core/logging_config.py
"""
Logging for the app and the security components.

Two destinations besides the console:

    logs/apishield.log   everything at LOG_LEVEL and above
    logs/security.log    the `apishield.security` audit trail only:
                         CSRF rejections, throttled requests, violators

Security events are logged at INFO or above regardless of LOG_LEVEL, so the
audit trail stays complete when the app log is turned down. Token values
never reach either file; components log at most a short session prefix.
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

SECURITY_LOGGER_NAME = "apishield.security"

APP_LOG_FILE = "apishield.log"
SECURITY_LOG_FILE = "security.log"

# Marks handlers installed here so a second setup replaces them
_HANDLER_TAG = "_apishield_handler"

_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_SECURITY_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
_DATEFMT = '%Y-%m-%d %H:%M:%S'


def get_security_logger() -> logging.Logger:
    """Audit logger for rejected and throttled requests"""
    return logging.getLogger(SECURITY_LOGGER_NAME)


def _rotating_handler(path: Path, formatter: logging.Formatter, tag: str) -> RotatingFileHandler:
    # Rotating, max 5 MB per file, max 5 files
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    setattr(handler, _HANDLER_TAG, tag)
    return handler


def _remove_tagged(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_TAG, None):
            logger.removeHandler(handler)
            handler.close()


def reset_logging() -> None:
    """Detach and close every handler `setup_logging` installed"""
    _remove_tagged(logging.getLogger())
    _remove_tagged(get_security_logger())


def setup_logging(log_level: str = None, log_dir: str = None):
    """Configure console, app log file and the security audit log"""
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_dir = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    # Apps built more than once per process (tests, reloads) must not stack handlers
    reset_logging()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    setattr(console_handler, _HANDLER_TAG, "console")
    root_logger.addHandler(console_handler)

    app_handler = _rotating_handler(log_dir / APP_LOG_FILE, formatter, "app")
    app_handler.setLevel(log_level)
    root_logger.addHandler(app_handler)

    security_logger = get_security_logger()
    security_logger.setLevel(min(logging.INFO, root_logger.level))
    security_logger.addHandler(
        _rotating_handler(
            log_dir / SECURITY_LOG_FILE,
            logging.Formatter(_SECURITY_FORMAT, datefmt=_DATEFMT),
            "security"
        )
    )

    # Quieter third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root_logger
