# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
#
# Local Imports
from bills_app.config import get_cli_setting, get_log_file_path
#
########################################################################################################################
#
# Functions:

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers from the remote client stack that are far too chatty at DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "websockets", "realtime")

_LEVEL_MAPPING = {
    "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
    "SUCCESS": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_loguru_sink_id: Optional[int] = None


def sink_to_standard_logging(message):
    """Forwards a loguru record to the standard logging logger of the same name."""
    record = message.record
    std_level = _LEVEL_MAPPING.get(record["level"].name, logging.INFO)
    std_logger = logging.getLogger(record["name"])
    if record["exception"]:
        std_logger.log(std_level, record["message"], exc_info=record["exception"])
    else:
        std_logger.log(std_level, record["message"])


def configure_logging(level: Optional[str] = None, log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Sets up logging for the application.

    Loguru is routed into the standard logging module, and the root logger gets a
    stderr handler plus a rotating file handler. Safe to call more than once.
    """
    global _loguru_sink_id

    level_str = (level or get_cli_setting("general", "log_level", "INFO")).upper()
    root_level = getattr(logging, level_str, logging.INFO)

    # --- Loguru -> standard logging ---
    loguru_logger.remove()
    _loguru_sink_id = loguru_logger.add(sink_to_standard_logging, format="{message}", level="TRACE")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:
            pass
    root_logger.setLevel(root_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # --- Rotating file handler ---
    try:
        log_file_path = Path(log_file) if log_file else get_log_file_path()
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        max_bytes = int(get_cli_setting("logging", "log_max_bytes", 10485760))
        backup_count = int(get_cli_setting("logging", "log_backup_count", 5))
        file_level_str = str(get_cli_setting("logging", "file_log_level", "INFO")).upper()
        file_level = getattr(logging, file_level_str, logging.INFO)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        # Let the most verbose handler decide the root level
        if root_logger.level > file_level:
            root_logger.setLevel(file_level)
    except OSError as e:
        loguru_logger.warning(f"Could not set up file logging: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    loguru_logger.info(f"Logging configured (root level: {logging.getLevelName(root_logger.level)}).")
    return root_logger

#
# End of Logging_Config.py
########################################################################################################################
