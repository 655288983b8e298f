# log_setup.py
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler

# --- Configuration ---
LOG_LEVEL = logging.INFO
LOG_DIR = os.getenv("DBM_LOG_DIR", ".logs")
LOG_FILE = f"{LOG_DIR}/docker-backup-manager.log"
ERROR_LOG_FILE = f"{LOG_DIR}/docker-backup-manager.err"

os.makedirs(LOG_DIR, exist_ok=True)

# --- Formatter ---
FORMATTER = logging.Formatter("%(asctime)s — %(name)s — %(levelname)s — %(message)s")


def get_console_handler():
    """Returns a handler that prints to the console (stdout)."""
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(FORMATTER)
    return console_handler


def get_file_handler():
    """Returns a timed rotating file handler for general logs."""
    file_handler = TimedRotatingFileHandler(LOG_FILE, when="midnight", backupCount=30)
    file_handler.setFormatter(FORMATTER)
    return file_handler


def get_error_file_handler():
    """
    Returns a file handler that logs only ERROR and CRITICAL messages.
    The file is opened lazily, so it only appears once an error is logged.
    """
    error_handler = logging.FileHandler(ERROR_LOG_FILE, delay=True)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(FORMATTER)
    return error_handler


def set_verbose(enabled: bool = True) -> None:
    """Switches the root logger between INFO and DEBUG."""
    logger.setLevel(logging.DEBUG if enabled else LOG_LEVEL)


# ---------------------------

# --- Setup ---
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)  # The lowest level the logger will handle

# Guard against duplicate handlers when the module is reloaded.
if not getattr(logger, "_dbm_configured", False):
    logger.addHandler(get_console_handler())
    logger.addHandler(get_file_handler())
    logger.addHandler(get_error_file_handler())
    logger._dbm_configured = True

logger.propagate = False
