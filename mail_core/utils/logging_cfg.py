"""
Logging configuration for the mail core.

This module sets up logging with rotating file handlers and console output.
Only entry points call setup_logging(); library modules just use
logging.getLogger(__name__).
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from mail_core import config


# Maximum log file size (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files to keep
BACKUP_COUNT = 5


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> Path:
    """
    Configure logging for a mail core process.

    Sets up:
    - Rotating file handler (defaults to <LOG_DIR>/mail_core.log)
    - Console handler for immediate feedback
    - Appropriate log levels based on debug mode

    Args:
        debug: If True, sets log level to DEBUG. Otherwise, uses INFO.
        log_file: Optional explicit log file path.

    Returns:
        The path of the log file in use.
    """
    log_path = Path(log_file) if log_file else config.LOG_DIR / "mail_core.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear any existing handlers
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    simple_formatter = logging.Formatter(
        fmt='%(levelname)s - %(message)s'
    )

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_path),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    # Console handler (only show WARNING and above unless debug)
    console_handler = logging.StreamHandler()
    console_level = logging.DEBUG if debug else logging.WARNING
    console_handler.setLevel(console_level)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    logger = logging.getLogger(__name__)
    logger.info("Mail core logging started (level=%s, file=%s)",
                logging.getLevelName(log_level), log_path)

    _suppress_noisy_loggers()
    return log_path


def _suppress_noisy_loggers() -> None:
    """Suppress verbose logging from protocol and HTTP libraries."""
    for name in ("urllib3", "requests", "imaplib", "smtplib", "cryptography"):
        logging.getLogger(name).setLevel(logging.WARNING)
