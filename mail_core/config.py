"""
Global settings and constants for the mail core.

This module provides configuration constants and helpers. It is
framework-agnostic and designed to be easily unit-testable: components take a
ServiceSettings snapshot instead of reading these globals directly.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Default port constants
DEFAULT_IMAP_PORT: int = 993
DEFAULT_SMTP_PORT: int = 587

# Network timeouts (seconds); a timeout aborts only the in-flight call
IMAP_TIMEOUT: float = 30
SMTP_TIMEOUT: float = 30

# Connection pool
SESSION_IDLE_TIMEOUT_SECONDS: float = 300
SESSION_SWEEP_INTERVAL_SECONDS: float = 30

# Message cache
MESSAGE_CACHE_TTL_SECONDS: float = 60

# Send pipeline retry policy
SEND_MAX_ATTEMPTS: int = 3
SEND_BACKOFF_BASE_SECONDS: float = 1.0
SEND_BACKOFF_FACTOR: float = 2.0

# Pagination
DEFAULT_PAGE_SIZE: int = 50
MAX_PAGE_SIZE: int = 200

# OAuth configuration (read from environment)
OAUTH_TOKEN_ENDPOINT: str = "https://oauth2.googleapis.com/token"
OAUTH_CLIENT_ID: Optional[str] = None
OAUTH_CLIENT_SECRET: Optional[str] = None
TOKEN_REFRESH_MARGIN_SECONDS: float = 300

# Fernet key for the credential vault; generated per process when unset
CREDENTIALS_KEY: Optional[str] = None

# Log directory
LOG_DIR: Path = Path.home() / ".mail_core" / "logs"


@dataclass(slots=True)
class ServiceSettings:
    """Snapshot of the tunables a MailService is built with."""
    imap_timeout: float = IMAP_TIMEOUT
    smtp_timeout: float = SMTP_TIMEOUT
    session_idle_timeout: float = SESSION_IDLE_TIMEOUT_SECONDS
    session_sweep_interval: float = SESSION_SWEEP_INTERVAL_SECONDS
    cache_ttl: float = MESSAGE_CACHE_TTL_SECONDS
    send_max_attempts: int = SEND_MAX_ATTEMPTS
    send_backoff_base: float = SEND_BACKOFF_BASE_SECONDS
    send_backoff_factor: float = SEND_BACKOFF_FACTOR
    default_page_size: int = DEFAULT_PAGE_SIZE
    max_page_size: int = MAX_PAGE_SIZE
    token_refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


def load_env(dotenv_path: Optional[str] = None) -> None:
    """
    Load environment variables and apply them over the defaults.

    Reads a .env file (if present) and then every MAIL_CORE_* override. It
    should be called once at application startup, before load_settings().

    Args:
        dotenv_path: Optional explicit path to a .env file.
    """
    global IMAP_TIMEOUT, SMTP_TIMEOUT
    global SESSION_IDLE_TIMEOUT_SECONDS, SESSION_SWEEP_INTERVAL_SECONDS
    global MESSAGE_CACHE_TTL_SECONDS
    global SEND_MAX_ATTEMPTS, SEND_BACKOFF_BASE_SECONDS, SEND_BACKOFF_FACTOR
    global DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
    global OAUTH_TOKEN_ENDPOINT, OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET
    global CREDENTIALS_KEY, LOG_DIR

    load_dotenv(dotenv_path)

    IMAP_TIMEOUT = _env_float("MAIL_CORE_IMAP_TIMEOUT", IMAP_TIMEOUT)
    SMTP_TIMEOUT = _env_float("MAIL_CORE_SMTP_TIMEOUT", SMTP_TIMEOUT)
    SESSION_IDLE_TIMEOUT_SECONDS = _env_float(
        "MAIL_CORE_SESSION_IDLE_TIMEOUT", SESSION_IDLE_TIMEOUT_SECONDS
    )
    SESSION_SWEEP_INTERVAL_SECONDS = _env_float(
        "MAIL_CORE_SESSION_SWEEP_INTERVAL", SESSION_SWEEP_INTERVAL_SECONDS
    )
    MESSAGE_CACHE_TTL_SECONDS = _env_float("MAIL_CORE_CACHE_TTL", MESSAGE_CACHE_TTL_SECONDS)
    SEND_MAX_ATTEMPTS = int(_env_float("MAIL_CORE_SEND_MAX_ATTEMPTS", SEND_MAX_ATTEMPTS))
    SEND_BACKOFF_BASE_SECONDS = _env_float("MAIL_CORE_SEND_BACKOFF_BASE", SEND_BACKOFF_BASE_SECONDS)
    SEND_BACKOFF_FACTOR = _env_float("MAIL_CORE_SEND_BACKOFF_FACTOR", SEND_BACKOFF_FACTOR)
    DEFAULT_PAGE_SIZE = int(_env_float("MAIL_CORE_DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE))
    MAX_PAGE_SIZE = int(_env_float("MAIL_CORE_MAX_PAGE_SIZE", MAX_PAGE_SIZE))

    OAUTH_TOKEN_ENDPOINT = os.environ.get("MAIL_CORE_OAUTH_TOKEN_ENDPOINT", OAUTH_TOKEN_ENDPOINT)
    OAUTH_CLIENT_ID = os.environ.get("MAIL_CORE_OAUTH_CLIENT_ID", OAUTH_CLIENT_ID)
    OAUTH_CLIENT_SECRET = os.environ.get("MAIL_CORE_OAUTH_CLIENT_SECRET", OAUTH_CLIENT_SECRET)
    CREDENTIALS_KEY = os.environ.get("MAIL_CORE_CREDENTIALS_KEY", CREDENTIALS_KEY)

    log_dir_env = os.environ.get("MAIL_CORE_LOG_DIR")
    if log_dir_env:
        LOG_DIR = Path(log_dir_env)


def load_settings() -> ServiceSettings:
    """
    Snapshot the current module globals into a ServiceSettings.

    Returns:
        A ServiceSettings reflecting defaults plus any load_env() overrides.
    """
    return ServiceSettings(
        imap_timeout=IMAP_TIMEOUT,
        smtp_timeout=SMTP_TIMEOUT,
        session_idle_timeout=SESSION_IDLE_TIMEOUT_SECONDS,
        session_sweep_interval=SESSION_SWEEP_INTERVAL_SECONDS,
        cache_ttl=MESSAGE_CACHE_TTL_SECONDS,
        send_max_attempts=SEND_MAX_ATTEMPTS,
        send_backoff_base=SEND_BACKOFF_BASE_SECONDS,
        send_backoff_factor=SEND_BACKOFF_FACTOR,
        default_page_size=DEFAULT_PAGE_SIZE,
        max_page_size=MAX_PAGE_SIZE,
        token_refresh_margin=TOKEN_REFRESH_MARGIN_SECONDS,
    )
