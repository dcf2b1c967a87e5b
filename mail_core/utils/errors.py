"""
Centralized error hierarchy for the mail core.

This module provides the base exception class and the specific error types
raised by the pool, synchronizer, send pipeline and batch coordinator, along
with helpers for converting them to user-facing reason strings.
"""
from typing import Dict, Optional, Union


class MailServiceError(Exception):
    """
    Base exception class for all mail core errors.

    Every subclass carries a stable ``code`` so a front end can map it to a
    status code without matching on message text.
    """
    code = "mail_service_error"


class AuthenticationError(MailServiceError):
    """Raised when the mail store or relay rejects the owner's credentials."""
    code = "authentication_failed"


class MailConnectionError(MailServiceError, ConnectionError):
    """Raised on transient network or protocol failures (timeouts, resets)."""
    code = "connection_failed"


class NotFoundError(MailServiceError, LookupError):
    """Raised when a referenced folder or message UID does not exist."""
    code = "not_found"


class InvalidArgument(MailServiceError, ValueError):
    """Raised for malformed caller input, before any I/O is attempted."""
    code = "invalid_argument"


class MailStoreError(MailServiceError):
    """Raised when the store refuses a well-formed command (IMAP NO/BAD)."""
    code = "store_error"


class DeliveryError(MailServiceError):
    """
    Raised when the relay rejects a message.

    Attributes:
        retryable: True when delivery failed only because transient
            failures exhausted the retry budget.
        smtp_code: The SMTP reply code, when the relay supplied one.
        refused: Map of refused recipient address to the relay's reply.
        partial: True when the relay accepted the message for some
            recipients, so it was delivered to them.
    """
    code = "delivery_failed"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        smtp_code: Optional[int] = None,
        refused: Optional[Dict[str, str]] = None,
        partial: bool = False
    ):
        super().__init__(message)
        self.retryable = retryable
        self.smtp_code = smtp_code
        self.refused = dict(refused or {})
        self.partial = partial


def error_code(exc: BaseException) -> str:
    """Return the stable error code for an exception."""
    if isinstance(exc, MailServiceError):
        return exc.code
    return "internal_error"


def human_friendly_message(exc: Union[MailServiceError, Exception]) -> str:
    """
    Convert an exception to a user-facing reason string.

    Each error class maps to a distinct message so callers can tell failures
    apart; the technical detail is appended where it helps the user act.

    Args:
        exc: The exception to convert.

    Returns:
        A user-friendly error message string.
    """
    error_msg = str(exc) if str(exc) else ""

    if isinstance(exc, AuthenticationError):
        return (
            "Could not sign in to your mailbox. Please check that your "
            "account credentials are up to date."
        )
    elif isinstance(exc, MailConnectionError):
        if "timeout" in error_msg.lower() or "timed out" in error_msg.lower():
            return (
                "The connection to the mail server timed out. "
                "Please try again."
            )
        return (
            "Could not reach the mail server. Please check your connection "
            "and try again."
        )
    elif isinstance(exc, NotFoundError):
        return f"Not found: {error_msg}" if error_msg else "The requested item could not be found."
    elif isinstance(exc, DeliveryError):
        if exc.refused:
            return (
                "The mail server refused these recipients: "
                + ", ".join(sorted(exc.refused))
            )
        if exc.retryable:
            return (
                "Your message could not be sent because the mail server is "
                "temporarily unavailable. It has been kept in Drafts."
            )
        return f"Your message could not be delivered: {error_msg}"
    elif isinstance(exc, InvalidArgument):
        return f"Invalid input: {error_msg}"
    elif isinstance(exc, MailStoreError):
        return f"The mail server rejected the request: {error_msg}"
    elif isinstance(exc, MailServiceError):
        return f"An error occurred: {error_msg}" if error_msg else "An unexpected error occurred."

    # Standard Python exceptions
    elif isinstance(exc, TimeoutError):
        return (
            "The operation timed out. This might be due to a slow connection "
            "or server issues. Please try again."
        )
    elif isinstance(exc, ValueError):
        return f"Invalid input: {error_msg}"

    error_msg = error_msg or "Unknown error"
    return f"An error occurred: {error_msg}"
