"""
SMTP client for relaying outbound messages.

This module provides a high-level SMTP client that supports XOAUTH2 and
LOGIN authentication and classifies relay failures as transient
(MailConnectionError, worth retrying) or permanent (DeliveryError,
AuthenticationError).
"""
import base64
import logging
import smtplib
from email.message import Message as MimeMessage
from typing import Callable, List, Optional

from mail_core import config
from mail_core.auth.credentials import MailboxCredentials
from mail_core.utils.errors import (
    AuthenticationError,
    DeliveryError,
    MailConnectionError,
    MailServiceError,
)


logger = logging.getLogger(__name__)

# Error text fragments that indicate a temporary relay condition
TEMPORARY_PATTERNS = (
    'timeout',
    'timed out',
    'connection refused',
    'connection reset',
    'temporarily unavailable',
    'try again',
    'throttl',
)


def _classify_smtp_error(exc: Exception) -> MailServiceError:
    """
    Translate an smtplib/socket exception into the mail core taxonomy.

    - 4xx replies, timeouts, resets and disconnects are transient
      (MailConnectionError)
    - 530/534/535 and SMTPAuthenticationError are AuthenticationError
    - other 5xx replies and refused recipients are DeliveryError
    """
    if isinstance(exc, MailServiceError):
        return exc

    smtp_code = getattr(exc, 'smtp_code', None)

    if isinstance(exc, smtplib.SMTPAuthenticationError) or smtp_code in (530, 534, 535):
        return AuthenticationError(f"SMTP authentication failed: {exc}")

    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        refused = {
            address: f"{code} {reply.decode('utf-8', errors='ignore') if isinstance(reply, bytes) else reply}"
            for address, (code, reply) in exc.recipients.items()
        }
        codes = [code for code, _ in exc.recipients.values()]
        if codes and all(400 <= code < 500 for code in codes):
            return MailConnectionError(f"Recipients temporarily refused: {', '.join(refused)}")
        return DeliveryError("Recipients refused", smtp_code=max(codes) if codes else None, refused=refused)

    if smtp_code is not None:
        if 400 <= smtp_code < 500:
            return MailConnectionError(f"SMTP temporary failure ({smtp_code}): {exc}")
        if 500 <= smtp_code < 600:
            return DeliveryError(f"SMTP permanent failure ({smtp_code}): {exc}", smtp_code=smtp_code)

    # SMTPException derives from OSError, so plain socket errors are checked last
    if isinstance(exc, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)) or (
        isinstance(exc, OSError) and not isinstance(exc, smtplib.SMTPException)
    ):
        return MailConnectionError(f"SMTP connection failed: {exc}")

    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in TEMPORARY_PATTERNS):
        return MailConnectionError(f"SMTP temporary failure: {exc}")
    return DeliveryError(f"SMTP error: {exc}", smtp_code=smtp_code)


class SmtpClient:
    """
    High-level SMTP client for one mailbox owner.

    The connection is opened and authenticated by login() and reused for
    every send until close().
    """

    def __init__(
        self,
        credentials: MailboxCredentials,
        timeout: float = config.SMTP_TIMEOUT,
        smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None
    ):
        """
        Initialize the SMTP client.

        Args:
            credentials: Decrypted mailbox credentials for the owner.
            timeout: Socket timeout for every relay call, in seconds.
            smtp_factory: Optional factory for the smtplib connection (tests).
        """
        self.credentials = credentials
        self.timeout = timeout
        self._smtp_factory = smtp_factory
        self.connection: Optional[smtplib.SMTP] = None

    def _build_xoauth2_string(self) -> str:
        """
        Build the XOAUTH2 authentication string for SMTP.

        Format: user=email\\1auth=Bearer access_token\\1\\1

        Returns:
            Base64-encoded XOAUTH2 string.
        """
        token_bundle = self.credentials.token_bundle
        if not token_bundle or not token_bundle.access_token:
            raise AuthenticationError("No access token available for XOAUTH2")
        auth_string = f"user={self.credentials.login_name}\x01auth=Bearer {token_bundle.access_token}\x01\x01"
        return base64.b64encode(auth_string.encode('utf-8')).decode('utf-8')

    def _open(self) -> smtplib.SMTP:
        host = self.credentials.smtp_host
        port = self.credentials.smtp_port
        if self._smtp_factory is not None:
            return self._smtp_factory(host, port, timeout=self.timeout)
        # Port 465 uses SSL from the start, other ports use STARTTLS
        if port == 465:
            return smtplib.SMTP_SSL(host, port, timeout=self.timeout)
        connection = smtplib.SMTP(host, port, timeout=self.timeout)
        connection.ehlo()
        connection.starttls()
        connection.ehlo()
        return connection

    def _authenticate(self) -> None:
        if self.credentials.token_bundle:
            code, response = self.connection.docmd('AUTH', 'XOAUTH2 ' + self._build_xoauth2_string())
            if code != 235:
                error_msg = response.decode('utf-8') if isinstance(response, bytes) else str(response)
                raise AuthenticationError(f"XOAUTH2 authentication failed: {error_msg}")
        elif self.credentials.password:
            self.connection.login(self.credentials.login_name, self.credentials.password)
        else:
            raise AuthenticationError(
                "No authentication method provided. Either a token bundle or a password is required."
            )

    def login(self) -> None:
        """
        Connect to the relay and authenticate.

        Raises:
            AuthenticationError: If the relay rejects the credentials.
            MailConnectionError: If the relay cannot be reached.
        """
        host = self.credentials.smtp_host
        logger.debug("Connecting to SMTP server %s:%s", host, self.credentials.smtp_port)
        try:
            self.connection = self._open()
            self._authenticate()
        except (smtplib.SMTPException, OSError, AuthenticationError) as e:
            self._abandon()
            error = _classify_smtp_error(e)
            if isinstance(error, DeliveryError):
                error = MailConnectionError(f"SMTP session setup failed: {e}")
            raise error from e
        logger.info("SMTP session established for %s on %s", self.credentials.login_name, host)

    def _abandon(self) -> None:
        if self.connection is not None:
            try:
                self.connection.close()
            except OSError:
                logger.debug("Error closing SMTP socket", exc_info=True)
        self.connection = None

    def noop(self) -> None:
        """Ping the relay; raises MailConnectionError if the link is dead."""
        if self.connection is None:
            raise MailConnectionError("SMTP connection is not open")
        try:
            code, _ = self.connection.noop()
        except (smtplib.SMTPException, OSError) as e:
            self._abandon()
            raise MailConnectionError(f"SMTP NOOP failed: {e}") from e
        if code != 250:
            raise MailConnectionError(f"SMTP NOOP returned {code}")

    def send(self, mime_msg: MimeMessage, envelope_from: str, recipients: List[str]) -> None:
        """
        Relay one message.

        Args:
            mime_msg: The message to send (without a Bcc header).
            envelope_from: The MAIL FROM address.
            recipients: Every RCPT TO address (to, cc and bcc).

        Raises:
            MailConnectionError: On transient failures worth retrying.
            AuthenticationError: If the relay session is no longer authorized.
            DeliveryError: If the relay permanently rejects the message or
                any recipient.
        """
        if self.connection is None:
            raise MailConnectionError("SMTP connection is not open")

        logger.info("Sending message to %d recipient(s)", len(recipients))
        try:
            refused = self.connection.sendmail(envelope_from, recipients, mime_msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            error = _classify_smtp_error(e)
            if isinstance(error, MailConnectionError):
                self._abandon()
            raise error from e

        if refused:
            # sendmail only returns when at least one recipient was accepted
            raise DeliveryError(
                f"Failed to send to recipients: {', '.join(refused)}",
                partial=True,
                refused={
                    address: f"{code} {reply.decode('utf-8', errors='ignore') if isinstance(reply, bytes) else reply}"
                    for address, (code, reply) in refused.items()
                },
            )
        logger.info("Message relayed successfully")

    def close(self) -> None:
        """Close the SMTP connection."""
        if self.connection is None:
            return
        try:
            self.connection.quit()
            logger.debug("SMTP connection closed gracefully")
        except (smtplib.SMTPException, OSError):
            self._abandon()
        finally:
            self.connection = None
