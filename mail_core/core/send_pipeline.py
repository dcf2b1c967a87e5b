"""
Send pipeline.

Validates, composes and relays outbound messages. Transient relay failures
(MailConnectionError) are retried with exponential backoff; permanent
failures raise DeliveryError at once. The draft is never lost: on any
terminal failure it stays in (or is saved to) Drafts. On success a copy is
appended to Sent and the saved draft is removed, also when the relay
refused only some recipients.
"""
import logging
import time
from datetime import datetime
from email.utils import make_msgid
from typing import Callable, Optional

from mail_core import config
from mail_core.core.pool import ConnectionPool
from mail_core.core.synchronizer import MailboxSynchronizer
from mail_core.models import DRAFT, SEEN, MailboxSession, OutboundDraft
from mail_core.network import mime
from mail_core.utils.errors import (
    AuthenticationError,
    DeliveryError,
    InvalidArgument,
    MailConnectionError,
    MailServiceError,
    NotFoundError,
)
from mail_core.utils.helpers import address_domain, is_well_formed_recipient, parse_email_address


logger = logging.getLogger(__name__)


def validate_for_send(draft: OutboundDraft, attachment_loader: Optional[mime.AttachmentLoader] = None) -> None:
    """
    Check a draft is sendable. Performs no I/O.

    Raises:
        InvalidArgument: If there is no To recipient, any recipient is
            malformed, the body is empty, or attachments cannot be loaded.
    """
    if not draft.to:
        raise InvalidArgument("At least one To recipient is required")
    malformed = [recipient for recipient in draft.all_recipients if not is_well_formed_recipient(recipient)]
    if malformed:
        raise InvalidArgument(f"Malformed recipient address(es): {', '.join(map(repr, malformed))}")
    if not draft.has_body:
        raise InvalidArgument("A message body is required to send")
    mime.require_attachment_loader(draft, attachment_loader)


class SendPipeline:
    """Relays drafts for an owner with retry, Sent recording and draft cleanup."""

    def __init__(
        self,
        pool: ConnectionPool,
        synchronizer: MailboxSynchronizer,
        max_attempts: int = config.SEND_MAX_ATTEMPTS,
        backoff_base: float = config.SEND_BACKOFF_BASE_SECONDS,
        backoff_factor: float = config.SEND_BACKOFF_FACTOR,
        sleep: Callable[[float], None] = time.sleep,
        attachment_loader: Optional[mime.AttachmentLoader] = None
    ):
        """
        Initialize the pipeline.

        Args:
            pool: Connection pool lending owner sessions.
            synchronizer: Used to append to Sent/Drafts and remove drafts.
            max_attempts: Relay attempts per send, including the first.
            backoff_base: Delay before the second attempt, in seconds.
            backoff_factor: Multiplier applied to the delay per attempt.
            sleep: Sleep function (injectable for tests).
            attachment_loader: Returns attachment bytes from the blob store.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.pool = pool
        self.synchronizer = synchronizer
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self._sleep = sleep
        self.attachment_loader = attachment_loader

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed)."""
        return self.backoff_base * self.backoff_factor ** (attempt - 1)

    # ---- drafts ----------------------------------------------------------

    def save_draft(self, owner_id: str, draft: OutboundDraft) -> int:
        """
        Save a draft to the Drafts folder, replacing its previous copy.

        Drafts may be incomplete: recipients are not validated.

        Returns:
            The draft id (its UID in Drafts), also set on ``draft.draft_id``.
        """
        with self.pool.session(owner_id) as session:
            return self._store_draft(session, draft)

    def _store_draft(self, session: MailboxSession, draft: OutboundDraft) -> int:
        msg = mime.build_message(
            draft,
            sender=draft.sender or session.address,
            sender_name=draft.sender_name or session.display_name,
            include_bcc=True,
        )
        new_uid = self.synchronizer.append(session, 'drafts', mime.message_to_bytes(msg), flags=(DRAFT, SEEN))
        previous = draft.draft_id
        draft.draft_id = new_uid
        if previous is not None and previous != new_uid:
            self._remove_draft(session, previous)
        logger.debug("Saved draft %s for %s", new_uid, session.owner_id)
        return new_uid

    def _remove_draft(self, session: MailboxSession, draft_id: int) -> None:
        try:
            self.synchronizer.expunge(session, 'drafts', draft_id)
        except NotFoundError:
            logger.debug("Draft %s of %s was already gone", draft_id, session.owner_id)

    def _keep_draft(self, owner_id: str, draft: OutboundDraft) -> None:
        """Make sure an unsent draft is persisted in Drafts."""
        if draft.draft_id is not None:
            return
        try:
            self.save_draft(owner_id, draft)
            logger.info("Saved unsent message as draft %s for %s", draft.draft_id, owner_id)
        except MailServiceError:
            logger.error("Could not save unsent message as a draft for %s", owner_id, exc_info=True)

    # ---- sending ---------------------------------------------------------

    def send(self, owner_id: str, draft: OutboundDraft) -> str:
        """
        Relay a draft.

        Args:
            owner_id: The sending mailbox owner.
            draft: The message to send.

        Returns:
            The Message-ID of the sent message.

        Raises:
            InvalidArgument: If the draft is not sendable (no I/O attempted).
            DeliveryError: If the relay rejects the message or credentials
                (``retryable=False``), or transient failures exhausted every
                attempt (``retryable=True``). The draft is kept in Drafts, unless
                the relay accepted some recipients (``partial=True``), in
                which case the message is recorded in Sent.
        """
        validate_for_send(draft, self.attachment_loader)
        recipients = [parse_email_address(recipient)[1] for recipient in draft.all_recipients]
        date = datetime.now().astimezone()
        message_id: Optional[str] = None
        last_error: Optional[MailConnectionError] = None
        delivered = False

        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.pool.session(owner_id) as session:
                    sender = draft.sender or session.address
                    message_id = message_id or make_msgid(domain=address_domain(sender))
                    outgoing = self._compose(draft, session, message_id, date, include_bcc=False)
                    session.relay.send(outgoing, parse_email_address(sender)[1], recipients)
                delivered = True
                break
            except MailConnectionError as e:
                last_error = e
                if attempt >= self.max_attempts:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Transient relay failure for %s (attempt %d/%d): %s - retrying in %.1fs",
                    owner_id, attempt, self.max_attempts, e, delay,
                )
                self._sleep(delay)
            except AuthenticationError as e:
                logger.error("Relay rejected credentials for %s: %s", owner_id, e)
                self._keep_draft(owner_id, draft)
                raise DeliveryError(f"Relay authentication failed: {e}") from e
            except DeliveryError as e:
                if e.partial:
                    logger.error("Message %s for %s reached only some recipients: %s", message_id, owner_id, e)
                    self._record_sent(owner_id, draft, message_id, date)
                    raise
                logger.error("Permanent delivery failure for %s: %s", owner_id, e)
                self._keep_draft(owner_id, draft)
                raise

        if not delivered:
            logger.error("Giving up on send for %s after %d attempts: %s", owner_id, self.max_attempts, last_error)
            self._keep_draft(owner_id, draft)
            raise DeliveryError(
                f"Relay unavailable after {self.max_attempts} attempts: {last_error}",
                retryable=True,
            ) from last_error

        logger.info("Sent message %s for %s", message_id, owner_id)
        self._record_sent(owner_id, draft, message_id, date)
        return message_id

    def _compose(self, draft: OutboundDraft, session: MailboxSession, message_id: str, date: datetime, include_bcc: bool):
        return mime.build_message(
            draft,
            sender=draft.sender or session.address,
            sender_name=draft.sender_name or session.display_name,
            message_id=message_id,
            date=date,
            include_bcc=include_bcc,
            attachment_loader=self.attachment_loader,
        )

    def _record_sent(self, owner_id: str, draft: OutboundDraft, message_id: str, date: datetime) -> None:
        """
        Append the Sent copy and remove the saved draft.

        The message has already been delivered, so a store failure here is
        logged and does not fail the send.
        """
        try:
            with self.pool.session(owner_id) as session:
                sent_copy = self._compose(draft, session, message_id, date, include_bcc=True)
                self.synchronizer.append(session, 'sent', mime.message_to_bytes(sent_copy), flags=(SEEN,))
                if draft.draft_id is not None:
                    self._remove_draft(session, draft.draft_id)
                    draft.draft_id = None
        except MailServiceError:
            logger.error("Message %s was sent but could not be recorded for %s",
                         message_id, owner_id, exc_info=True)
