"""
Owner-facing mail service.

MailService wires the connection pool, synchronizer, cache, send pipeline,
batch coordinator and folder manager together and exposes the operations a
REST or CLI front end calls. Every call takes the MailboxOwner supplied by
the identity provider; an inactive owner is rejected before any I/O.
"""
import logging
import time
from typing import Callable, Iterable, List, Optional

from mail_core import config
from mail_core.auth.credentials import CredentialVault, MailboxCredentials, OAuthTokenRefresher
from mail_core.core.batch import BatchCoordinator, BatchOperation
from mail_core.core.folder_manager import FolderManager
from mail_core.core.pool import ConnectionPool, MailboxConnector, SessionFactory
from mail_core.core.send_pipeline import SendPipeline
from mail_core.core.synchronizer import MailboxSynchronizer, check_uid
from mail_core.models import (
    SEEN,
    BatchResult,
    Folder,
    MailboxOwner,
    Message,
    MessageFlag,
    MessagePage,
    OutboundDraft,
)
from mail_core.network.mime import AttachmentLoader
from mail_core.storage.message_cache import MessageCache
from mail_core.utils.errors import AuthenticationError


logger = logging.getLogger(__name__)


class MailService:
    """
    Facade over the mail core components.

    Holds no process-wide state: each MailService owns its pool and cache.
    """

    def __init__(
        self,
        vault: CredentialVault,
        settings: Optional[config.ServiceSettings] = None,
        token_refresher: Optional[OAuthTokenRefresher] = None,
        connector: Optional[SessionFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        attachment_loader: Optional[AttachmentLoader] = None
    ):
        """
        Initialize the service.

        Args:
            vault: Credential vault the default connector reads from.
            settings: Tunables; defaults to config.load_settings().
            token_refresher: Refreshes expiring OAuth tokens on session creation.
            connector: Optional session factory replacing MailboxConnector.
            clock: Monotonic time source for the pool and cache.
            sleep: Sleep function for send backoff.
            attachment_loader: Returns attachment bytes from the blob store.
        """
        self.settings = settings or config.load_settings()
        self.vault = vault
        if connector is None:
            connector = MailboxConnector(
                vault,
                token_refresher=token_refresher,
                imap_timeout=self.settings.imap_timeout,
                smtp_timeout=self.settings.smtp_timeout,
                refresh_margin=self.settings.token_refresh_margin,
            )
        self.cache = MessageCache(ttl=self.settings.cache_ttl, clock=clock)
        self.pool = ConnectionPool(
            connector,
            idle_timeout=self.settings.session_idle_timeout,
            sweep_interval=self.settings.session_sweep_interval,
            clock=clock,
        )
        self.synchronizer = MailboxSynchronizer(self.cache, max_page_size=self.settings.max_page_size)
        self.folder_manager = FolderManager(self.synchronizer)
        self.batches = BatchCoordinator(self.synchronizer)
        self.sender = SendPipeline(
            self.pool,
            self.synchronizer,
            max_attempts=self.settings.send_max_attempts,
            backoff_base=self.settings.send_backoff_base,
            backoff_factor=self.settings.send_backoff_factor,
            sleep=sleep,
            attachment_loader=attachment_loader,
        )

    def _owner_id(self, owner: MailboxOwner) -> str:
        if not owner.is_active:
            raise AuthenticationError(f"Mailbox owner {owner.owner_id!r} is not active")
        return owner.owner_id

    # ---- lifecycle -------------------------------------------------------

    def register_mailbox(self, credentials: MailboxCredentials) -> None:
        """Store credentials for an owner, replacing any previous session."""
        self.vault.register(credentials)
        self.pool.discard(credentials.owner_id)

    def start(self) -> None:
        """Start background maintenance (idle session sweep)."""
        self.pool.start_sweeper()

    def close(self) -> None:
        """Close every session and stop background maintenance."""
        self.pool.close_all()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def logout(self, owner: MailboxOwner) -> None:
        """Destroy the owner's session and forget their cached messages."""
        self.pool.discard(owner.owner_id)
        self.cache.invalidate_owner(owner.owner_id)
        logger.info("Logged out %s", owner.owner_id)

    # ---- folders ---------------------------------------------------------

    def list_folders(self, owner: MailboxOwner) -> List[Folder]:
        with self.pool.session(self._owner_id(owner)) as session:
            return self.synchronizer.list_folders(session)

    def create_folder(self, owner: MailboxOwner, name: str) -> Folder:
        with self.pool.session(self._owner_id(owner)) as session:
            return self.folder_manager.create_folder(session, name)

    def rename_folder(self, owner: MailboxOwner, old_name: str, new_name: str) -> Folder:
        with self.pool.session(self._owner_id(owner)) as session:
            return self.folder_manager.rename_folder(session, old_name, new_name)

    def delete_folder(self, owner: MailboxOwner, name: str) -> None:
        with self.pool.session(self._owner_id(owner)) as session:
            self.folder_manager.delete_folder(session, name)

    # ---- messages --------------------------------------------------------

    def get_messages(
        self,
        owner: MailboxOwner,
        folder: str,
        page: int = 1,
        page_size: Optional[int] = None,
        search: Optional[str] = None
    ) -> MessagePage:
        """Fetch one page of a folder, newest first, optionally filtered by search."""
        page_size = self.settings.default_page_size if page_size is None else page_size
        self.synchronizer.validate_page(page, page_size)
        with self.pool.session(self._owner_id(owner)) as session:
            return self.synchronizer.fetch_page(session, folder, page, page_size, search)

    def get_message(self, owner: MailboxOwner, folder: str, uid: int, mark_read: bool = True) -> Message:
        """
        Get a complete message. Opening a message marks it read unless
        ``mark_read`` is False.
        """
        check_uid(uid)
        with self.pool.session(self._owner_id(owner)) as session:
            message = self.synchronizer.get_message(session, folder, uid)
            if mark_read and not message.is_read:
                self.synchronizer.set_flag(session, folder, uid, MessageFlag.READ, True)
                message.flags.add(SEEN)
            return message

    def set_read(self, owner: MailboxOwner, folder: str, uid: int, value: bool = True) -> None:
        check_uid(uid)
        with self.pool.session(self._owner_id(owner)) as session:
            self.synchronizer.set_flag(session, folder, uid, MessageFlag.READ, value)

    def set_starred(self, owner: MailboxOwner, folder: str, uid: int, value: bool = True) -> None:
        check_uid(uid)
        with self.pool.session(self._owner_id(owner)) as session:
            self.synchronizer.set_flag(session, folder, uid, MessageFlag.STARRED, value)

    def move(self, owner: MailboxOwner, from_folder: str, uid: int, to_folder: str) -> int:
        """Move a message; returns its UID in the destination folder."""
        check_uid(uid)
        with self.pool.session(self._owner_id(owner)) as session:
            return self.synchronizer.move(session, from_folder, uid, to_folder)

    def delete(self, owner: MailboxOwner, folder: str, uid: int, permanent: bool = False) -> Optional[int]:
        """Move a message to Trash, or expunge it if already there or ``permanent``."""
        check_uid(uid)
        with self.pool.session(self._owner_id(owner)) as session:
            return self.synchronizer.delete(session, folder, uid, permanent=permanent)

    def batch(self, owner: MailboxOwner, operation: BatchOperation, folder: str, uids: Iterable[int]) -> BatchResult:
        """Apply one operation to many messages with a per-UID outcome."""
        uids = self.batches.validate(operation, uids)
        with self.pool.session(self._owner_id(owner)) as session:
            return self.batches.apply(session, operation, folder, uids)

    # ---- outbound --------------------------------------------------------

    def save_draft(self, owner: MailboxOwner, draft: OutboundDraft) -> int:
        return self.sender.save_draft(self._owner_id(owner), draft)

    def send(self, owner: MailboxOwner, draft: OutboundDraft) -> str:
        return self.sender.send(self._owner_id(owner), draft)
