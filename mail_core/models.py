"""
Core domain models for the mail core.

This module contains the domain models (dataclasses) shared by the pool,
synchronizer, cache, send pipeline and batch coordinator. Apart from
MailboxSession, which holds live client handles, they carry no I/O.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from mail_core.utils.errors import human_friendly_message
from mail_core.utils.helpers import truncate_text


logger = logging.getLogger(__name__)

SEEN = '\\Seen'
FLAGGED = '\\Flagged'
DELETED = '\\Deleted'
DRAFT = '\\Draft'

# Canonical display order of the fixed system folders
SYSTEM_FOLDERS = ("inbox", "starred", "sent", "drafts", "spam", "trash", "archive")


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CLOSED = "closed"


class MessageFlag(str, Enum):
    """Owner-visible message flags and the IMAP system flag behind each."""
    READ = "read"
    STARRED = "starred"

    @property
    def imap_flag(self) -> str:
        return SEEN if self is MessageFlag.READ else FLAGGED


@dataclass(slots=True, frozen=True)
class MailboxOwner:
    """Identity supplied by the auth provider; trusted as-is."""
    owner_id: str
    is_active: bool = True


@dataclass(slots=True)
class Folder:
    """Represents a logical folder and the remote mailbox behind it."""
    name: str = ""
    remote_path: str = ""
    message_count: int = 0
    unread_count: int = 0
    is_system_folder: bool = False
    exists: bool = True  # False until a missing system mailbox is created
    search_criteria: str = "ALL"  # Narrower for virtual views (e.g. starred)

    @property
    def is_virtual(self) -> bool:
        return self.search_criteria != "ALL"


@dataclass(slots=True)
class Attachment:
    """Reference to attachment bytes held by an external blob store."""
    attachment_id: str = ""
    filename: str = ""
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0


@dataclass(slots=True)
class Message:
    """
    Represents a message stored in one folder.

    A message is identified by (folder, uid); the uid is only stable inside
    ``mailbox``, so a move always yields a new Message with a new uid.
    """
    uid: int = 0
    folder: str = ""   # Logical folder name (e.g. 'inbox')
    mailbox: str = ""  # Remote mailbox path (e.g. 'INBOX')
    message_id: str = ""
    sender: str = ""
    sender_name: str = ""
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: str = ""
    body_plain: str = ""
    body_html: str = ""
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    flags: Set[str] = field(default_factory=set)
    attachments: List[Attachment] = field(default_factory=list)
    has_attachments: bool = False
    size_bytes: int = 0
    has_body: bool = False  # False for header-only summaries

    @property
    def is_read(self) -> bool:
        return SEEN in self.flags

    @property
    def is_starred(self) -> bool:
        return FLAGGED in self.flags

    @property
    def preview_text(self) -> str:
        text = " ".join(self.body_plain.split())
        return truncate_text(text, 100) if text else ""


@dataclass(slots=True)
class OutboundDraft:
    """An owner-authored message that has not been sent yet."""
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: str = ""
    body_plain: str = ""
    body_html: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    draft_id: Optional[int] = None  # UID of the saved copy in Drafts
    sender: str = ""       # Defaults to the session owner's address
    sender_name: str = ""

    @property
    def has_body(self) -> bool:
        return bool(self.body_plain.strip() or self.body_html.strip())

    @property
    def all_recipients(self) -> List[str]:
        return [*self.to, *self.cc, *self.bcc]


@dataclass(slots=True)
class MessagePage:
    """One page of a folder listing."""
    messages: List[Message]
    total: int
    total_pages: int
    page: int
    page_size: int


@dataclass(slots=True)
class BatchResult:
    """Per-message outcome of one batch operation; never partially discarded."""
    operation: str
    folder: str
    attempted: Set[int] = field(default_factory=set)
    succeeded: Set[int] = field(default_factory=set)
    failed: Dict[int, Exception] = field(default_factory=dict)
    new_uids: Dict[int, int] = field(default_factory=dict)  # For moves

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def reasons(self) -> Dict[int, str]:
        """Map each failed uid to a user-facing reason string."""
        return {uid: human_friendly_message(exc) for uid, exc in self.failed.items()}


@dataclass(slots=True, eq=False)
class MailboxSession:
    """
    One authenticated store connection plus one relay connection for a
    single owner. Owned by the ConnectionPool and lent for one operation at
    a time.
    """
    owner_id: str
    store: Any
    relay: Any
    address: str = ""
    display_name: str = ""
    last_activity: float = 0.0
    health: HealthState = HealthState.HEALTHY
    folders: Dict[str, Folder] = field(default_factory=dict)

    def touch(self, now: float) -> None:
        self.last_activity = now

    def mark_degraded(self) -> None:
        if self.health is HealthState.HEALTHY:
            self.health = HealthState.DEGRADED

    def close(self) -> None:
        """Close both connections; safe to call more than once."""
        if self.health is HealthState.CLOSED:
            return
        self.health = HealthState.CLOSED
        for client in (self.store, self.relay):
            try:
                client.close()
            except Exception:
                logger.debug("Error closing %s for %s", type(client).__name__,
                             self.owner_id, exc_info=True)
