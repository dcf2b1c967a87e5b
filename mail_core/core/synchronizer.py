"""
Mailbox synchronizer.

Maps logical folders (inbox, sent, drafts, trash, spam, archive, starred and
custom folders) onto the owner's remote mailboxes and performs every read
and write against the store through a leased MailboxSession. Reads are
served through the MessageCache; every mutation invalidates the affected
cache entries before returning.
"""
import logging
import math
from typing import Dict, Iterable, List, Optional

from mail_core import config
from mail_core.models import (
    SYSTEM_FOLDERS,
    Folder,
    MailboxSession,
    Message,
    MessageFlag,
    MessagePage,
)
from mail_core.storage.message_cache import MessageCache
from mail_core.utils.errors import InvalidArgument, NotFoundError


logger = logging.getLogger(__name__)

INBOX_PATH = "INBOX"

# SPECIAL-USE attributes (RFC 6154) mapped to system folder names
SPECIAL_USE_FLAGS = {
    '\\sent': 'sent',
    '\\drafts': 'drafts',
    '\\junk': 'spam',
    '\\trash': 'trash',
    '\\archive': 'archive',
    '\\flagged': 'starred',
}

# Well-known mailbox names, checked when a server has no SPECIAL-USE support
WELL_KNOWN_NAMES = {
    'sent': ('sent', 'sent items', 'sent mail', 'sent messages'),
    'drafts': ('drafts', 'draft'),
    'spam': ('spam', 'junk', 'junk e-mail', 'junk email', 'bulk mail'),
    'trash': ('trash', 'deleted items', 'deleted messages', 'bin'),
    'archive': ('archive', 'archives'),
    'starred': ('starred', 'flagged'),
}

# Mailbox path created for a system folder the server does not have yet
DEFAULT_SYSTEM_PATHS = {
    'sent': 'Sent',
    'drafts': 'Drafts',
    'spam': 'Spam',
    'trash': 'Trash',
    'archive': 'Archive',
}


def _sort_key(message: Message):
    received = message.received_at.timestamp() if message.received_at else 0.0
    return received, message.uid


def _matches(message: Message, term: str) -> bool:
    return (
        term in message.subject.lower()
        or term in message.sender_name.lower()
        or term in message.sender.lower()
    )


def _custom_name(path: str, folders: Dict[str, Folder]) -> str:
    """Name a custom mailbox by its path, suffixed when it would shadow a system name."""
    taken = {name.lower() for name in folders} | set(SYSTEM_FOLDERS)
    if path.lower() not in taken:
        return path
    suffix = 2
    while f"{path} ({suffix})".lower() in taken:
        suffix += 1
    return f"{path} ({suffix})"


def check_uid(uid) -> None:
    """Raise InvalidArgument unless uid is a positive integer."""
    if not isinstance(uid, int) or isinstance(uid, bool) or uid < 1:
        raise InvalidArgument(f"Invalid message UID: {uid!r}")


class MailboxSynchronizer:
    """
    Resolves logical folders and applies reads and writes to the store.

    Thread-safe as long as each session is used by one caller at a time,
    which the ConnectionPool guarantees.
    """

    def __init__(self, cache: MessageCache, max_page_size: int = config.MAX_PAGE_SIZE):
        """
        Initialize the synchronizer.

        Args:
            cache: The message cache to read through and invalidate.
            max_page_size: Upper bound accepted for fetch_page's page_size.
        """
        self.cache = cache
        self.max_page_size = max_page_size

    # ---- folders ---------------------------------------------------------

    def refresh_folders(self, session: MailboxSession) -> Dict[str, Folder]:
        """
        Re-read the remote mailbox list and rebuild the session's folder map.

        System folders are matched by SPECIAL-USE flag first, then by
        well-known name. System folders the server lacks are kept with
        exists=False and are created on first write; a missing Starred
        mailbox becomes a view over INBOX restricted to flagged messages.
        """
        remote = session.store.list_folders()
        folders: Dict[str, Folder] = {}
        claimed = set()

        for mailbox in remote:
            if mailbox.path.upper() == INBOX_PATH:
                folders['inbox'] = Folder(name='inbox', remote_path=mailbox.path, is_system_folder=True)
                claimed.add(mailbox.path)

        for mailbox in remote:
            if mailbox.path in claimed:
                continue
            for flag in mailbox.flags:
                system_name = SPECIAL_USE_FLAGS.get(flag.lower())
                if system_name and system_name not in folders:
                    folders[system_name] = Folder(name=system_name, remote_path=mailbox.path, is_system_folder=True)
                    claimed.add(mailbox.path)
                    break

        for system_name, names in WELL_KNOWN_NAMES.items():
            if system_name in folders:
                continue
            for mailbox in remote:
                if mailbox.path not in claimed and mailbox.name.lower() in names:
                    folders[system_name] = Folder(name=system_name, remote_path=mailbox.path, is_system_folder=True)
                    claimed.add(mailbox.path)
                    break

        if 'inbox' not in folders:
            folders['inbox'] = Folder(name='inbox', remote_path=INBOX_PATH, is_system_folder=True)
        if 'starred' not in folders:
            folders['starred'] = Folder(
                name='starred',
                remote_path=folders['inbox'].remote_path,
                is_system_folder=True,
                search_criteria='FLAGGED',
            )
        for system_name, path in DEFAULT_SYSTEM_PATHS.items():
            if system_name not in folders:
                folders[system_name] = Folder(
                    name=system_name, remote_path=path, is_system_folder=True, exists=False
                )

        for mailbox in remote:
            if mailbox.path not in claimed:
                name = _custom_name(mailbox.path, folders)
                folders[name] = Folder(name=name, remote_path=mailbox.path)

        session.folders = folders
        return folders

    def list_folders(self, session: MailboxSession) -> List[Folder]:
        """
        List the owner's folders with message and unread counts.

        Returns:
            System folders in canonical order, then custom folders sorted
            alphabetically (case-insensitive).
        """
        folders = self.refresh_folders(session)
        for folder in folders.values():
            if not folder.exists:
                folder.message_count, folder.unread_count = 0, 0
            elif folder.is_virtual:
                folder.message_count = len(session.store.search_uids(folder.remote_path, folder.search_criteria))
                folder.unread_count = len(
                    session.store.search_uids(folder.remote_path, f"{folder.search_criteria} UNSEEN")
                )
            else:
                folder.message_count, folder.unread_count = session.store.folder_status(folder.remote_path)

        system = [folders[name] for name in SYSTEM_FOLDERS]
        custom = sorted(
            (folder for folder in folders.values() if not folder.is_system_folder),
            key=lambda folder: folder.name.lower(),
        )
        return system + custom

    def resolve_folder(self, session: MailboxSession, name: str) -> Folder:
        """
        Look up a logical folder by name.

        System names match case-insensitively. The folder list is re-read
        once on a miss, in case another client created the mailbox.

        Raises:
            InvalidArgument: If the name is empty.
            NotFoundError: If no such folder exists.
        """
        if not name or not name.strip():
            raise InvalidArgument("Folder name cannot be empty")
        name = name.strip()

        folders = session.folders or self.refresh_folders(session)
        folder = self._lookup(folders, name)
        if folder is None:
            folder = self._lookup(self.refresh_folders(session), name)
        if folder is None:
            raise NotFoundError(f"Folder '{name}' does not exist")
        return folder

    def _lookup(self, folders: Dict[str, Folder], name: str) -> Optional[Folder]:
        lowered = name.lower()
        if lowered in SYSTEM_FOLDERS:
            return folders.get(lowered)
        return folders.get(name)

    def _ensure_exists(self, session: MailboxSession, folder: Folder) -> None:
        if not folder.exists:
            session.store.create_folder(folder.remote_path)
            folder.exists = True
            logger.info("Created missing %s mailbox '%s' for %s",
                        folder.name, folder.remote_path, session.owner_id)

    # ---- reads -----------------------------------------------------------

    def _summaries(self, session: MailboxSession, folder: Folder, uids: List[int]) -> List[Message]:
        owner_id = session.owner_id
        if not folder.is_virtual:
            self.cache.retain_only(owner_id, folder.remote_path, uids)
        cached = self.cache.get_many(owner_id, folder.remote_path, uids)
        missing = [uid for uid in uids if uid not in cached]
        if missing:
            fetched = session.store.fetch_summaries(folder.remote_path, missing)
            self.cache.put_many(owner_id, fetched)
            cached.update((message.uid, message) for message in fetched)
        messages = list(cached.values())
        for message in messages:
            message.folder = folder.name
        return messages

    def validate_page(self, page: int, page_size: int) -> None:
        """Raise InvalidArgument for a page number or size out of range."""
        if not isinstance(page, int) or isinstance(page, bool) or page < 1:
            raise InvalidArgument(f"Page must be a positive integer, got {page!r}")
        if not isinstance(page_size, int) or isinstance(page_size, bool) or not 1 <= page_size <= self.max_page_size:
            raise InvalidArgument(f"Page size must be between 1 and {self.max_page_size}, got {page_size!r}")

    def fetch_page(
        self,
        session: MailboxSession,
        folder_name: str,
        page: int = 1,
        page_size: int = config.DEFAULT_PAGE_SIZE,
        search: Optional[str] = None
    ) -> MessagePage:
        """
        Fetch one page of a folder, newest first.

        Args:
            session: The leased owner session.
            folder_name: Logical folder name.
            page: 1-indexed page number. A page past the end is empty.
            page_size: Messages per page.
            search: Optional case-insensitive substring matched against the
                subject, sender display name and sender address.

        Returns:
            A MessagePage of header-only Messages ordered by received time
            (descending), with total and total_pages for the whole result.

        Raises:
            InvalidArgument: If page or page_size is out of range.
            NotFoundError: If the folder does not exist.
        """
        self.validate_page(page, page_size)

        folder = self.resolve_folder(session, folder_name)
        if not folder.exists:
            return MessagePage(messages=[], total=0, total_pages=0, page=page, page_size=page_size)

        uids = session.store.search_uids(folder.remote_path, folder.search_criteria)
        messages = self._summaries(session, folder, uids)

        term = (search or "").strip().lower()
        if term:
            messages = [message for message in messages if _matches(message, term)]

        messages.sort(key=_sort_key, reverse=True)
        total = len(messages)
        start = (page - 1) * page_size
        return MessagePage(
            messages=messages[start:start + page_size],
            total=total,
            total_pages=math.ceil(total / page_size),
            page=page,
            page_size=page_size,
        )

    def get_message(self, session: MailboxSession, folder_name: str, uid: int) -> Message:
        """
        Get a complete message by (folder, uid).

        Raises:
            NotFoundError: If the folder or UID does not exist.
        """
        check_uid(uid)
        folder = self.resolve_folder(session, folder_name)
        cached = self.cache.get(session.owner_id, folder.remote_path, uid, require_body=True)
        if cached is not None and (not folder.is_virtual or cached.is_starred):
            cached.folder = folder.name
            return cached
        if not folder.exists:
            raise NotFoundError(f"Message {uid} does not exist in '{folder.name}'")

        message = session.store.fetch_message(folder.remote_path, uid)
        self.cache.put(session.owner_id, message)
        if folder.is_virtual and not message.is_starred:
            raise NotFoundError(f"Message {uid} is not in '{folder.name}'")
        message.folder = folder.name
        return message

    # ---- writes ----------------------------------------------------------

    def set_flag(self, session: MailboxSession, folder_name: str, uid: int, flag: MessageFlag, value: bool) -> None:
        """
        Set or clear the read or starred flag of a message. Idempotent.

        Raises:
            NotFoundError: If the folder or UID does not exist.
        """
        check_uid(uid)
        folder = self.resolve_folder(session, folder_name)
        if not folder.exists:
            raise NotFoundError(f"Message {uid} does not exist in '{folder.name}'")
        try:
            session.store.store_flag(folder.remote_path, uid, flag.imap_flag, value)
        finally:
            self.cache.invalidate(session.owner_id, folder.remote_path, uid)

    def move(self, session: MailboxSession, from_folder: str, uid: int, to_folder: str) -> int:
        """
        Move a message to another folder.

        Moving into a Starred view over INBOX lands the message in INBOX and
        flags it. Moving within the same mailbox is a no-op.

        Returns:
            The message's UID in the destination folder.

        Raises:
            NotFoundError: If either folder or the UID does not exist.
        """
        check_uid(uid)
        src = self.resolve_folder(session, from_folder)
        dest = self.resolve_folder(session, to_folder)
        if not src.exists:
            raise NotFoundError(f"Message {uid} does not exist in '{src.name}'")

        owner_id = session.owner_id
        if src.remote_path == dest.remote_path:
            if uid not in session.store.search_uids(src.remote_path, f"UID {uid}"):
                raise NotFoundError(f"Message {uid} does not exist in '{src.name}'")
            new_uid = uid
        else:
            self._ensure_exists(session, dest)
            try:
                new_uid = session.store.move_message(src.remote_path, dest.remote_path, uid)
            finally:
                self.cache.invalidate(owner_id, src.remote_path, uid)
            self.cache.invalidate(owner_id, dest.remote_path, new_uid)

        if dest.is_virtual:
            session.store.store_flag(dest.remote_path, new_uid, MessageFlag.STARRED.imap_flag, True)
            self.cache.invalidate(owner_id, dest.remote_path, new_uid)

        logger.debug("Moved %s:%s -> %s:%s for %s", src.name, uid, dest.name, new_uid, owner_id)
        return new_uid

    def delete(self, session: MailboxSession, folder_name: str, uid: int, permanent: bool = False) -> Optional[int]:
        """
        Delete a message: move it to Trash, or expunge it when it is already
        in Trash or ``permanent`` is set.

        Returns:
            The UID in Trash, or None when the message was expunged.
        """
        folder = self.resolve_folder(session, folder_name)
        trash = self.resolve_folder(session, 'trash')
        if permanent or (trash.exists and folder.remote_path == trash.remote_path):
            self.expunge(session, folder_name, uid)
            return None
        return self.move(session, folder_name, uid, 'trash')

    def expunge(self, session: MailboxSession, folder_name: str, uid: int) -> None:
        """Permanently remove a message from its folder."""
        check_uid(uid)
        folder = self.resolve_folder(session, folder_name)
        if not folder.exists:
            raise NotFoundError(f"Message {uid} does not exist in '{folder.name}'")
        try:
            session.store.expunge_message(folder.remote_path, uid)
        finally:
            self.cache.invalidate(session.owner_id, folder.remote_path, uid)

    def append(self, session: MailboxSession, folder_name: str, raw: bytes, flags: Iterable[str] = ()) -> int:
        """
        Append a raw message to a folder, creating a missing system mailbox.

        Returns:
            The UID of the appended message.
        """
        folder = self.resolve_folder(session, folder_name)
        if folder.is_virtual:
            raise InvalidArgument(f"Cannot append to the '{folder.name}' view")
        self._ensure_exists(session, folder)
        uid = session.store.append_message(folder.remote_path, raw, flags)
        self.cache.invalidate_folder(session.owner_id, folder.remote_path)
        return uid
