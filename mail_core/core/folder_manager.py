"""
Folder management operations.

This module provides custom folder operations (create, rename, delete).
System folders are fixed: their names are reserved and they can be neither
renamed nor deleted. The session's folder map and the message cache are only
updated after the store has accepted the change.
"""
import logging

from mail_core.core.synchronizer import INBOX_PATH, MailboxSynchronizer
from mail_core.models import SYSTEM_FOLDERS, Folder, MailboxSession
from mail_core.utils.errors import InvalidArgument


logger = logging.getLogger(__name__)


class FolderManager:
    """Manages an owner's custom folders."""

    def __init__(self, synchronizer: MailboxSynchronizer):
        self.synchronizer = synchronizer

    def _validate_new_name(self, session: MailboxSession, name: str, current: Folder = None) -> str:
        if not name or not name.strip():
            raise InvalidArgument("Folder name cannot be empty")
        clean_name = name.strip()
        lowered = clean_name.lower()
        if lowered in SYSTEM_FOLDERS or clean_name.upper() == INBOX_PATH:
            raise InvalidArgument(f"'{clean_name}' is a reserved system folder name")

        folders = self.synchronizer.refresh_folders(session)
        for folder in folders.values():
            if folder is current or (current is not None and folder.remote_path == current.remote_path):
                continue
            if folder.name.lower() == lowered or folder.remote_path.lower() == lowered:
                raise InvalidArgument(f"Folder '{clean_name}' already exists")
        return clean_name

    def create_folder(self, session: MailboxSession, name: str) -> Folder:
        """
        Create a custom folder.

        Raises:
            InvalidArgument: If the name is empty, reserved, or already used.
        """
        clean_name = self._validate_new_name(session, name)
        session.store.create_folder(clean_name)
        logger.info("Created folder '%s' for %s", clean_name, session.owner_id)
        return self.synchronizer.resolve_folder(session, clean_name)

    def rename_folder(self, session: MailboxSession, old_name: str, new_name: str) -> Folder:
        """
        Rename a custom folder.

        Raises:
            InvalidArgument: If the folder is a system folder or the new name
                is empty, reserved, or already used.
            NotFoundError: If the folder does not exist.
        """
        folder = self.synchronizer.resolve_folder(session, old_name)
        if folder.is_system_folder:
            raise InvalidArgument(f"System folder '{folder.name}' cannot be renamed")
        clean_name = self._validate_new_name(session, new_name, current=folder)

        session.store.rename_folder(folder.remote_path, clean_name)
        self.synchronizer.cache.invalidate_folder(session.owner_id, folder.remote_path)
        logger.info("Renamed folder '%s' to '%s' for %s", folder.name, clean_name, session.owner_id)
        return self.synchronizer.resolve_folder(session, clean_name)

    def delete_folder(self, session: MailboxSession, name: str) -> None:
        """
        Delete a custom folder and the messages in it.

        Raises:
            InvalidArgument: If the folder is a system folder.
            NotFoundError: If the folder does not exist.
        """
        folder = self.synchronizer.resolve_folder(session, name)
        if folder.is_system_folder:
            raise InvalidArgument(f"System folder '{folder.name}' cannot be deleted")

        session.store.delete_folder(folder.remote_path)
        self.synchronizer.cache.invalidate_folder(session.owner_id, folder.remote_path)
        session.folders.pop(folder.name, None)
        logger.info("Deleted folder '%s' for %s", folder.name, session.owner_id)
