"""Tests for custom folder management."""
import pytest

from mail_core.core.folder_manager import FolderManager
from mail_core.utils.errors import InvalidArgument, MailStoreError, NotFoundError


@pytest.fixture
def manager(synchronizer):
    return FolderManager(synchronizer)


class TestCreate:
    def test_creates_custom_folder(self, manager, session, store):
        folder = manager.create_folder(session, "  Receipts ")

        assert folder.name == "Receipts"
        assert not folder.is_system_folder
        assert "Receipts" in store.mailboxes

    @pytest.mark.parametrize("name", ["", "  ", "inbox", "INBOX", "Trash", "starred", "Archive"])
    def test_rejects_empty_and_reserved_names(self, manager, session, store, name):
        with pytest.raises(InvalidArgument):
            manager.create_folder(session, name)
        assert not any(call == "create_folder" for call, _ in store.calls)

    def test_rejects_duplicates_case_insensitively(self, manager, session, store):
        store.add_mailbox("Receipts")
        with pytest.raises(InvalidArgument, match="already exists"):
            manager.create_folder(session, "receipts")

    def test_store_refusal_propagates(self, manager, session, store, monkeypatch):
        def refuse(path):
            raise MailStoreError("NO [CANNOT] quota exceeded")

        monkeypatch.setattr(store, "create_folder", refuse)
        with pytest.raises(MailStoreError):
            manager.create_folder(session, "Receipts")
        assert "Receipts" not in store.mailboxes


class TestRename:
    def test_renames_custom_folder(self, manager, session, store, synchronizer, cache):
        store.add_mailbox("Receipts")
        store.add_message("Receipts")
        synchronizer.fetch_page(session, "Receipts")

        folder = manager.rename_folder(session, "Receipts", "Invoices")

        assert folder.remote_path == "Invoices"
        assert "Receipts" not in store.mailboxes
        assert not [key for key in cache.keys() if key[1] == "Receipts"]
        assert synchronizer.fetch_page(session, "Invoices").total == 1

    def test_system_folders_cannot_be_renamed(self, manager, session):
        with pytest.raises(InvalidArgument):
            manager.rename_folder(session, "sent", "Outbox")

    def test_rename_to_existing_name(self, manager, session, store):
        store.add_mailbox("Receipts")
        store.add_mailbox("Invoices")
        with pytest.raises(InvalidArgument):
            manager.rename_folder(session, "Receipts", "invoices")

    def test_rename_unknown_folder(self, manager, session):
        with pytest.raises(NotFoundError):
            manager.rename_folder(session, "Nothing", "Something")


class TestDelete:
    def test_deletes_custom_folder(self, manager, session, store, synchronizer):
        store.add_mailbox("Receipts")

        manager.delete_folder(session, "Receipts")

        assert "Receipts" not in store.mailboxes
        with pytest.raises(NotFoundError):
            synchronizer.resolve_folder(session, "Receipts")

    def test_system_folders_cannot_be_deleted(self, manager, session, store):
        with pytest.raises(InvalidArgument):
            manager.delete_folder(session, "trash")
        assert "Deleted Items" in store.mailboxes
