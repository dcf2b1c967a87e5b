"""Tests for ImapClient against a mocked imaplib connection."""
import imaplib
import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from mail_core.auth.credentials import MailboxCredentials, TokenBundle
from mail_core.models import SEEN
from mail_core.network.imap_client import ImapClient, decode_mailbox_name, encode_mailbox_name
from mail_core.utils.errors import (
    AuthenticationError,
    MailConnectionError,
    MailStoreError,
    NotFoundError,
)


HEADER_BLOCK = (
    b"From: Bob Sender <bob@example.com>\r\n"
    b"To: alice@example.com\r\n"
    b"Subject: Lunch?\r\n"
    b"Message-ID: <lunch@example.com>\r\n"
    b"\r\n"
)


# ── Helpers ──────────────────────────────────────────────────────────


def make_credentials(**overrides):
    fields = dict(
        owner_id="alice",
        email_address="alice@example.com",
        imap_host="imap.example.com",
        smtp_host="smtp.example.com",
        password="s3cret",
    )
    fields.update(overrides)
    return MailboxCredentials(**fields)


def make_connection(capabilities=b"IMAP4rev1 UIDPLUS MOVE"):
    conn = MagicMock()
    conn.login.return_value = ("OK", [b"Logged in"])
    conn.authenticate.return_value = ("OK", [b"Authenticated"])
    conn.capability.return_value = ("OK", [capabilities])
    conn.select.return_value = ("OK", [b"3"])
    conn.response.return_value = ("OK", [None])
    conn.expunge.return_value = ("OK", [None])
    conn.noop.return_value = ("OK", [b"NOOP completed"])
    return conn


def uid_dispatch(conn, searches=None, fetches=None, default=("OK", [None])):
    """
    Route conn.uid() calls: SEARCH by criteria string, FETCH by item list,
    everything else to ``default``.
    """
    searches = searches or {}
    fetches = fetches or {}

    def handler(command, *args):
        if command == "SEARCH":
            return searches.get(args[1], ("OK", [b""]))
        if command == "FETCH":
            return fetches.get(args[1], ("OK", [None]))
        return default

    conn.uid.side_effect = handler


def logged_in_client(conn, **credential_overrides):
    client = ImapClient(make_credentials(**credential_overrides), timeout=5,
                        imap_factory=MagicMock(return_value=conn))
    client.login()
    return client


def uid_calls(conn, command):
    return [c.args for c in conn.uid.call_args_list if c.args[0] == command]


# ── Mailbox name encoding ────────────────────────────────────────────


class TestMailboxNames:
    @pytest.mark.parametrize("decoded,encoded", [
        ("INBOX", "INBOX"),
        ("Café", "Caf&AOk-"),
        ("A&B", "A&-B"),
        ("日本語", "&ZeVnLIqe-"),
    ])
    def test_modified_utf7(self, decoded, encoded):
        assert encode_mailbox_name(decoded) == encoded
        assert decode_mailbox_name(encoded) == decoded


# ── Login ────────────────────────────────────────────────────────────


class TestLogin:
    def test_password_login_reads_capabilities(self):
        conn = make_connection()
        factory = MagicMock(return_value=conn)
        client = ImapClient(make_credentials(), timeout=5, imap_factory=factory)

        client.login()

        factory.assert_called_once_with("imap.example.com", 993, timeout=5)
        conn.login.assert_called_once_with("alice@example.com", "s3cret")
        assert client.supports("uidplus")
        assert client.supports("MOVE")

    def test_xoauth2_login(self):
        conn = make_connection()
        logged_in_client(conn, password=None, token_bundle=TokenBundle("tok-123", "refresh", None))

        mechanism, responder = conn.authenticate.call_args.args
        assert mechanism == "XOAUTH2"
        assert responder(b"") == b"user=alice@example.com\x01auth=Bearer tok-123\x01\x01"
        conn.login.assert_not_called()

    def test_rejected_credentials(self):
        conn = make_connection()
        conn.login.side_effect = imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        with pytest.raises(AuthenticationError):
            logged_in_client(conn)

    def test_unreachable_server(self):
        client = ImapClient(make_credentials(), imap_factory=MagicMock(side_effect=OSError("Connection refused")))
        with pytest.raises(MailConnectionError):
            client.login()
        assert client.connection is None

    def test_connection_lost_during_login(self):
        conn = make_connection()
        conn.login.side_effect = imaplib.IMAP4.abort("socket error: EOF")
        with pytest.raises(MailConnectionError):
            logged_in_client(conn)


# ── Folders ──────────────────────────────────────────────────────────


class TestFolders:
    def test_list_folders(self):
        conn = make_connection()
        conn.list.return_value = ("OK", [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasNoChildren \\Sent) "/" "Sent Items"',
            b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
            b'(\\HasNoChildren) "/" Projects/2024',
            (b'(\\HasNoChildren) "/" {12}', b"Caf&AOk- Bar"),
        ])
        client = logged_in_client(conn)

        mailboxes = client.list_folders()

        assert [m.path for m in mailboxes] == ["INBOX", "Sent Items", "Projects/2024", "Café Bar"]
        assert "\\Sent" in mailboxes[1].flags
        assert mailboxes[2].name == "2024"

    def test_folder_status(self):
        conn = make_connection()
        conn.status.return_value = ("OK", [b'"Sent Items" (MESSAGES 12 UNSEEN 3)'])
        client = logged_in_client(conn)

        assert client.folder_status("Sent Items") == (12, 3)
        conn.status.assert_called_once_with('"Sent Items"', "(MESSAGES UNSEEN)")

    def test_folder_status_of_missing_mailbox(self):
        conn = make_connection()
        conn.status.return_value = ("NO", [b"Mailbox doesn't exist"])
        client = logged_in_client(conn)

        with pytest.raises(NotFoundError):
            client.folder_status("Nope")

    def test_delete_selected_folder_closes_it_first(self):
        conn = make_connection()
        conn.close.return_value = ("OK", [None])
        conn.delete.return_value = ("OK", [None])
        uid_dispatch(conn, searches={"ALL": ("OK", [b""])})
        client = logged_in_client(conn)
        client.search_uids("Old")

        client.delete_folder("Old")

        conn.close.assert_called_once()
        conn.delete.assert_called_once_with('"Old"')

    def test_create_refused(self):
        conn = make_connection()
        conn.create.return_value = ("NO", [b"[ALREADYEXISTS] Mailbox exists"])
        client = logged_in_client(conn)

        with pytest.raises(MailStoreError, match="ALREADYEXISTS"):
            client.create_folder("Receipts")


# ── Reads ────────────────────────────────────────────────────────────


class TestReads:
    def test_search_selects_once(self):
        conn = make_connection()
        uid_dispatch(conn, searches={"ALL": ("OK", [b"1 2 5"]), "UNSEEN": ("OK", [b"5"])})
        client = logged_in_client(conn)

        assert client.search_uids("INBOX") == [1, 2, 5]
        assert client.search_uids("INBOX", "UNSEEN") == [5]
        conn.select.assert_called_once_with('"INBOX"')

    def test_select_missing_mailbox(self):
        conn = make_connection()
        conn.select.return_value = ("NO", [b"Mailbox doesn't exist"])
        client = logged_in_client(conn)

        with pytest.raises(NotFoundError):
            client.search_uids("Nope")

    def test_fetch_summaries_peeks_headers(self):
        conn = make_connection()
        meta = (b'1 (UID 5 FLAGS (\\Seen) INTERNALDATE "01-May-2024 09:00:00 +0000" '
                b'RFC822.SIZE 321 BODY[HEADER] {%d}' % len(HEADER_BLOCK))
        items = "(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[HEADER])"
        uid_dispatch(conn, fetches={items: ("OK", [(meta, HEADER_BLOCK), b")"])})
        client = logged_in_client(conn)

        [message] = client.fetch_summaries("INBOX", [5])

        assert message.uid == 5
        assert message.mailbox == "INBOX"
        assert message.flags == {SEEN}
        assert message.received_at == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        assert message.size_bytes == 321
        assert message.subject == "Lunch?"
        assert not message.has_body
        assert uid_calls(conn, "FETCH")[0][1] == "5"

    def test_fetch_summaries_of_nothing_skips_the_store(self):
        conn = make_connection()
        client = logged_in_client(conn)
        assert client.fetch_summaries("INBOX", []) == []
        conn.uid.assert_not_called()

    def test_fetch_missing_message(self):
        conn = make_connection()
        uid_dispatch(conn)
        client = logged_in_client(conn)

        with pytest.raises(NotFoundError):
            client.fetch_message("INBOX", 99)

    def test_abort_drops_the_connection(self):
        conn = make_connection()
        conn.uid.side_effect = imaplib.IMAP4.abort("socket error: Connection reset")
        client = logged_in_client(conn)

        with pytest.raises(MailConnectionError):
            client.search_uids("INBOX")
        assert client.connection is None
        with pytest.raises(MailConnectionError):
            client.search_uids("INBOX")

    def test_noop_failure_is_a_connection_error(self):
        conn = make_connection()
        conn.noop.return_value = ("BAD", [b"Session expired"])
        client = logged_in_client(conn)

        with pytest.raises(MailConnectionError):
            client.noop()


# ── Writes ───────────────────────────────────────────────────────────


class TestWrites:
    def test_store_flag_is_silent(self):
        conn = make_connection()
        uid_dispatch(conn, searches={"UID 5": ("OK", [b"5"])})
        client = logged_in_client(conn)

        client.store_flag("INBOX", 5, SEEN, True)
        client.store_flag("INBOX", 5, SEEN, False)

        assert uid_calls(conn, "STORE") == [
            ("STORE", "5", "+FLAGS.SILENT", "(\\Seen)"),
            ("STORE", "5", "-FLAGS.SILENT", "(\\Seen)"),
        ]

    def test_store_flag_on_missing_uid(self):
        conn = make_connection()
        uid_dispatch(conn)
        client = logged_in_client(conn)

        with pytest.raises(NotFoundError):
            client.store_flag("INBOX", 5, SEEN, True)
        assert uid_calls(conn, "STORE") == []

    def test_move_with_move_and_copyuid(self):
        conn = make_connection()
        uid_dispatch(conn, searches={"UID 5": ("OK", [b"5"])})
        conn.response.return_value = ("COPYUID", [b"1234 5 17"])
        client = logged_in_client(conn)

        assert client.move_message("INBOX", "Deleted Items", 5) == 17
        assert uid_calls(conn, "MOVE") == [("MOVE", "5", '"Deleted Items"')]
        assert uid_calls(conn, "COPY") == []

    def test_move_fallback_without_extensions(self):
        conn = make_connection(capabilities=b"IMAP4rev1")
        message_id_item = "(BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"
        uid_dispatch(
            conn,
            searches={
                "UID 5": ("OK", [b"5"]),
                'HEADER Message-ID "<lunch@example.com>"': ("OK", [b"40 41"]),
            },
            fetches={message_id_item: ("OK", [
                (b"1 (UID 5 BODY[HEADER.FIELDS (MESSAGE-ID)] {30}", b"Message-ID: <lunch@example.com>\r\n\r\n"),
                b")",
            ])},
        )
        client = logged_in_client(conn)

        assert client.move_message("INBOX", "Archive", 5) == 41
        assert uid_calls(conn, "COPY") == [("COPY", "5", '"Archive"')]
        assert ("STORE", "5", "+FLAGS.SILENT", "(\\Deleted)") in uid_calls(conn, "STORE")
        conn.expunge.assert_called_once()
        assert conn.select.call_args_list[-1].args == ('"Archive"',)

    def test_expunge_uses_uid_expunge_with_uidplus(self):
        conn = make_connection()
        uid_dispatch(conn, searches={"UID 8": ("OK", [b"8"])})
        client = logged_in_client(conn)

        client.expunge_message("Deleted Items", 8)

        assert uid_calls(conn, "EXPUNGE") == [("EXPUNGE", "8")]
        conn.expunge.assert_not_called()

    def test_expunge_without_uidplus_warns(self, caplog):
        conn = make_connection(capabilities=b"IMAP4rev1")
        uid_dispatch(conn, searches={"UID 8": ("OK", [b"8"])})
        client = logged_in_client(conn)

        with caplog.at_level(logging.WARNING, logger="mail_core.network.imap_client"):
            client.expunge_message("Deleted Items", 8)

        conn.expunge.assert_called_once()
        assert uid_calls(conn, "EXPUNGE") == []
        assert "lacks UIDPLUS" in caplog.text
        assert "Deleted Items" in caplog.text

    def test_append_returns_appenduid(self):
        conn = make_connection()
        conn.append.return_value = ("OK", [b"[APPENDUID 38505 3955] APPEND completed"])
        conn.response.return_value = ("APPENDUID", [b"38505 3955"])
        client = logged_in_client(conn)

        uid = client.append_message("Drafts", HEADER_BLOCK, flags=("\\Draft", "\\Seen"))

        assert uid == 3955
        conn.append.assert_called_once_with('"Drafts"', "(\\Draft \\Seen)", None, HEADER_BLOCK)

    def test_append_refused(self):
        conn = make_connection()
        conn.append.return_value = ("NO", [b"[TRYCREATE] Mailbox doesn't exist"])
        client = logged_in_client(conn)

        with pytest.raises(MailStoreError):
            client.append_message("Nope", HEADER_BLOCK)
