"""Tests for SmtpClient and relay error classification."""
import smtplib
import socket
from email.mime.text import MIMEText
from unittest.mock import MagicMock

import pytest

from mail_core.auth.credentials import MailboxCredentials, TokenBundle
from mail_core.network.smtp_client import SmtpClient, _classify_smtp_error
from mail_core.utils.errors import AuthenticationError, DeliveryError, MailConnectionError


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


def connected_client(conn=None, **credential_overrides):
    conn = conn or MagicMock()
    client = SmtpClient(make_credentials(**credential_overrides), timeout=5,
                        smtp_factory=MagicMock(return_value=conn))
    client.login()
    return client, conn


def outgoing():
    msg = MIMEText("Hello", "plain", "utf-8")
    msg["Subject"] = "Hi"
    return msg


# ── Classification ───────────────────────────────────────────────────


class TestClassification:
    @pytest.mark.parametrize("exc", [
        smtplib.SMTPServerDisconnected("Connection unexpectedly closed"),
        smtplib.SMTPConnectError(421, b"Service not available"),
        smtplib.SMTPDataError(451, b"Requested action aborted: local error"),
        smtplib.SMTPSenderRefused(450, b"Mailbox busy", "alice@example.com"),
        socket.timeout("timed out"),
        ConnectionResetError("Connection reset by peer"),
    ])
    def test_transient(self, exc):
        assert isinstance(_classify_smtp_error(exc), MailConnectionError)

    @pytest.mark.parametrize("exc", [
        smtplib.SMTPAuthenticationError(535, b"5.7.8 Username and Password not accepted"),
        smtplib.SMTPDataError(530, b"5.7.0 Authentication required"),
    ])
    def test_authentication(self, exc):
        assert isinstance(_classify_smtp_error(exc), AuthenticationError)

    @pytest.mark.parametrize("exc", [
        smtplib.SMTPDataError(554, b"Message rejected as spam"),
        smtplib.SMTPSenderRefused(550, b"Sender not allowed", "alice@example.com"),
        smtplib.SMTPException("unexpected reply"),
    ])
    def test_permanent(self, exc):
        error = _classify_smtp_error(exc)
        assert isinstance(error, DeliveryError)
        assert error.retryable is False

    def test_all_recipients_refused_permanently(self):
        exc = smtplib.SMTPRecipientsRefused({"bob@example.com": (550, b"No such user")})

        error = _classify_smtp_error(exc)

        assert isinstance(error, DeliveryError)
        assert error.refused == {"bob@example.com": "550 No such user"}
        assert error.smtp_code == 550

    def test_recipients_refused_temporarily(self):
        exc = smtplib.SMTPRecipientsRefused({"bob@example.com": (452, b"Too many recipients")})
        assert isinstance(_classify_smtp_error(exc), MailConnectionError)


# ── Login ────────────────────────────────────────────────────────────


class TestLogin:
    def test_password_login(self):
        client, conn = connected_client()
        conn.login.assert_called_once_with("alice@example.com", "s3cret")

    def test_xoauth2_login(self):
        conn = MagicMock()
        conn.docmd.return_value = (235, b"2.7.0 Accepted")

        connected_client(conn, password=None, token_bundle=TokenBundle("tok-123", None, None))

        command, argument = conn.docmd.call_args.args
        assert command == "AUTH"
        assert argument.startswith("XOAUTH2 ")
        conn.login.assert_not_called()

    def test_xoauth2_rejected(self):
        conn = MagicMock()
        conn.docmd.return_value = (535, b"5.7.8 Invalid token")

        with pytest.raises(AuthenticationError):
            connected_client(conn, password=None, token_bundle=TokenBundle("tok-123", None, None))
        conn.close.assert_called_once()

    def test_wrong_password(self):
        conn = MagicMock()
        conn.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Bad credentials")
        with pytest.raises(AuthenticationError):
            connected_client(conn)

    def test_unreachable_relay(self):
        client = SmtpClient(make_credentials(), smtp_factory=MagicMock(side_effect=OSError("No route to host")))
        with pytest.raises(MailConnectionError):
            client.login()
        assert client.connection is None


# ── Sending ──────────────────────────────────────────────────────────


class TestSend:
    def test_send(self):
        client, conn = connected_client()
        conn.sendmail.return_value = {}

        client.send(outgoing(), "alice@example.com", ["bob@example.com", "eve@example.com"])

        envelope_from, recipients, body = conn.sendmail.call_args.args
        assert envelope_from == "alice@example.com"
        assert recipients == ["bob@example.com", "eve@example.com"]
        assert "Subject: Hi" in body

    def test_partially_refused_recipients(self):
        client, conn = connected_client()
        conn.sendmail.return_value = {"eve@example.com": (550, b"No such user")}

        with pytest.raises(DeliveryError) as exc_info:
            client.send(outgoing(), "alice@example.com", ["bob@example.com", "eve@example.com"])
        assert exc_info.value.refused == {"eve@example.com": "550 No such user"}
        assert exc_info.value.partial is True

    def test_disconnect_abandons_the_connection(self):
        client, conn = connected_client()
        conn.sendmail.side_effect = smtplib.SMTPServerDisconnected("Connection unexpectedly closed")

        with pytest.raises(MailConnectionError):
            client.send(outgoing(), "alice@example.com", ["bob@example.com"])
        assert client.connection is None

    def test_permanent_rejection_keeps_the_connection(self):
        client, conn = connected_client()
        conn.sendmail.side_effect = smtplib.SMTPDataError(554, b"Rejected")

        with pytest.raises(DeliveryError):
            client.send(outgoing(), "alice@example.com", ["bob@example.com"])
        assert client.connection is conn

    def test_send_without_connection(self):
        client = SmtpClient(make_credentials())
        with pytest.raises(MailConnectionError):
            client.send(outgoing(), "alice@example.com", ["bob@example.com"])

    def test_close_quits(self):
        client, conn = connected_client()
        client.close()
        conn.quit.assert_called_once()
        assert client.connection is None
