#!/usr/bin/env python3
"""
Operator smoke check for the mail core.

Connects to one mailbox with the given IMAP/SMTP settings and runs a single
operation through MailService, printing the result. Useful to verify
credentials and server compatibility before wiring the core into a front end.

Usage:
    python main.py --email me@example.com --imap-host imap.example.com \\
        --smtp-host smtp.example.com folders
    python main.py ... messages inbox --page 1 --page-size 20 --search invoice
    python main.py ... send --to you@example.com --subject Hi --body "Hello"

The password is read from MAIL_CORE_PASSWORD or prompted for.
"""
import argparse
import getpass
import logging
import os
import sys

from mail_core import config
from mail_core.auth.credentials import CredentialVault, MailboxCredentials
from mail_core.core.mail_service import MailService
from mail_core.models import MailboxOwner, OutboundDraft
from mail_core.utils.errors import MailServiceError, error_code, human_friendly_message
from mail_core.utils.logging_cfg import setup_logging


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mail core smoke check")
    parser.add_argument("--email", required=True, help="Mailbox address")
    parser.add_argument("--imap-host", required=True)
    parser.add_argument("--imap-port", type=int, default=config.DEFAULT_IMAP_PORT)
    parser.add_argument("--smtp-host", required=True)
    parser.add_argument("--smtp-port", type=int, default=config.DEFAULT_SMTP_PORT)
    parser.add_argument("--username", help="Login name if different from the address")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--env-file", help="Path to a .env file")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("folders", help="List folders with counts")

    messages = commands.add_parser("messages", help="List one page of a folder")
    messages.add_argument("folder")
    messages.add_argument("--page", type=int, default=1)
    messages.add_argument("--page-size", type=int, default=None)
    messages.add_argument("--search")

    send = commands.add_parser("send", help="Send a plain text message")
    send.add_argument("--to", action="append", required=True)
    send.add_argument("--subject", default="")
    send.add_argument("--body", required=True)
    return parser


def run(args: argparse.Namespace, service: MailService, owner: MailboxOwner) -> None:
    if args.command == "folders":
        for folder in service.list_folders(owner):
            marker = "" if folder.exists else " (not created)"
            print(f"{folder.name:<24} {folder.message_count:>6} {folder.unread_count:>6}{marker}")
    elif args.command == "messages":
        page = service.get_messages(owner, args.folder, args.page, args.page_size, args.search)
        print(f"Page {page.page}/{page.total_pages} ({page.total} message(s))")
        for message in page.messages:
            state = " " if message.is_read else "*"
            received = message.received_at.strftime("%Y-%m-%d %H:%M") if message.received_at else "-"
            print(f"{state} {message.uid:>8} {received} {message.sender:<32} {message.subject}")
            if message.preview_text:
                print(f"{'':>11}{message.preview_text}")
    elif args.command == "send":
        draft = OutboundDraft(to=args.to, subject=args.subject, body_plain=args.body)
        print(f"Sent {service.send(owner, draft)}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config.load_env(args.env_file)
    log_path = setup_logging(debug=args.debug)

    password = os.environ.get("MAIL_CORE_PASSWORD") or getpass.getpass(f"Password for {args.email}: ")
    vault = CredentialVault()
    vault.register(MailboxCredentials(
        owner_id=args.email,
        email_address=args.email,
        imap_host=args.imap_host,
        imap_port=args.imap_port,
        smtp_host=args.smtp_host,
        smtp_port=args.smtp_port,
        username=args.username,
        password=password,
    ))

    owner = MailboxOwner(owner_id=args.email)
    with MailService(vault) as service:
        try:
            run(args, service, owner)
        except MailServiceError as e:
            logger.error("Smoke check failed: %s", e, exc_info=args.debug)
            print(f"[{error_code(e)}] {human_friendly_message(e)}", file=sys.stderr)
            print(f"See {log_path} for details.", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
