"""
High-level IMAP client wrapper.

This module provides a clean, high-level interface for the mail store
operations the synchronizer needs, hiding the complexity of imaplib and
translating its errors into the mail core's error taxonomy:

- socket errors and ``IMAP4.abort`` become MailConnectionError (transient)
- authentication failures become AuthenticationError
- a ``NO``/``BAD`` reply to a well-formed command becomes MailStoreError
- a missing mailbox or UID becomes NotFoundError

All message fetches use ``BODY.PEEK`` so reading never sets ``\\Seen`` as a
side effect. Mailbox paths are passed around decoded and encoded to
modified UTF-7 only on the wire.
"""
import base64
import email
import imaplib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from typing import Callable, Iterable, Iterator, List, Optional, Set, Tuple

from mail_core import config
from mail_core.auth.credentials import MailboxCredentials
from mail_core.models import DELETED, Message
from mail_core.network import mime
from mail_core.utils.errors import (
    AuthenticationError,
    MailConnectionError,
    MailStoreError,
    NotFoundError,
)


logger = logging.getLogger(__name__)

# UIDs per FETCH command when fetching summaries
FETCH_CHUNK_SIZE = 200

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.*)$')
_STATUS_RE = re.compile(r'\((?P<items>[^)]*)\)\s*$')
_UID_RE = re.compile(r'\bUID\s+(\d+)')
_FLAGS_RE = re.compile(r'\bFLAGS\s+\(([^)]*)\)')
_SIZE_RE = re.compile(r'\bRFC822\.SIZE\s+(\d+)')
_INTERNALDATE_RE = re.compile(r'\bINTERNALDATE\s+"([^"]+)"')
_COPYUID_RE = re.compile(r'COPYUID\s+\d+\s+\S+\s+(\S+)')
_APPENDUID_RE = re.compile(r'APPENDUID\s+\d+\s+(\d+)')


def encode_mailbox_name(name: str) -> str:
    """Encode a mailbox name to IMAP modified UTF-7 (RFC 3501 section 5.1.3)."""
    result = []
    pending = []

    def flush():
        if pending:
            encoded = base64.b64encode(''.join(pending).encode('utf-16-be')).decode('ascii')
            result.append('&' + encoded.rstrip('=').replace('/', ',') + '-')
            pending.clear()

    for char in name:
        if 0x20 <= ord(char) <= 0x7e:
            flush()
            result.append('&-' if char == '&' else char)
        else:
            pending.append(char)
    flush()
    return ''.join(result)


def decode_mailbox_name(name: str) -> str:
    """Decode an IMAP modified UTF-7 mailbox name."""
    def replace(match):
        chunk = match.group(1)
        if not chunk:
            return '&'
        chunk = chunk.replace(',', '/')
        chunk += '=' * (-len(chunk) % 4)
        return base64.b64decode(chunk).decode('utf-16-be')

    return re.sub(r'&([^-]*)-', replace, name)


def _response_text(data) -> str:
    """Extract a readable message from an imaplib response payload."""
    if data and data[0]:
        item = data[0]
        if isinstance(item, tuple):
            item = item[0]
        if isinstance(item, bytes):
            return item.decode('utf-8', errors='ignore')
        return str(item)
    return 'Unknown error'


def _parse_flags(flags_str: str) -> Set[str]:
    """Parse IMAP flags from a FLAGS list body."""
    return {flag for flag in flags_str.split() if flag}


def _parse_internaldate(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        logger.debug("Unparseable INTERNALDATE %r", value)
        return None


@dataclass(slots=True)
class RemoteMailbox:
    """A mailbox as reported by LIST."""
    path: str
    flags: Set[str] = field(default_factory=set)
    delimiter: Optional[str] = "/"

    @property
    def name(self) -> str:
        """Last hierarchy component of the path."""
        if self.delimiter and self.delimiter in self.path:
            return self.path.rsplit(self.delimiter, 1)[1]
        return self.path

    @property
    def selectable(self) -> bool:
        return '\\noselect' not in {flag.lower() for flag in self.flags}


class ImapClient:
    """
    High-level IMAP client for one mailbox owner.

    Supports XOAUTH2 and LOGIN authentication. The client never reconnects on
    its own: after a connection fault it reports MailConnectionError and the
    pool replaces the whole session.
    """

    def __init__(
        self,
        credentials: MailboxCredentials,
        timeout: float = config.IMAP_TIMEOUT,
        imap_factory: Optional[Callable[..., imaplib.IMAP4]] = None
    ):
        """
        Initialize the IMAP client.

        Args:
            credentials: Decrypted mailbox credentials for the owner.
            timeout: Socket timeout for every store call, in seconds.
            imap_factory: Optional factory for the imaplib connection (tests).
        """
        self.credentials = credentials
        self.timeout = timeout
        self._imap_factory = imap_factory
        self.connection: Optional[imaplib.IMAP4] = None
        self.capabilities: Set[str] = set()
        self._selected: Optional[str] = None

    def _build_xoauth2_bytes(self) -> bytes:
        """
        Build the XOAUTH2 authentication string as raw bytes.

        Format: user=email\\x01auth=Bearer access_token\\x01\\x01
        imaplib.authenticate() base64-encodes it.
        """
        token_bundle = self.credentials.token_bundle
        if not token_bundle or not token_bundle.access_token:
            raise AuthenticationError("No access token available for XOAUTH2")
        auth_string = f"user={self.credentials.login_name}\x01auth=Bearer {token_bundle.access_token}\x01\x01"
        return auth_string.encode('utf-8')

    def _open(self) -> imaplib.IMAP4:
        host = self.credentials.imap_host
        port = self.credentials.imap_port
        if self._imap_factory is not None:
            return self._imap_factory(host, port, timeout=self.timeout)
        if self.credentials.imap_ssl:
            return imaplib.IMAP4_SSL(host, port, timeout=self.timeout)
        connection = imaplib.IMAP4(host, port, timeout=self.timeout)
        connection.starttls()
        return connection

    def login(self) -> None:
        """
        Connect to the store and authenticate.

        Raises:
            AuthenticationError: If the store rejects the credentials.
            MailConnectionError: If the store cannot be reached.
        """
        host = self.credentials.imap_host
        try:
            self.connection = self._open()
        except (OSError, imaplib.IMAP4.error) as e:
            self.connection = None
            raise MailConnectionError(
                f"Failed to connect to IMAP server {host}:{self.credentials.imap_port}: {e}"
            ) from e

        try:
            if self.credentials.token_bundle:
                xoauth2_bytes = self._build_xoauth2_bytes()
                result, data = self.connection.authenticate('XOAUTH2', lambda challenge: xoauth2_bytes)
            elif self.credentials.password:
                result, data = self.connection.login(self.credentials.login_name, self.credentials.password)
            else:
                raise AuthenticationError(
                    "No authentication method provided. Either a token bundle or a password is required."
                )
            if result != 'OK':
                raise AuthenticationError(f"IMAP authentication failed: {_response_text(data)}")
        except imaplib.IMAP4.abort as e:
            self._drop_connection()
            raise MailConnectionError(f"IMAP connection lost during login: {e}") from e
        except imaplib.IMAP4.error as e:
            self._drop_connection()
            raise AuthenticationError(f"IMAP authentication error: {e}") from e
        except OSError as e:
            self._drop_connection()
            raise MailConnectionError(f"IMAP connection failed during login: {e}") from e
        except AuthenticationError:
            self._drop_connection()
            raise

        data = self._command("CAPABILITY", self.connection.capability)
        self.capabilities = {cap.upper() for cap in _response_text(data).split()}
        logger.info("IMAP session established for %s on %s", self.credentials.login_name, host)

    def _drop_connection(self) -> None:
        if self.connection is not None:
            try:
                self.connection.shutdown()
            except (OSError, imaplib.IMAP4.error):
                logger.debug("Error shutting down IMAP socket", exc_info=True)
        self.connection = None
        self._selected = None

    def _require_connection(self) -> imaplib.IMAP4:
        if self.connection is None:
            raise MailConnectionError("IMAP connection is not open")
        return self.connection

    def _command(self, description: str, func: Callable, *args) -> list:
        """
        Run one imaplib command and translate its failure modes.

        Returns:
            The response data of an OK reply.
        """
        try:
            result, data = func(*args)
        except imaplib.IMAP4.abort as e:
            self._drop_connection()
            raise MailConnectionError(f"{description} aborted: {e}") from e
        except imaplib.IMAP4.error as e:
            raise MailStoreError(f"{description} error: {e}") from e
        except OSError as e:
            self._drop_connection()
            raise MailConnectionError(f"{description} failed: {e}") from e
        if result != 'OK':
            raise MailStoreError(f"{description} failed: {_response_text(data)}")
        return data

    def _uid(self, command: str, *args) -> list:
        connection = self._require_connection()
        return self._command(f"UID {command}", connection.uid, command, *args)

    def _quote_folder_name(self, folder_path: str) -> str:
        """
        Encode and quote a mailbox path for use as a command argument.

        imaplib does not quote arguments itself, so "Sent Mail" must go on
        the wire as '"Sent Mail"'.
        """
        encoded = encode_mailbox_name(folder_path)
        escaped = encoded.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'

    def supports(self, capability: str) -> bool:
        return capability.upper() in self.capabilities

    def noop(self) -> None:
        """Ping the store; raises MailConnectionError if the link is dead."""
        connection = self._require_connection()
        try:
            self._command("NOOP", connection.noop)
        except MailStoreError as e:
            raise MailConnectionError(str(e)) from e

    def close(self) -> None:
        """Close the IMAP connection."""
        if self.connection is None:
            return
        try:
            self.connection.logout()
        except (OSError, imaplib.IMAP4.error):
            logger.debug("Error during IMAP logout", exc_info=True)
        finally:
            self.connection = None
            self._selected = None

    def list_folders(self) -> List[RemoteMailbox]:
        """
        List all selectable mailboxes on the server.

        Returns:
            A list of RemoteMailbox objects with decoded paths and LIST flags
            (including SPECIAL-USE attributes such as \\Sent or \\Trash).
        """
        connection = self._require_connection()
        data = self._command("LIST", connection.list)

        mailboxes = []
        for item in data:
            mailbox = self._parse_folder_list_item(item)
            if mailbox is not None and mailbox.selectable:
                mailboxes.append(mailbox)
        return mailboxes

    def _parse_folder_list_item(self, folder_data) -> Optional[RemoteMailbox]:
        """
        Parse an IMAP LIST response item.

        IMAP LIST format: (flags) "delimiter" "mailbox name"
        Example: (\\HasNoChildren \\Sent) "/" "Sent Items"
        Names sent as literals arrive as a (prefix, name) tuple.
        """
        if folder_data is None:
            return None
        literal_name = None
        if isinstance(folder_data, tuple):
            folder_data, literal_name = folder_data[0], folder_data[1]
        if isinstance(folder_data, bytes):
            folder_str = folder_data.decode('utf-8', errors='ignore')
        else:
            folder_str = str(folder_data)

        match = _LIST_RE.match(folder_str)
        if not match:
            logger.debug("Skipping unparseable LIST item: %r", folder_str)
            return None

        delimiter = match.group('delimiter')
        delimiter = None if delimiter == 'NIL' else delimiter[1:-1].replace('\\\\', '\\')
        if literal_name is not None:
            name = literal_name.decode('utf-8', errors='ignore')
        else:
            name = match.group('name').strip()
            if name.startswith('"') and name.endswith('"'):
                name = name[1:-1].replace('\\"', '"').replace('\\\\', '\\')

        return RemoteMailbox(
            path=decode_mailbox_name(name),
            flags=_parse_flags(match.group('flags')),
            delimiter=delimiter,
        )

    def folder_status(self, folder_path: str) -> Tuple[int, int]:
        """
        Get message and unread counts without selecting the mailbox.

        Returns:
            A (message_count, unread_count) tuple.
        """
        connection = self._require_connection()
        try:
            data = self._command("STATUS", connection.status,
                                 self._quote_folder_name(folder_path), '(MESSAGES UNSEEN)')
        except MailStoreError as e:
            raise NotFoundError(f"Mailbox '{folder_path}' does not exist") from e

        match = _STATUS_RE.search(_response_text(data))
        counts = {}
        if match:
            tokens = match.group('items').split()
            counts = {tokens[i].upper(): int(tokens[i + 1]) for i in range(0, len(tokens) - 1, 2)}
        return counts.get('MESSAGES', 0), counts.get('UNSEEN', 0)

    def _select(self, folder_path: str) -> None:
        if self._selected == folder_path:
            return
        connection = self._require_connection()
        try:
            self._command("SELECT", connection.select, self._quote_folder_name(folder_path))
        except MailStoreError as e:
            self._selected = None
            raise NotFoundError(f"Mailbox '{folder_path}' does not exist") from e
        self._selected = folder_path

    def _search(self, criteria: str) -> List[int]:
        data = self._uid('SEARCH', None, criteria)
        return [int(uid) for uid in _response_text(data).split() if uid.isdigit()] if data and data[0] else []

    def _require_uid(self, folder_path: str, uid: int) -> None:
        if uid not in self._search(f'UID {int(uid)}'):
            raise NotFoundError(f"Message {uid} does not exist in '{folder_path}'")

    def search_uids(self, folder_path: str, criteria: str = "ALL") -> List[int]:
        """
        Return the UIDs in a mailbox matching an IMAP SEARCH criteria string.

        Raises:
            NotFoundError: If the mailbox does not exist.
        """
        self._select(folder_path)
        return self._search(criteria)

    def _iter_fetch_items(self, data: list) -> Iterator[Tuple[str, bytes]]:
        """
        Yield (metadata, literal) pairs from a FETCH response.

        imaplib returns a tuple per literal followed by a bytes item with the
        rest of the response line, which may hold FLAGS or UID.
        """
        pending = None
        for item in data:
            if isinstance(item, tuple):
                if pending is not None:
                    yield pending
                meta = item[0].decode('utf-8', errors='ignore') if isinstance(item[0], bytes) else str(item[0])
                pending = (meta, item[1])
            elif isinstance(item, bytes) and pending is not None:
                pending = (pending[0] + ' ' + item.decode('utf-8', errors='ignore'), pending[1])
        if pending is not None:
            yield pending

    def _parse_fetch_item(self, folder_path: str, meta: str, literal: bytes, headers_only: bool) -> Optional[Message]:
        uid_match = _UID_RE.search(meta)
        if not uid_match:
            return None
        flags_match = _FLAGS_RE.search(meta)
        size_match = _SIZE_RE.search(meta)
        date_match = _INTERNALDATE_RE.search(meta)
        return mime.parse_message(
            literal,
            uid=int(uid_match.group(1)),
            mailbox=folder_path,
            flags=_parse_flags(flags_match.group(1)) if flags_match else (),
            received_at=_parse_internaldate(date_match.group(1)) if date_match else None,
            size=int(size_match.group(1)) if size_match else None,
            headers_only=headers_only,
        )

    def fetch_summaries(self, folder_path: str, uids: Iterable[int]) -> List[Message]:
        """
        Fetch header-only Messages for a set of UIDs.

        UIDs that have disappeared are silently absent from the result.
        """
        uid_list = [str(uid) for uid in uids]
        if not uid_list:
            return []
        self._select(folder_path)

        messages = []
        for start in range(0, len(uid_list), FETCH_CHUNK_SIZE):
            chunk = ','.join(uid_list[start:start + FETCH_CHUNK_SIZE])
            data = self._uid('FETCH', chunk, '(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[HEADER])')
            for meta, literal in self._iter_fetch_items(data):
                message = self._parse_fetch_item(folder_path, meta, literal, headers_only=True)
                if message is not None:
                    messages.append(message)
        return messages

    def fetch_message(self, folder_path: str, uid: int) -> Message:
        """
        Fetch a complete message (headers, bodies and attachment parts).

        Raises:
            NotFoundError: If the mailbox or UID does not exist.
        """
        self._select(folder_path)
        data = self._uid('FETCH', str(uid), '(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[])')
        for meta, literal in self._iter_fetch_items(data):
            message = self._parse_fetch_item(folder_path, meta, literal, headers_only=False)
            if message is not None and message.uid == uid:
                return message
        raise NotFoundError(f"Message {uid} does not exist in '{folder_path}'")

    def store_flag(self, folder_path: str, uid: int, flag: str, value: bool) -> None:
        """
        Add or remove one flag on a message. Setting a flag that is already
        set (or clearing one that is clear) is a successful no-op.
        """
        self._select(folder_path)
        self._require_uid(folder_path, uid)
        self._uid('STORE', str(uid), '+FLAGS.SILENT' if value else '-FLAGS.SILENT', f'({flag})')

    def _take_response_code(self, code: str, pattern: re.Pattern, data) -> Optional[int]:
        """Read a UIDPLUS response code from the untagged store or the tagged reply."""
        connection = self._require_connection()
        _, untagged = connection.response(code)
        candidates = [item for item in (untagged or []) if item]
        candidates.append(_response_text(data).encode('utf-8'))
        for candidate in candidates:
            text = candidate.decode('utf-8', errors='ignore') if isinstance(candidate, bytes) else str(candidate)
            match = pattern.search(f"{code} {text}") or pattern.search(text)
            if match:
                uid_set = match.group(1)
                return int(re.split(r'[:,]', uid_set)[-1])
        return None

    def _fetch_message_id(self, uid: int) -> str:
        data = self._uid('FETCH', str(uid), '(BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])')
        for _, literal in self._iter_fetch_items(data):
            headers = email.message_from_bytes(literal, policy=policy.default)
            return str(headers['message-id'] or '').strip()
        return ''

    def _find_by_message_id(self, folder_path: str, message_id: str) -> int:
        if not message_id:
            raise MailStoreError(f"Cannot determine the new UID in '{folder_path}' without a Message-ID")
        self._select(folder_path)
        uids = self._search(f'HEADER Message-ID "{message_id}"')
        if not uids:
            raise MailStoreError(f"Message {message_id} not found in '{folder_path}' after transfer")
        return max(uids)

    def _expunge_uid(self, uid: int) -> None:
        if self.supports('UIDPLUS'):
            self._uid('EXPUNGE', str(uid))
        else:
            # Plain EXPUNGE also removes anything else flagged \Deleted in the mailbox
            logger.warning("Server lacks UIDPLUS; expunging every \\Deleted message in '%s'", self._selected)
            connection = self._require_connection()
            self._command("EXPUNGE", connection.expunge)

    def move_message(self, src_path: str, dest_path: str, uid: int) -> int:
        """
        Move a message to another mailbox.

        Uses MOVE when available, otherwise COPY + STORE \\Deleted + EXPUNGE.

        Returns:
            The message's UID in the destination mailbox.

        Raises:
            NotFoundError: If the source mailbox or UID does not exist.
        """
        self._select(src_path)
        self._require_uid(src_path, uid)
        message_id = '' if self.supports('UIDPLUS') else self._fetch_message_id(uid)

        dest = self._quote_folder_name(dest_path)
        if self.supports('MOVE'):
            data = self._uid('MOVE', str(uid), dest)
        else:
            data = self._uid('COPY', str(uid), dest)
            self._uid('STORE', str(uid), '+FLAGS.SILENT', f'({DELETED})')
            self._expunge_uid(uid)

        new_uid = self._take_response_code('COPYUID', _COPYUID_RE, data)
        if new_uid is None:
            new_uid = self._find_by_message_id(dest_path, message_id)
        logger.debug("Moved UID %s from '%s' to '%s' as UID %s", uid, src_path, dest_path, new_uid)
        return new_uid

    def expunge_message(self, folder_path: str, uid: int) -> None:
        """
        Permanently remove a message.

        Raises:
            NotFoundError: If the mailbox or UID does not exist.
        """
        self._select(folder_path)
        self._require_uid(folder_path, uid)
        self._uid('STORE', str(uid), '+FLAGS.SILENT', f'({DELETED})')
        self._expunge_uid(uid)

    def append_message(
        self,
        folder_path: str,
        raw: bytes,
        flags: Iterable[str] = (),
        date: Optional[datetime] = None
    ) -> int:
        """
        Append a message to a mailbox.

        Returns:
            The UID assigned to the appended message.
        """
        connection = self._require_connection()
        flag_list = ' '.join(flags)
        data = self._command(
            "APPEND",
            connection.append,
            self._quote_folder_name(folder_path),
            f'({flag_list})' if flag_list else None,
            imaplib.Time2Internaldate(date) if date else None,
            raw,
        )
        new_uid = self._take_response_code('APPENDUID', _APPENDUID_RE, data)
        if new_uid is None:
            headers = email.message_from_bytes(raw, policy=policy.default)
            self._selected = None
            new_uid = self._find_by_message_id(folder_path, str(headers['message-id'] or '').strip())
        return new_uid

    def create_folder(self, folder_path: str) -> None:
        """Create a mailbox on the server."""
        connection = self._require_connection()
        self._command("CREATE", connection.create, self._quote_folder_name(folder_path))

    def rename_folder(self, old_path: str, new_path: str) -> None:
        """Rename a mailbox on the server."""
        connection = self._require_connection()
        if self._selected == old_path:
            self._selected = None
        self._command("RENAME", connection.rename,
                      self._quote_folder_name(old_path), self._quote_folder_name(new_path))

    def delete_folder(self, folder_path: str) -> None:
        """Delete a mailbox from the server."""
        connection = self._require_connection()
        if self._selected == folder_path:
            self._command("CLOSE", connection.close)
            self._selected = None
        self._command("DELETE", connection.delete, self._quote_folder_name(folder_path))
