"""
MIME composition and parsing.

Builds RFC 5322 messages from OutboundDrafts (for the relay, the Sent copy
and saved drafts) and parses raw store bytes back into Message models. The
same code path is used in both directions so a saved draft reads back with
the fields it was saved with.
"""
import logging
from datetime import datetime
from email import encoders, policy
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.parser import BytesParser
from email.utils import format_datetime, formataddr, make_msgid
from typing import Callable, Iterable, List, Optional

from mail_core.models import Attachment, Message, OutboundDraft
from mail_core.utils.errors import InvalidArgument
from mail_core.utils.helpers import address_domain, parse_email_address


logger = logging.getLogger(__name__)

# Header carrying an external attachment reference on saved drafts:
#   X-Attachment-Ref: <attachment_id> <size_bytes> <mime_type> <filename>
ATTACHMENT_REF_HEADER = "X-Attachment-Ref"

AttachmentLoader = Callable[[Attachment], bytes]


def _format_recipients(recipients: Iterable[str]) -> str:
    formatted = []
    for recipient in recipients:
        name, address = parse_email_address(recipient.strip())
        formatted.append(formataddr((name, address or recipient.strip()), charset='utf-8'))
    return ', '.join(formatted)


def build_message(
    draft: OutboundDraft,
    sender: str,
    sender_name: str = "",
    message_id: Optional[str] = None,
    date: Optional[datetime] = None,
    include_bcc: bool = False,
    attachment_loader: Optional[AttachmentLoader] = None
) -> MIMEMultipart:
    """
    Build a MIME message from an OutboundDraft.

    Args:
        draft: The draft to compose.
        sender: The From address.
        sender_name: Optional display name for the From header.
        message_id: Message-ID to use; a new one is generated if omitted.
        date: Date header value; defaults to now.
        include_bcc: Write a Bcc header. True for stored copies (Drafts and
            Sent), False for the copy handed to the relay.
        attachment_loader: Callable returning the bytes of an attachment
            from the blob store. When omitted, attachments are written as
            X-Attachment-Ref headers instead of MIME parts.

    Returns:
        A constructed MIME message.
    """
    body = MIMEMultipart('alternative')
    if draft.body_plain:
        body.attach(MIMEText(draft.body_plain, 'plain', 'utf-8'))
    if draft.body_html:
        body.attach(MIMEText(draft.body_html, 'html', 'utf-8'))
    elif not draft.body_plain:
        # If no body provided, add empty text
        body.attach(MIMEText('', 'plain', 'utf-8'))

    if draft.attachments and attachment_loader is not None:
        msg = MIMEMultipart('mixed')
        msg.attach(body)
        for attachment in draft.attachments:
            mime_type = attachment.mime_type or 'application/octet-stream'
            main_type, sub_type = mime_type.split('/', 1) if '/' in mime_type else ('application', 'octet-stream')
            part = MIMEBase(main_type, sub_type)
            part.set_payload(attachment_loader(attachment))
            encoders.encode_base64(part)
            part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)
            msg.attach(part)
            logger.debug("Added attachment: %s", attachment.filename)
    else:
        msg = body
        for attachment in draft.attachments:
            msg[ATTACHMENT_REF_HEADER] = Header(
                f"{attachment.attachment_id} {attachment.size_bytes} "
                f"{attachment.mime_type or 'application/octet-stream'} {attachment.filename}",
                'utf-8'
            )

    msg['From'] = formataddr((sender_name, sender), charset='utf-8')
    if draft.to:
        msg['To'] = _format_recipients(draft.to)
    if draft.cc:
        msg['Cc'] = _format_recipients(draft.cc)
    if include_bcc and draft.bcc:
        msg['Bcc'] = _format_recipients(draft.bcc)
    msg['Subject'] = Header(draft.subject, 'utf-8')
    msg['Date'] = format_datetime(date or datetime.now().astimezone())
    msg['Message-ID'] = message_id or make_msgid(domain=address_domain(sender))
    return msg


def _address_list(msg, name: str) -> List[str]:
    header = msg[name]
    if header is None:
        return []
    return [str(address) for address in header.addresses]


def _decode_text_part(part) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeError):
        payload = part.get_payload(decode=True) or b''
        return payload.decode('utf-8', errors='replace')


def _parse_attachment_refs(msg) -> List[Attachment]:
    refs = []
    for value in msg.get_all(ATTACHMENT_REF_HEADER, []):
        parts = str(value).split(' ', 3)
        if len(parts) != 4 or not parts[1].isdigit():
            logger.warning("Ignoring malformed %s header: %r", ATTACHMENT_REF_HEADER, str(value))
            continue
        attachment_id, size, mime_type, filename = parts
        refs.append(Attachment(
            attachment_id=attachment_id,
            filename=filename,
            mime_type=mime_type,
            size_bytes=int(size),
        ))
    return refs


def parse_message(
    raw: bytes,
    uid: int,
    mailbox: str,
    folder: str = "",
    flags: Iterable[str] = (),
    received_at: Optional[datetime] = None,
    size: Optional[int] = None,
    headers_only: bool = False
) -> Message:
    """
    Parse raw RFC 5322 bytes into a Message.

    Args:
        raw: The message bytes (or just the header block if headers_only).
        uid: The UID of the message in ``mailbox``.
        mailbox: Remote mailbox path the message was fetched from.
        folder: Logical folder name.
        flags: IMAP flags of the message.
        received_at: INTERNALDATE from the store; falls back to the Date header.
        size: RFC822.SIZE from the store; falls back to len(raw).
        headers_only: True when ``raw`` holds only the header block.

    Returns:
        The parsed Message. Attachments stored as MIME parts get the id
        ``<mailbox>:<uid>:<part index>``.
    """
    msg = BytesParser(policy=policy.default).parsebytes(raw, headersonly=headers_only)

    sender, sender_name = "", ""
    from_header = msg['from']
    if from_header is not None and from_header.addresses:
        sender = from_header.addresses[0].addr_spec
        sender_name = from_header.addresses[0].display_name

    date_header = msg['date']
    sent_at = getattr(date_header, 'datetime', None) if date_header is not None else None

    message = Message(
        uid=uid,
        folder=folder,
        mailbox=mailbox,
        message_id=str(msg['message-id'] or '').strip(),
        sender=sender,
        sender_name=sender_name,
        to=_address_list(msg, 'to'),
        cc=_address_list(msg, 'cc'),
        bcc=_address_list(msg, 'bcc'),
        subject=str(msg['subject'] or ''),
        sent_at=sent_at,
        received_at=received_at or sent_at,
        flags=set(flags),
        attachments=_parse_attachment_refs(msg),
        size_bytes=size if size is not None else len(raw),
        has_body=not headers_only,
    )

    if headers_only:
        message.has_attachments = bool(message.attachments) or msg.get_content_type() == 'multipart/mixed'
        return message

    plain_text = None
    html_text = None
    for index, part in enumerate(msg.walk()):
        if part.is_multipart():
            continue
        if part.is_attachment() or part.get_filename():
            message.attachments.append(Attachment(
                attachment_id=f"{mailbox}:{uid}:{index}",
                filename=part.get_filename() or "",
                mime_type=part.get_content_type(),
                size_bytes=len(part.get_payload(decode=True) or b''),
            ))
            continue
        content_type = part.get_content_type()
        if content_type == 'text/plain' and plain_text is None:
            plain_text = _decode_text_part(part)
        elif content_type == 'text/html' and html_text is None:
            html_text = _decode_text_part(part)

    message.body_plain = plain_text or ""
    message.body_html = html_text or ""
    message.has_attachments = bool(message.attachments)
    return message


def message_to_bytes(msg: MIMEMultipart) -> bytes:
    """Serialize a built message with CRLF line endings for APPEND and DATA."""
    return msg.as_bytes(policy=msg.policy.clone(linesep='\r\n'))


def require_attachment_loader(draft: OutboundDraft, attachment_loader: Optional[AttachmentLoader]) -> None:
    """Raise InvalidArgument if the draft has attachments but no loader can supply them."""
    if draft.attachments and attachment_loader is None:
        raise InvalidArgument("Sending attachments requires an attachment loader")
