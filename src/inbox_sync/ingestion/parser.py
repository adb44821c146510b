"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc
from ..core.interfaces import MessageParser
from ..core.message_ids import normalize_message_id
from ..core.models import AttachmentMeta, EmailBody, InboundMessage


class EmailParser(MessageParser):
    """Convert raw email payloads into normalized inbound messages."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(self, uid: int, payload: bytes) -> InboundMessage:
        """Parse raw RFC822 bytes into an :class:`InboundMessage`."""
        if not payload or not payload.strip():
            raise ValueError(f"Empty payload for UID {uid}")
        message = self._parser.parsebytes(payload)
        if not message.keys():
            raise ValueError(f"No headers found in payload for UID {uid}")

        body_text, body_html = _extract_bodies(message)

        return InboundMessage(
            uid=uid,
            message_id=normalize_message_id(_header_text(message, "Message-ID")),
            in_reply_to=normalize_message_id(_header_text(message, "In-Reply-To")),
            references=_header_text(message, "References"),
            subject=_header_text(message, "Subject"),
            sender=_take_first_address(_header_text(message, "From")),
            to=tuple(_extract_addresses(message.get_all("To", []))),
            cc=tuple(_extract_addresses(message.get_all("Cc", []))),
            received_at=_try_parse_datetime(_header_text(message, "Date")),
            body=EmailBody(text=body_text, html=body_html),
            attachments=tuple(_collect_attachments(message)),
        )


def _header_text(message: EmailMessage, name: str) -> str | None:
    try:
        value = message.get(name)
    except (IndexError, ValueError):
        # Header registry raises on some malformed structured headers.
        return None
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address.lower()


def _take_first_address(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    addresses = list(_extract_addresses([header_value]))
    return addresses[0] if addresses else None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except (LookupError, ValueError):
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _collect_attachments(message: EmailMessage) -> Iterable[AttachmentMeta]:
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        yield AttachmentMeta(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            size=len(payload) if payload else None,
        )


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser"]
