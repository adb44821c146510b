"""Tests for RFC822 parsing into inbound messages."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from inbox_sync.ingestion import EmailParser

FIXTURE_PATH = Path(__file__).parent / "fixtures" / "sample_email.eml"


def test_email_parser_extracts_headers_and_bodies() -> None:
    payload = FIXTURE_PATH.read_bytes()
    parser = EmailParser()

    message = parser.parse(uid=101, payload=payload)

    assert message.uid == 101
    assert message.subject == "Test Email"
    assert message.sender == "sender@example.com"
    assert message.to == ("user@example.com",)
    assert message.cc == ("another@example.com",)
    assert message.message_id == "<1234@example.com>"
    assert message.in_reply_to == "<thread@example.com>"
    assert message.received_at == datetime(2025, 10, 24, 15, 0, tzinfo=UTC)
    assert message.body.text == "Hello world."
    assert "<strong>world</strong>" in (message.body.html or "")
    assert len(message.attachments) == 1
    attachment = message.attachments[0]
    assert attachment.filename == "note.txt"
    assert attachment.content_type == "application/octet-stream"
    assert attachment.size == 18
    assert message.uid_validity is None


def test_email_parser_allows_missing_message_id() -> None:
    payload = b"From: a@example.com\r\nSubject: No id\r\n\r\nBody\r\n"

    message = EmailParser().parse(uid=7, payload=payload)

    assert message.message_id is None
    assert message.subject == "No id"
    assert message.body.text == "Body"


def test_email_parser_ignores_unparseable_date() -> None:
    payload = b"From: a@example.com\r\nDate: not a date\r\n\r\nBody\r\n"

    message = EmailParser().parse(uid=8, payload=payload)

    assert message.received_at is None


@pytest.mark.parametrize("payload", [b"", b"   \r\n"])
def test_email_parser_rejects_empty_payload(payload: bytes) -> None:
    with pytest.raises(ValueError):
        EmailParser().parse(uid=9, payload=payload)
