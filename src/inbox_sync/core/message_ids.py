"""Normalisation of RFC 5322 Message-ID values."""

from __future__ import annotations

import re

_BRACKETED = re.compile(r"<([^<>\s]+)>")


def normalize_message_id(value: str | bytes | None) -> str | None:
    """Return ``value`` as ``<local@domain>`` or ``None`` if unusable.

    Servers and parsers disagree on folding whitespace and on whether angle
    brackets are kept, so both the ingest path and the reconciliation listing
    funnel header values through here before comparing them.
    """
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = " ".join(value.split())
    if not text:
        return None
    match = _BRACKETED.search(text)
    if match:
        return f"<{match.group(1)}>"
    if " " in text or "@" not in text:
        return None
    return f"<{text}>"


__all__ = ["normalize_message_id"]
