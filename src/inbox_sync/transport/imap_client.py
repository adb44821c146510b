"""IMAP transport adapter providing mailbox access."""

from __future__ import annotations

import imaplib
import logging
import re
from collections.abc import Iterable, Iterator
from email import policy
from email.parser import BytesHeaderParser
from types import TracebackType

from ..core.config import ImapSettings
from ..core.interfaces import ListingIncompleteError, MailboxClient, MailboxError
from ..core.message_ids import normalize_message_id
from ..core.models import FolderState, MailboxConfig, MessageChunk, ServerListing

LOGGER = logging.getLogger(__name__)

_UID_PATTERN = re.compile(rb"UID (\d+)")
_MESSAGE_ID_FETCH = "(UID BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"


class ImapError(MailboxError):
    """Wrap low level IMAP errors with additional context."""


class ImapClient(MailboxClient):
    """Thin wrapper around ``imaplib`` offering typed fetch helpers."""

    def __init__(self, settings: ImapSettings) -> None:
        """Initialise the client with shared connection settings."""
        self._settings = settings
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._folder: FolderState | None = None

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Return the client; connection happens explicitly via ``connect``."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.disconnect()

    # Public API ---------------------------------------------------------------
    def connect(self, config: MailboxConfig, password: str) -> None:
        """Establish and authenticate an IMAP session."""
        if self._connection is not None:
            return

        timeout = self._settings.timeout_seconds
        try:
            if config.use_ssl:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL", config.host, config.port
                )
                connection: imaplib.IMAP4 | imaplib.IMAP4_SSL = imaplib.IMAP4_SSL(
                    config.host, config.port, timeout=timeout
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    config.host,
                    config.port,
                )
                connection = imaplib.IMAP4(config.host, config.port, timeout=timeout)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(
                f"Failed to connect to IMAP server {config.host}:{config.port}: {exc}"
            ) from exc

        try:
            LOGGER.debug("Authenticating as %s", config.username)
            connection.login(config.username, password)
        except (imaplib.IMAP4.error, OSError) as exc:
            _shutdown_quietly(connection)
            raise ImapError(f"IMAP authentication failed for {config.username}") from exc
        self._connection = connection

    def open_folder(self, name: str) -> FolderState:
        """Select ``name`` read-only and capture its EXISTS and UIDVALIDITY."""
        connection = self._require_connection()
        try:
            status, data = connection.select(_quote_folder(name), readonly=True)
            if status != "OK":
                raise ImapError(f"Unable to select mailbox '{name}'")
            _, validity_data = connection.response("UIDVALIDITY")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP error while selecting '{name}'") from exc

        state = FolderState(
            name=name,
            exists=_first_int(data),
            uid_validity=_first_int(validity_data),
        )
        LOGGER.debug(
            "Opened %s with %s message(s), UIDVALIDITY %s",
            name,
            state.exists,
            state.uid_validity,
        )
        self._folder = state
        return state

    def fetch_range(self, since_uid: int, batch_size: int) -> Iterable[MessageChunk]:
        """Yield messages whose UID exceeds ``since_uid`` in ascending order."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        connection = self._require_folder()
        uids = [uid for uid in self._search_uids(since_uid) if uid > since_uid]
        if not uids:
            LOGGER.debug("No messages above UID %s", since_uid)
            return []

        def generator() -> Iterator[MessageChunk]:
            for chunk in _chunked(uids, batch_size):
                uid_set = ",".join(str(uid) for uid in chunk)
                LOGGER.debug("Fetching %s message(s) up to UID %s", len(chunk), chunk[-1])
                try:
                    status, fetch_data = connection.uid(
                        "FETCH", uid_set, "(UID BODY.PEEK[])"
                    )
                except (imaplib.IMAP4.error, OSError) as exc:
                    raise ImapError(f"IMAP error while fetching UIDs {uid_set}") from exc
                if status != "OK":
                    raise ImapError(f"Failed to fetch message UIDs {uid_set}")
                payloads = dict(_iter_payloads(fetch_data))
                for uid in chunk:
                    payload = payloads.get(uid)
                    if payload is None:
                        LOGGER.warning("No payload returned for UID %s", uid)
                        continue
                    yield MessageChunk(uid=uid, raw=payload)

        return generator()

    def list_identifiers(self, include_message_ids: bool = True) -> ServerListing:
        """Return all UIDs and, optionally, Message-IDs of the open folder."""
        connection = self._require_connection()
        folder = self._folder
        if folder is None:
            raise ImapError("No IMAP folder has been selected")

        uids = self._search_uids(0)
        if folder.exists is not None and len(uids) < folder.exists:
            raise ListingIncompleteError(
                f"Server reported {folder.exists} message(s) but listed {len(uids)}"
            )

        message_ids: frozenset[str] | None = None
        if include_message_ids:
            message_ids = frozenset()
            if uids:
                message_ids = self._fetch_message_ids(connection, expected=len(uids))

        return ServerListing(
            uids=frozenset(uids),
            message_ids=message_ids,
            uid_validity=folder.uid_validity,
            total=folder.exists,
        )

    def disconnect(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        connection = self._connection
        self._connection = None
        try:
            if self._folder is not None:
                LOGGER.debug("Closing IMAP mailbox")
                connection.close()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover - server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            self._folder = None
            _shutdown_quietly(connection)

    # Internal helpers ---------------------------------------------------------
    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection

    def _require_folder(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        connection = self._require_connection()
        if self._folder is None:
            raise ImapError("No IMAP folder has been selected")
        return connection

    def _search_uids(self, since_uid: int) -> list[int]:
        connection = self._require_connection()
        criteria: tuple[str, ...] = (
            ("UID", f"{since_uid + 1}:*") if since_uid > 0 else ("ALL",)
        )
        LOGGER.debug("Searching UIDs with %s", " ".join(criteria))
        try:
            status, data = connection.uid("SEARCH", None, *criteria)  # type: ignore[arg-type]
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError("IMAP error while searching message UIDs") from exc
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")
        raw_ids = data[0].split() if data and data[0] else []
        return sorted(int(raw) for raw in raw_ids)

    def _fetch_message_ids(
        self, connection: imaplib.IMAP4 | imaplib.IMAP4_SSL, *, expected: int
    ) -> frozenset[str]:
        try:
            status, data = connection.uid("FETCH", "1:*", _MESSAGE_ID_FETCH)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError("IMAP error while listing Message-IDs") from exc
        if status != "OK":
            raise ImapError("Failed to list Message-IDs")

        header_parser = BytesHeaderParser(policy=policy.compat32)
        identifiers: set[str] = set()
        answered: set[int] = set()
        for uid, header_bytes in _iter_fetch_responses(data):
            answered.add(uid)
            if not header_bytes:
                continue
            headers = header_parser.parsebytes(header_bytes)
            normalized = normalize_message_id(headers.get("Message-ID"))
            if normalized:
                identifiers.add(normalized)
        if len(answered) < expected:
            raise ListingIncompleteError(
                f"Expected headers for {expected} message(s) but received {len(answered)}"
            )
        return frozenset(identifiers)


def probe_connection(
    settings: ImapSettings, config: MailboxConfig, password: str
) -> tuple[bool, str]:
    """Try to log in and select the configured folder, reporting the outcome."""
    with ImapClient(settings) as client:
        try:
            client.connect(config, password)
            state = client.open_folder(config.folder)
        except MailboxError as exc:
            return False, str(exc)
    return True, f"Connected; {config.folder} holds {state.exists or 0} message(s)"


def _shutdown_quietly(connection: imaplib.IMAP4 | imaplib.IMAP4_SSL) -> None:
    try:
        connection.logout()
    except (imaplib.IMAP4.error, OSError):  # pragma: no cover
        LOGGER.debug("IMAP logout raised; suppressing during shutdown")


def _quote_folder(name: str) -> str:
    if name.startswith('"') or not any(char in name for char in ' "()'):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _first_int(data: list[bytes | None] | None) -> int | None:
    if not data or data[0] is None:
        return None
    try:
        return int(data[0])
    except (TypeError, ValueError):
        return None


def _chunked(items: Iterable[int], size: int) -> Iterator[list[int]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[int] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


def _iter_payloads(
    fetch_data: list[tuple[bytes, bytes] | bytes | None],
) -> Iterator[tuple[int, bytes]]:
    """Yield ``(uid, literal)`` pairs for responses that carried a literal."""
    for uid, literal in _iter_fetch_responses(fetch_data):
        if literal is not None:
            yield uid, literal


def _iter_fetch_responses(
    fetch_data: list[tuple[bytes, bytes] | bytes | None],
) -> Iterator[tuple[int, bytes | None]]:
    """Yield ``(uid, literal)`` for every untagged FETCH response.

    Most servers put ``UID n`` before the literal; some send it in the
    trailing bytes element that follows the tuple. Responses answered
    inline with ``NIL`` or ``""`` arrive as plain bytes and yield ``None``.
    """
    trailer_index = -1
    for index, entry in enumerate(fetch_data):
        if index == trailer_index:
            continue
        if isinstance(entry, tuple) and len(entry) == 2:
            trailer_index = index + 1
            match = _UID_PATTERN.search(entry[0])
            if match is None and trailer_index < len(fetch_data):
                trailer = fetch_data[trailer_index]
                if isinstance(trailer, bytes):
                    match = _UID_PATTERN.search(trailer)
            if match is not None:
                yield int(match.group(1)), entry[1]
        elif isinstance(entry, bytes):
            match = _UID_PATTERN.search(entry)
            if match is not None:
                yield int(match.group(1)), None


__all__ = [
    "ImapClient",
    "ImapError",
    "probe_connection",
]
