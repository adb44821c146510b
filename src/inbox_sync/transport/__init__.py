"""Transport adapters for external mailbox providers."""

from .imap_client import ImapClient, ImapError, probe_connection

__all__ = ["ImapClient", "ImapError", "probe_connection"]
