"""Ingestion pipeline components."""

from .parser import EmailParser
from .reconciler import FullReconciler, find_deletion_candidates
from .sync import IncrementalSync, MailboxClientFactory

__all__ = [
    "EmailParser",
    "FullReconciler",
    "IncrementalSync",
    "MailboxClientFactory",
    "find_deletion_candidates",
]
