"""Local Store package: persisted mirror of folders, envelopes, and bodies."""

from .errors import StoreCorruption, StoreError, StoreRebuildFailed, TransactionClosed
from .local import FolderTransaction, LocalStore
from .models import (
    AccountRecord,
    Contact,
    Envelope,
    FetchState,
    FolderRecord,
    FolderSnapshot,
    MessageBody,
    Rendition,
    SyncCheckpoint,
)

__all__ = [
    "AccountRecord",
    "Contact",
    "Envelope",
    "FetchState",
    "FolderRecord",
    "FolderSnapshot",
    "FolderTransaction",
    "LocalStore",
    "MessageBody",
    "Rendition",
    "StoreCorruption",
    "StoreError",
    "StoreRebuildFailed",
    "SyncCheckpoint",
    "TransactionClosed",
]
