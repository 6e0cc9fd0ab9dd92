"""Exception hierarchy raised by the Local Store."""
from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Base class for Local Store failures."""


class StoreCorruption(StoreError):
    """Schema mismatch or failed integrity check on open.

    What:
      Signals that an account scope (or one folder partition inside it) cannot
      be trusted.

    Why:
      Corrupted mirrors must never be patched piecemeal; callers either rebuild
      the whole affected scope or forward the request upstream.

    Attributes:
      account: Account whose scope failed verification.
      folder: Folder partition, or ``None`` when the whole scope is affected.
    """

    def __init__(self, message: str, *, account: str, folder: Optional[str] = None):
        super().__init__(message)
        self.account = account
        self.folder = folder


class StoreRebuildFailed(StoreError):
    """A corrupted scope could not be deleted and recreated."""


class TransactionClosed(StoreError):
    """An operation was attempted on a committed or aborted transaction."""
