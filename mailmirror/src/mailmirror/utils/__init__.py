"""Expose the public utility surface for mailmirror.

What:
  Re-export logging, identifier, and locking helpers that other packages may
  import without knowing the underlying module layout.

Why:
  Centralising exports provides a stable facade so downstream code can perform
  ``from mailmirror import utils`` imports without depending on filenames.

Interfaces:
  ``JsonLogger``, ``get_logger``, ``new_run_id``, ``checksum``, ``safe_name``,
  ``FolderLock``, and ``FolderLockTimeout``.
"""

from .logging import JsonLogger, get_logger
from .ids import checksum, new_run_id, safe_name
from .locks import FolderLock, FolderLockTimeout

__all__ = [
    "JsonLogger",
    "get_logger",
    "new_run_id",
    "checksum",
    "safe_name",
    "FolderLock",
    "FolderLockTimeout",
]
