"""Per-folder mutual exclusion shared across threads and processes.

What:
  Provide :class:`FolderLock`, an ``fcntl``-based advisory lock keyed by
  account and folder name.

Why:
  Two sync passes writing the same folder would interleave cursor updates and
  could apply a delta twice. Router reads never take the lock; only writers
  (sync passes and on-demand body fetches) serialise through it.

How:
  Each lock maps to a file under ``<cache_dir>/locks``. ``flock`` locks belong
  to an open file description, so separate opens inside one process exclude
  each other the same way separate processes do. Acquisition polls in
  non-blocking mode until the timeout expires.

Interfaces:
  :class:`FolderLock`, :class:`FolderLockTimeout`.
"""
from __future__ import annotations

import fcntl
import os
import time
from pathlib import Path
from typing import Optional

from .ids import safe_name


class FolderLockTimeout(RuntimeError):
    """Raised when a folder lock cannot be acquired within the timeout."""


class FolderLock:
    """Advisory file lock serialising writers of one ``(account, folder)``."""

    POLL_INTERVAL = 0.1

    def __init__(self, lock_dir: Path, account: str, folder: str, *, timeout: float = 30.0):
        self.lock_dir = Path(lock_dir)
        self.account = account
        self.folder = folder
        self.timeout = timeout
        self.lock_file = self.lock_dir / safe_name(account) / f"{safe_name(folder)}.lock"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, *, wait: bool = True) -> bool:
        """Acquire the lock.

        Args:
          wait: When ``True`` poll until ``timeout`` seconds elapse; otherwise
            try exactly once.

        Returns:
          ``True`` once the lock is held, ``False`` when it is busy.
        """

        if self._fd is not None:
            return True
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR, 0o644)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if not wait or time.monotonic() >= deadline:
                    os.close(fd)
                    return False
                time.sleep(self.POLL_INTERVAL)
                continue
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            self._fd = fd
            return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "FolderLock":
        if not self.acquire(wait=True):
            raise FolderLockTimeout(
                f"folder {self.folder!r} of account {self.account!r} is locked by another sync"
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
