"""Pytest fixtures for unit tests exercising the mirror without a remote.

What:
  Make ``tests/unit`` importable (for :mod:`fakes`) and expose fixtures for a
  temporary :class:`~mailmirror.store.local.LocalStore`, a scriptable remote,
  and a :class:`~mailmirror.sync.engine.SyncEngine` wiring both together.

Why:
  Store, sync, and router tests share the same setup; building it in one place
  keeps each test focused on the scenario it describes.

How:
  Each fixture writes under ``tmp_path`` and routes structured logs into an
  in-memory buffer so assertions can inspect them.

Interfaces:
  :func:`log_stream`, :func:`store`, :func:`remote`, :func:`engine`.

Invariants & Safety:
  - Each test receives fresh directories and a fresh remote.
"""

import io
import sys
from pathlib import Path

import pytest

from mailmirror.store.local import LocalStore
from mailmirror.sync.engine import SyncEngine
from mailmirror.utils.logging import get_logger

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))

from fakes import FakeRemoteMailbox


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def store(tmp_path: Path, log_stream: io.StringIO) -> LocalStore:
    """Yield a store rooted in a temporary cache directory."""

    handle = LocalStore.open(
        tmp_path / "mirror",
        logger=get_logger("mailmirror.store", level="DEBUG", stream=log_stream),
        busy_timeout=1.0,
    )
    yield handle
    handle.close()


@pytest.fixture
def remote() -> FakeRemoteMailbox:
    """Return a remote with account ``work`` holding an empty ``INBOX``."""

    mailbox = FakeRemoteMailbox()
    mailbox.add_folder("work", "INBOX", token="V1", desc="Inbox")
    return mailbox


@pytest.fixture
def engine(store: LocalStore, remote: FakeRemoteMailbox, log_stream: io.StringIO) -> SyncEngine:
    return SyncEngine(
        store,
        {"work": remote},
        body_batch_size=2,
        lock_timeout=0.2,
        workers=2,
        logger=get_logger("mailmirror.sync", level="DEBUG", stream=log_stream),
        run_id="test-run",
    )
