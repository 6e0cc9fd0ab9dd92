"""Tests for logging, identifier, and locking helpers."""

import io
import json

from mailmirror.utils.ids import checksum, new_run_id, safe_name
from mailmirror.utils.locks import FolderLock, FolderLockTimeout
from mailmirror.utils.logging import REDACTED, get_logger

import pytest


def test_logger_redacts_and_filters() -> None:
    stream = io.StringIO()
    logger = get_logger("mailmirror.test", level="WARN", stream=stream)

    logger.info("hidden")
    logger.warning("visible", subject="secret plans", nested={"body": "x", "folder": "INBOX"})
    logger.child("mailmirror.child").error("child_entry", account="work")

    first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert first["msg"] == "visible"
    assert first["lvl"] == "WARN"
    assert first["subject"] == REDACTED
    assert first["nested"] == {"body": REDACTED, "folder": "INBOX"}
    assert second["component"] == "mailmirror.child"
    assert second["account"] == "work"


def test_safe_name_is_distinct_and_filesystem_safe() -> None:
    slash = safe_name("Archive/2024")
    dot = safe_name("Archive.2024")
    assert "/" not in slash
    assert slash != dot
    assert safe_name("Archive/2024") == slash


def test_ids() -> None:
    assert new_run_id() != new_run_id()
    assert checksum(b"abc").startswith("sha256:")


def test_folder_lock_is_exclusive(tmp_path) -> None:
    first = FolderLock(tmp_path, "work", "INBOX", timeout=0.2)
    second = FolderLock(tmp_path, "work", "INBOX", timeout=0.2)
    other = FolderLock(tmp_path, "work", "Sent", timeout=0.2)

    assert first.acquire()
    assert not second.acquire(wait=False)
    assert not second.acquire()
    assert other.acquire(wait=False)
    with pytest.raises(FolderLockTimeout):
        with second:
            pass

    first.release()
    with second:
        assert second.held
    assert not second.held
    other.release()
