"""Crash-consistent Local Store for mirrored folders, envelopes, and bodies.

What:
  Persist the mirror in one SQLite database per account and expose atomic
  per-folder write transactions plus snapshot reads for the router.

Why:
  Readers must never observe a folder mid-transition: either the state before
  a sync pass or the state after it. SQLite transactions in WAL mode give that
  guarantee across processes, survive process termination before commit, and
  keep the store a single file per account that can be rebuilt wholesale when
  its schema or integrity check fails.

How:
  - :class:`LocalStore` is an explicit handle bound to a cache directory; it
    opens short-lived connections per operation so worker threads never share
    one.
  - :class:`FolderTransaction` wraps ``BEGIN IMMEDIATE`` ... ``COMMIT`` and
    offers the mutations a sync pass needs (reset on validity change, upserts,
    flag updates, tombstone removal, cursor advance, forward-only body
    storage).
  - Attempt status and commit times live in a ``journal`` table and body
    requests in ``body_requests``; neither is part of the mirrored state
    hashed by :meth:`LocalStore.state_digest`.
  - Scope verification checks ``PRAGMA user_version`` and
    ``PRAGMA quick_check`` once per handle; folder rows carry a partition
    schema tag checked on every read.

Interfaces:
  :class:`LocalStore`, :class:`FolderTransaction`.

Invariants & Safety:
  - Envelope rows are keyed by ``(folder, id)``; a validity reset deletes the
    folder's envelopes and bodies in the same transaction that admits the new
    listing.
  - Body rank only increases; lower or equal ranks never overwrite content.
  - Rebuilds delete and recreate the entire account scope; a stale partition
    is dropped as a whole.
"""
from __future__ import annotations

import json
import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..utils.ids import checksum, safe_name
from ..utils.locks import FolderLock
from ..utils.logging import JsonLogger, get_logger
from .errors import StoreCorruption, StoreError, StoreRebuildFailed, TransactionClosed
from .models import (
    AccountRecord,
    Envelope,
    FetchState,
    FolderRecord,
    FolderSnapshot,
    MessageBody,
    Rendition,
    SyncCheckpoint,
)


SCHEMA_VERSION = 1
PARTITION_TAG = 1
_SCOPE_LOCK_NAME = "__scope__"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS folders (
    name TEXT PRIMARY KEY,
    position INTEGER NOT NULL DEFAULT 0,
    desc TEXT,
    schema_tag INTEGER NOT NULL,
    validity_token TEXT,
    sync_cursor TEXT
);
CREATE TABLE IF NOT EXISTS envelopes (
    folder TEXT NOT NULL,
    id TEXT NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (folder, id)
);
CREATE TABLE IF NOT EXISTS bodies (
    folder TEXT NOT NULL,
    id TEXT NOT NULL,
    state TEXT NOT NULL,
    rank INTEGER NOT NULL,
    rendition TEXT NOT NULL,
    content BLOB,
    PRIMARY KEY (folder, id)
);
CREATE TABLE IF NOT EXISTS body_requests (
    folder TEXT NOT NULL,
    id TEXT NOT NULL,
    requested_at TEXT NOT NULL,
    PRIMARY KEY (folder, id)
);
CREATE TABLE IF NOT EXISTS journal (
    folder TEXT PRIMARY KEY,
    committed_at TEXT,
    attempt_status TEXT,
    attempt_error TEXT,
    attempt_started_at TEXT
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode(envelope: Envelope) -> str:
    return json.dumps(envelope.to_dict(), sort_keys=True, separators=(",", ":"))


def _decode(payload: str) -> Envelope:
    return Envelope.from_dict(json.loads(payload))


def _database_error(exc: sqlite3.DatabaseError, account: str, context: str) -> StoreError:
    """Map a SQLite failure to corruption, except lock contention which is transient."""

    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return StoreError(f"{context}: {exc}")
    return StoreCorruption(f"{context}: {exc}", account=account)


class FolderTransaction:
    """All writes of one sync step for one folder, applied atomically.

    What:
      Holds an open ``BEGIN IMMEDIATE`` transaction on the account database
      and exposes folder-scoped mutations.

    Why:
      The sync engine needs a handle it can fill incrementally while the
      router keeps reading the previous committed state. Nothing written here
      becomes visible before :meth:`commit`.

    How:
      Every mutation checks that the handle is still open. :meth:`commit`
      stamps the journal (when the pass advanced the cursor) and issues
      ``COMMIT``; :meth:`abort` issues ``ROLLBACK``. The connection closes in
      both cases.
    """

    def __init__(self, account: str, folder: str, connection: sqlite3.Connection):
        self.account = account
        self.folder = folder
        self._conn = connection
        self._state = "open"
        self._cursor_advanced = False
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            self._conn.close()
            raise

    @property
    def state(self) -> str:
        return self._state

    def _require_open(self) -> sqlite3.Connection:
        if self._state != "open":
            raise TransactionClosed(f"transaction on {self.account}/{self.folder} is {self._state}")
        return self._conn

    def current(self) -> Optional[FolderRecord]:
        """Return the committed folder row, or ``None`` for unknown or stale partitions."""

        row = self._require_open().execute(
            "SELECT desc, schema_tag, validity_token, sync_cursor FROM folders WHERE name = ?",
            (self.folder,),
        ).fetchone()
        if row is None or row[1] != PARTITION_TAG:
            return None
        return FolderRecord(name=self.folder, desc=row[0], validity_token=row[2], sync_cursor=row[3])

    def known_ids(self) -> Set[str]:
        rows = self._require_open().execute(
            "SELECT id FROM envelopes WHERE folder = ?", (self.folder,)
        ).fetchall()
        return {row[0] for row in rows}

    def reset(self, validity_token: Optional[str], desc: Optional[str] = None) -> None:
        """Discard every envelope and body of the folder and adopt ``validity_token``.

        The cursor returns to its baseline (``None``) until :meth:`set_cursor`
        records the position of the listing written after the reset.
        """

        conn = self._require_open()
        conn.execute("DELETE FROM envelopes WHERE folder = ?", (self.folder,))
        conn.execute("DELETE FROM bodies WHERE folder = ?", (self.folder,))
        conn.execute("DELETE FROM body_requests WHERE folder = ?", (self.folder,))
        conn.execute(
            """
            INSERT INTO folders (name, desc, schema_tag, validity_token, sync_cursor)
            VALUES (?, ?, ?, ?, NULL)
            ON CONFLICT(name) DO UPDATE SET
                desc = COALESCE(excluded.desc, folders.desc),
                schema_tag = excluded.schema_tag,
                validity_token = excluded.validity_token,
                sync_cursor = NULL
            """,
            (self.folder, desc, PARTITION_TAG, validity_token),
        )

    def upsert_envelopes(self, envelopes: Iterable[Envelope]) -> Tuple[int, int]:
        """Insert or replace envelopes; returns ``(added, updated)`` counts.

        A known id whose metadata (anything besides flags) changed now names a
        different message, so its body and pending body request are dropped in
        the same transaction and the body is mirrored again from ``absent``.
        """

        conn = self._require_open()
        known = self.known_ids()
        added = updated = 0
        for envelope in envelopes:
            payload = _encode(envelope)
            if envelope.id in known:
                row = conn.execute(
                    "SELECT payload FROM envelopes WHERE folder = ? AND id = ?",
                    (self.folder, envelope.id),
                ).fetchone()
                if row[0] == payload:
                    continue
                conn.execute(
                    "UPDATE envelopes SET payload = ? WHERE folder = ? AND id = ?",
                    (payload, self.folder, envelope.id),
                )
                updated += 1
                if _decode(row[0]).with_flags(()) != envelope.with_flags(()):
                    self._forget_body(envelope.id)
            else:
                conn.execute(
                    "INSERT INTO envelopes (folder, id, payload) VALUES (?, ?, ?)",
                    (self.folder, envelope.id, payload),
                )
                known.add(envelope.id)
                added += 1
        return added, updated

    def update_flags(self, flags: Dict[str, Sequence[str]]) -> int:
        """Replace the flag set of already mirrored envelopes; unknown ids are ignored."""

        conn = self._require_open()
        changed = 0
        for envelope_id, new_flags in flags.items():
            row = conn.execute(
                "SELECT payload FROM envelopes WHERE folder = ? AND id = ?",
                (self.folder, envelope_id),
            ).fetchone()
            if row is None:
                continue
            envelope = _decode(row[0])
            if tuple(new_flags) == envelope.flags:
                continue
            conn.execute(
                "UPDATE envelopes SET payload = ? WHERE folder = ? AND id = ?",
                (_encode(envelope.with_flags(tuple(new_flags))), self.folder, envelope_id),
            )
            changed += 1
        return changed

    def remove_envelopes(self, ids: Iterable[str]) -> int:
        """Delete tombstoned envelopes together with their bodies."""

        conn = self._require_open()
        removed = 0
        for envelope_id in ids:
            cursor = conn.execute(
                "DELETE FROM envelopes WHERE folder = ? AND id = ?", (self.folder, envelope_id)
            )
            removed += cursor.rowcount
            self._forget_body(envelope_id)
        return removed

    def _forget_body(self, envelope_id: str) -> None:
        conn = self._require_open()
        conn.execute("DELETE FROM bodies WHERE folder = ? AND id = ?", (self.folder, envelope_id))
        conn.execute(
            "DELETE FROM body_requests WHERE folder = ? AND id = ?", (self.folder, envelope_id)
        )

    def set_cursor(self, cursor: Optional[str]) -> None:
        self._require_open().execute(
            "UPDATE folders SET sync_cursor = ? WHERE name = ?", (cursor, self.folder)
        )
        self._cursor_advanced = True

    def store_body(
        self,
        envelope_id: str,
        state: FetchState,
        content: bytes,
        rendition: Rendition = Rendition.UPSTREAM,
    ) -> FetchState:
        """Record fetched body content, advancing the fetch state only forward.

        Returns:
          The state of the body after the call. Bodies of envelopes that are no
          longer mirrored are ignored and reported as ``absent``.
        """

        conn = self._require_open()
        exists = conn.execute(
            "SELECT 1 FROM envelopes WHERE folder = ? AND id = ?", (self.folder, envelope_id)
        ).fetchone()
        if exists is None:
            return FetchState.ABSENT
        row = conn.execute(
            "SELECT state FROM bodies WHERE folder = ? AND id = ?", (self.folder, envelope_id)
        ).fetchone()
        current = FetchState(row[0]) if row else FetchState.ABSENT
        reached = current.advance(state)
        if reached is not current:
            conn.execute(
                """
                INSERT INTO bodies (folder, id, state, rank, rendition, content)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(folder, id) DO UPDATE SET
                    state = excluded.state,
                    rank = excluded.rank,
                    rendition = excluded.rendition,
                    content = excluded.content
                WHERE excluded.rank > bodies.rank
                """,
                (self.folder, envelope_id, reached.value, reached.rank, rendition.value, content),
            )
        if reached is FetchState.FULL:
            conn.execute(
                "DELETE FROM body_requests WHERE folder = ? AND id = ?", (self.folder, envelope_id)
            )
        return reached

    def commit(self) -> None:
        conn = self._require_open()
        try:
            if self._cursor_advanced:
                conn.execute(
                    """
                    INSERT INTO journal (folder, committed_at) VALUES (?, ?)
                    ON CONFLICT(folder) DO UPDATE SET committed_at = excluded.committed_at
                    """,
                    (self.folder, _now()),
                )
            conn.execute("COMMIT")
            self._state = "committed"
        finally:
            if self._state != "committed":
                self._rollback()
            conn.close()

    def abort(self) -> None:
        if self._state != "open":
            return
        try:
            self._rollback()
        finally:
            self._conn.close()

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.OperationalError:
            pass
        self._state = "aborted"

    def __enter__(self) -> "FolderTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and self._state == "open":
            self.commit()
        else:
            self.abort()


class LocalStore:
    """Explicit handle over the per-account mirror databases.

    What:
      Owns the cache directory layout
      (``accounts.json``, ``accounts/<account>.sqlite3``, ``locks/``) and
      implements the read and write contract shared by the sync engine and the
      router.

    Why:
      Passing an explicit handle (instead of a process-wide singleton) bounds
      the store's lifecycle to one CLI invocation and lets tests point it at a
      temporary directory.

    How:
      Each public method opens a connection, verifies the scope on first use,
      performs its statements, and closes the connection. Verification results
      are memoised per handle.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        auto_rebuild: bool = True,
        logger: Optional[JsonLogger] = None,
        busy_timeout: float = 30.0,
    ):
        self.root = Path(root).expanduser()
        self.auto_rebuild = auto_rebuild
        self.logger = logger or get_logger("mailmirror.store")
        self.busy_timeout = busy_timeout
        self.rebuilt: List[str] = []
        self._verified: Set[str] = set()
        self._guard = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, root: Path | str, **kwargs) -> "LocalStore":
        store = cls(root, **kwargs)
        (store.root / "accounts").mkdir(parents=True, exist_ok=True)
        return store

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "LocalStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def lock_dir(self) -> Path:
        return self.root / "locks"

    def folder_lock(self, account: str, folder: str, *, timeout: float = 30.0) -> FolderLock:
        return FolderLock(self.lock_dir, account, folder, timeout=timeout)

    def db_path(self, account: str) -> Path:
        return self.root / "accounts" / f"{safe_name(account)}.sqlite3"

    def has_scope(self, account: str) -> bool:
        return self.db_path(account).exists()

    # Scope lifecycle -----------------------------------------------------
    def _raw_connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(path), timeout=self.busy_timeout, isolation_level=None)

    def _create(self, path: Path) -> None:
        conn = self._raw_connect(path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        finally:
            conn.close()

    def _verify(self, account: str, path: Path) -> None:
        """Raise :class:`StoreCorruption` when the scope at ``path`` is unusable."""

        try:
            conn = self._raw_connect(path)
            try:
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                if version != SCHEMA_VERSION:
                    raise StoreCorruption(
                        f"schema version {version} != {SCHEMA_VERSION}", account=account
                    )
                result = conn.execute("PRAGMA quick_check").fetchone()
                if result is None or result[0] != "ok":
                    raise StoreCorruption(f"integrity check failed: {result}", account=account)
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            raise _database_error(exc, account, "unreadable store") from exc

    def _ensure_scope(self, account: str) -> None:
        if self._closed:
            raise RuntimeError("LocalStore handle is closed")
        with self._guard:
            if account in self._verified:
                return
        path = self.db_path(account)
        with self.folder_lock(account, _SCOPE_LOCK_NAME):
            if not path.exists():
                self._create(path)
            else:
                try:
                    self._verify(account, path)
                except StoreCorruption as exc:
                    if not self.auto_rebuild:
                        raise
                    self.logger.warning("store_corruption_rebuild", account=account, error=str(exc))
                    self._rebuild_locked(account)
        with self._guard:
            self._verified.add(account)

    def _connect(self, account: str) -> sqlite3.Connection:
        self._ensure_scope(account)
        return self._raw_connect(self.db_path(account))

    def rebuild(self, account: str) -> None:
        """Delete and recreate the whole scope of ``account``.

        Raises:
          StoreRebuildFailed: If the files cannot be removed or recreated.
        """

        with self.folder_lock(account, _SCOPE_LOCK_NAME):
            self._rebuild_locked(account)
        with self._guard:
            self._verified.add(account)

    def _rebuild_locked(self, account: str) -> None:
        path = self.db_path(account)
        try:
            for suffix in ("", "-wal", "-shm", "-journal"):
                candidate = path.with_name(path.name + suffix)
                if candidate.exists():
                    candidate.unlink()
            self._create(path)
        except (OSError, sqlite3.DatabaseError) as exc:
            raise StoreRebuildFailed(f"cannot rebuild store for {account!r}: {exc}") from exc
        self.rebuilt.append(account)
        self.logger.info("store_rebuilt", account=account)

    def drop_folder(self, account: str, folder: str) -> None:
        """Remove one folder partition entirely."""

        conn = self._connect(account)
        try:
            conn.execute("BEGIN IMMEDIATE")
            for table, column in (
                ("envelopes", "folder"),
                ("bodies", "folder"),
                ("body_requests", "folder"),
                ("journal", "folder"),
                ("folders", "name"),
            ):
                conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (folder,))
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # Transactions --------------------------------------------------------
    def begin_folder_transaction(self, account: str, folder: str) -> FolderTransaction:
        return FolderTransaction(account, folder, self._connect(account))

    def commit(self, handle: FolderTransaction) -> None:
        handle.commit()

    def abort(self, handle: FolderTransaction) -> None:
        handle.abort()

    # Folder catalog ------------------------------------------------------
    def record_folders(
        self,
        account: str,
        folders: Sequence[Tuple[str, Optional[str]]],
        *,
        prune: bool = False,
    ) -> List[str]:
        """Register discovered folders in listing order.

        Args:
          account: Account owning the folders.
          folders: ``(name, desc)`` pairs in the order the remote lists them.
          prune: Delete partitions missing from ``folders`` (explicit full
            resync only).

        Returns:
          Names of pruned folders.
        """

        conn = self._connect(account)
        pruned: List[str] = []
        try:
            conn.execute("BEGIN IMMEDIATE")
            for position, (name, desc) in enumerate(folders):
                conn.execute(
                    """
                    INSERT INTO folders (name, position, desc, schema_tag) VALUES (?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET position = excluded.position, desc = excluded.desc
                    """,
                    (name, position, desc, PARTITION_TAG),
                )
            if prune:
                listed = {name for name, _ in folders}
                existing = [row[0] for row in conn.execute("SELECT name FROM folders")]
                for name in existing:
                    if name in listed:
                        continue
                    for table, column in (
                        ("envelopes", "folder"),
                        ("bodies", "folder"),
                        ("body_requests", "folder"),
                        ("journal", "folder"),
                        ("folders", "name"),
                    ):
                        conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (name,))
                    pruned.append(name)
            conn.execute(
                "INSERT INTO meta (key, value) VALUES ('folders_listed_at', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (_now(),),
            )
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return pruned

    def list_folders(self, account: str) -> Optional[List[FolderRecord]]:
        """Return mirrored folders in remote listing order, ``None`` if never listed."""

        if not self.has_scope(account):
            return None
        conn = self._connect(account)
        try:
            listed = conn.execute("SELECT value FROM meta WHERE key = 'folders_listed_at'").fetchone()
            if listed is None:
                return None
            rows = conn.execute(
                "SELECT name, desc, validity_token, sync_cursor FROM folders ORDER BY position, name"
            ).fetchall()
        finally:
            conn.close()
        return [
            FolderRecord(name=row[0], desc=row[1], validity_token=row[2], sync_cursor=row[3])
            for row in rows
        ]

    def folders_listed_at(self, account: str) -> Optional[str]:
        if not self.has_scope(account):
            return None
        conn = self._connect(account)
        try:
            row = conn.execute("SELECT value FROM meta WHERE key = 'folders_listed_at'").fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    # Reads ---------------------------------------------------------------
    def _partition_ok(self, conn: sqlite3.Connection, account: str, folder: str) -> Optional[tuple]:
        row = conn.execute(
            "SELECT schema_tag, validity_token, sync_cursor FROM folders WHERE name = ?", (folder,)
        ).fetchone()
        if row is None:
            return None
        if row[0] != PARTITION_TAG:
            raise StoreCorruption(
                f"partition schema tag {row[0]} != {PARTITION_TAG}", account=account, folder=folder
            )
        return row

    def _read(self, account: str, folder: str, reader):
        """Run ``reader`` inside one read transaction, handling stale partitions."""

        if not self.has_scope(account):
            return None
        conn = self._connect(account)
        try:
            conn.execute("BEGIN")
            try:
                row = self._partition_ok(conn, account, folder)
                result = reader(conn, row) if row is not None else None
            finally:
                conn.execute("COMMIT")
        except StoreCorruption as exc:
            conn.close()
            if not self.auto_rebuild or exc.folder is None:
                raise
            self.logger.warning("partition_rebuild", account=account, folder=folder, error=str(exc))
            self.drop_folder(account, folder)
            return None
        except sqlite3.DatabaseError as exc:
            conn.close()
            raise _database_error(exc, account, "read failed") from exc
        conn.close()
        return result

    def read_folder_snapshot(self, account: str, folder: str) -> Optional[FolderSnapshot]:
        """Return ``(validity_token, cursor, envelopes)`` as last committed.

        ``None`` means the folder was never synced completely (no validity
        token committed yet) or is unknown.
        """

        def reader(conn: sqlite3.Connection, row: tuple) -> Optional[FolderSnapshot]:
            if row[1] is None and row[2] is None:
                return None
            envelopes = [
                _decode(payload)
                for (payload,) in conn.execute(
                    "SELECT payload FROM envelopes WHERE folder = ? ORDER BY id", (folder,)
                )
            ]
            journal = conn.execute(
                "SELECT committed_at FROM journal WHERE folder = ?", (folder,)
            ).fetchone()
            return FolderSnapshot(
                folder=folder,
                validity_token=row[1],
                cursor=row[2],
                envelopes=envelopes,
                committed_at=journal[0] if journal else None,
            )

        return self._read(account, folder, reader)

    def read_envelope(self, account: str, folder: str, envelope_id: str) -> Optional[Envelope]:
        def reader(conn: sqlite3.Connection, row: tuple) -> Optional[Envelope]:
            found = conn.execute(
                "SELECT payload FROM envelopes WHERE folder = ? AND id = ?", (folder, envelope_id)
            ).fetchone()
            return _decode(found[0]) if found else None

        return self._read(account, folder, reader)

    def read_body(self, account: str, folder: str, envelope_id: str) -> MessageBody:
        def reader(conn: sqlite3.Connection, row: tuple) -> MessageBody:
            found = conn.execute(
                "SELECT state, content, rendition FROM bodies WHERE folder = ? AND id = ?",
                (folder, envelope_id),
            ).fetchone()
            requested = conn.execute(
                "SELECT 1 FROM body_requests WHERE folder = ? AND id = ?", (folder, envelope_id)
            ).fetchone()
            if found is None:
                return MessageBody(envelope_id=envelope_id, requested=requested is not None)
            return MessageBody(
                envelope_id=envelope_id,
                state=FetchState(found[0]),
                content=found[1],
                rendition=Rendition(found[2]),
                requested=requested is not None,
            )

        body = self._read(account, folder, reader)
        return body if body is not None else MessageBody(envelope_id=envelope_id)

    def read_or_request_body(self, account: str, folder: str, envelope_id: str) -> MessageBody:
        """Return the mirrored body; queue a fetch request when it is not full.

        The request only lands in ``body_requests`` (outside the mirrored
        state); the next sync pass, or an explicit on-demand transition,
        performs the fetch.
        """

        body = self.read_body(account, folder, envelope_id)
        if body.state is FetchState.FULL or body.requested:
            return body
        if self.read_envelope(account, folder, envelope_id) is None:
            return body
        conn = self._connect(account)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO body_requests (folder, id, requested_at) VALUES (?, ?, ?)",
                (folder, envelope_id, _now()),
            )
        finally:
            conn.close()
        return MessageBody(
            envelope_id=body.envelope_id,
            state=body.state,
            content=body.content,
            rendition=body.rendition,
            requested=True,
        )

    def bodies_needing_fetch(self, account: str, folder: str, *, eager: bool) -> List[str]:
        """Ids whose body is not ``full``: all of them when ``eager``, else requested ones."""

        def reader(conn: sqlite3.Connection, row: tuple) -> List[str]:
            if eager:
                query = (
                    "SELECT e.id FROM envelopes e LEFT JOIN bodies b "
                    "ON b.folder = e.folder AND b.id = e.id "
                    "WHERE e.folder = ? AND (b.rank IS NULL OR b.rank < ?) ORDER BY e.id"
                )
            else:
                query = (
                    "SELECT r.id FROM body_requests r JOIN envelopes e "
                    "ON e.folder = r.folder AND e.id = r.id "
                    "LEFT JOIN bodies b ON b.folder = r.folder AND b.id = r.id "
                    "WHERE r.folder = ? AND (b.rank IS NULL OR b.rank < ?) ORDER BY r.id"
                )
            return [found[0] for found in conn.execute(query, (folder, FetchState.FULL.rank))]

        return self._read(account, folder, reader) or []

    # Checkpoints ---------------------------------------------------------
    def read_checkpoint(self, account: str, folder: str) -> Optional[SyncCheckpoint]:
        if not self.has_scope(account):
            return None
        conn = self._connect(account)
        try:
            row = conn.execute(
                """
                SELECT f.validity_token, f.sync_cursor, j.committed_at,
                       j.attempt_status, j.attempt_error, j.attempt_started_at
                FROM folders f LEFT JOIN journal j ON j.folder = f.name
                WHERE f.name = ?
                """,
                (folder,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return SyncCheckpoint(
            folder=folder,
            validity_token=row[0],
            cursor=row[1],
            committed_at=row[2],
            attempt_status=row[3],
            attempt_error=row[4],
            attempt_started_at=row[5],
        )

    def list_checkpoints(self, account: str) -> List[SyncCheckpoint]:
        folders = self.list_folders(account) or []
        checkpoints = [self.read_checkpoint(account, folder.name) for folder in folders]
        return [checkpoint for checkpoint in checkpoints if checkpoint is not None]

    def mark_attempt(self, account: str, folder: str, status: str, error: Optional[str] = None) -> None:
        """Record the status of the latest sync attempt for ``folder``."""

        conn = self._connect(account)
        try:
            if status == "running":
                conn.execute(
                    """
                    INSERT INTO journal (folder, attempt_status, attempt_error, attempt_started_at)
                    VALUES (?, 'running', NULL, ?)
                    ON CONFLICT(folder) DO UPDATE SET
                        attempt_status = 'running', attempt_error = NULL,
                        attempt_started_at = excluded.attempt_started_at
                    """,
                    (folder, _now()),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO journal (folder, attempt_status, attempt_error) VALUES (?, ?, ?)
                    ON CONFLICT(folder) DO UPDATE SET
                        attempt_status = excluded.attempt_status,
                        attempt_error = excluded.attempt_error
                    """,
                    (folder, status, error),
                )
        finally:
            conn.close()

    def state_digest(self, account: str) -> str:
        """SHA-256 over the mirrored state of ``account``.

        Covers folders (name, description, validity token, cursor), envelopes,
        and bodies. Journal timestamps, attempt statuses, and body requests are
        excluded.
        """

        conn = self._connect(account)
        try:
            conn.execute("BEGIN")
            parts: List[bytes] = []
            for row in conn.execute(
                "SELECT name, desc, validity_token, sync_cursor FROM folders ORDER BY name"
            ):
                parts.append(json.dumps(["folder", *row]).encode("utf-8"))
            for row in conn.execute("SELECT folder, id, payload FROM envelopes ORDER BY folder, id"):
                parts.append(json.dumps(["envelope", *row]).encode("utf-8"))
            for folder, envelope_id, state, rendition, content in conn.execute(
                "SELECT folder, id, state, rendition, content FROM bodies ORDER BY folder, id"
            ):
                parts.append(json.dumps(["body", folder, envelope_id, state, rendition]).encode("utf-8"))
                parts.append(content or b"")
            conn.execute("COMMIT")
        finally:
            conn.close()
        return checksum(b"\n".join(parts))

    # Account catalog -----------------------------------------------------
    def write_accounts(self, accounts: Sequence[AccountRecord]) -> None:
        """Atomically replace ``accounts.json``."""

        self.root.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([account.to_dict() for account in accounts], indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".accounts", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.root / "accounts.json")
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def list_accounts(self) -> Optional[List[AccountRecord]]:
        path = self.root / "accounts.json"
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            raise StoreCorruption(f"unreadable account catalog: {exc}", account="*") from exc
        return [
            AccountRecord(
                name=item["name"], backend=item.get("backend"), default=bool(item.get("default"))
            )
            for item in payload
        ]
