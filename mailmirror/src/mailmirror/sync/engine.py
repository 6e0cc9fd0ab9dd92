"""mailmirror.sync.engine

What:
  Reconcile the Local Store with each remote folder: detect invalidation,
  choose between a full and an incremental resync, apply the result in a
  single transaction, and mirror message bodies in follow-up batches.

Why:
  The router can only answer reads from the mirror if the mirror never shows
  a mixture of two remote generations of a folder and never loses its place
  after an interrupted run. Keeping every decision about validity tokens,
  cursors, and tombstones in one place makes those guarantees auditable.

How:
  - Accounts run on a bounded ``ThreadPoolExecutor``; folders of one account
    run sequentially unless the adapter declares itself multiplexed.
  - Each folder pass holds a cross-process :class:`~mailmirror.utils.locks.FolderLock`,
    records a ``running`` attempt, and commits envelope changes in one
    :class:`~mailmirror.store.local.FolderTransaction`.
  - A stored token that differs from the remote one (or a change listing that
    reports a new token) triggers a reset of the folder in the same
    transaction that writes the complete listing.
  - Bodies are fetched after the envelope commit, one transaction per batch;
    failures are counted and never roll back metadata.

Interfaces:
  :class:`SyncOptions`, :class:`FolderResult`, :class:`AccountResult`,
  :class:`SyncSummary`, :class:`SyncEngine`.

Invariants & Safety:
  - Failures are isolated per folder (and per account for folder discovery);
    the committed cursor is untouched by a failed pass.
  - Envelopes are deleted only through explicit tombstones, through a
    validity reset, or by pruning during an explicit full resync without a
    folder filter.
"""
from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..remote.base import AdapterError, EnvelopeChanges, RemoteFolder, RemoteMailbox
from ..store.errors import StoreError
from ..store.local import LocalStore
from ..store.models import FetchState, MessageBody, SyncCheckpoint
from ..utils.ids import new_run_id
from ..utils.logging import JsonLogger, get_logger


@dataclass
class SyncOptions:
    """Per-run switches.

    Attributes:
      full: Force a full resync of every selected folder.
      folders: Optional subset of folder names; ``None`` syncs every folder.
    """

    full: bool = False
    folders: Optional[Sequence[str]] = None


@dataclass
class FolderResult:
    """Outcome of one folder pass as reported in the sync summary."""

    folder: str
    status: str = "ok"
    mode: Optional[str] = None
    added: int = 0
    updated: int = 0
    flags_changed: int = 0
    removed: int = 0
    bodies_fetched: int = 0
    body_failures: int = 0
    error: Optional[str] = None


@dataclass
class AccountResult:
    """Outcome of one account pass."""

    account: str
    status: str = "ok"
    folders: List[FolderResult] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and all(result.status != "failed" for result in self.folders)


@dataclass
class SyncSummary:
    """Aggregated result of :meth:`SyncEngine.sync_accounts`."""

    run_id: str
    accounts: List[AccountResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(account.ok for account in self.accounts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "ok": self.ok,
            "accounts": [asdict(account) for account in self.accounts],
        }


def _describe(exc: Exception) -> str:
    """Adapter and store errors carry readable messages; anything else also names its type."""

    if isinstance(exc, (AdapterError, StoreError, sqlite3.Error)):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


ProgressCallback = Callable[[str, FolderResult], None]


class SyncEngine:
    """Pull remote state into the Local Store.

    What:
      Owns the reconciliation algorithm and the on-demand body transition used
      by the router.

    Why:
      The engine is the only writer of mirrored state; the router asks it for
      bodies instead of talking to an adapter directly.

    Attributes:
      store: Destination Local Store handle.
      adapters: Remote adapter per account name.
      eager_bodies: Fetch every missing body after each pass when ``True``;
        otherwise only bodies requested by readers.
      body_batch_size: Bodies committed per transaction.
      lock_timeout: Seconds to wait for a folder lock before skipping.
      workers: Upper bound on concurrently synced accounts.
      run_id: Identifier attached to every log entry of the run.
      progress: Called with the account name and each finished
        :class:`FolderResult`, from the thread that synced the folder.
    """

    def __init__(
        self,
        store: LocalStore,
        adapters: Mapping[str, RemoteMailbox],
        *,
        eager_bodies: bool = True,
        body_batch_size: int = 25,
        lock_timeout: float = 30.0,
        workers: int = 4,
        logger: Optional[JsonLogger] = None,
        run_id: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.store = store
        self.adapters = dict(adapters)
        self.eager_bodies = eager_bodies
        self.body_batch_size = max(1, body_batch_size)
        self.lock_timeout = lock_timeout
        self.workers = max(1, workers)
        self.run_id = run_id or new_run_id()
        self.logger = logger or get_logger("mailmirror.sync")
        self.progress = progress

    # Public API ----------------------------------------------------------
    def sync_accounts(
        self, accounts: Sequence[str], options: Optional[SyncOptions] = None
    ) -> SyncSummary:
        """Sync ``accounts`` on a bounded worker pool and collect the summary."""

        options = options or SyncOptions()
        summary = SyncSummary(run_id=self.run_id)
        if not accounts:
            return summary
        pool_size = min(self.workers, len(accounts))
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="mailmirror-sync") as pool:
            futures = [pool.submit(self.sync_account, account, options) for account in accounts]
            summary.accounts = [future.result() for future in futures]
        self.logger.info(
            "sync_finished",
            run_id=self.run_id,
            accounts=len(summary.accounts),
            ok=summary.ok,
        )
        return summary

    def sync_account(self, account: str, options: Optional[SyncOptions] = None) -> AccountResult:
        """Discover folders of ``account`` and sync each selected one.

        Returns:
          An :class:`AccountResult`; a discovery failure marks the whole
          account failed, a folder failure only that folder.
        """

        options = options or SyncOptions()
        result = AccountResult(account=account)
        adapter = self.adapters.get(account)
        if adapter is None:
            result.status = "failed"
            result.error = f"no adapter configured for account {account!r}"
            self.logger.error("account_failed", run_id=self.run_id, account=account, error=result.error)
            return result
        try:
            remote_folders = adapter.list_folders(account)
            result.pruned = self.store.record_folders(
                account,
                [(folder.name, folder.desc) for folder in remote_folders],
                prune=options.full and not options.folders,
            )
        except Exception as exc:
            result.status = "failed"
            result.error = _describe(exc)
            self.logger.error(
                "account_failed",
                run_id=self.run_id,
                account=account,
                error=result.error,
                error_type=type(exc).__name__,
            )
            return result
        if result.pruned:
            self.logger.info("folders_pruned", run_id=self.run_id, account=account, folders=result.pruned)

        by_name = {folder.name: folder for folder in remote_folders}
        selected: List[RemoteFolder] = []
        if options.folders:
            for name in options.folders:
                if name in by_name:
                    selected.append(by_name[name])
                else:
                    missing = FolderResult(
                        folder=name, status="failed", error="folder not found on remote"
                    )
                    result.folders.append(missing)
                    self._report(account, missing)
        else:
            selected = list(remote_folders)

        if adapter.multiplexed and len(selected) > 1:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(selected))) as pool:
                futures = [
                    pool.submit(self.sync_folder, adapter, account, folder, options.full)
                    for folder in selected
                ]
                result.folders.extend(future.result() for future in futures)
        else:
            for folder in selected:
                result.folders.append(self.sync_folder(adapter, account, folder, options.full))
        if not result.ok:
            result.status = "partial"
        return result

    def sync_folder(
        self,
        adapter: RemoteMailbox,
        account: str,
        remote: RemoteFolder,
        full: bool = False,
    ) -> FolderResult:
        """Run one locked, journaled pass over ``remote``."""

        result = FolderResult(folder=remote.name)
        lock = self.store.folder_lock(account, remote.name, timeout=self.lock_timeout)
        if not lock.acquire():
            result.status = "skipped"
            result.error = "folder locked by another sync"
            self.logger.warning("folder_skipped", run_id=self.run_id, account=account, folder=remote.name)
            return result
        try:
            checkpoint = self.store.read_checkpoint(account, remote.name)
            if checkpoint is not None and checkpoint.interrupted:
                self.logger.warning(
                    "interrupted_pass_detected",
                    run_id=self.run_id,
                    account=account,
                    folder=remote.name,
                    started_at=checkpoint.attempt_started_at,
                )
            self.store.mark_attempt(account, remote.name, "running")
            new_ids = self._sync_envelopes(adapter, account, remote, checkpoint, full, result)
            self._mirror_bodies(adapter, account, remote.name, new_ids, result)
            self.store.mark_attempt(account, remote.name, "ok")
        except Exception as exc:
            result.status = "failed"
            result.error = _describe(exc)
            self.logger.error(
                "folder_failed",
                run_id=self.run_id,
                account=account,
                folder=remote.name,
                error=result.error,
                error_type=type(exc).__name__,
            )
            self._record_failure(account, remote.name, result.error)
        finally:
            lock.release()
        if result.status == "ok":
            self.logger.info(
                "folder_synced",
                run_id=self.run_id,
                account=account,
                folder=remote.name,
                mode=result.mode,
                added=result.added,
                updated=result.updated,
                flags_changed=result.flags_changed,
                removed=result.removed,
                bodies_fetched=result.bodies_fetched,
                body_failures=result.body_failures,
            )
        self._report(account, result)
        return result

    def fetch_body(
        self,
        account: str,
        folder: str,
        envelope_id: str,
        mode: FetchState = FetchState.FULL,
    ) -> Optional[MessageBody]:
        """Fetch one body on demand and commit it; ``None`` when that fails.

        What:
          Move a body from ``absent`` or ``headers-only`` to ``mode`` outside a
          regular sync pass.

        Why:
          The router may be configured to fill a cache miss instead of
          forwarding. It must never write the store itself, so the transition
          happens here under the folder lock.

        How:
          Try the folder lock once without waiting, fetch through the
          account's adapter, store the content forward-only, and return the
          committed body. A folder held by a running sync pass, and adapter or
          store failures, are reported as ``None`` so the caller forwards
          instead of stalling.
        """

        adapter = self.adapters.get(account)
        if adapter is None:
            return None
        lock = self.store.folder_lock(account, folder, timeout=0)
        if not lock.acquire(wait=False):
            self.logger.info(
                "on_demand_fetch_busy", account=account, folder=folder, envelope_id=envelope_id
            )
            return None
        try:
            content = adapter.fetch_body(account, folder, envelope_id, mode)
            with self.store.begin_folder_transaction(account, folder) as txn:
                txn.store_body(envelope_id, mode, content, adapter.body_rendition)
            return self.store.read_body(account, folder, envelope_id)
        except (AdapterError, StoreError, sqlite3.Error) as exc:
            self.logger.warning(
                "on_demand_fetch_failed",
                account=account,
                folder=folder,
                envelope_id=envelope_id,
                error=str(exc),
            )
            return None
        finally:
            lock.release()

    # Internals -----------------------------------------------------------
    def _record_failure(self, account: str, folder: str, error: str) -> None:
        try:
            self.store.mark_attempt(account, folder, "failed", error)
        except (StoreError, sqlite3.Error) as exc:
            self.logger.error("journal_write_failed", account=account, folder=folder, error=str(exc))

    def _report(self, account: str, result: FolderResult) -> None:
        if self.progress is not None:
            self.progress(account, result)

    def _sync_envelopes(
        self,
        adapter: RemoteMailbox,
        account: str,
        remote: RemoteFolder,
        checkpoint: Optional[SyncCheckpoint],
        full: bool,
        result: FolderResult,
    ) -> List[str]:
        """Apply the envelope part of a pass; returns ids added by it."""

        stored_token = checkpoint.validity_token if checkpoint else None
        stored_cursor = checkpoint.cursor if checkpoint else None
        needs_full = (
            full
            or stored_token is None
            or stored_cursor is None
            or stored_token != remote.validity_token
        )
        if not needs_full:
            changes = adapter.list_envelope_changes(account, remote.name, stored_cursor)
            token_changed = (
                changes.validity_token is not None and changes.validity_token != stored_token
            )
            if token_changed:
                self.logger.info(
                    "validity_changed",
                    run_id=self.run_id,
                    account=account,
                    folder=remote.name,
                )
            elif not changes.complete:
                return self._apply_incremental(account, remote, changes, result)
            if changes.complete:
                return self._apply_full(account, remote, changes, result)
        changes = adapter.list_envelope_changes(account, remote.name, None)
        return self._apply_full(account, remote, changes, result)

    def _apply_full(
        self,
        account: str,
        remote: RemoteFolder,
        changes: EnvelopeChanges,
        result: FolderResult,
    ) -> List[str]:
        token = changes.validity_token if changes.validity_token is not None else remote.validity_token
        with self.store.begin_folder_transaction(account, remote.name) as txn:
            txn.reset(token, remote.desc)
            added, updated = txn.upsert_envelopes(changes.upserts)
            txn.set_cursor(changes.cursor)
        result.mode = "full"
        result.added = added
        result.updated = updated
        return [envelope.id for envelope in changes.upserts]

    def _apply_incremental(
        self,
        account: str,
        remote: RemoteFolder,
        changes: EnvelopeChanges,
        result: FolderResult,
    ) -> List[str]:
        with self.store.begin_folder_transaction(account, remote.name) as txn:
            known = txn.known_ids()
            new_ids = [envelope.id for envelope in changes.upserts if envelope.id not in known]
            result.removed = txn.remove_envelopes(changes.tombstones)
            result.added, result.updated = txn.upsert_envelopes(changes.upserts)
            result.flags_changed = txn.update_flags(changes.flag_updates)
            txn.set_cursor(changes.cursor)
        result.mode = "incremental"
        return new_ids

    def _mirror_bodies(
        self,
        adapter: RemoteMailbox,
        account: str,
        folder: str,
        new_ids: Sequence[str],
        result: FolderResult,
    ) -> None:
        pending = self.store.bodies_needing_fetch(account, folder, eager=self.eager_bodies)
        if not pending:
            return
        pending_set = set(pending)
        ordered = [envelope_id for envelope_id in new_ids if envelope_id in pending_set]
        ordered_set = set(ordered)
        ordered.extend(envelope_id for envelope_id in pending if envelope_id not in ordered_set)
        for start in range(0, len(ordered), self.body_batch_size):
            batch = ordered[start : start + self.body_batch_size]
            fetched: List[Tuple[str, bytes]] = []
            for envelope_id in batch:
                try:
                    fetched.append(
                        (envelope_id, adapter.fetch_body(account, folder, envelope_id, FetchState.FULL))
                    )
                except AdapterError as exc:
                    result.body_failures += 1
                    self.logger.warning(
                        "body_fetch_failed",
                        run_id=self.run_id,
                        account=account,
                        folder=folder,
                        envelope_id=envelope_id,
                        error=str(exc),
                    )
            if not fetched:
                continue
            with self.store.begin_folder_transaction(account, folder) as txn:
                for envelope_id, content in fetched:
                    state = txn.store_body(envelope_id, FetchState.FULL, content, adapter.body_rendition)
                    if state is FetchState.FULL:
                        result.bodies_fetched += 1
