"""Decide per invocation whether the mirror answers or the upstream client does.

What:
  :class:`Router` drives one invocation through the states
  ``Parsed -> {CacheServable, Forwarded}``,
  ``CacheServable -> {Served, MissForwarded}``, then ``Done``.

Why:
  Callers must not be able to tell a served answer from a forwarded one
  except by latency. Every doubt (unknown account, stale or missing data,
  corruption) therefore resolves to forwarding the original argument vector,
  never to an error of the mirror's own.

How:
  :func:`~mailmirror.router.commands.parse_invocation` classifies the argument
  vector. Servable commands read one consistent snapshot from the
  :class:`~mailmirror.store.local.LocalStore`; each miss condition raises
  :class:`RouterMiss` with a reason that is logged and surfaced on the
  :class:`Outcome`. Corruption rebuilds the account scope before forwarding.
  Body misses may first ask the sync engine for an on-demand fetch when
  configured.

Interfaces:
  :class:`RouteState`, :class:`RouterMiss`, :class:`Outcome`, :class:`Router`.

Invariants & Safety:
  - No retries: every state is entered at most once per invocation.
  - Forwarded runs receive ``argv`` unchanged.
  - The router writes no mirrored state; body requests land in a separate
    queue and fetches go through the sync engine.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ..config.schema import RouterConfig
from ..store.errors import StoreCorruption, StoreError, StoreRebuildFailed
from ..store.local import LocalStore
from ..store.models import FetchState, MessageBody, Rendition
from ..utils.logging import JsonLogger, get_logger
from . import render
from .commands import CommandKind, ParsedCommand, parse_invocation
from .forward import Upstream


class RouteState(str, Enum):
    PARSED = "parsed"
    CACHE_SERVABLE = "cache-servable"
    FORWARDED = "forwarded"
    SERVED = "served"
    MISS_FORWARDED = "miss-forwarded"
    DONE = "done"


class RouterMiss(Exception):
    """A cache-servable command cannot be answered from the mirror."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class Outcome:
    """What happened to one invocation.

    Attributes:
      state: Terminal state before ``Done`` (served, forwarded, miss-forwarded).
      exit_code: Exit code to propagate.
      stdout: Bytes to print for served commands; captured upstream output
        when the upstream runner captures.
      stderr: Captured upstream error output, if any.
      reason: Why the command was forwarded.
      transitions: Every state entered, in order.
    """

    state: RouteState
    exit_code: int
    stdout: Optional[bytes] = None
    stderr: Optional[bytes] = None
    reason: Optional[str] = None
    transitions: List[RouteState] = field(default_factory=list)


BodyFetcher = Callable[[str, str, str], Optional[MessageBody]]


class Router:
    """Serve read commands from the mirror, forward everything else.

    Args:
      store: Local Store handle (read side).
      upstream: Runner for forwarded invocations.
      settings: Router policy from the configuration.
      default_account: Account used when ``--account`` is omitted; falls back
        to the catalog's default entry.
      fetch_body: On-demand body fetcher (normally
        :meth:`mailmirror.sync.engine.SyncEngine.fetch_body`).
    """

    def __init__(
        self,
        store: LocalStore,
        upstream: Upstream,
        *,
        settings: Optional[RouterConfig] = None,
        default_account: Optional[str] = None,
        fetch_body: Optional[BodyFetcher] = None,
        logger: Optional[JsonLogger] = None,
    ):
        self.store = store
        self.upstream = upstream
        self.settings = settings or RouterConfig()
        self.default_account = default_account
        self.fetch_body = fetch_body
        self.logger = logger or get_logger("mailmirror.router", level="ERROR")

    def route(self, argv: Sequence[str]) -> Outcome:
        transitions = [RouteState.PARSED]
        command = parse_invocation(argv)
        if not command.servable:
            transitions.append(RouteState.FORWARDED)
            return self._forward(command, RouteState.FORWARDED, command.reason, transitions)

        transitions.append(RouteState.CACHE_SERVABLE)
        try:
            payload = self._serve(command)
        except RouterMiss as miss:
            reason = miss.reason
        except StoreCorruption as exc:
            reason = f"store corruption: {exc}"
            self._rebuild_after(command, exc)
        except (StoreError, sqlite3.Error) as exc:
            reason = f"store unavailable: {exc}"
        else:
            transitions.extend([RouteState.SERVED, RouteState.DONE])
            self.logger.debug("served", kind=command.kind.value)
            return Outcome(
                state=RouteState.SERVED,
                exit_code=0,
                stdout=payload,
                transitions=transitions,
            )
        transitions.append(RouteState.MISS_FORWARDED)
        self.logger.info("miss_forwarded", kind=command.kind.value, reason=reason)
        return self._forward(command, RouteState.MISS_FORWARDED, reason, transitions)

    # Forwarding ----------------------------------------------------------
    def _forward(
        self,
        command: ParsedCommand,
        state: RouteState,
        reason: Optional[str],
        transitions: List[RouteState],
    ) -> Outcome:
        result = self.upstream.run(command.argv)
        transitions.append(RouteState.DONE)
        return Outcome(
            state=state,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            reason=reason,
            transitions=transitions,
        )

    def _rebuild_after(self, command: ParsedCommand, exc: Exception) -> None:
        account = getattr(exc, "account", None) or command.account or self.default_account
        if not account or account == "*":
            return
        try:
            self.store.rebuild(account)
        except StoreRebuildFailed as failure:
            self.logger.error("store_rebuild_failed", account=account, error=str(failure))

    # Serving -------------------------------------------------------------
    def _account(self, command: ParsedCommand) -> str:
        accounts = self.store.list_accounts()
        if accounts is None:
            raise RouterMiss("account catalog never synced")
        names = {account.name for account in accounts}
        name = command.account or self.default_account
        if name is None:
            defaults = [account.name for account in accounts if account.default]
            if not defaults:
                raise RouterMiss("no default account")
            name = defaults[0]
        if name not in names:
            raise RouterMiss(f"unknown account {name}")
        return name

    def _check_fresh(self, committed_at: Optional[str]) -> None:
        limit = self.settings.max_staleness_s
        if limit is None:
            return
        if committed_at is None:
            raise RouterMiss("no committed sync")
        age = datetime.now(timezone.utc) - datetime.fromisoformat(committed_at)
        if age.total_seconds() > limit:
            raise RouterMiss("mirror older than staleness tolerance")

    def _check_plain(self, command: ParsedCommand) -> None:
        if command.output == "plain" and not self.settings.serve_plain_tables:
            raise RouterMiss("plain tables disabled")

    def _serve(self, command: ParsedCommand) -> bytes:
        if command.kind is CommandKind.ACCOUNT_LIST:
            self._check_plain(command)
            accounts = self.store.list_accounts()
            if accounts is None:
                raise RouterMiss("account catalog never synced")
            return render.render_accounts(accounts, command.output)

        account = self._account(command)
        if command.kind is CommandKind.FOLDER_LIST:
            self._check_plain(command)
            folders = self.store.list_folders(account)
            if folders is None:
                raise RouterMiss("folders never listed")
            self._check_fresh(self.store.folders_listed_at(account))
            return render.render_folders(folders, command.output)

        folder = command.folder or self.settings.default_folder
        if command.kind is CommandKind.ENVELOPE_LIST:
            self._check_plain(command)
            snapshot = self.store.read_folder_snapshot(account, folder)
            if snapshot is None:
                raise RouterMiss(f"folder {folder} never synced")
            self._check_fresh(snapshot.committed_at)
            ordered = render.sort_envelopes(snapshot.envelopes)
            page = render.page_envelopes(
                ordered, command.page, command.page_size or self.settings.default_page_size
            )
            if page is None:
                raise RouterMiss("page out of range")
            return render.render_envelopes(page, command.output)

        return self._serve_message(command, account, folder)

    def _serve_message(self, command: ParsedCommand, account: str, folder: str) -> bytes:
        checkpoint = self.store.read_checkpoint(account, folder)
        if checkpoint is None or checkpoint.validity_token is None or checkpoint.cursor is None:
            raise RouterMiss(f"folder {folder} never synced")
        self._check_fresh(checkpoint.committed_at)
        envelope_id = command.envelope_id or ""
        if self.store.read_envelope(account, folder, envelope_id) is None:
            raise RouterMiss(f"envelope {envelope_id} not mirrored")
        body = self.store.read_or_request_body(account, folder, envelope_id)
        if body.state is not FetchState.FULL:
            if not (self.settings.on_demand_fetch and self.fetch_body is not None):
                raise RouterMiss(f"body {body.state.value}")
            fetched = self.fetch_body(account, folder, envelope_id)
            if fetched is None or fetched.state is not FetchState.FULL:
                raise RouterMiss("on-demand fetch failed")
            body = fetched
        if body.rendition is not Rendition.UPSTREAM or body.content is None:
            raise RouterMiss(f"body rendition {body.rendition.value}")
        return render.render_message(body.content, command.output)
