"""Helper utilities bridging the CLI with runtime subsystems.

What:
  Build the objects a CLI invocation needs from the runtime configuration:
  loggers, the Local Store handle, the upstream adapter, per-account remote
  adapters, the account catalog, and the on-demand body fetcher handed to the
  router.

Why:
  Isolating construction keeps :mod:`mailmirror.cli` focused on command flow
  and lets tests replace any single collaborator with ``monkeypatch``.

How:
  Plain functions taking the validated
  :class:`~mailmirror.config.schema.RuntimeConfig`. Nothing here performs
  network IO except :func:`resolve_accounts`, which asks the upstream client
  for its accounts when the configuration lists none.

Interfaces:
  ``resolve_upstream_binary``, ``build_logger``, ``open_store``,
  ``build_upstream_adapter``, ``resolve_accounts``, ``build_adapters``,
  ``default_account``, ``on_demand_fetcher``.
"""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config.schema import RuntimeConfig
from .remote.base import RemoteMailbox
from .remote.himalaya import HimalayaAdapter, discover_accounts
from .remote.imap import ImapAdapter
from .router.core import BodyFetcher
from .store.local import LocalStore
from .store.models import AccountRecord, FetchState, MessageBody
from .sync.engine import SyncEngine
from .utils.logging import JsonLogger, get_logger

FALLBACK_BINARY = "~/.cargo/bin/himalaya"
_LOG_STREAMS: Dict[str, object] = {}


def resolve_upstream_binary(runtime: RuntimeConfig) -> str:
    """Return the configured binary, else ``himalaya`` from ``PATH``, else the cargo default."""

    if runtime.upstream.binary:
        return str(Path(runtime.upstream.binary).expanduser())
    found = shutil.which("himalaya")
    if found:
        return found
    return str(Path(FALLBACK_BINARY).expanduser())


def build_logger(runtime: RuntimeConfig, component: str, *, router: bool = False) -> JsonLogger:
    """Construct a logger honouring the configured threshold and destination.

    The router gets its own, stricter threshold so forwarded invocations keep
    their standard error untouched.
    """

    level = runtime.logging.router_level if router else runtime.logging.level
    if runtime.logging.file is None:
        return get_logger(component, level=level)
    path = str(Path(runtime.logging.file).expanduser())
    stream = _LOG_STREAMS.get(path)
    if stream is None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        stream = open(path, "a", encoding="utf-8")
        _LOG_STREAMS[path] = stream
    return get_logger(component, level=level, stream=stream)


def open_store(runtime: RuntimeConfig, logger: Optional[JsonLogger] = None) -> LocalStore:
    return LocalStore.open(runtime.paths.cache_dir, logger=logger)


def build_upstream_adapter(
    runtime: RuntimeConfig, logger: Optional[JsonLogger] = None
) -> HimalayaAdapter:
    upstream = runtime.upstream
    return HimalayaAdapter(
        resolve_upstream_binary(runtime),
        attempts=upstream.attempts,
        retry_delay=upstream.retry_delay_s,
        timeout=upstream.timeout_s,
        page_size=upstream.listing_page_size,
        logger=logger,
    )


def resolve_accounts(runtime: RuntimeConfig, upstream: HimalayaAdapter) -> List[AccountRecord]:
    """Account catalog: configured accounts, or those the upstream client knows."""

    if runtime.accounts:
        return [
            AccountRecord(name=account.name, backend=account.backend, default=account.default)
            for account in runtime.accounts
        ]
    return discover_accounts(upstream)


def build_adapters(
    runtime: RuntimeConfig,
    names: Sequence[str],
    upstream: HimalayaAdapter,
    logger: Optional[JsonLogger] = None,
) -> Dict[str, RemoteMailbox]:
    adapters: Dict[str, RemoteMailbox] = {}
    for name in names:
        account = runtime.account(name)
        if account is not None and account.adapter == "imap" and account.imap is not None:
            adapters[name] = ImapAdapter(
                name,
                account.imap,
                upstream=upstream,
                attempts=runtime.upstream.attempts,
                retry_delay=runtime.upstream.retry_delay_s,
                logger=logger,
            )
        else:
            adapters[name] = upstream
    return adapters


def default_account(runtime: RuntimeConfig) -> Optional[str]:
    for account in runtime.accounts:
        if account.default:
            return account.name
    return None


def on_demand_fetcher(
    runtime: RuntimeConfig,
    store: LocalStore,
    logger: Optional[JsonLogger] = None,
) -> BodyFetcher:
    """Return a callable that fills one body through a single-account sync engine."""

    def fetch(account: str, folder: str, envelope_id: str) -> Optional[MessageBody]:
        upstream = build_upstream_adapter(runtime, logger)
        adapters = build_adapters(runtime, [account], upstream, logger)
        engine = SyncEngine(store, adapters, logger=logger)
        try:
            return engine.fetch_body(account, folder, envelope_id, FetchState.FULL)
        finally:
            for adapter in adapters.values():
                adapter.close()

    return fetch
