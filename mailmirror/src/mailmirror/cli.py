"""mailmirror command-line interface.

What:
  Provide the ``mailmirror`` entry point. The ``sync``, ``status``, and
  ``rebuild`` commands manage the mirror; every other invocation is treated
  as a ``himalaya`` command line and handed to the router, which serves it
  from the mirror or forwards it verbatim.

Why:
  Users alias ``himalaya`` to ``mailmirror`` and keep typing the commands they
  know. Only the mirror's own maintenance commands need a dedicated surface,
  which Typer provides; everything else must keep the upstream client's
  argument grammar, output, and exit codes.

How:
  :func:`main` inspects the first argument. Maintenance commands run through
  the Typer ``app``; anything else goes to :func:`route`, which builds the
  router from the runtime configuration, writes served bytes to standard
  output, and returns the exit code to propagate. Helpers in
  :mod:`mailmirror._wiring` construct the collaborators.

Interfaces:
  ``app`` (Typer application), ``sync``, ``status``, ``rebuild``, ``route``,
  ``main``.

Invariants & Safety:
  - Exit codes: ``0`` success, ``1`` when a sync left any folder failed,
    ``2`` for configuration errors, ``74`` when a corrupted store could not be
    rebuilt; forwarded commands return the upstream client's code.
  - A configuration or store problem never prevents forwarding.
"""
from __future__ import annotations

import json
import logging
import sys
from typing import List, Optional, Sequence

import typer

from ._wiring import (
    build_adapters,
    build_logger,
    build_upstream_adapter,
    default_account,
    on_demand_fetcher,
    open_store,
    resolve_accounts,
    resolve_upstream_binary,
)
from .config.loader import RuntimeConfigError, load_runtime_config
from .config.schema import RuntimeConfig
from .remote.base import AdapterError
from .router.core import RouteState, Router
from .router.forward import Upstream
from .store.errors import StoreError, StoreRebuildFailed
from .sync.engine import FolderResult, SyncEngine, SyncOptions


app = typer.Typer(help="Local mirror for the himalaya mail client", add_completion=False)

LOGGER = logging.getLogger("mailmirror.cli")

MIRROR_COMMANDS = frozenset({"sync", "status", "rebuild"})
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_STORE = 74


def _close_adapters(adapters) -> None:
    closed = set()
    for adapter in adapters:
        if id(adapter) not in closed:
            closed.add(id(adapter))
            adapter.close()


def _echo_progress(account: str, result: FolderResult) -> None:
    line = f"{account}/{result.folder}: {result.status}"
    if result.status == "ok":
        line += (
            f" ({result.mode}, +{result.added} ~{result.updated} -{result.removed},"
            f" {result.bodies_fetched} bodies)"
        )
    elif result.error:
        line += f" ({result.error})"
    typer.echo(line, err=True)


def _runtime() -> RuntimeConfig:
    try:
        return load_runtime_config()
    except RuntimeConfigError as exc:
        LOGGER.error("runtime_load_failed: %s", exc)
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_CONFIG) from exc


@app.command("sync")
def sync(
    account: List[str] = typer.Option([], "--account", "-a", help="Account to sync (repeatable)"),
    folder: List[str] = typer.Option([], "--folder", "-f", help="Folder to sync (repeatable)"),
    full: bool = typer.Option(False, "--full", help="Discard the mirror and resync from scratch"),
    workers: Optional[int] = typer.Option(None, "--workers", min=1, help="Accounts synced in parallel"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not report progress on stderr"),
) -> None:
    """Pull remote changes into the mirror.

    What:
      Refresh the account catalog, then reconcile every selected folder of
      every selected account and print the JSON sync summary. A line per
      finished folder goes to standard error unless ``--quiet`` is given.

    Why:
      Cron jobs and shell hooks run this between reads; the summary and exit
      code tell them whether any folder needs attention.

    How:
      Resolve accounts from the configuration (or the upstream client), write
      the catalog atomically, build one adapter per account, and run
      :meth:`SyncEngine.sync_accounts` with the requested options.
    """

    runtime = _runtime()
    logger = build_logger(runtime, "mailmirror.sync")
    upstream = build_upstream_adapter(runtime, logger.child("mailmirror.remote"))
    adapters = {}
    try:
        with open_store(runtime, logger.child("mailmirror.store")) as store:
            try:
                catalog = resolve_accounts(runtime, upstream)
            except AdapterError as exc:
                LOGGER.error("account_discovery_failed: %s", exc)
                typer.echo(f"cannot list accounts: {exc}", err=True)
                raise typer.Exit(code=EXIT_FAILED) from exc
            store.write_accounts(catalog)
            known = [record.name for record in catalog]
            unknown = [name for name in account if name not in known]
            if unknown:
                typer.echo(f"unknown account(s): {', '.join(unknown)}", err=True)
                raise typer.Exit(code=EXIT_CONFIG)
            selected = list(account) or known
            adapters = build_adapters(runtime, selected, upstream, logger.child("mailmirror.remote"))
            engine = SyncEngine(
                store,
                adapters,
                eager_bodies=runtime.sync.eager_bodies,
                body_batch_size=runtime.sync.body_batch_size,
                lock_timeout=runtime.sync.lock_timeout_s,
                workers=workers or runtime.sync.workers,
                logger=logger,
                progress=None if quiet else _echo_progress,
            )
            summary = engine.sync_accounts(
                selected, SyncOptions(full=full, folders=list(folder) or None)
            )
    except StoreRebuildFailed as exc:
        LOGGER.error("store_rebuild_failed: %s", exc)
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_STORE) from exc
    finally:
        _close_adapters(adapters.values())

    typer.echo(json.dumps(summary.to_dict(), indent=2))
    if not summary.ok:
        raise typer.Exit(code=EXIT_FAILED)


@app.command("status")
def status(
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Limit to one account"),
) -> None:
    """Print the committed checkpoint and latest attempt of every mirrored folder."""

    runtime = _runtime()
    try:
        with open_store(runtime, build_logger(runtime, "mailmirror.store")) as store:
            catalog = store.list_accounts() or []
            names = [account] if account else [record.name for record in catalog]
            report = {
                name: [checkpoint.to_dict() for checkpoint in store.list_checkpoints(name)]
                for name in names
            }
    except StoreRebuildFailed as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_STORE) from exc
    typer.echo(json.dumps(report, indent=2))


@app.command("rebuild")
def rebuild(
    account: str = typer.Option(..., "--account", "-a", help="Account whose mirror is discarded"),
) -> None:
    """Delete and recreate the mirror of one account; the next sync refills it."""

    runtime = _runtime()
    try:
        with open_store(runtime, build_logger(runtime, "mailmirror.store")) as store:
            store.rebuild(account)
    except StoreRebuildFailed as exc:
        LOGGER.error("store_rebuild_failed: %s", exc)
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_STORE) from exc
    typer.echo(f"rebuilt {account}")


def _forward_only(runtime: RuntimeConfig, argv: Sequence[str]) -> int:
    return Upstream(resolve_upstream_binary(runtime)).run(argv).exit_code


def route(argv: Sequence[str]) -> int:
    """Serve or forward one upstream-client invocation; returns the exit code."""

    try:
        runtime = load_runtime_config()
    except RuntimeConfigError as exc:
        LOGGER.warning("runtime_load_failed_forwarding: %s", exc)
        return _forward_only(RuntimeConfig(), argv)

    logger = build_logger(runtime, "mailmirror.router", router=True)
    try:
        store = open_store(runtime, logger.child("mailmirror.store"))
    except OSError as exc:
        logger.error("store_unavailable", error=str(exc))
        return _forward_only(runtime, argv)

    with store:
        router = Router(
            store,
            Upstream(resolve_upstream_binary(runtime)),
            settings=runtime.router,
            default_account=default_account(runtime),
            fetch_body=on_demand_fetcher(runtime, store, logger) if runtime.router.on_demand_fetch else None,
            logger=logger,
        )
        try:
            outcome = router.route(argv)
        except (StoreError, OSError) as exc:
            logger.error("route_failed_forwarding", error=str(exc))
            return _forward_only(runtime, argv)

    if outcome.state is RouteState.SERVED and outcome.stdout is not None:
        sys.stdout.buffer.write(outcome.stdout)
        sys.stdout.buffer.flush()
    return outcome.exit_code


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Dispatch to the maintenance commands or to the router."""

    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] in MIRROR_COMMANDS:
        app(args=args, prog_name="mailmirror")
        return
    raise SystemExit(route(args))


if __name__ == "__main__":  # pragma: no cover
    main()
