"""CLI wiring tests ensuring Typer commands and the router entry integrate with runtime helpers.

What:
  Validate the ``sync``, ``status``, and ``rebuild`` commands plus the
  :func:`mailmirror.cli.route` and :func:`mailmirror.cli.main` entry points
  with mocked collaborators, covering exit codes and the forwarding fallbacks.

Why:
  The CLI coordinates the store, the sync engine, the adapters, and the
  router; regression tests prevent accidental breaks when refactoring
  dependency injection, and pin down the exit-code contract that shell
  wrappers depend on.

How:
  Use :class:`typer.testing.CliRunner` for the maintenance commands and call
  :func:`route` directly for forwarded invocations. ``monkeypatch`` swaps the
  helpers imported into :mod:`mailmirror.cli`; ``unittest.mock`` assertions
  confirm the interactions.
"""
from __future__ import annotations

import json
import subprocess
from typing import Any, List
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from mailmirror import cli
from mailmirror.cli import app
from mailmirror.config.loader import RuntimeConfigError, get_runtime_config
from mailmirror.router.forward import Upstream
from mailmirror.store.errors import StoreRebuildFailed
from mailmirror.store.local import LocalStore
from mailmirror.store.models import AccountRecord, Contact, Envelope, FetchState
from mailmirror.sync.engine import AccountResult, FolderResult, SyncSummary


runner = CliRunner()


class _Runner:
    """Records forwarded command lines and answers with a fixed exit code."""

    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: List[List[str]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, self.returncode)


@pytest.fixture
def upstream_runner(monkeypatch: pytest.MonkeyPatch) -> _Runner:
    recorder = _Runner(returncode=0)
    monkeypatch.setattr(
        "mailmirror.cli.Upstream", lambda binary: Upstream("himalaya-test", runner=recorder)
    )
    return recorder


@pytest.fixture
def engine(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Replace the sync engine and the account/adapter helpers."""

    instance = MagicMock()
    instance.sync_accounts.return_value = SyncSummary(
        run_id="run-1",
        accounts=[AccountResult(account="work", folders=[FolderResult(folder="INBOX", mode="full", added=2)])],
    )
    monkeypatch.setattr("mailmirror.cli.SyncEngine", MagicMock(return_value=instance))
    monkeypatch.setattr(
        "mailmirror.cli.resolve_accounts",
        lambda runtime, upstream: [AccountRecord(name="work", default=True), AccountRecord(name="home")],
    )
    adapter = MagicMock()
    monkeypatch.setattr(
        "mailmirror.cli.build_adapters",
        lambda runtime, names, upstream, logger: {name: adapter for name in names},
    )
    instance.adapter = adapter
    return instance


def _store() -> LocalStore:
    return LocalStore.open(get_runtime_config().paths.cache_dir)


def test_sync_happy_path(engine: MagicMock) -> None:
    result = runner.invoke(app, ["sync", "--account", "work", "--folder", "INBOX", "--full"])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["run_id"] == "run-1"
    assert summary["ok"] is True
    accounts, options = engine.sync_accounts.call_args.args
    assert accounts == ["work"]
    assert options.full is True
    assert options.folders == ["INBOX"]
    assert [record.name for record in _store().list_accounts()] == ["work", "home"]
    engine.adapter.close.assert_called_once()


def test_sync_defaults_to_every_account(engine: MagicMock) -> None:
    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 0
    accounts, options = engine.sync_accounts.call_args.args
    assert accounts == ["work", "home"]
    assert options.folders is None


def test_sync_progress_goes_to_stderr(
    engine: MagicMock, capsys: pytest.CaptureFixture[str]
) -> None:
    runner.invoke(app, ["sync"])
    assert cli.SyncEngine.call_args.kwargs["progress"] is cli._echo_progress

    runner.invoke(app, ["sync", "--quiet"])
    assert cli.SyncEngine.call_args.kwargs["progress"] is None

    cli._echo_progress("work", FolderResult(folder="INBOX", mode="incremental", added=2, removed=1))
    cli._echo_progress("work", FolderResult(folder="Junk", status="failed", error="boom"))
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.splitlines() == [
        "work/INBOX: ok (incremental, +2 ~0 -1, 0 bodies)",
        "work/Junk: failed (boom)",
    ]


def test_sync_reports_failed_folders(engine: MagicMock) -> None:
    engine.sync_accounts.return_value = SyncSummary(
        run_id="run-2",
        accounts=[
            AccountResult(
                account="work",
                status="partial",
                folders=[FolderResult(folder="INBOX", status="failed", error="boom")],
            )
        ],
    )

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == cli.EXIT_FAILED
    assert json.loads(result.stdout)["ok"] is False


def test_sync_unknown_account_is_config_error(engine: MagicMock) -> None:
    result = runner.invoke(app, ["sync", "-a", "ghost"])
    assert result.exit_code == cli.EXIT_CONFIG
    engine.sync_accounts.assert_not_called()


def test_sync_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken():
        raise RuntimeConfigError("Invalid config.yaml")

    monkeypatch.setattr("mailmirror.cli.load_runtime_config", broken)

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == cli.EXIT_CONFIG


def test_sync_store_rebuild_failure(engine: MagicMock) -> None:
    engine.sync_accounts.side_effect = StoreRebuildFailed("cannot rebuild store for 'work'")
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == cli.EXIT_STORE


def test_status_and_rebuild() -> None:
    store = _store()
    store.write_accounts([AccountRecord(name="work", default=True)])
    store.record_folders("work", [("INBOX", None)])
    with store.begin_folder_transaction("work", "INBOX") as txn:
        txn.reset("V1")
        txn.upsert_envelopes([Envelope(id="1", subject="hi")])
        txn.set_cursor("c1")

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0
    report = json.loads(status.stdout)
    assert report["work"][0]["folder"] == "INBOX"
    assert report["work"][0]["cursor"] == "c1"

    rebuilt = runner.invoke(app, ["rebuild", "--account", "work"])
    assert rebuilt.exit_code == 0
    assert "rebuilt work" in rebuilt.stdout
    assert _store().read_folder_snapshot("work", "INBOX") is None


def test_route_forwards_unknown_commands(upstream_runner: _Runner) -> None:
    upstream_runner.returncode = 5

    code = cli.route(["message", "send", "--account", "work"])

    assert code == 5
    assert upstream_runner.calls == [["himalaya-test", "message", "send", "--account", "work"]]


def test_route_serves_from_mirror(upstream_runner: _Runner, capsysbinary: Any) -> None:
    store = _store()
    store.write_accounts([AccountRecord(name="work", default=True)])
    store.record_folders("work", [("INBOX", None)])
    with store.begin_folder_transaction("work", "INBOX") as txn:
        txn.reset("V1")
        txn.upsert_envelopes(
            [
                Envelope(
                    id="9",
                    subject="Served",
                    sender=Contact(name=None, addr="a@example.com"),
                    date="2024-01-01 10:00+00:00",
                )
            ]
        )
        txn.set_cursor("c1")
        txn.store_body("9", FetchState.FULL, b"body\n")

    assert cli.route(["envelope", "list", "-o", "json"]) == 0
    assert cli.route(["message", "read", "9"]) == 0

    out = capsysbinary.readouterr().out
    listing, body = out.split(b"\n", 1)
    assert json.loads(listing)[0]["subject"] == "Served"
    assert body == b"body\n"
    assert upstream_runner.calls == []


def test_route_forwards_when_config_is_broken(
    monkeypatch: pytest.MonkeyPatch, upstream_runner: _Runner
) -> None:
    def broken():
        raise RuntimeConfigError("Invalid config.yaml")

    monkeypatch.setattr("mailmirror.cli.load_runtime_config", broken)

    assert cli.route(["envelope", "list", "-o", "json"]) == 0
    assert upstream_runner.calls == [["himalaya-test", "envelope", "list", "-o", "json"]]


def test_route_forwards_when_store_cannot_open(
    monkeypatch: pytest.MonkeyPatch, upstream_runner: _Runner
) -> None:
    def unavailable(runtime, logger=None):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr("mailmirror.cli.open_store", unavailable)

    assert cli.route(["account", "list", "-o", "json"]) == 0
    assert len(upstream_runner.calls) == 1


def test_main_dispatch(monkeypatch: pytest.MonkeyPatch) -> None:
    routed = MagicMock(return_value=3)
    monkeypatch.setattr("mailmirror.cli.route", routed)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["envelope", "list"])
    assert excinfo.value.code == 3
    routed.assert_called_once_with(["envelope", "list"])

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["rebuild", "--account", "work"])
    assert excinfo.value.code == 0
    routed.assert_called_once()
