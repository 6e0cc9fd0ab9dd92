"""
Module: tests/unit/test_config_loader.py

What:
    Validate the runtime configuration loader: YAML parsing, defaults when no
    file exists, cache behaviour, and error signalling for malformed files.

Why:
    Every CLI invocation starts by loading ``config.yaml``. A silently
    accepted typo could point the mirror at the wrong cache directory or
    disable routing checks, so validation failures must surface as
    :class:`RuntimeConfigError`.

How:
    Write small YAML payloads into ``tmp_path`` and load them explicitly or
    through ``MAILMIRROR_CONFIG_PATH``, asserting on the resulting
    :class:`RuntimeConfig` models and raised exceptions.

Interfaces:
    test_template_config_loads, test_explicit_path_and_cache,
    test_defaults_without_file, test_invalid_payloads_raise,
    test_imap_account_requires_secret

Invariants & Safety Rules:
    - The autouse fixture in ``tests/conftest.py`` resets the cache around each
      test so results never leak between cases.
"""

import pathlib

import pytest

from mailmirror.config.loader import (
    RuntimeConfigError,
    get_runtime_config,
    load_runtime_config,
    reset_runtime_config,
)


def test_template_config_loads(runtime_config: pathlib.Path):
    """
    What:
        Load the configuration written by the autouse fixture.

    Why:
        Tests across the suite rely on it; the values it sets must survive
        validation untouched.
    """

    config = get_runtime_config()
    assert config.upstream.attempts == 1
    assert config.sync.body_batch_size == 2
    assert config.router.default_folder == "INBOX"
    assert config.paths.cache_dir.endswith("cache")
    assert config.accounts == []


def test_explicit_path_and_cache(tmp_path: pathlib.Path):
    path = tmp_path / "explicit.yaml"
    path.write_text(
        "accounts:\n"
        "  - name: work\n"
        "    default: true\n"
        "  - name: home\n"
        "    adapter: imap\n"
        "    imap: {host: imap.example.com, username: me, password: pw}\n"
        "router:\n"
        "  on_demand_fetch: true\n"
    )

    config = load_runtime_config(path)
    assert [account.name for account in config.accounts] == ["work", "home"]
    assert config.account("home").imap.port == 993
    assert config.account("missing") is None
    assert config.router.on_demand_fetch

    path.write_text("router: {on_demand_fetch: false}\n")
    assert load_runtime_config(path).router.on_demand_fetch
    assert not load_runtime_config(path, reload=True).router.on_demand_fetch


def test_defaults_without_file(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path):
    monkeypatch.setenv("MAILMIRROR_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("HOME", str(tmp_path))
    reset_runtime_config()

    config = load_runtime_config()

    assert config.paths.cache_dir == "~/.local/share/himalaya-cache"
    assert config.router.serve_plain_tables is False
    assert config.logging.router_level == "ERROR"


@pytest.mark.parametrize(
    "payload",
    [
        "- just\n- a list\n",
        "router: {unknown_knob: 1}\n",
        "sync: {workers: 0}\n",
        "accounts: [{name: a}, {name: a}]\n",
        "accounts: [{name: a, default: true}, {name: b, default: true}]\n",
        "logging: {level: LOUD}\n",
        "paths: [unclosed\n",
    ],
)
def test_invalid_payloads_raise(tmp_path: pathlib.Path, payload: str):
    path = tmp_path / "bad.yaml"
    path.write_text(payload)
    with pytest.raises(RuntimeConfigError):
        load_runtime_config(path)


def test_missing_explicit_file_raises(tmp_path: pathlib.Path):
    with pytest.raises(RuntimeConfigError):
        load_runtime_config(tmp_path / "nope.yaml")


def test_imap_account_requires_secret(tmp_path: pathlib.Path):
    path = tmp_path / "imap.yaml"
    path.write_text("accounts:\n  - {name: a, adapter: imap, imap: {host: h, username: u}}\n")
    with pytest.raises(RuntimeConfigError):
        load_runtime_config(path)

    path.write_text("accounts:\n  - {name: a, adapter: imap}\n")
    with pytest.raises(RuntimeConfigError):
        load_runtime_config(path, reload=True)
