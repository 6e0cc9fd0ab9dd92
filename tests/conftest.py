"""Pytest configuration shared by every suite.

What:
  Establish project import paths and define a fixture that applies a canned
  runtime configuration to every test.

Why:
  The CLI integration tests execute the real ``mailmirror`` package as a
  module. To ensure imports resolve to the source tree rather than installed
  wheels, we prepend the ``mailmirror/src`` directory to ``sys.path``. The
  autouse fixture keeps configuration state and the cache directory
  deterministic between tests.

How:
  Compute the project root relative to the file, inject the source directory
  into ``sys.path`` when available, and define :func:`runtime_config`, which
  copies ``tests/data/config.yaml`` into the test's temporary directory with
  ``paths.cache_dir`` pointing next to it, exports ``MAILMIRROR_CONFIG_PATH``,
  and resets the shared runtime cache before and after each test.

Interfaces:
  :func:`runtime_config` (pytest fixture).
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "mailmirror" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest
import yaml

from mailmirror.config.loader import reset_runtime_config

CONFIG_TEMPLATE = Path(__file__).resolve().parent / "data" / "config.yaml"


@pytest.fixture(autouse=True)
def runtime_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Apply the canned configuration file for every test.

    Yields:
      Path of the per-test ``config.yaml``.
    """

    payload = yaml.safe_load(CONFIG_TEMPLATE.read_text())
    payload.setdefault("paths", {})["cache_dir"] = str(tmp_path / "cache")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(payload))
    monkeypatch.setenv("MAILMIRROR_CONFIG_PATH", str(config_path))
    reset_runtime_config()
    try:
        yield config_path
    finally:
        reset_runtime_config()
