"""Strict loader for the mailmirror runtime configuration.

What:
  Locate, parse, validate, and cache ``config.yaml``.

Why:
  Configuration lives outside the package and can be malformed. Centralising
  the parsing logic enforces consistent validation so that the sync engine and
  the router can trust the resulting model. Unlike a daemon, the mirror must
  also work with no configuration at all, exactly like the upstream tool it
  wraps, so a missing file yields the documented defaults.

How:
  Resolve candidate file locations from an explicit parameter, the
  ``MAILMIRROR_CONFIG_PATH`` environment variable, and well-known defaults.
  Parse YAML with ``yaml.safe_load``, validate with the pydantic models from
  :mod:`mailmirror.config.schema`, and memoise the result per process.

Interfaces:
  - :func:`load_runtime_config` / :func:`get_runtime_config` /
    :func:`reset_runtime_config`.
  - :class:`ConfigLoadError`, :class:`RuntimeConfigError`.

Invariants:
  - Every payload passes strict pydantic validation before being returned.
  - An explicitly requested path that does not exist is an error; only the
    implicit search falls back to defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple

import yaml
from pydantic import ValidationError as _PydanticValidationError

from .schema import RuntimeConfig


class ConfigLoadError(Exception):
    """Base error for configuration parsing or validation failures."""


class RuntimeConfigError(ConfigLoadError):
    """Error raised when ``config.yaml`` cannot be loaded or validated.

    What:
      Signal issues related to runtime configuration discovery or schema
      validation.

    Why:
      The CLI maps this error to a dedicated exit code so shell wrappers can
      tell a broken configuration apart from an upstream failure.
    """


_CONFIG_ENV = "MAILMIRROR_CONFIG_PATH"
_DEFAULT_LOCATIONS: Tuple[Path, ...] = (
    Path("~/.config/mailmirror/config.yaml"),
    Path("/etc/mailmirror/config.yaml"),
)
_RUNTIME_CACHE: Optional[Tuple[Optional[Path], RuntimeConfig]] = None


def _candidate_paths() -> Iterable[Path]:
    """Yield implicit configuration locations in priority order.

    What:
      Produce the ordered list of paths inspected when the caller did not
      request a specific file.

    How:
      Check the ``MAILMIRROR_CONFIG_PATH`` environment variable first, then the
      default locations, expanding ``~`` and skipping duplicates.
    """

    seen: set[Path] = set()
    env_path = os.environ.get(_CONFIG_ENV)
    if env_path:
        candidate = Path(env_path).expanduser()
        seen.add(candidate)
        yield candidate
    for default in _DEFAULT_LOCATIONS:
        candidate = default.expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate


def _parse_config_payload(text: str, source: Path) -> dict[str, Any]:
    """Parse ``config.yaml`` text into a dictionary payload.

    Raises:
      RuntimeConfigError: If the file cannot be parsed or does not contain a
      mapping.
    """

    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise RuntimeConfigError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeConfigError(f"{source} must contain a mapping at the top-level")
    return payload


def _load_runtime_from_path(path: Path) -> RuntimeConfig:
    """Load and validate ``config.yaml`` from a specific path.

    What:
      Read the file at ``path`` and convert it into a validated
      :class:`RuntimeConfig` model.

    How:
      Read the file contents, parse them via :func:`_parse_config_payload`, and
      validate using :meth:`RuntimeConfig.model_validate`. Filesystem and
      validation failures are wrapped in :class:`RuntimeConfigError`.
    """

    try:
        text = path.read_text()
    except FileNotFoundError as exc:
        raise RuntimeConfigError(f"Configuration file missing: {path}") from exc
    except OSError as exc:  # pragma: no cover - filesystem surface
        raise RuntimeConfigError(f"Unable to read configuration file {path}: {exc}") from exc
    payload = _parse_config_payload(text, path)
    try:
        return RuntimeConfig.model_validate(payload)
    except (_PydanticValidationError, ValueError) as exc:
        raise RuntimeConfigError(f"Invalid {path}: {exc}") from exc


def load_runtime_config(
    path: Optional[Path | str] = None,
    *,
    reload: bool = False,
) -> RuntimeConfig:
    """Resolve, parse, and cache the runtime configuration.

    What:
      Locate ``config.yaml`` using the precedence chain, parse it, and return a
      validated :class:`RuntimeConfig` instance. Without any file on disk the
      defaults are returned.

    Why:
      The CLI, the sync engine, and the router all need the same settings;
      caching avoids repeated disk IO while ``reload`` enables deterministic
      refreshes during tests.

    Args:
      path: Optional explicit location of ``config.yaml``.
      reload: When ``True`` forces a fresh load bypassing the cache.

    Returns:
      The validated runtime configuration.

    Raises:
      RuntimeConfigError: If the explicit file is missing or any located file
      fails validation.
    """

    global _RUNTIME_CACHE

    requested_path = Path(path).expanduser() if isinstance(path, (str, Path)) else None
    if not reload and _RUNTIME_CACHE is not None:
        cached_path, cached_config = _RUNTIME_CACHE
        if requested_path is None or cached_path == requested_path:
            return cached_config

    if requested_path is not None:
        config = _load_runtime_from_path(requested_path)
        _RUNTIME_CACHE = (requested_path, config)
        return config

    for candidate in _candidate_paths():
        if not candidate.exists():
            continue
        config = _load_runtime_from_path(candidate)
        _RUNTIME_CACHE = (candidate, config)
        return config

    config = RuntimeConfig()
    _RUNTIME_CACHE = (None, config)
    return config


def get_runtime_config() -> RuntimeConfig:
    """Return the cached runtime configuration, loading it on demand."""

    return load_runtime_config()


def reset_runtime_config() -> None:
    """Clear the runtime configuration cache."""

    global _RUNTIME_CACHE
    _RUNTIME_CACHE = None
