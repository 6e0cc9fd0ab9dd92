"""Mailmirror configuration package.

What:
  Provide a cohesive import surface for configuration loading and the pydantic
  schema consumed by the CLI, the sync engine, and the router.

Interfaces:
  - get_runtime_config / load_runtime_config / reset_runtime_config
  - RuntimeConfig / AccountConfig / ImapAccountSettings
  - ConfigLoadError / RuntimeConfigError / ValidationError
"""

from .loader import (
    ConfigLoadError,
    RuntimeConfigError,
    get_runtime_config,
    load_runtime_config,
    reset_runtime_config,
)
from .schema import AccountConfig, ImapAccountSettings, RuntimeConfig, ValidationError

__all__ = [
    "get_runtime_config",
    "load_runtime_config",
    "reset_runtime_config",
    "AccountConfig",
    "ImapAccountSettings",
    "RuntimeConfig",
    "ConfigLoadError",
    "RuntimeConfigError",
    "ValidationError",
]
