"""Pydantic models describing the mailmirror runtime configuration."""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ValidationError(ValueError):
    """Raised when configuration data does not satisfy the schema."""


class PathsConfig(BaseModel):
    """Filesystem layout used by the mirror."""

    model_config = ConfigDict(extra="forbid")

    cache_dir: str = "~/.local/share/himalaya-cache"


class UpstreamConfig(BaseModel):
    """How the upstream ``himalaya`` client is located and driven."""

    model_config = ConfigDict(extra="forbid")

    binary: Optional[str] = None
    attempts: int = Field(default=3, ge=1)
    retry_delay_s: float = Field(default=2.5, ge=0)
    timeout_s: Optional[float] = Field(default=300.0, gt=0)
    listing_page_size: int = Field(default=999, gt=0)


class SyncConfig(BaseModel):
    """Sync engine tuning."""

    model_config = ConfigDict(extra="forbid")

    workers: int = Field(default=4, ge=1)
    eager_bodies: bool = True
    body_batch_size: int = Field(default=25, gt=0)
    lock_timeout_s: float = Field(default=30.0, ge=0)


class RouterConfig(BaseModel):
    """Policy deciding which reads the mirror may answer."""

    model_config = ConfigDict(extra="forbid")

    on_demand_fetch: bool = False
    serve_plain_tables: bool = False
    default_folder: str = "INBOX"
    default_page_size: int = Field(default=10, gt=0)
    max_staleness_s: Optional[float] = Field(default=None, gt=0)


class LoggingConfig(BaseModel):
    """Log thresholds and destination."""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = "INFO"
    router_level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = "ERROR"
    file: Optional[str] = None


class ImapAccountSettings(BaseModel):
    """Connection parameters for accounts mirrored through IMAP directly."""

    model_config = ConfigDict(extra="forbid")

    host: str
    port: int = Field(default=993, ge=1, le=65535)
    ssl: bool = True
    username: str
    password: Optional[str] = None
    password_file: Optional[str] = None
    bodies_via_upstream: bool = True

    @model_validator(mode="after")
    def _require_secret(self) -> "ImapAccountSettings":
        if self.password is None and self.password_file is None:
            raise ValidationError("imap settings need password or password_file")
        return self


class AccountConfig(BaseModel):
    """A mirrored account; immutable for the duration of a run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    default: bool = False
    backend: Optional[str] = None
    adapter: Literal["himalaya", "imap"] = "himalaya"
    imap: Optional[ImapAccountSettings] = None

    @model_validator(mode="after")
    def _imap_needs_settings(self) -> "AccountConfig":
        if self.adapter == "imap" and self.imap is None:
            raise ValidationError(f"account {self.name!r} uses the imap adapter without imap settings")
        return self


class RuntimeConfig(BaseModel):
    """Root configuration loaded from ``config.yaml``."""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    paths: PathsConfig = Field(default_factory=PathsConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    accounts: List[AccountConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_accounts(self) -> "RuntimeConfig":
        names = [account.name for account in self.accounts]
        if len(names) != len(set(names)):
            raise ValidationError("account names must be unique")
        if sum(1 for account in self.accounts if account.default) > 1:
            raise ValidationError("at most one account may be marked default")
        return self

    def account(self, name: str) -> Optional[AccountConfig]:
        for account in self.accounts:
            if account.name == name:
                return account
        return None
