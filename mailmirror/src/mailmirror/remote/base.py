"""Contract shared by every Remote Mailbox Adapter.

What:
  Define the value objects returned by adapters (:class:`RemoteFolder`,
  :class:`EnvelopeChanges`), the :class:`RemoteMailbox` protocol consumed by
  the sync engine, the adapter error taxonomy, and the retry helpers adapters
  use around their network calls.

Why:
  The sync engine must not care whether a folder is listed by driving the
  upstream CLI or by speaking IMAP directly. A narrow protocol keeps the
  engine testable with in-memory fakes and lets each adapter own its own
  transport quirks (retry, authentication, output parsing).

How:
  Adapters raise :class:`AdapterTransient` for failures worth retrying and
  :class:`AdapterPermanent` otherwise. :func:`call_with_retry` wraps a callable
  with a bounded number of attempts and a delay computed by
  :func:`retry_delay`.

Invariants & Safety:
  - ``EnvelopeChanges.tombstones`` is the only way an adapter signals that an
    envelope disappeared; absence from ``upserts`` never implies deletion.
  - A ``cursor`` of ``None`` requests the complete listing of a folder; the
    returned ``upserts`` then hold every envelope and ``complete`` is set.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from ..store.models import Envelope, FetchState, Rendition
from ..utils.logging import JsonLogger

T = TypeVar("T")


class AdapterError(Exception):
    """Base class for remote mailbox failures."""


class AdapterTransient(AdapterError):
    """Network or server hiccup; the operation may succeed when retried."""


class AdapterPermanent(AdapterError):
    """Authentication, missing folder, or malformed response; retrying will not help."""


@dataclass(frozen=True)
class RemoteFolder:
    """Folder as listed by the remote, with its current validity token."""

    name: str
    validity_token: Optional[str]
    desc: Optional[str] = None


@dataclass
class EnvelopeChanges:
    """Result of listing a folder since a cursor.

    Attributes:
      cursor: Position to resume from on the next incremental pass.
      upserts: New or modified envelopes.
      tombstones: Ids explicitly reported as removed.
      flag_updates: Replacement flag sets for envelopes already mirrored.
      validity_token: Token observed while listing; a mismatch with the stored
        token forces a full resync.
      complete: ``True`` when ``upserts`` is the full folder listing.
    """

    cursor: Optional[str]
    upserts: List[Envelope] = field(default_factory=list)
    tombstones: List[str] = field(default_factory=list)
    flag_updates: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    validity_token: Optional[str] = None
    complete: bool = False


class RemoteMailbox(Protocol):
    """Operations the sync engine needs from a remote mailbox."""

    multiplexed: bool
    body_rendition: Rendition

    def list_folders(self, account: str) -> List[RemoteFolder]:
        ...

    def list_envelope_changes(
        self, account: str, folder: str, cursor: Optional[str]
    ) -> EnvelopeChanges:
        ...

    def fetch_body(self, account: str, folder: str, envelope_id: str, mode: FetchState) -> bytes:
        ...

    def close(self) -> None:
        ...


def retry_delay(
    *,
    base: float = 2.5,
    factor: float = 1.0,
    cap: float = 60.0,
    failures: int = 0,
) -> float:
    """Return the pause before retry number ``failures + 1``.

    What:
      Calculate ``base * factor**failures`` clamped to ``[base, cap]``.

    Why:
      The upstream CLI is retried with a fixed delay (``factor=1``) while IMAP
      reconnects back off exponentially; one helper covers both.

    Args:
      base: Smallest delay returned.
      factor: Multiplicative growth factor.
      cap: Maximum delay permitted.
      failures: Number of consecutive failures (zero-indexed).

    Returns:
      Delay in seconds.
    """

    delay = base * (factor ** max(failures, 0))
    if delay < base:
        delay = base
    if delay > cap:
        delay = cap
    return delay


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int,
    base_delay: float,
    factor: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[JsonLogger] = None,
    operation: str = "remote_call",
) -> T:
    """Invoke ``func`` until it succeeds, raises permanently, or attempts run out.

    Only :class:`AdapterTransient` triggers another attempt; the last transient
    error is re-raised once ``attempts`` calls have failed.
    """

    failures = 0
    while True:
        try:
            return func()
        except AdapterTransient as exc:
            failures += 1
            if failures >= attempts:
                raise
            delay = retry_delay(base=base_delay, factor=factor, failures=failures - 1)
            if logger is not None:
                logger.warning(
                    "remote_retry",
                    operation=operation,
                    attempt=failures,
                    delay_s=delay,
                    error=str(exc),
                )
            sleep(delay)
