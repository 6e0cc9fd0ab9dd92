"""Generate run identifiers and stable checksums for mirror artefacts.

What:
  Provide minimal helpers for creating unique sync run IDs and SHA-256
  checksums used for logging, lock file naming, and state digests.

Why:
  Centralising the logic avoids subtle inconsistencies (timestamp formats or
  hash prefixes) that would otherwise complicate audits and idempotence
  checks.

How:
  Combines ISO8601 timestamps with random suffixes for IDs and wraps
  ``hashlib`` with a consistent ``sha256:`` prefix for checksums.

Interfaces:
  :func:`new_run_id`, :func:`checksum`, :func:`safe_name`.
"""
from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime, timezone


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def new_run_id() -> str:
    """Return a unique identifier for a sync pass.

    What:
      Emits an ISO8601 timestamp suffixed with a six-hex-character random token.

    Why:
      Run IDs appear in every sync log line; combining time and randomness keeps
      them sortable while avoiding collisions between concurrent processes.

    Returns:
      Unique identifier string (e.g., ``2024-01-01T00:00:00+00:00#1a2b3c``).
    """

    timestamp = datetime.now(timezone.utc).isoformat()
    suffix = secrets.token_hex(3)
    return f"{timestamp}#{suffix}"


def checksum(data: bytes) -> str:
    """Compute a namespaced SHA-256 digest for ``data``."""

    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def safe_name(value: str) -> str:
    """Return a filesystem-safe, collision-resistant name for ``value``.

    What:
      Keeps a readable slug of ``value`` and appends a short digest of the
      original text.

    Why:
      Account and folder names may contain separators (``/``), spaces, or
      non-ASCII characters; two names that slugify identically must still map
      to distinct files.

    Args:
      value: Arbitrary account or folder name.

    Returns:
      String usable as a single path component.
    """

    slug = _UNSAFE.sub("_", value).strip("._") or "x"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    return f"{slug[:48]}-{digest}"
