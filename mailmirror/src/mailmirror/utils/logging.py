"""Mailmirror logging helpers with deterministic JSON emission and redaction.

What:
  Offer a tiny facade over Python streams so every mailmirror component can
  emit JSON log lines with consistent fields and automatic removal of
  sensitive payloads.

Why:
  The mirror runs from cron jobs and shell wrappers where logs are grepped
  after the fact. A structured layout keeps parsing trivial while preventing
  subjects, senders, or message bodies from leaking into shared log files.
  Standard output belongs to the served command output, so logs default to
  standard error.

How:
  Provide a :class:`JsonLogger` dataclass that accepts a target stream, a
  component tag, and a minimum severity. ``extra`` dictionaries are scrubbed
  via a recursive redaction helper before being serialised with ``json.dump``.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`.

Invariants & Safety:
  - Every payload carries an ISO8601 timestamp, severity, message, and
    component so downstream tooling can index entries reliably.
  - Known sensitive keys (``subject``, ``body``, ``sender``, ``content``) are
    replaced with ``[redacted]`` even inside nested dictionaries.
  - Entries below ``min_level`` are dropped; the router relies on this to keep
    forwarded standard error byte-identical.
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "[redacted]"

LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "WARNING": 30, "ERROR": 40}


@dataclass
class JsonLogger:
    """Structured JSON logger with automatic redaction.

    What:
      Encapsulates the logic required to emit single-line JSON log entries that
      include timestamps, severity, a component tag, and optional supplemental
      fields.

    Why:
      Centralising structured logging avoids duplicating the redaction logic and
      guarantees a uniform schema for sync summaries and test assertions.

    How:
      Stores the destination stream, component label, and threshold, then
      exposes helper methods (:meth:`log`, :meth:`debug`, :meth:`info`,
      :meth:`warning`, :meth:`error`) that merge a canonical payload with
      redacted extras before serialising the result using :mod:`json`.
    """

    stream: Any = field(default_factory=lambda: sys.stderr)
    component: str = "mailmirror"
    min_level: str = "INFO"

    def enabled(self, level: str) -> bool:
        """Return ``True`` when ``level`` passes the configured threshold."""

        return LEVELS.get(level.upper(), 20) >= LEVELS.get(self.min_level.upper(), 20)

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a structured JSON log entry.

        What:
          Serialises ``message`` and ``extra`` metadata to the configured stream
          using the log schema (``ts``, ``lvl``, ``msg``, ``component``).

        Why:
          Log entries should adhere to a predictable contract so tests and
          operators can parse them without ad-hoc heuristics.

        How:
          Drops the entry when below ``min_level``; otherwise builds the core
          dictionary, merges a redacted copy of ``extra``, writes the payload,
          and flushes the stream so diagnostics survive abrupt termination.

        Args:
          level: Human-readable severity (e.g., ``"info"`` or ``"error"``).
          message: Core log message.
          extra: Optional context dictionary that will be redacted recursively.
        """

        if not self.enabled(level):
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": level.upper(),
            "msg": message,
            "component": self.component,
        }
        if extra:
            payload.update(self._redact(extra))
        json.dump(payload, self.stream, separators=(",", ":"), default=str)
        self.stream.write("\n")
        self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log a debug message with structured context."""

        self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an informational message with structured context."""

        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a warning message while enforcing redaction.

        What:
          Emits a ``WARN`` level entry using the structured payload pipeline.

        Why:
          Folder failures and interrupted passes must be visible without
          aborting the sync; a dedicated level lets operators alert on them.

        Args:
          message: Description of the warning condition.
          **kwargs: Structured metadata describing the context.
        """

        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log an error entry suitable for alerting."""

        self.log("ERROR", message, extra=kwargs)

    def child(self, component: str) -> "JsonLogger":
        """Return a logger sharing stream and threshold under ``component``."""

        return JsonLogger(stream=self.stream, component=component, min_level=self.min_level)

    @staticmethod
    def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
        """Remove sensitive keys from a payload recursively.

        What:
          Produces a copy of ``data`` where predefined fields are replaced with a
          sentinel ``[redacted]`` string.

        Why:
          The mirror handles personal correspondence. Redacting common fields
          prevents disclosure when logs are collected by shared tooling.

        How:
          Walks the dictionary, applying the sentinel to known keys and recursing
          into nested dictionaries to preserve structure.

        Args:
          data: Arbitrary metadata to sanitise.

        Returns:
          A copy of ``data`` with sensitive values masked.
        """

        sensitive_keys = {"subject", "body", "sender", "content"}
        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in sensitive_keys:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = JsonLogger._redact(value)
            else:
                result[key] = value
        return result


def get_logger(component: str, *, level: str = "INFO", stream: Any = None) -> JsonLogger:
    """Construct a :class:`JsonLogger` for the requested component.

    What:
      Returns a ready-to-use :class:`JsonLogger` bound to ``component``.

    Why:
      Call sites should avoid instantiating :class:`JsonLogger` directly so the
      shared defaults (stderr stream, redaction keys) evolve centrally.

    Args:
      component: Logical subsystem name to include in log payloads.
      level: Minimum severity emitted.
      stream: Optional destination; defaults to ``sys.stderr``.

    Returns:
      Configured :class:`JsonLogger` instance.
    """

    if stream is None:
        return JsonLogger(component=component, min_level=level)
    return JsonLogger(stream=stream, component=component, min_level=level)
