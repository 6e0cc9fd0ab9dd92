"""Remote Mailbox Adapter driving the upstream ``himalaya`` CLI.

What:
  List accounts, folders, and envelopes through ``himalaya ... -o json`` and
  fetch message bodies through ``himalaya message read --preview``.

Why:
  The upstream client already owns credentials, backends, and output
  formatting. Reading through it guarantees that mirrored bodies are
  byte-identical to what a forwarded ``message read`` would print, so the
  router can serve them verbatim.

How:
  Each call spawns the binary with captured output and retries failed runs a
  bounded number of times with a fixed delay. The CLI has no change feed, so
  incremental listings re-read the folder and diff it against the cursor,
  which stores a short fingerprint of every envelope seen in the previous
  complete listing. Disappeared ids become explicit tombstones; envelopes whose
  only change is their flag set become flag updates.

Interfaces:
  :class:`HimalayaAdapter`, :func:`discover_accounts`,
  :func:`parse_envelope`.

Invariants & Safety:
  - ``message read`` always runs with ``--preview`` so mirroring never marks
    messages as seen.
  - The validity token is the constant :data:`VALIDITY_TOKEN`. Removed ids
    surface as tombstones; an id reused for another message surfaces as an
    upsert with different metadata, which makes the store drop its body.
"""
from __future__ import annotations

import hashlib
import json
import subprocess
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..store.models import AccountRecord, Contact, Envelope, FetchState, Rendition
from ..utils.logging import JsonLogger, get_logger
from .base import (
    AdapterPermanent,
    AdapterTransient,
    EnvelopeChanges,
    RemoteFolder,
    call_with_retry,
)


VALIDITY_TOKEN = "himalaya:1"
CURSOR_VERSION = 1

_PERMANENT_MARKERS = (
    "cannot find",
    "not found",
    "no such",
    "unknown account",
    "authentication",
    "invalid",
)


def _contact(payload: Any) -> Optional[Contact]:
    if isinstance(payload, dict):
        return Contact.from_dict(payload)
    if isinstance(payload, str):
        return Contact(name=None, addr=payload)
    return None


def parse_envelope(payload: Dict[str, Any]) -> Envelope:
    """Convert one ``envelope list -o json`` entry into an :class:`Envelope`."""

    if not isinstance(payload, dict) or payload.get("id") is None:
        raise AdapterPermanent("envelope entry without id")
    flags = payload.get("flags") or []
    if not isinstance(flags, list):
        raise AdapterPermanent(f"envelope {payload['id']} has malformed flags")
    to = payload.get("to")
    if isinstance(to, list):
        recipients = tuple(c for c in (_contact(item) for item in to) if c is not None)
    else:
        single = _contact(to)
        recipients = (single,) if single is not None else ()
    return Envelope(
        id=str(payload["id"]),
        message_id=payload.get("message_id"),
        subject=payload.get("subject"),
        sender=_contact(payload.get("from")),
        recipients=recipients,
        date=payload.get("date"),
        size=payload.get("size"),
        flags=tuple(str(flag) for flag in flags),
        has_attachment=payload.get("has_attachment"),
    )


def _named_items(payload: Any, command: str) -> List[Dict[str, Any]]:
    """Check that ``payload`` is an array of objects each carrying a string ``name``."""

    if not isinstance(payload, list):
        raise AdapterPermanent(f"{command} did not return a JSON array")
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise AdapterPermanent(f"{command} returned an entry without a name")
    return payload


def _fingerprints(envelope: Envelope) -> Tuple[str, str]:
    content = envelope.to_dict()
    flags = content.pop("flags")
    meta = hashlib.sha256(json.dumps(content, sort_keys=True).encode("utf-8")).hexdigest()[:16]
    flag_hash = hashlib.sha256(json.dumps(sorted(flags)).encode("utf-8")).hexdigest()[:16]
    return meta, flag_hash


def encode_cursor(envelopes: Sequence[Envelope]) -> str:
    return json.dumps(
        {"v": CURSOR_VERSION, "ids": {env.id: list(_fingerprints(env)) for env in envelopes}},
        sort_keys=True,
        separators=(",", ":"),
    )


def decode_cursor(cursor: Optional[str]) -> Optional[Dict[str, Tuple[str, str]]]:
    """Return the id fingerprints stored in ``cursor``; ``None`` when unusable."""

    if not cursor:
        return None
    try:
        payload = json.loads(cursor)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("v") != CURSOR_VERSION:
        return None
    ids = payload.get("ids")
    if not isinstance(ids, dict):
        return None
    try:
        return {str(key): (value[0], value[1]) for key, value in ids.items()}
    except (TypeError, IndexError, KeyError):
        return None


class HimalayaAdapter:
    """Adapter backed by subprocess calls to the upstream client.

    Args:
      binary: Path of the ``himalaya`` executable.
      attempts: Total runs per command before giving up.
      retry_delay: Fixed pause between runs, in seconds.
      timeout: Per-run timeout in seconds (``None`` disables it).
      page_size: ``--page-size`` used for envelope listings.
      runner: ``subprocess.run`` compatible callable, injectable for tests.
      sleep: Sleep function used between retries.
    """

    multiplexed = False
    body_rendition = Rendition.UPSTREAM

    def __init__(
        self,
        binary: str,
        *,
        attempts: int = 3,
        retry_delay: float = 2.5,
        timeout: Optional[float] = 300.0,
        page_size: int = 999,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[JsonLogger] = None,
    ):
        self.binary = binary
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.page_size = page_size
        self._runner = runner
        self._sleep = sleep
        self.logger = logger or get_logger("mailmirror.remote.himalaya")

    # Process plumbing ----------------------------------------------------
    def _run_once(self, args: Sequence[str]) -> bytes:
        try:
            result = self._runner(
                [self.binary, *args],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise AdapterPermanent(f"upstream binary not found: {self.binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AdapterTransient(f"himalaya {' '.join(args)} timed out") from exc
        except OSError as exc:
            raise AdapterTransient(f"cannot run himalaya: {exc}") from exc
        if result.returncode == 0:
            return result.stdout
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        message = f"himalaya {' '.join(args)} exited {result.returncode}: {stderr}"
        lowered = stderr.lower()
        if any(marker in lowered for marker in _PERMANENT_MARKERS):
            raise AdapterPermanent(message)
        raise AdapterTransient(message)

    def run(self, args: Sequence[str]) -> bytes:
        """Run ``himalaya args`` with retries and return its standard output."""

        return call_with_retry(
            lambda: self._run_once(args),
            attempts=self.attempts,
            base_delay=self.retry_delay,
            sleep=self._sleep,
            logger=self.logger,
            operation=str(args[0]) if args else "himalaya",
        )

    def run_json(self, args: Sequence[str]) -> Any:
        output = self.run([*args, "--output", "json"])
        try:
            return json.loads(output.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise AdapterPermanent(f"unparseable output from himalaya {' '.join(args)}") from exc

    # Adapter contract ----------------------------------------------------
    def list_accounts(self) -> List[AccountRecord]:
        payload = _named_items(self.run_json(["account", "list"]), "account list")
        return [
            AccountRecord(
                name=str(item["name"]),
                backend=item.get("backend"),
                default=bool(item.get("default")),
            )
            for item in payload
        ]

    def list_folders(self, account: str) -> List[RemoteFolder]:
        payload = _named_items(
            self.run_json(["folder", "list", "--account", account]), "folder list"
        )
        return [
            RemoteFolder(name=str(item["name"]), validity_token=VALIDITY_TOKEN, desc=item.get("desc"))
            for item in payload
        ]

    def _list_all(self, account: str, folder: str) -> List[Envelope]:
        envelopes: List[Envelope] = []
        page = 1
        while True:
            payload = self.run_json(
                [
                    "envelope",
                    "list",
                    "--folder",
                    folder,
                    "--account",
                    account,
                    "--page",
                    str(page),
                    "--page-size",
                    str(self.page_size),
                ]
            )
            if not isinstance(payload, list):
                raise AdapterPermanent("envelope list did not return a JSON array")
            envelopes.extend(parse_envelope(item) for item in payload)
            if len(payload) < self.page_size:
                return envelopes
            page += 1

    def list_envelope_changes(
        self, account: str, folder: str, cursor: Optional[str]
    ) -> EnvelopeChanges:
        listing = self._list_all(account, folder)
        new_cursor = encode_cursor(listing)
        previous = decode_cursor(cursor)
        if previous is None:
            return EnvelopeChanges(
                cursor=new_cursor,
                upserts=listing,
                validity_token=VALIDITY_TOKEN,
                complete=True,
            )
        changes = EnvelopeChanges(cursor=new_cursor, validity_token=VALIDITY_TOKEN)
        seen = set()
        for envelope in listing:
            seen.add(envelope.id)
            before = previous.get(envelope.id)
            meta, flag_hash = _fingerprints(envelope)
            if before is None or before[0] != meta:
                changes.upserts.append(envelope)
            elif before[1] != flag_hash:
                changes.flag_updates[envelope.id] = envelope.flags
        changes.tombstones = sorted(set(previous) - seen)
        return changes

    def fetch_body(self, account: str, folder: str, envelope_id: str, mode: FetchState) -> bytes:
        output = self.run(
            ["message", "read", envelope_id, "--folder", folder, "--account", account, "--preview"]
        )
        if mode is FetchState.HEADERS:
            normalised = output.replace(b"\r\n", b"\n")
            head, _, _ = normalised.partition(b"\n\n")
            return head + b"\n"
        return output

    def close(self) -> None:
        return None


def discover_accounts(upstream: HimalayaAdapter) -> List[AccountRecord]:
    """List the accounts configured in the upstream client."""

    return upstream.list_accounts()
