"""Remote Mailbox Adapter speaking IMAP through ``imapclient``.

What:
  Mirror folders with real protocol validity tokens (``UIDVALIDITY``) and
  incremental change detection (``CONDSTORE``/``HIGHESTMODSEQ`` when the
  server supports it).

Why:
  Re-listing a folder through the upstream CLI on every pass costs a complete
  download of its envelopes. IMAP exposes exactly the signals the sync engine
  needs, so accounts configured with ``adapter: imap`` get cheap incremental
  passes and correct invalidation.

How:
  One lazily opened ``IMAPClient`` connection per adapter, always used in UID
  mode with read-only selections. The cursor is a JSON document holding the
  last ``HIGHESTMODSEQ`` and the UID set of the folder; new UIDs are fetched
  with ``ENVELOPE``/``FLAGS``/``RFC822.SIZE``/``INTERNALDATE``, vanished UIDs
  become tombstones, and flag changes are read with ``CHANGEDSINCE`` (or for
  every known UID when the server lacks ``CONDSTORE``). Bodies are fetched
  through the upstream client when ``bodies_via_upstream`` is set so the router
  can serve them; otherwise the raw RFC 822 source is stored.

Interfaces:
  :class:`ImapAdapter`.

Invariants & Safety:
  - Folders are selected read-only and bodies fetched with ``BODY.PEEK`` so the
    mirror never changes ``\\Seen`` state.
  - Protocol aborts and socket errors drop the connection and surface as
    :class:`AdapterTransient`; login and command errors are permanent.
"""
from __future__ import annotations

import json
import socket
import time
from datetime import datetime
from email.header import decode_header
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from ..config.schema import ImapAccountSettings
from ..store.models import Contact, Envelope, FetchState, Rendition
from ..utils.logging import JsonLogger, get_logger
from .base import (
    AdapterPermanent,
    AdapterTransient,
    EnvelopeChanges,
    RemoteFolder,
    call_with_retry,
)
from .himalaya import HimalayaAdapter


FETCH_CHUNK = 500
ENVELOPE_FIELDS = [
    b"ENVELOPE",
    b"FLAGS",
    b"RFC822.SIZE",
    b"INTERNALDATE",
    b"BODYSTRUCTURE",
    b"BODY.PEEK[HEADER.FIELDS (REFERENCES)]",
]
SYSTEM_FLAGS = {
    "\\Seen": "Seen",
    "\\Answered": "Answered",
    "\\Flagged": "Flagged",
    "\\Deleted": "Deleted",
    "\\Draft": "Draft",
}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def decode_mime_header(raw: Optional[bytes]) -> Optional[str]:
    """Decode RFC 2047 encoded words; malformed headers fall back to raw text."""

    if not raw:
        return None
    text = _text(raw) or ""
    try:
        parts = []
        for content, charset in decode_header(text):
            if isinstance(content, bytes):
                parts.append(content.decode(charset or "utf-8", errors="replace"))
            else:
                parts.append(content)
        return "".join(parts)
    except (LookupError, ValueError):
        return text


def format_date(value: Optional[datetime]) -> Optional[str]:
    """Render ``value`` as ``%Y-%m-%d %H:%M+hh:mm`` like the upstream client."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.astimezone()
    offset = value.strftime("%z")
    return f"{value.strftime('%Y-%m-%d %H:%M')}{offset[:3]}:{offset[3:]}"


def normalise_flags(flags: Iterable[Any]) -> Tuple[str, ...]:
    names = []
    for flag in flags:
        name = _text(flag) or ""
        if name == "\\Recent":
            continue
        names.append(SYSTEM_FLAGS.get(name, name))
    return tuple(sorted(names))


def _address(addr: Any) -> Contact:
    mailbox = _text(addr.mailbox) or ""
    host = _text(addr.host) or ""
    return Contact(
        name=decode_mime_header(addr.name),
        addr=f"{mailbox}@{host}" if host else mailbox or None,
    )


def _has_attachment(structure: Any) -> bool:
    if isinstance(structure, (list, tuple)):
        if structure and isinstance(structure[0], bytes) and structure[0].lower() == b"attachment":
            return True
        return any(_has_attachment(item) for item in structure)
    return False


def _references(raw: Optional[bytes]) -> Tuple[str, ...]:
    if not raw:
        return ()
    text = (_text(raw) or "").replace("\r\n", " ").replace("\n", " ")
    _, _, value = text.partition(":")
    return tuple(token for token in value.split() if token.startswith("<"))


def parse_fetch(uid: int, data: Dict[bytes, Any]) -> Envelope:
    """Build an :class:`Envelope` from one ``FETCH`` response entry."""

    envelope = data.get(b"ENVELOPE")
    sender = None
    recipients: Tuple[Contact, ...] = ()
    subject = message_id = in_reply_to = None
    date = None
    if envelope is not None:
        if envelope.from_:
            sender = _address(envelope.from_[0])
        if envelope.to:
            recipients = tuple(_address(addr) for addr in envelope.to)
        subject = decode_mime_header(envelope.subject)
        message_id = _text(envelope.message_id)
        in_reply_to = _text(envelope.in_reply_to)
        date = envelope.date
    if date is None:
        date = data.get(b"INTERNALDATE")
    references_key = next((key for key in data if key.startswith(b"BODY[HEADER.FIELDS")), None)
    return Envelope(
        id=str(uid),
        message_id=message_id,
        subject=subject,
        sender=sender,
        recipients=recipients,
        date=format_date(date),
        size=data.get(b"RFC822.SIZE"),
        flags=normalise_flags(data.get(b"FLAGS", ())),
        has_attachment=_has_attachment(data.get(b"BODYSTRUCTURE")),
        in_reply_to=in_reply_to,
        references=_references(data.get(references_key) if references_key else None),
    )


def encode_cursor(modseq: Optional[int], uids: Iterable[int]) -> str:
    return json.dumps({"modseq": modseq, "uids": sorted(uids)}, separators=(",", ":"))


def decode_cursor(cursor: Optional[str]) -> Optional[Tuple[Optional[int], List[int]]]:
    if not cursor:
        return None
    try:
        payload = json.loads(cursor)
        return payload.get("modseq"), [int(uid) for uid in payload["uids"]]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError):
        return None


def _chunks(values: Sequence[int], size: int) -> Iterable[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class ImapAdapter:
    """Adapter bound to one IMAP account.

    Args:
      account: Account name used for logging and upstream body fetches.
      settings: Connection parameters from the configuration.
      upstream: Adapter used to fetch bodies in the upstream rendition.
      attempts: Total attempts per operation.
      retry_delay: Base delay for the exponential reconnect backoff.
      client_factory: ``IMAPClient`` compatible constructor, injectable for
        tests.
    """

    multiplexed = False

    def __init__(
        self,
        account: str,
        settings: ImapAccountSettings,
        *,
        upstream: Optional[HimalayaAdapter] = None,
        attempts: int = 3,
        retry_delay: float = 2.5,
        client_factory: Callable[..., Any] = IMAPClient,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[JsonLogger] = None,
    ):
        self.account = account
        self.settings = settings
        self.upstream = upstream
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[Any] = None
        self.logger = logger or get_logger("mailmirror.remote.imap")

    @property
    def body_rendition(self) -> Rendition:
        if self.settings.bodies_via_upstream and self.upstream is not None:
            return Rendition.UPSTREAM
        return Rendition.RFC822

    # Connection handling -------------------------------------------------
    def _password(self) -> str:
        if self.settings.password is not None:
            return self.settings.password
        path = Path(self.settings.password_file or "").expanduser()
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise AdapterPermanent(f"cannot read password file {path}: {exc}") from exc

    def _connect(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            client = self._client_factory(
                self.settings.host, port=self.settings.port, ssl=self.settings.ssl
            )
        except (socket.error, OSError) as exc:
            raise AdapterTransient(f"cannot connect to {self.settings.host}: {exc}") from exc
        try:
            client.login(self.settings.username, self._password())
        except LoginError as exc:
            raise AdapterPermanent(f"login rejected for {self.account}: {exc}") from exc
        if client.has_capability("ENABLE") and client.has_capability("CONDSTORE"):
            try:
                client.enable("CONDSTORE")
            except IMAPClientError as exc:
                self.logger.debug("imap_condstore_unavailable", account=self.account, error=str(exc))
        self._client = client
        return client

    def _drop(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.logout()
        except (IMAPClientError, OSError):
            self.logger.debug("imap_logout_failed", account=self.account)

    def _call(self, operation: str, func: Callable[[Any], Any]) -> Any:
        """Run ``func(client)`` translating protocol errors and retrying transients."""

        def attempt() -> Any:
            client = self._connect()
            try:
                return func(client)
            except IMAPClientAbortError as exc:
                self._drop()
                raise AdapterTransient(f"{operation}: {exc}") from exc
            except (socket.error, OSError) as exc:
                self._drop()
                raise AdapterTransient(f"{operation}: {exc}") from exc
            except IMAPClientError as exc:
                raise AdapterPermanent(f"{operation}: {exc}") from exc

        return call_with_retry(
            attempt,
            attempts=self.attempts,
            base_delay=self.retry_delay,
            factor=2.0,
            sleep=self._sleep,
            logger=self.logger,
            operation=operation,
        )

    # Adapter contract ----------------------------------------------------
    def list_folders(self, account: str) -> List[RemoteFolder]:
        def run(client: Any) -> List[RemoteFolder]:
            folders = []
            for flags, _delimiter, name in client.list_folders():
                flag_names = [_text(flag) or "" for flag in flags]
                if any(flag.lower() == "\\noselect" for flag in flag_names):
                    continue
                folder_name = _text(name) or ""
                status = client.folder_status(folder_name, [b"UIDVALIDITY"])
                token = status.get(b"UIDVALIDITY")
                folders.append(
                    RemoteFolder(
                        name=folder_name,
                        validity_token=str(token) if token is not None else None,
                        desc=", ".join(flag_names) or None,
                    )
                )
            return folders

        return self._call("list_folders", run)

    def _fetch_envelopes(self, client: Any, uids: Sequence[int]) -> List[Envelope]:
        envelopes = []
        for chunk in _chunks(sorted(uids), FETCH_CHUNK):
            response = client.fetch(list(chunk), ENVELOPE_FIELDS)
            for uid in chunk:
                if uid in response:
                    envelopes.append(parse_fetch(uid, response[uid]))
        return envelopes

    def list_envelope_changes(
        self, account: str, folder: str, cursor: Optional[str]
    ) -> EnvelopeChanges:
        previous = decode_cursor(cursor)

        def run(client: Any) -> EnvelopeChanges:
            selected = client.select_folder(folder, readonly=True)
            token = selected.get(b"UIDVALIDITY")
            validity = str(token) if token is not None else None
            modseq = selected.get(b"HIGHESTMODSEQ")
            current = [int(uid) for uid in client.search(["ALL"])]
            new_cursor = encode_cursor(modseq, current)
            if previous is None:
                return EnvelopeChanges(
                    cursor=new_cursor,
                    upserts=self._fetch_envelopes(client, current),
                    validity_token=validity,
                    complete=True,
                )
            old_modseq, old_uids = previous
            known = set(old_uids)
            present = set(current)
            changes = EnvelopeChanges(cursor=new_cursor, validity_token=validity)
            changes.tombstones = [str(uid) for uid in sorted(known - present)]
            changes.upserts = self._fetch_envelopes(client, sorted(present - known))
            retained = sorted(known & present)
            if retained and (old_modseq is None or modseq is None or modseq != old_modseq):
                modifiers = [f"CHANGEDSINCE {old_modseq}"] if old_modseq and modseq else None
                for chunk in _chunks(retained, FETCH_CHUNK):
                    response = client.fetch(list(chunk), [b"FLAGS"], modifiers=modifiers)
                    for uid, data in response.items():
                        changes.flag_updates[str(uid)] = normalise_flags(data.get(b"FLAGS", ()))
            return changes

        return self._call("list_envelope_changes", run)

    def fetch_body(self, account: str, folder: str, envelope_id: str, mode: FetchState) -> bytes:
        if self.body_rendition is Rendition.UPSTREAM:
            return self.upstream.fetch_body(account, folder, envelope_id, mode)
        section = b"BODY.PEEK[HEADER]" if mode is FetchState.HEADERS else b"BODY.PEEK[]"
        uid = int(envelope_id)

        def run(client: Any) -> bytes:
            client.select_folder(folder, readonly=True)
            response = client.fetch([uid], [section])
            data = response.get(uid)
            if not data:
                raise AdapterPermanent(f"message {uid} not found in {folder}")
            key = b"BODY[HEADER]" if mode is FetchState.HEADERS else b"BODY[]"
            return data.get(key) or b""

        return self._call("fetch_body", run)

    def close(self) -> None:
        self._drop()
