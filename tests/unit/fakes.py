"""In-memory remotes used by unit tests.

What:
  Provide :class:`FakeRemoteMailbox`, a scriptable implementation of the
  remote mailbox protocol, and :class:`FakeImapBackend`, a drop-in replacement
  for :class:`imapclient.IMAPClient` covering the calls made by
  :class:`mailmirror.remote.imap.ImapAdapter`.

Why:
  Sync and router tests must exercise invalidation, tombstones, and failures
  without spawning the upstream client or contacting a server. Keeping the
  remote state in plain dictionaries makes every scenario explicit.

How:
  :class:`FakeRemoteMailbox` stores folders with a validity token and a dict of
  envelopes plus bodies. Its cursor records the envelopes seen by the previous
  listing so incremental listings report explicit tombstones and flag updates.
  Failure injection hooks raise adapter errors on demand.

  :class:`FakeImapBackend` keeps per-folder ``UIDVALIDITY``,
  ``HIGHESTMODSEQ``, and message records built with ``imapclient``'s own
  response types.

Interfaces:
  :func:`make_envelope`, :class:`FakeRemoteMailbox`, :class:`FakeImapBackend`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from imapclient.response_types import Address
from imapclient.response_types import Envelope as ImapEnvelope

from mailmirror.remote.base import AdapterPermanent, AdapterTransient, EnvelopeChanges, RemoteFolder
from mailmirror.store.models import Contact, Envelope, FetchState, Rendition


def make_envelope(
    envelope_id: str,
    *,
    subject: str = "hello",
    date: Optional[str] = "2024-01-01 10:00+00:00",
    flags: Tuple[str, ...] = (),
    sender: str = "alice@example.com",
) -> Envelope:
    return Envelope(
        id=envelope_id,
        message_id=f"<{envelope_id}@example.com>",
        subject=subject,
        sender=Contact(name="Alice", addr=sender),
        recipients=(Contact(name=None, addr="bob@example.com"),),
        date=date,
        flags=tuple(flags),
        has_attachment=False,
    )


def _fingerprint(envelope: Envelope) -> List:
    payload = envelope.to_dict()
    flags = payload.pop("flags")
    return [json.dumps(payload, sort_keys=True), flags]


@dataclass
class _FakeFolder:
    token: Optional[str]
    desc: Optional[str] = None
    envelopes: Dict[str, Envelope] = field(default_factory=dict)
    bodies: Dict[str, bytes] = field(default_factory=dict)


class FakeRemoteMailbox:
    """Scriptable remote for one or more accounts."""

    multiplexed = False

    def __init__(self, rendition: Rendition = Rendition.UPSTREAM):
        self.body_rendition = rendition
        self.accounts: Dict[str, Dict[str, _FakeFolder]] = {}
        self.fail_listing: Set[str] = set()
        self.fail_changes: Dict[str, Exception] = {}
        self.fail_bodies: Set[str] = set()
        self.report_token: Dict[str, str] = {}
        self.body_calls: List[Tuple[str, str, str]] = []
        self.change_calls: List[Tuple[str, str, Optional[str]]] = []
        self.closed = False

    # Scenario helpers ------------------------------------------------------
    def add_folder(self, account: str, name: str, token: Optional[str] = "V1", desc: str = "") -> None:
        self.accounts.setdefault(account, {})[name] = _FakeFolder(token=token, desc=desc or None)

    def add_message(
        self,
        account: str,
        folder: str,
        envelope_id: str,
        *,
        body: Optional[bytes] = None,
        **kwargs,
    ) -> Envelope:
        envelope = make_envelope(envelope_id, **kwargs)
        target = self.accounts[account][folder]
        target.envelopes[envelope_id] = envelope
        target.bodies[envelope_id] = body if body is not None else f"body of {envelope_id}\n".encode()
        return envelope

    def remove_message(self, account: str, folder: str, envelope_id: str) -> None:
        target = self.accounts[account][folder]
        target.envelopes.pop(envelope_id, None)
        target.bodies.pop(envelope_id, None)

    def set_flags(self, account: str, folder: str, envelope_id: str, flags: Tuple[str, ...]) -> None:
        target = self.accounts[account][folder]
        target.envelopes[envelope_id] = target.envelopes[envelope_id].with_flags(flags)

    def invalidate(self, account: str, folder: str, token: str) -> None:
        """Change the validity token and drop every message, like a recreated folder."""

        target = self.accounts[account][folder]
        target.token = token
        target.envelopes.clear()
        target.bodies.clear()

    def remove_folder(self, account: str, folder: str) -> None:
        del self.accounts[account][folder]

    # Protocol --------------------------------------------------------------
    def list_folders(self, account: str) -> List[RemoteFolder]:
        if account in self.fail_listing:
            raise AdapterTransient(f"cannot list folders of {account}")
        return [
            RemoteFolder(name=name, validity_token=folder.token, desc=folder.desc)
            for name, folder in self.accounts.get(account, {}).items()
        ]

    def list_envelope_changes(
        self, account: str, folder: str, cursor: Optional[str]
    ) -> EnvelopeChanges:
        self.change_calls.append((account, folder, cursor))
        if folder in self.fail_changes:
            raise self.fail_changes[folder]
        target = self.accounts[account][folder]
        listing = sorted(target.envelopes.values(), key=lambda env: env.id)
        new_cursor = json.dumps({env.id: _fingerprint(env) for env in listing}, sort_keys=True)
        token = self.report_token.get(folder, target.token)
        if cursor is None:
            return EnvelopeChanges(cursor=new_cursor, upserts=listing, validity_token=token, complete=True)
        previous = json.loads(cursor)
        changes = EnvelopeChanges(cursor=new_cursor, validity_token=token)
        for env in listing:
            before = previous.get(env.id)
            current = _fingerprint(env)
            if before is None or before[0] != current[0]:
                changes.upserts.append(env)
            elif before[1] != current[1]:
                changes.flag_updates[env.id] = env.flags
        changes.tombstones = sorted(set(previous) - {env.id for env in listing})
        return changes

    def fetch_body(self, account: str, folder: str, envelope_id: str, mode: FetchState) -> bytes:
        self.body_calls.append((account, folder, envelope_id))
        if envelope_id in self.fail_bodies:
            raise AdapterTransient(f"body {envelope_id} unavailable")
        try:
            body = self.accounts[account][folder].bodies[envelope_id]
        except KeyError as exc:
            raise AdapterPermanent(f"no message {envelope_id}") from exc
        if mode is FetchState.HEADERS:
            return body.split(b"\n\n", 1)[0] + b"\n"
        return body

    def close(self) -> None:
        self.closed = True


@dataclass
class _ImapMessage:
    envelope: ImapEnvelope
    flags: Tuple[bytes, ...]
    raw: bytes
    modseq: int
    internaldate: datetime


class FakeImapBackend:
    """Minimal stand-in for :class:`imapclient.IMAPClient`."""

    def __init__(self, *, condstore: bool = True):
        self.condstore = condstore
        self.folders: Dict[str, Dict] = {}
        self.logged_in: Optional[Tuple[str, str]] = None
        self.logged_out = False
        self.selected: Optional[str] = None
        self.enabled: List[str] = []
        self.fetch_calls: List[Tuple[List[int], List, Optional[List[str]]]] = []

    # Scenario helpers ------------------------------------------------------
    def add_folder(self, name: str, uidvalidity: int = 1, flags: Tuple[bytes, ...] = (b"\\HasNoChildren",)) -> None:
        self.folders[name] = {
            "uidvalidity": uidvalidity,
            "modseq": 1,
            "flags": flags,
            "messages": {},
        }

    def add_message(
        self,
        folder: str,
        uid: int,
        *,
        subject: bytes = b"Hello",
        flags: Tuple[bytes, ...] = (),
        raw: Optional[bytes] = None,
        date: Optional[datetime] = None,
    ) -> None:
        box = self.folders[folder]
        box["modseq"] += 1
        when = date or datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)
        envelope = ImapEnvelope(
            date=when,
            subject=subject,
            from_=(Address(b"Alice", None, b"alice", b"example.com"),),
            sender=None,
            reply_to=None,
            to=(Address(None, None, b"bob", b"example.com"),),
            cc=None,
            bcc=None,
            in_reply_to=None,
            message_id=f"<{uid}@example.com>".encode(),
        )
        box["messages"][uid] = _ImapMessage(
            envelope=envelope,
            flags=tuple(flags),
            raw=raw or b"Subject: Hello\r\n\r\nbody " + str(uid).encode() + b"\r\n",
            modseq=box["modseq"],
            internaldate=when,
        )

    def set_flags(self, folder: str, uid: int, flags: Tuple[bytes, ...]) -> None:
        box = self.folders[folder]
        box["modseq"] += 1
        message = box["messages"][uid]
        message.flags = tuple(flags)
        message.modseq = box["modseq"]

    def expunge(self, folder: str, uid: int) -> None:
        box = self.folders[folder]
        box["modseq"] += 1
        del box["messages"][uid]

    # IMAPClient surface ----------------------------------------------------
    def login(self, username: str, password: str) -> None:
        self.logged_in = (username, password)

    def logout(self) -> None:
        self.logged_out = True

    def has_capability(self, name: str) -> bool:
        return self.condstore and name in ("ENABLE", "CONDSTORE")

    def enable(self, *capabilities: str) -> List[str]:
        self.enabled.extend(capabilities)
        return list(capabilities)

    def list_folders(self):
        return [(box["flags"], b"/", name) for name, box in self.folders.items()]

    def folder_status(self, folder: str, what):
        return {b"UIDVALIDITY": self.folders[folder]["uidvalidity"]}

    def select_folder(self, folder: str, readonly: bool = False):
        self.selected = folder
        box = self.folders[folder]
        response = {b"UIDVALIDITY": box["uidvalidity"], b"EXISTS": len(box["messages"])}
        if self.condstore:
            response[b"HIGHESTMODSEQ"] = box["modseq"]
        return response

    def search(self, criteria):
        return sorted(self.folders[self.selected]["messages"])

    def fetch(self, uids, data, modifiers=None):
        self.fetch_calls.append((list(uids), list(data), modifiers))
        box = self.folders[self.selected]
        since = None
        if modifiers:
            since = int(modifiers[0].split()[1])
        response = {}
        for uid in uids:
            message = box["messages"].get(uid)
            if message is None or (since is not None and message.modseq <= since):
                continue
            item = {}
            for key in data:
                name = key if isinstance(key, bytes) else key.encode()
                name = name.replace(b"BODY.PEEK", b"BODY")
                if name == b"ENVELOPE":
                    item[name] = message.envelope
                elif name == b"FLAGS":
                    item[name] = message.flags
                elif name == b"RFC822.SIZE":
                    item[name] = len(message.raw)
                elif name == b"INTERNALDATE":
                    item[name] = message.internaldate
                elif name == b"BODYSTRUCTURE":
                    item[name] = ((b"text", b"plain", None, None, None, b"7bit", 10, 1), b"mixed")
                elif name == b"BODY[]":
                    item[name] = message.raw
                elif name == b"BODY[HEADER]":
                    item[name] = message.raw.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"
                elif name.startswith(b"BODY[HEADER.FIELDS"):
                    item[name] = b"References: <parent@example.com>\r\n\r\n"
            response[uid] = item
        return response
