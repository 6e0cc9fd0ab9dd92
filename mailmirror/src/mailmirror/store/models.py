"""Value objects exchanged between the adapters, the store, and the router.

What:
  Define the mirrored entities (:class:`Envelope`, :class:`Contact`,
  :class:`FolderRecord`, :class:`MessageBody`, :class:`SyncCheckpoint`,
  :class:`FolderSnapshot`, :class:`AccountRecord`) and the body fetch state
  machine (:class:`FetchState`).

Why:
  The sync engine writes these objects, the router reads them, and both must
  agree on the exact fields rendered back in the upstream client's shape.
  Keeping them as plain dataclasses decouples tests from SQLite and from
  ``imapclient`` response types.

How:
  Frozen dataclasses with ``to_dict``/``from_dict`` helpers used by the SQLite
  layer for JSON columns. :class:`FetchState` carries a rank so forward-only
  transitions can be enforced with a single comparison.

Invariants & Safety:
  - ``FetchState`` transitions only move forward
    (``absent -> headers-only -> full``); :meth:`FetchState.advance` never
    returns a lower rank than the current state.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class FetchState(str, Enum):
    """Lifecycle of a mirrored message body."""

    ABSENT = "absent"
    HEADERS = "headers-only"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def advance(self, target: "FetchState") -> "FetchState":
        """Return the state reached when ``target`` content arrives."""

        return target if target.rank > self.rank else self


_RANKS = {FetchState.ABSENT: 0, FetchState.HEADERS: 1, FetchState.FULL: 2}


class Rendition(str, Enum):
    """How body bytes relate to what the upstream client prints."""

    UPSTREAM = "upstream"
    RFC822 = "rfc822"


@dataclass(frozen=True)
class Contact:
    """Name and address pair as rendered by the upstream client."""

    name: Optional[str] = None
    addr: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "addr": self.addr}

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> Optional["Contact"]:
        if not payload:
            return None
        return cls(name=payload.get("name"), addr=payload.get("addr"))


@dataclass(frozen=True)
class Envelope:
    """Mirrored envelope of one message in one folder.

    Attributes:
      id: Remote id, unique within ``(folder, validity_token)`` only.
      message_id: Protocol ``Message-ID``; best-effort globally stable.
      subject: Decoded subject line.
      sender: First ``From`` contact.
      recipients: ``To`` contacts in header order.
      date: Upstream-formatted date (``%Y-%m-%d %H:%M%:z``).
      size: Message size in bytes when the remote reports it.
      flags: Upstream flag names (``Seen``, ``Flagged`` ...).
      has_attachment: Attachment hint from the listing.
      in_reply_to: ``In-Reply-To`` message id.
      references: Thread ``References`` ids.
    """

    id: str
    message_id: Optional[str] = None
    subject: Optional[str] = None
    sender: Optional[Contact] = None
    recipients: Tuple[Contact, ...] = ()
    date: Optional[str] = None
    size: Optional[int] = None
    flags: Tuple[str, ...] = ()
    has_attachment: Optional[bool] = None
    in_reply_to: Optional[str] = None
    references: Tuple[str, ...] = ()

    def with_flags(self, flags: Tuple[str, ...]) -> "Envelope":
        return replace(self, flags=tuple(flags))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "subject": self.subject,
            "sender": self.sender.to_dict() if self.sender else None,
            "recipients": [contact.to_dict() for contact in self.recipients],
            "date": self.date,
            "size": self.size,
            "flags": list(self.flags),
            "has_attachment": self.has_attachment,
            "in_reply_to": self.in_reply_to,
            "references": list(self.references),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Envelope":
        recipients = tuple(
            contact
            for contact in (Contact.from_dict(item) for item in payload.get("recipients") or [])
            if contact is not None
        )
        return cls(
            id=str(payload["id"]),
            message_id=payload.get("message_id"),
            subject=payload.get("subject"),
            sender=Contact.from_dict(payload.get("sender")),
            recipients=recipients,
            date=payload.get("date"),
            size=payload.get("size"),
            flags=tuple(payload.get("flags") or ()),
            has_attachment=payload.get("has_attachment"),
            in_reply_to=payload.get("in_reply_to"),
            references=tuple(payload.get("references") or ()),
        )


@dataclass(frozen=True)
class MessageBody:
    """Mirrored body of one envelope and where it stands in its lifecycle."""

    envelope_id: str
    state: FetchState = FetchState.ABSENT
    content: Optional[bytes] = None
    rendition: Rendition = Rendition.UPSTREAM
    requested: bool = False


@dataclass(frozen=True)
class FolderRecord:
    """Folder as discovered in the remote listing."""

    name: str
    desc: Optional[str] = None
    validity_token: Optional[str] = None
    sync_cursor: Optional[str] = None


@dataclass(frozen=True)
class SyncCheckpoint:
    """Last committed sync position of a folder plus the latest attempt."""

    folder: str
    validity_token: Optional[str]
    cursor: Optional[str]
    committed_at: Optional[str]
    attempt_status: Optional[str] = None
    attempt_error: Optional[str] = None
    attempt_started_at: Optional[str] = None

    @property
    def interrupted(self) -> bool:
        return self.attempt_status == "running"

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class FolderSnapshot:
    """Consistent view of one folder as of its last committed transaction."""

    folder: str
    validity_token: Optional[str]
    cursor: Optional[str]
    envelopes: List[Envelope] = field(default_factory=list)
    committed_at: Optional[str] = None


@dataclass(frozen=True)
class AccountRecord:
    """Account entry rendered by ``account list``."""

    name: str
    backend: Optional[str] = None
    default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "backend": self.backend, "default": self.default}
