"""Render mirrored data in the upstream client's output shapes.

What:
  Produce the bytes a served command writes to standard output: JSON
  documents shaped like ``himalaya ... -o json`` and, when enabled,
  plain-text tables.

Why:
  Callers parse the upstream client's JSON. A served answer is only a valid
  substitute if field names, nesting, ordering, and string normalisation match
  what the upstream client would have printed.

How:
  Plain dictionaries serialised with :func:`json.dumps` (compact separators,
  non-ASCII kept as-is, one trailing newline). Envelopes are ordered by date,
  newest first, with undated envelopes last, then paged.

Interfaces:
  :func:`render_accounts`, :func:`render_folders`, :func:`render_envelopes`,
  :func:`render_message`, :func:`sort_envelopes`, :func:`page_envelopes`.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..store.models import AccountRecord, Contact, Envelope, FolderRecord

DATE_FORMAT = "%Y-%m-%d %H:%M%z"


def _dump(payload: Any) -> bytes:
    return (json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def _contact(contact: Optional[Contact]) -> Optional[Dict[str, Optional[str]]]:
    return contact.to_dict() if contact is not None else None


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT)
    except ValueError:
        return None


def _id_key(envelope_id: str) -> Tuple[int, int, str]:
    if envelope_id.isdigit():
        return (0, int(envelope_id), "")
    return (1, 0, envelope_id)


def sort_envelopes(envelopes: Sequence[Envelope]) -> List[Envelope]:
    """Newest first, higher numeric id first within the same minute.

    Envelopes without a parseable date keep their order at the end.
    """

    dated = [(parse_date(envelope.date), envelope) for envelope in envelopes]
    with_date = [item for item in dated if item[0] is not None]
    without = [envelope for date, envelope in dated if date is None]
    with_date.sort(key=lambda item: (item[0], _id_key(item[1].id)), reverse=True)
    return [envelope for _, envelope in with_date] + without


def page_envelopes(envelopes: Sequence[Envelope], page: int, page_size: int) -> Optional[List[Envelope]]:
    """Return page ``page`` (1-based); ``None`` when it lies past the last page."""

    start = (page - 1) * page_size
    if start and start >= len(envelopes):
        return None
    return list(envelopes[start : start + page_size])


def envelope_payload(envelope: Envelope) -> Dict[str, Any]:
    return {
        "id": envelope.id,
        "flags": list(envelope.flags),
        "subject": envelope.subject,
        "from": _contact(envelope.sender),
        "to": _contact(envelope.recipients[0]) if envelope.recipients else None,
        "date": envelope.date,
        "has_attachment": envelope.has_attachment,
    }


def _table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> bytes:
    widths = [len(header) for header in headers]
    for row in rows:
        for column, cell in enumerate(row):
            widths[column] = max(widths[column], len(cell))

    def line(cells: Sequence[str]) -> str:
        return "| " + " | ".join(cell.ljust(widths[i]) for i, cell in enumerate(cells)) + " |"

    lines = [line(headers), "|" + "|".join("-" * (width + 2) for width in widths) + "|"]
    lines.extend(line(row) for row in rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


def _flag_marks(envelope: Envelope) -> str:
    marks = ""
    if "Seen" not in envelope.flags:
        marks += "*"
    if "Flagged" in envelope.flags:
        marks += "!"
    if "Answered" in envelope.flags:
        marks += "↵"
    if envelope.has_attachment:
        marks += "@"
    return marks


def render_accounts(accounts: Sequence[AccountRecord], output: str) -> bytes:
    if output == "json":
        return _dump([account.to_dict() for account in accounts])
    rows = [
        (account.name, account.backend or "", "yes" if account.default else "")
        for account in accounts
    ]
    return _table(("NAME", "BACKENDS", "DEFAULT"), rows)


def render_folders(folders: Sequence[FolderRecord], output: str) -> bytes:
    if output == "json":
        return _dump([{"name": folder.name, "desc": folder.desc} for folder in folders])
    return _table(("NAME", "DESC"), [(folder.name, folder.desc or "") for folder in folders])


def render_envelopes(envelopes: Sequence[Envelope], output: str) -> bytes:
    if output == "json":
        return _dump([envelope_payload(envelope) for envelope in envelopes])
    rows = []
    for envelope in envelopes:
        sender = envelope.sender
        who = (sender.name or sender.addr or "") if sender else ""
        rows.append((envelope.id, _flag_marks(envelope), envelope.subject or "", who, envelope.date or ""))
    return _table(("ID", "FLAGS", "SUBJECT", "FROM", "DATE"), rows)


def render_message(content: bytes, output: str) -> bytes:
    """Plain output is the stored upstream rendition; JSON wraps it as a string."""

    if output == "json":
        text = content.decode("utf-8", errors="replace").replace("\r\n", "\n")
        return _dump(text)
    return content
