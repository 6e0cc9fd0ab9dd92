"""Classify an upstream-client invocation into a cache-servable command or a forward.

What:
  Parse the argument vector the user passed (exactly what they would have
  passed to ``himalaya``) into a :class:`ParsedCommand` whose ``kind`` is one
  of the closed :class:`CommandKind` variants.

Why:
  Serving a read from the mirror is only safe when every argument is
  understood. Anything unfamiliar (an unknown option, search terms, a config
  override, help output) must reach the upstream client untouched, so the
  parser errs on the side of :attr:`CommandKind.FORWARD` and records why.

How:
  A single pass separates recognised options (``--opt value``,
  ``--opt=value``, and short forms) from positionals, then matches the
  positionals against the four supported command shapes and checks that only
  the options valid for that shape were given.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple


class CommandKind(str, Enum):
    ACCOUNT_LIST = "account-list"
    FOLDER_LIST = "folder-list"
    ENVELOPE_LIST = "envelope-list"
    MESSAGE_READ = "message-read"
    FORWARD = "forward"


_VALUE_OPTIONS: Dict[str, str] = {
    "-a": "account",
    "--account": "account",
    "-f": "folder",
    "--folder": "folder",
    "-o": "output",
    "--output": "output",
    "-p": "page",
    "--page": "page",
    "-s": "page_size",
    "--page-size": "page_size",
}
# Served reads never touch flags, so --preview is accepted and changes nothing.
_FLAG_OPTIONS: Dict[str, str] = {"--preview": "preview"}

_SHAPES: Dict[Tuple[str, str], Tuple[CommandKind, frozenset]] = {
    ("account", "list"): (CommandKind.ACCOUNT_LIST, frozenset({"output"})),
    ("folder", "list"): (CommandKind.FOLDER_LIST, frozenset({"account", "output"})),
    ("envelope", "list"): (
        CommandKind.ENVELOPE_LIST,
        frozenset({"account", "folder", "output", "page", "page_size"}),
    ),
    ("message", "read"): (
        CommandKind.MESSAGE_READ,
        frozenset({"account", "folder", "output", "preview"}),
    ),
}
OUTPUT_FORMATS = ("plain", "json")


@dataclass(frozen=True)
class ParsedCommand:
    """Result of :func:`parse_invocation`.

    ``argv`` is always the untouched input so a forward can replay it.
    """

    kind: CommandKind
    argv: Tuple[str, ...]
    account: Optional[str] = None
    folder: Optional[str] = None
    output: str = "plain"
    page: int = 1
    page_size: Optional[int] = None
    envelope_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def servable(self) -> bool:
        return self.kind is not CommandKind.FORWARD


def _forward(argv: Tuple[str, ...], reason: str) -> ParsedCommand:
    return ParsedCommand(kind=CommandKind.FORWARD, argv=argv, reason=reason)


def _positive_int(value: str) -> Optional[int]:
    if not value.isdigit():
        return None
    number = int(value)
    return number if number > 0 else None


def parse_invocation(argv: Sequence[str]) -> ParsedCommand:
    """Parse ``argv`` (without the program name) into a :class:`ParsedCommand`."""

    original = tuple(argv)
    options: Dict[str, str] = {}
    positionals: List[str] = []
    index = 0
    while index < len(original):
        token = original[index]
        index += 1
        if token == "--":
            return _forward(original, "argument separator")
        if not token.startswith("-") or token == "-":
            positionals.append(token)
            continue
        name, has_inline, inline = token.partition("=")
        if not has_inline:
            name = token
        if name in _FLAG_OPTIONS:
            if has_inline:
                return _forward(original, f"unsupported option form {token}")
            key = _FLAG_OPTIONS[name]
        elif name in _VALUE_OPTIONS:
            key = _VALUE_OPTIONS[name]
            if has_inline:
                value = inline
            elif index < len(original):
                value = original[index]
                index += 1
            else:
                return _forward(original, f"missing value for {name}")
        else:
            return _forward(original, f"unsupported option {name}")
        if key in options:
            return _forward(original, f"repeated option {name}")
        options[key] = "true" if key in _FLAG_OPTIONS.values() else value

    if len(positionals) < 2:
        return _forward(original, "no cache-servable subcommand")
    shape = _SHAPES.get((positionals[0], positionals[1]))
    if shape is None:
        return _forward(original, f"command {positionals[0]} {positionals[1]} is not cached")
    kind, allowed = shape
    extra = sorted(set(options) - allowed)
    if extra:
        return _forward(original, f"option {extra[0]} not servable for {kind.value}")
    rest = positionals[2:]
    envelope_id = None
    if kind is CommandKind.MESSAGE_READ:
        if len(rest) != 1:
            return _forward(original, "message read needs exactly one id")
        envelope_id = rest[0]
    elif rest:
        return _forward(original, "query or extra arguments")

    output = options.get("output", "plain")
    if output not in OUTPUT_FORMATS:
        return _forward(original, f"output format {output}")
    page = 1
    if "page" in options:
        parsed_page = _positive_int(options["page"])
        if parsed_page is None:
            return _forward(original, "invalid page")
        page = parsed_page
    page_size = None
    if "page_size" in options:
        page_size = _positive_int(options["page_size"])
        if page_size is None:
            return _forward(original, "invalid page size")

    return ParsedCommand(
        kind=kind,
        argv=original,
        account=options.get("account"),
        folder=options.get("folder"),
        output=output,
        page=page,
        page_size=page_size,
        envelope_id=envelope_id,
    )
