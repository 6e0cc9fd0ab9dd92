"""Command Router package.

Interfaces:
  - Router / Outcome / RouteState / RouterMiss
  - parse_invocation / ParsedCommand / CommandKind
  - Upstream / ForwardResult
"""

from .commands import CommandKind, ParsedCommand, parse_invocation
from .core import Outcome, RouteState, Router, RouterMiss
from .forward import ForwardResult, Upstream

__all__ = [
    "CommandKind",
    "ForwardResult",
    "Outcome",
    "ParsedCommand",
    "RouteState",
    "Router",
    "RouterMiss",
    "Upstream",
    "parse_invocation",
]
