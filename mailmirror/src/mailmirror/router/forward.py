"""Run the upstream client with the caller's exact argument vector."""
from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

NOT_FOUND_EXIT = 127


@dataclass
class ForwardResult:
    """Exit code of a forwarded run plus its output when captured."""

    exit_code: int
    stdout: Optional[bytes] = None
    stderr: Optional[bytes] = None


class Upstream:
    """Launch ``binary`` with stdio inherited, or captured when ``capture`` is set.

    Signals that killed the child are reported the way a shell would
    (``128 + signal``).
    """

    def __init__(
        self,
        binary: str,
        *,
        capture: bool = False,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.binary = binary
        self.capture = capture
        self._runner = runner

    def run(self, argv: Sequence[str]) -> ForwardResult:
        try:
            if self.capture:
                completed = self._runner([self.binary, *argv], capture_output=True, check=False)
            else:
                completed = self._runner([self.binary, *argv], check=False)
        except FileNotFoundError:
            message = f"mailmirror: upstream client not found: {self.binary}\n"
            if self.capture:
                return ForwardResult(NOT_FOUND_EXIT, b"", message.encode("utf-8"))
            sys.stderr.write(message)
            return ForwardResult(NOT_FOUND_EXIT)
        code = completed.returncode
        if code < 0:
            code = 128 - code
        return ForwardResult(
            exit_code=code,
            stdout=completed.stdout if self.capture else None,
            stderr=completed.stderr if self.capture else None,
        )
