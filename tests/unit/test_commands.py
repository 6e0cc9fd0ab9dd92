"""Invocation classification tests.

What:
  Check :func:`mailmirror.router.commands.parse_invocation` against the
  command shapes the mirror can answer and the invocations it must forward.

Why:
  A misclassified command either serves data for a request the mirror does
  not understand or needlessly pays the upstream latency. The argument vector
  must also survive classification byte for byte.
"""

import pytest

from mailmirror.router.commands import CommandKind, parse_invocation


def test_envelope_list_with_all_options() -> None:
    argv = ["envelope", "list", "--account", "work", "-f", "Archive", "-o", "json", "--page=2", "-s", "5"]

    command = parse_invocation(argv)

    assert command.kind is CommandKind.ENVELOPE_LIST
    assert command.servable
    assert command.argv == tuple(argv)
    assert (command.account, command.folder, command.output) == ("work", "Archive", "json")
    assert (command.page, command.page_size) == (2, 5)


def test_options_may_precede_the_subcommand() -> None:
    command = parse_invocation(["-a", "home", "folder", "list"])
    assert command.kind is CommandKind.FOLDER_LIST
    assert command.account == "home"
    assert command.output == "plain"


def test_message_read_takes_exactly_one_id() -> None:
    command = parse_invocation(["message", "read", "--folder", "INBOX", "42"])
    assert command.kind is CommandKind.MESSAGE_READ
    assert command.envelope_id == "42"
    assert command.folder == "INBOX"

    assert parse_invocation(["message", "read", "1", "2"]).kind is CommandKind.FORWARD
    assert parse_invocation(["message", "read"]).kind is CommandKind.FORWARD


def test_account_list_defaults() -> None:
    command = parse_invocation(["account", "list"])
    assert command.kind is CommandKind.ACCOUNT_LIST
    assert command.page == 1
    assert command.page_size is None


@pytest.mark.parametrize(
    "argv, reason",
    [
        ([], "no cache-servable subcommand"),
        (["--help"], "unsupported option --help"),
        (["message", "send"], "command message send is not cached"),
        (["envelope", "list", "from", "alice"], "query or extra arguments"),
        (["envelope", "list", "--", "subject"], "argument separator"),
        (["account", "list", "--account", "work"], "option account not servable for account-list"),
        (["envelope", "list", "-o", "yaml"], "output format yaml"),
        (["envelope", "list", "--page", "0"], "invalid page"),
        (["envelope", "list", "--page-size", "ten"], "invalid page size"),
        (["envelope", "list", "-f", "A", "--folder", "B"], "repeated option --folder"),
        (["envelope", "list", "--folder"], "missing value for --folder"),
        (["message", "read", "--preview=yes", "1"], "unsupported option form --preview=yes"),
        (["-c", "other.toml", "envelope", "list"], "unsupported option -c"),
    ],
)
def test_unsupported_invocations_are_forwarded(argv, reason) -> None:
    command = parse_invocation(argv)
    assert command.kind is CommandKind.FORWARD
    assert not command.servable
    assert command.reason == reason
    assert command.argv == tuple(argv)


def test_preview_flag_is_accepted() -> None:
    command = parse_invocation(["message", "read", "--preview", "7"])
    assert command.kind is CommandKind.MESSAGE_READ
    assert command.servable
    assert command.envelope_id == "7"
