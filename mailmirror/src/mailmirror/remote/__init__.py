"""Remote Mailbox Adapters.

Interfaces:
  - RemoteMailbox protocol plus RemoteFolder / EnvelopeChanges
  - HimalayaAdapter (upstream CLI) and ImapAdapter (imapclient)
  - AdapterError / AdapterTransient / AdapterPermanent
"""

from .base import (
    AdapterError,
    AdapterPermanent,
    AdapterTransient,
    EnvelopeChanges,
    RemoteFolder,
    RemoteMailbox,
    call_with_retry,
    retry_delay,
)
from .himalaya import HimalayaAdapter, discover_accounts
from .imap import ImapAdapter

__all__ = [
    "AdapterError",
    "AdapterPermanent",
    "AdapterTransient",
    "EnvelopeChanges",
    "HimalayaAdapter",
    "ImapAdapter",
    "RemoteFolder",
    "RemoteMailbox",
    "call_with_retry",
    "discover_accounts",
    "retry_delay",
]
