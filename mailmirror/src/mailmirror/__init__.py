"""
Module: mailmirror.__init__

What:
  Aggregate package exports for the mailmirror local mail mirror and expose
  the primary namespace segments (configuration, storage, remote adapters,
  synchronisation, routing, and utilities).

Why:
  Entry points and tests import these subpackages by name; an explicit list
  keeps the public surface stable while internal modules evolve.

Interfaces:
  - config: Configuration schema, loader, and cache.
  - store: Crash-consistent Local Store and the mirrored value objects.
  - remote: Adapters for the upstream client and for IMAP.
  - sync: Sync Engine reconciling the store with the remote.
  - router: Command Router serving or forwarding upstream invocations.
  - utils: Logging, identifiers, and folder locks.
"""

__all__ = [
    "config",
    "remote",
    "router",
    "store",
    "sync",
    "utils",
]
