"""Trigger sources.

Each source turns one kind of external signal into ``ExecutionTrigger``s sent
through a shared ``TriggerChannel``.

Available sources
-----------------
FileWatcher     — recursive filesystem changes, filtered and debounced (files.py)
NetworkWatcher  — UDP datagrams and TCP connections carrying the key (network.py)

client.py holds the sending side used by ``witness --trigger``.
"""

from witness.sources.files import FileFilter, FileWatcher, FilterReason
from witness.sources.network import NetworkWatcher, matches_key

__all__ = [
    "FileFilter",
    "FileWatcher",
    "FilterReason",
    "NetworkWatcher",
    "matches_key",
]
