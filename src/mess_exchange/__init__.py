"""
mess-exchange: MESS thread persistence and lifecycle.

Request threads between agents and executors, stored as MESSE-AF YAML on
the local filesystem or a GitHub repository.
"""

__version__ = "0.1.0"

from mess_exchange.errors import (
    AlreadyClaimedError,
    BackendError,
    ConflictError,
    FormatError,
    InvalidTransitionError,
    MessError,
    NotFoundError,
    SizeLimitError,
    ValidationError,
)
from mess_exchange.lifecycle import Folder, Status
from mess_exchange.models import Attachment, Envelope, HistoryEntry, Message, Thread, ThreadEvent
from mess_exchange.backend import FilesystemStore, GitTreeStore
from mess_exchange.hooks import HookDispatcher
from mess_exchange.store import ThreadStore
from mess_exchange.replay import fold_events, load_event_log
from mess_exchange.watcher import ThreadWatcher
from mess_exchange.capabilities import CapabilityCatalog

__all__ = [
    "ThreadStore",
    "FilesystemStore",
    "GitTreeStore",
    "HookDispatcher",
    "ThreadWatcher",
    "CapabilityCatalog",
    "fold_events",
    "load_event_log",
    "Status",
    "Folder",
    "Envelope",
    "HistoryEntry",
    "Message",
    "Attachment",
    "Thread",
    "ThreadEvent",
    "MessError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "AlreadyClaimedError",
    "ConflictError",
    "SizeLimitError",
    "FormatError",
    "BackendError",
]
