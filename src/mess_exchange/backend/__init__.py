from mess_exchange.backend.base import Entry, Snapshot, StoredFile, TransactionalStore
from mess_exchange.backend.filesystem import FilesystemStore
from mess_exchange.backend.github import GitTreeStore

__all__ = ["Entry", "Snapshot", "StoredFile", "TransactionalStore", "FilesystemStore", "GitTreeStore"]
