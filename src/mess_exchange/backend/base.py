"""
TransactionalStore: atomic file-set commits for thread directories.

Paths are POSIX strings relative to the store root, e.g.
``state=executing/2026-02-01-001``. Every write names the revision it was
computed from (``base``); a store whose head moved since then raises
ConflictError, and :meth:`TransactionalStore.retrying` re-runs the whole
read-modify-write operation a bounded number of times.
"""

import abc
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from mess_exchange.errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = (0.05, 0.25)


@dataclass(frozen=True)
class StoredFile:
    name: str
    content: bytes


@dataclass(frozen=True)
class Entry:
    """Direct child of a partition: a thread directory or a legacy thread file."""

    name: str
    is_dir: bool


class Snapshot(abc.ABC):
    """Read view of the store at one revision."""

    revision: str

    @abc.abstractmethod
    async def entries(self, partition: str) -> list[Entry]:
        ...

    @abc.abstractmethod
    async def read_dir(self, path: str) -> Optional[list[StoredFile]]:
        """Files directly inside ``path``, or None if it is not a directory."""

    @abc.abstractmethod
    async def read_file(self, path: str) -> Optional[bytes]:
        ...


class TransactionalStore(abc.ABC):
    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, backoff: tuple[float, float] = DEFAULT_BACKOFF):
        self.max_attempts = max_attempts
        self.backoff = backoff

    @abc.abstractmethod
    async def snapshot(self) -> Snapshot:
        ...

    @abc.abstractmethod
    async def create_files(self, dir_path: str, files: Iterable[StoredFile], *, base: str, message: str = "") -> str:
        """Write a new directory in one unit. Returns the new revision."""

    @abc.abstractmethod
    async def move_directory(
        self,
        old_path: str,
        new_path: str,
        files: Iterable[StoredFile] = (),
        *,
        base: str,
        delete: Iterable[str] = (),
        message: str = "",
    ) -> str:
        """Relocate ``old_path`` (a directory, or a legacy file) to the directory
        ``new_path`` while applying ``files``/``delete``, in one unit."""

    @abc.abstractmethod
    async def update_files(
        self,
        dir_path: str,
        files: Iterable[StoredFile],
        *,
        base: str,
        delete: Iterable[str] = (),
        message: str = "",
    ) -> str:
        ...

    async def retrying(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` until it commits or conflicts ``max_attempts`` times."""
        attempt = 1
        while True:
            try:
                return await operation()
            except ConflictError as e:
                if attempt >= self.max_attempts:
                    logger.warning("Giving up after %d conflicting attempts: %s", attempt, e)
                    raise
                delay = random.uniform(*self.backoff)
                logger.debug("Commit conflict (attempt %d/%d), retrying in %.3fs", attempt, self.max_attempts, delay)
                attempt += 1
                await asyncio.sleep(delay)

    async def close(self) -> None:
        pass
