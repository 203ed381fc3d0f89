"""
Local filesystem TransactionalStore.

``<root>/.mess/revision`` plays the part of a branch head: every commit
takes the ``<root>/.mess/lock`` directory, checks the head still equals the
revision the caller read, applies its writes and bumps the head. New
directories are staged under ``.mess/staging`` and renamed into place, and
moves are a single ``os.rename``, so readers never see a half-written
thread directory or a thread in two partitions.
"""

import asyncio
import functools
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from mess_exchange.backend.base import (
    DEFAULT_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    Entry,
    Snapshot,
    StoredFile,
    TransactionalStore,
)
from mess_exchange.errors import ConflictError

logger = logging.getLogger(__name__)

META_DIR = ".mess"
INITIAL_REVISION = "0"


def _atomic_write(path: Path, content: bytes) -> None:
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp.write_bytes(content)
    os.replace(tmp, path)


class FilesystemSnapshot(Snapshot):
    def __init__(self, root: Path, revision: str):
        self.root = root
        self.revision = revision

    async def entries(self, partition: str) -> list[Entry]:
        directory = self.root / partition
        try:
            children = sorted(directory.iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return []
        return [Entry(child.name, child.is_dir()) for child in children if not child.name.startswith(".")]

    async def read_dir(self, path: str) -> Optional[list[StoredFile]]:
        directory = self.root / path
        try:
            return [
                StoredFile(child.name, child.read_bytes())
                for child in sorted(directory.iterdir())
                if child.is_file() and not child.name.startswith(".")
            ]
        except (FileNotFoundError, NotADirectoryError):
            # renamed away by a concurrent move
            return None

    async def read_file(self, path: str) -> Optional[bytes]:
        try:
            return (self.root / path).read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None


class FilesystemStore(TransactionalStore):
    def __init__(
        self,
        root: Union[str, Path],
        *,
        lock_timeout: float = 30.0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: tuple[float, float] = DEFAULT_BACKOFF,
    ):
        super().__init__(max_attempts=max_attempts, backoff=backoff)
        self.root = Path(root).expanduser()
        self.lock_timeout = lock_timeout
        self._meta = self.root / META_DIR

    async def snapshot(self) -> FilesystemSnapshot:
        return FilesystemSnapshot(self.root, self._read_revision())

    async def create_files(self, dir_path: str, files: Iterable[StoredFile], *, base: str, message: str = "") -> str:
        return await self._commit(base, functools.partial(self._create, dir_path, list(files)))

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
        return await self._commit(base, functools.partial(self._move, old_path, new_path, list(files), list(delete)))

    async def update_files(
        self,
        dir_path: str,
        files: Iterable[StoredFile],
        *,
        base: str,
        delete: Iterable[str] = (),
        message: str = "",
    ) -> str:
        return await self._commit(base, functools.partial(self._update, dir_path, list(files), list(delete)))

    # ---- commit protocol ----

    async def _commit(self, base: str, apply: Callable[[], None]) -> str:
        return await asyncio.to_thread(self._commit_sync, base, apply)

    def _commit_sync(self, base: str, apply: Callable[[], None]) -> str:
        lock = self._acquire()
        try:
            head = self._read_revision()
            if head != base:
                raise ConflictError(f"store moved from {base} to {head}", details={"base": base, "head": head})
            apply()
            revision = uuid.uuid4().hex
            _atomic_write(self._meta / "revision", revision.encode("ascii"))
            logger.debug("Committed revision %s on top of %s", revision, base)
            return revision
        finally:
            self._release(lock)

    def _acquire(self) -> Path:
        self._meta.mkdir(parents=True, exist_ok=True)
        lock = self._meta / "lock"
        try:
            lock.mkdir()
            return lock
        except FileExistsError:
            pass
        try:
            age = time.time() - lock.stat().st_mtime
        except FileNotFoundError:
            age = 0.0
        if age > self.lock_timeout:
            logger.warning("Breaking stale lock %s (%.0fs old)", lock, age)
            shutil.rmtree(lock, ignore_errors=True)
            try:
                lock.mkdir()
                return lock
            except FileExistsError:
                pass
        raise ConflictError("store is locked by another writer")

    @staticmethod
    def _release(lock: Path) -> None:
        try:
            lock.rmdir()
        except FileNotFoundError:
            logger.warning("Lock %s vanished before release", lock)

    def _read_revision(self) -> str:
        try:
            return (self._meta / "revision").read_text().strip() or INITIAL_REVISION
        except FileNotFoundError:
            return INITIAL_REVISION

    # ---- writes, run under the lock ----

    def _stage(self, files: list[StoredFile]) -> Path:
        staging = self._meta / "staging" / uuid.uuid4().hex
        staging.mkdir(parents=True)
        for stored in files:
            (staging / stored.name).write_bytes(stored.content)
        return staging

    def _create(self, dir_path: str, files: list[StoredFile]) -> None:
        target = self.root / dir_path
        if target.exists():
            raise ConflictError(f"{dir_path} already exists", details={"path": dir_path})
        staging = self._stage(files)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.rename(staging, target)

    def _update(self, dir_path: str, files: list[StoredFile], delete: list[str]) -> None:
        target = self.root / dir_path
        if not target.is_dir():
            raise ConflictError(f"{dir_path} is gone", details={"path": dir_path})
        self._apply(target, files, delete)

    def _move(self, old_path: str, new_path: str, files: list[StoredFile], delete: list[str]) -> None:
        old = self.root / old_path
        new = self.root / new_path
        if new.exists() and old != new:
            raise ConflictError(f"{new_path} already exists", details={"path": new_path})
        new.parent.mkdir(parents=True, exist_ok=True)
        if old.is_dir():
            self._apply(old, files, delete)
            os.rename(old, new)
        elif old.is_file():
            # legacy single file -> directory; the directory wins for readers until the file is gone
            staging = self._stage(files)
            os.rename(staging, new)
            old.unlink()
        else:
            raise ConflictError(f"{old_path} is gone", details={"path": old_path})

    @staticmethod
    def _apply(directory: Path, files: list[StoredFile], delete: list[str]) -> None:
        for stored in files:
            _atomic_write(directory / stored.name, stored.content)
        for name in delete:
            (directory / name).unlink(missing_ok=True)
