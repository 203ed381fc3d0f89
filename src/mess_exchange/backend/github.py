"""
TransactionalStore over the GitHub Git Data API.

Each commit is read ref -> build tree on top of the base commit's tree ->
create commit -> fast-forward the branch. GitHub refuses the fast-forward
when the branch moved after the base was read, which surfaces as
ConflictError. A directory move is one tree rewrite that deletes every
blob under the old path and re-adds the same blob shas under the new one.
"""

import asyncio
import base64
import logging
from collections import OrderedDict
from typing import Any, Iterable, Optional

from mess_exchange.backend.base import (
    DEFAULT_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    Entry,
    Snapshot,
    StoredFile,
    TransactionalStore,
)
from mess_exchange.errors import ConflictError
from mess_exchange.transport.http import HttpClient

logger = logging.getLogger(__name__)

BLOB_MODE = "100644"
_TREE_CACHE_SIZE = 8


class GitSnapshot(Snapshot):
    def __init__(self, store: "GitTreeStore", revision: str, blobs: dict[str, str]):
        self._store = store
        self.revision = revision
        self.blobs = blobs  # root-relative path -> blob sha

    async def entries(self, partition: str) -> list[Entry]:
        prefix = f"{partition}/"
        found: dict[str, bool] = {}
        for path in self.blobs:
            if path.startswith(prefix):
                rest = path[len(prefix):]
                name, sep, _ = rest.partition("/")
                found[name] = found.get(name, False) or bool(sep)
        return [Entry(name, is_dir) for name, is_dir in sorted(found.items())]

    async def read_dir(self, path: str) -> Optional[list[StoredFile]]:
        prefix = f"{path}/"
        children = sorted(
            (p[len(prefix):], sha) for p, sha in self.blobs.items() if p.startswith(prefix) and "/" not in p[len(prefix):]
        )
        if not children:
            return None
        contents = await asyncio.gather(*(self._store.blob(sha) for _, sha in children))
        return [StoredFile(name, content) for (name, _), content in zip(children, contents)]

    async def read_file(self, path: str) -> Optional[bytes]:
        sha = self.blobs.get(path)
        return await self._store.blob(sha) if sha else None


class GitTreeStore(TransactionalStore):
    def __init__(
        self,
        http: HttpClient,
        branch: str = "main",
        root: str = "exchange",
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: tuple[float, float] = DEFAULT_BACKOFF,
    ):
        super().__init__(max_attempts=max_attempts, backoff=backoff)
        self._http = http
        self.branch = branch
        self.root = root.strip("/")
        self._blobs: dict[str, bytes] = {}  # content-addressed, never stale
        self._trees: "OrderedDict[str, tuple[str, dict[str, str]]]" = OrderedDict()

    def _full(self, path: str) -> str:
        return f"{self.root}/{path}" if self.root else path

    async def blob(self, sha: str) -> bytes:
        if sha not in self._blobs:
            data = await self._http.get(f"/git/blobs/{sha}")
            self._blobs[sha] = base64.b64decode(data["content"])
        return self._blobs[sha]

    async def _head(self) -> str:
        data = await self._http.get(f"/git/ref/heads/{self.branch}")
        return data["object"]["sha"]

    async def _tree(self, commit_sha: str) -> tuple[str, dict[str, str]]:
        """``(tree_sha, {root-relative path: blob sha})`` for a commit."""
        if commit_sha in self._trees:
            self._trees.move_to_end(commit_sha)
            return self._trees[commit_sha]
        commit = await self._http.get(f"/git/commits/{commit_sha}")
        tree_sha = commit["tree"]["sha"]
        tree = await self._http.get(f"/git/trees/{tree_sha}", params={"recursive": "1"})
        if tree.get("truncated"):
            logger.warning("Tree %s was truncated by the API; listing is incomplete", tree_sha)
        prefix = f"{self.root}/" if self.root else ""
        blobs = {
            item["path"][len(prefix):]: item["sha"]
            for item in tree.get("tree", [])
            if item.get("type") == "blob" and item["path"].startswith(prefix)
        }
        self._trees[commit_sha] = (tree_sha, blobs)
        if len(self._trees) > _TREE_CACHE_SIZE:
            self._trees.popitem(last=False)
        return tree_sha, blobs

    async def snapshot(self) -> GitSnapshot:
        head = await self._head()
        _, blobs = await self._tree(head)
        return GitSnapshot(self, head, blobs)

    async def _upload(self, path: str, stored: StoredFile) -> dict[str, Any]:
        data = await self._http.post("/git/blobs", {
            "content": base64.b64encode(stored.content).decode("ascii"),
            "encoding": "base64",
        })
        self._blobs[data["sha"]] = stored.content
        return {"path": self._full(path), "mode": BLOB_MODE, "type": "blob", "sha": data["sha"]}

    def _removal(self, path: str) -> dict[str, Any]:
        return {"path": self._full(path), "mode": BLOB_MODE, "type": "blob", "sha": None}

    async def _commit(self, base: str, entries: list[dict[str, Any]], message: str) -> str:
        tree_sha, _ = await self._tree(base)
        tree = await self._http.post("/git/trees", {"base_tree": tree_sha, "tree": entries})
        commit = await self._http.post("/git/commits", {"message": message, "tree": tree["sha"], "parents": [base]})
        await self._http.patch(
            f"/git/refs/heads/{self.branch}", {"sha": commit["sha"], "force": False}, conflict=True,
        )
        logger.debug("Committed %s on %s: %s", commit["sha"], self.branch, message)
        return commit["sha"]

    async def create_files(self, dir_path: str, files: Iterable[StoredFile], *, base: str, message: str = "") -> str:
        _, blobs = await self._tree(base)
        if any(p.startswith(f"{dir_path}/") for p in blobs):
            raise ConflictError(f"{dir_path} already exists", details={"path": dir_path})
        entries = await asyncio.gather(*(self._upload(f"{dir_path}/{f.name}", f) for f in files))
        return await self._commit(base, list(entries), message or f"Create {dir_path}")

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
        _, blobs = await self._tree(base)
        files = list(files)
        replaced = {f.name for f in files} | set(delete)
        entries: list[dict[str, Any]] = []

        if old_path in blobs:
            entries.append(self._removal(old_path))
        else:
            prefix = f"{old_path}/"
            children = {p[len(prefix):]: sha for p, sha in blobs.items() if p.startswith(prefix)}
            if not children:
                raise ConflictError(f"{old_path} is gone", details={"path": old_path})
            for name, sha in sorted(children.items()):
                entries.append(self._removal(f"{old_path}/{name}"))
                if name not in replaced:
                    entries.append({"path": self._full(f"{new_path}/{name}"), "mode": BLOB_MODE, "type": "blob", "sha": sha})
        entries.extend(await asyncio.gather(*(self._upload(f"{new_path}/{f.name}", f) for f in files)))
        return await self._commit(base, entries, message or f"Move {old_path} -> {new_path}")

    async def update_files(
        self,
        dir_path: str,
        files: Iterable[StoredFile],
        *,
        base: str,
        delete: Iterable[str] = (),
        message: str = "",
    ) -> str:
        _, blobs = await self._tree(base)
        if not any(p.startswith(f"{dir_path}/") for p in blobs):
            raise ConflictError(f"{dir_path} is gone", details={"path": dir_path})
        entries = list(await asyncio.gather(*(self._upload(f"{dir_path}/{f.name}", f) for f in files)))
        entries.extend(self._removal(f"{dir_path}/{name}") for name in delete if f"{dir_path}/{name}" in blobs)
        return await self._commit(base, entries, message or f"Update {dir_path}")

    async def close(self) -> None:
        await self._http.close()
