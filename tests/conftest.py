"""Shared fixtures: a stepping clock, filesystem stores and an in-memory Git Data API."""

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx
import pytest

from mess_exchange.backend import FilesystemStore, GitTreeStore
from mess_exchange.store import ThreadStore
from mess_exchange.transport.http import HttpClient

REPO = "acme/exchange"


class StepClock:
    """Returns ``start``, then one second later on every call."""

    def __init__(self, start: datetime = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


def _sha(kind: str, payload: bytes) -> str:
    return hashlib.sha1(kind.encode() + b"\0" + payload).hexdigest()


class FakeGitHub:
    """Just enough of the Git Data API for GitTreeStore: refs, commits, trees, blobs."""

    def __init__(self, branch: str = "main"):
        self.branch = branch
        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, dict[str, str]] = {}
        self.commits: dict[str, dict] = {}
        self.patches = 0
        self.rejected = 0
        self.before_patch: Optional[Callable[[], Awaitable[None]]] = None
        empty = self._put_tree({})
        self.head = self._put_commit(empty, [], "init")

    def _put_tree(self, entries: dict[str, str]) -> str:
        sha = _sha("tree", json.dumps(sorted(entries.items())).encode())
        self.trees[sha] = dict(entries)
        return sha

    def _put_commit(self, tree: str, parents: list[str], message: str) -> str:
        sha = _sha("commit", json.dumps([tree, parents, message, len(self.commits)]).encode())
        self.commits[sha] = {"tree": tree, "parents": parents, "message": message}
        return sha

    def _put_blob(self, content: bytes) -> str:
        sha = _sha("blob", content)
        self.blobs[sha] = content
        return sha

    def files(self) -> dict[str, bytes]:
        tree = self.trees[self.commits[self.head]["tree"]]
        return {path: self.blobs[sha] for path, sha in tree.items()}

    def commit_files(self, files: dict[str, bytes], delete: tuple[str, ...] = (), message: str = "direct") -> str:
        """Commit straight to the branch, as another client would."""
        entries = dict(self.trees[self.commits[self.head]["tree"]])
        for path in delete:
            entries.pop(path, None)
        for path, content in files.items():
            entries[path] = self._put_blob(content)
        self.head = self._put_commit(self._put_tree(entries), [self.head], message)
        return self.head

    async def handler(self, request: httpx.Request) -> httpx.Response:
        prefix = f"/repos/{REPO}"
        path = request.url.path[len(prefix):] if request.url.path.startswith(prefix) else request.url.path
        body = json.loads(request.content) if request.content else {}
        method = request.method

        if method == "GET" and path == f"/git/ref/heads/{self.branch}":
            return httpx.Response(200, json={"ref": f"refs/heads/{self.branch}", "object": {"sha": self.head}})
        if method == "GET" and path.startswith("/git/commits/"):
            commit = self.commits.get(path.rsplit("/", 1)[1])
            if commit is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"sha": path.rsplit("/", 1)[1], "tree": {"sha": commit["tree"]}})
        if method == "GET" and path.startswith("/git/trees/"):
            sha = path.rsplit("/", 1)[1]
            tree = self.trees.get(sha)
            if tree is None:
                return httpx.Response(404, json={"message": "Not Found"})
            items = [{"path": p, "mode": "100644", "type": "blob", "sha": s} for p, s in sorted(tree.items())]
            return httpx.Response(200, json={"sha": sha, "tree": items, "truncated": False})
        if method == "GET" and path.startswith("/git/blobs/"):
            content = self.blobs.get(path.rsplit("/", 1)[1])
            if content is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"content": base64.b64encode(content).decode(), "encoding": "base64"})
        if method == "POST" and path == "/git/blobs":
            return httpx.Response(201, json={"sha": self._put_blob(base64.b64decode(body["content"]))})
        if method == "POST" and path == "/git/trees":
            entries = dict(self.trees[body["base_tree"]]) if body.get("base_tree") else {}
            for item in body["tree"]:
                if item["sha"] is None:
                    entries.pop(item["path"], None)
                else:
                    entries[item["path"]] = item["sha"]
            return httpx.Response(201, json={"sha": self._put_tree(entries)})
        if method == "POST" and path == "/git/commits":
            return httpx.Response(201, json={"sha": self._put_commit(body["tree"], body["parents"], body["message"])})
        if method == "PATCH" and path == f"/git/refs/heads/{self.branch}":
            if self.before_patch is not None:
                hook, self.before_patch = self.before_patch, None
                await hook()
            self.patches += 1
            if self.commits[body["sha"]]["parents"] != [self.head] and not body.get("force"):
                self.rejected += 1
                return httpx.Response(422, json={"message": "Update is not a fast forward"})
            self.head = body["sha"]
            return httpx.Response(200, json={"object": {"sha": self.head}})
        return httpx.Response(404, json={"message": f"no route for {method} {path}"})


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def fs_backend(tmp_path):
    return FilesystemStore(tmp_path / "exchange", backoff=(0.0, 0.0))


@pytest.fixture
def store(fs_backend, clock):
    return ThreadStore(fs_backend, clock=clock)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def make_git_store(github, clock):
    """Factory for independent ThreadStores sharing one fake repository."""
    def make() -> ThreadStore:
        http = HttpClient(REPO, token="t0ken", transport=httpx.MockTransport(github.handler))
        return ThreadStore(GitTreeStore(http, backoff=(0.0, 0.0)), clock=clock)
    return make
