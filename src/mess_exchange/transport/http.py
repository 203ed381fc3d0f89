"""
REST client for the GitHub Git Data API (refs, commits, trees, blobs).
"""

from typing import Any, Optional

import httpx

from mess_exchange.errors import BackendError, ConflictError, NotFoundError, ValidationError

DEFAULT_API_URL = "https://api.github.com"


class HttpClient:
    def __init__(
        self,
        repo: str,
        token: Optional[str] = None,
        base_url: str = DEFAULT_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        owner, _, name = repo.partition("/")
        if not owner or not name:
            raise ValidationError(f"repository must look like owner/name, got {repo!r}")
        self.repo = repo
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/repos/{owner}/{name}",
            headers={"User-Agent": "mess-exchange/0.1.0", "Accept": "application/vnd.github+json"},
            timeout=timeout,
            transport=transport,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    @staticmethod
    def _check(resp: httpx.Response, conflict: bool = False) -> Any:
        if resp.status_code == 404:
            raise NotFoundError(f"GitHub 404: {resp.request.url.path}")
        if conflict and resp.status_code in (409, 422):
            raise ConflictError(f"GitHub {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise BackendError(f"HTTP {resp.status_code}: {resp.text[:200]}", details={"status": resp.status_code})
        return resp.json()

    async def get(self, path: str, params: Optional[dict[str, str]] = None) -> Any:
        resp = await self._client.get(path, params=params, headers=self._auth_headers())
        return self._check(resp)

    async def post(self, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        resp = await self._client.post(path, json=body, headers=self._auth_headers())
        return self._check(resp)

    async def patch(self, path: str, body: Optional[dict[str, Any]] = None, conflict: bool = False) -> Any:
        """PATCH; with ``conflict`` a 409/422 answer means the target moved."""
        resp = await self._client.patch(path, json=body, headers=self._auth_headers())
        return self._check(resp, conflict=conflict)

    async def close(self) -> None:
        await self._client.aclose()
