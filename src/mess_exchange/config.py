"""Environment-bound configuration.

Every field reads from a ``MESS_``-prefixed environment variable or ``.env``:

    MESS_BACKEND=github MESS_GITHUB_REPO=acme/exchange MESS_GITHUB_TOKEN=... mess list
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from mess_exchange.attachments import AttachmentManager, ResourceRegistry
from mess_exchange.backend import FilesystemStore, GitTreeStore, TransactionalStore
from mess_exchange.errors import ValidationError
from mess_exchange.hooks import HookDispatcher
from mess_exchange.store import ThreadStore
from mess_exchange.transport.http import DEFAULT_API_URL, HttpClient


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend: Literal["filesystem", "github"] = "filesystem"
    data_dir: Path = Field(default=Path("~/.mess/exchange"))

    github_repo: Optional[str] = None
    github_token: Optional[SecretStr] = None
    github_branch: str = "main"
    github_root: str = "exchange"
    github_api_url: str = DEFAULT_API_URL

    agent_id: str = "cli"
    poll_interval: float = Field(default=5.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    resource_ttl: float = Field(default=300.0, gt=0)
    capabilities_dir: Optional[Path] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def build_backend(settings: Settings) -> TransactionalStore:
    if settings.backend == "github":
        if not settings.github_repo:
            raise ValidationError("MESS_GITHUB_REPO is required for the github backend")
        token = settings.github_token.get_secret_value() if settings.github_token else None
        http = HttpClient(settings.github_repo, token=token, base_url=settings.github_api_url)
        return GitTreeStore(
            http,
            branch=settings.github_branch,
            root=settings.github_root,
            max_attempts=settings.max_attempts,
        )
    return FilesystemStore(settings.data_dir, max_attempts=settings.max_attempts)


def build_store(settings: Optional[Settings] = None, hooks: Optional[HookDispatcher] = None) -> ThreadStore:
    settings = settings or get_settings()
    attachments = AttachmentManager(registry=ResourceRegistry(ttl=settings.resource_ttl))
    return ThreadStore(build_backend(settings), attachments=attachments, hooks=hooks)
