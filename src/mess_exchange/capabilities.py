"""
Capability catalog: read-only ``{id, description, tags}`` routing hints.

Each ``*.yaml`` file in the catalog directory holds one capability, or a
list of them. Nothing in the exchange enforces capabilities.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class Capability(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    description: str
    tags: list[str] = Field(default_factory=list)


def load_capability_file(path: Path) -> list[Capability]:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return []
    docs = data if isinstance(data, list) else [data]
    return [Capability.model_validate(doc) for doc in docs]


class CapabilityCatalog:
    def __init__(
        self,
        directory: Union[str, Path],
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directory = Path(directory)
        self.ttl = ttl
        self._clock = clock
        self._cache: Optional[list[Capability]] = None
        self._loaded_at = 0.0

    def load(self) -> list[Capability]:
        """Read every capability file, skipping ones that fail to parse."""
        found: dict[str, Capability] = {}
        if not self.directory.is_dir():
            logger.debug("Capability directory %s does not exist", self.directory)
            return []
        for path in sorted(self.directory.glob("*.yaml")):
            try:
                capabilities = load_capability_file(path)
            except (OSError, yaml.YAMLError, PydanticValidationError) as e:
                logger.warning("Skipping capability file %s: %s", path, e)
                continue
            for capability in capabilities:
                if capability.id in found:
                    logger.warning("Duplicate capability %s in %s", capability.id, path)
                found[capability.id] = capability
        return sorted(found.values(), key=lambda c: c.id)

    def list(self, tag: Optional[str] = None) -> list[Capability]:
        now = self._clock()
        if self._cache is None or now - self._loaded_at >= self.ttl:
            self._cache = self.load()
            self._loaded_at = now
        if tag is None:
            return list(self._cache)
        return [c for c in self._cache if tag in c.tags]

    def get(self, capability_id: str) -> Optional[Capability]:
        for capability in self.list():
            if capability.id == capability_id:
                return capability
        return None

    def invalidate(self) -> None:
        self._cache = None
