"""
Post-commit notifications.

Hooks run after a write has committed. They are advisory: a failing hook
is logged and recorded, never turned into a failure of the write.
"""

import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from mess_exchange.models.envelope import Envelope

logger = logging.getLogger(__name__)

Hook = Callable[[Envelope, str], Union[None, Awaitable[None]]]


class HookEvent:
    CREATED = "created"
    MESSAGE = "message"
    STATUS_CHANGED = "status_changed"
    MIGRATED = "migrated"


@dataclass(frozen=True)
class HookFailure:
    hook: str
    event_type: str
    ref: str
    error: str


def _hook_name(hook: Any) -> str:
    return getattr(hook, "__qualname__", None) or repr(hook)


class HookDispatcher:
    def __init__(self, max_failures: int = 100):
        self._hooks: list[Hook] = []
        self.failures: deque[HookFailure] = deque(maxlen=max_failures)

    def add_hook(self, hook: Hook) -> Callable[[], None]:
        """Register ``hook``. Returns a function that unregisters it."""
        self._hooks.append(hook)
        def remove() -> None:
            try:
                self._hooks.remove(hook)
            except ValueError:
                pass
        return remove

    def __len__(self) -> int:
        return len(self._hooks)

    async def dispatch(self, envelope: Envelope, event_type: str, hooks: Optional[list[Hook]] = None) -> None:
        for hook in list(self._hooks if hooks is None else hooks):
            try:
                result = hook(envelope.model_copy(deep=True), event_type)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Hook %s failed on %s for %s: %s", _hook_name(hook), event_type, envelope.ref, e)
                self.failures.append(HookFailure(
                    hook=_hook_name(hook), event_type=event_type, ref=envelope.ref, error=str(e),
                ))
