"""
Polling watcher for changes made outside this process.

One tick lists every envelope and compares it with the last-known state.
Ticks never overlap; a tick that comes due while the previous one is still
running is skipped. The watcher only reads.
"""

import asyncio
import logging
from typing import Optional

from mess_exchange.hooks import Hook, HookDispatcher
from mess_exchange.lifecycle import normalize_status
from mess_exchange.models.envelope import Envelope
from mess_exchange.store import ThreadStore

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


def status_event(status: str) -> str:
    return f"status:{normalize_status(status)}"


class WatchState:
    """Last-known ``(updated, status)`` per thread ref."""

    def __init__(self):
        self._known: dict[str, tuple[str, str]] = {}

    def __len__(self) -> int:
        return len(self._known)

    def __contains__(self, ref: str) -> bool:
        return ref in self._known

    def reset(self) -> None:
        self._known.clear()

    def record(self, envelopes: list[Envelope]) -> None:
        for envelope in envelopes:
            self._known[envelope.ref] = (envelope.updated, normalize_status(envelope.status))

    def diff(self, envelopes: list[Envelope]) -> list[tuple[Envelope, str]]:
        """Changes since the last call, recording the new state."""
        changes: list[tuple[Envelope, str]] = []
        for envelope in envelopes:
            status = normalize_status(envelope.status)
            previous = self._known.get(envelope.ref)
            if previous is None:
                changes.append((envelope, CREATED))
            elif previous[0] != envelope.updated:
                changes.append((envelope, UPDATED))
                if previous[1] != status:
                    changes.append((envelope, status_event(status)))
            self._known[envelope.ref] = (envelope.updated, status)
        return changes


class ThreadWatcher:
    def __init__(
        self,
        store: ThreadStore,
        interval: float = 5.0,
        *,
        hooks: Optional[HookDispatcher] = None,
        on_change: Optional[Hook] = None,
        state: Optional[WatchState] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.store = store
        self.interval = interval
        self.hooks = hooks if hooks is not None else HookDispatcher()
        if on_change is not None:
            self.hooks.add_hook(on_change)
        self.state = state if state is not None else WatchState()
        self.ticks = 0
        self.skipped = 0
        self._stop = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def prime(self) -> int:
        """Record the current state without emitting anything."""
        envelopes = await self.store.list()
        self.state.record(envelopes)
        return len(envelopes)

    async def poll_once(self) -> list[tuple[Envelope, str]]:
        changes = self.state.diff(await self.store.list())
        for envelope, event_type in changes:
            logger.debug("%s: %s", envelope.ref, event_type)
            await self.hooks.dispatch(envelope, event_type)
        return changes

    async def _tick(self) -> None:
        try:
            await self.poll_once()
        except Exception as e:
            logger.warning("Watch tick failed: %s", e)

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Poll every ``interval`` seconds until :meth:`stop` or ``max_ticks`` ticks."""
        self._stop.clear()
        self._running = True
        task: Optional[asyncio.Task] = None
        try:
            while not self._stop.is_set():
                if task is not None and not task.done():
                    self.skipped += 1
                    logger.debug("Previous tick still running, skipping")
                else:
                    task = asyncio.create_task(self._tick())
                    self.ticks += 1
                    if max_ticks is not None and self.ticks >= max_ticks:
                        break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
            if task is not None:
                await task
        finally:
            self._running = False

    def stop(self) -> None:
        self._stop.set()
