"""Hook dispatch."""

import pytest

from mess_exchange.hooks import HookDispatcher, HookEvent
from mess_exchange.models.envelope import Envelope


@pytest.fixture
def envelope():
    return Envelope(ref="2026-02-01-001", requestor="agent",
                    created="2026-02-01T09:00:00.000Z", updated="2026-02-01T09:00:00.000Z")


@pytest.mark.asyncio
async def test_sync_and_async_hooks(envelope):
    seen = []

    async def later(env, event):
        seen.append(("async", event))

    dispatcher = HookDispatcher()
    dispatcher.add_hook(lambda env, event: seen.append(("sync", event)))
    dispatcher.add_hook(later)
    assert len(dispatcher) == 2

    await dispatcher.dispatch(envelope, HookEvent.CREATED)
    assert seen == [("sync", "created"), ("async", "created")]


@pytest.mark.asyncio
async def test_hooks_get_a_copy(envelope):
    def meddle(env, event):
        env.status = "completed"
        env.history.clear()

    dispatcher = HookDispatcher()
    dispatcher.add_hook(meddle)
    await dispatcher.dispatch(envelope, HookEvent.MESSAGE)
    assert envelope.status == "pending"


@pytest.mark.asyncio
async def test_failures_are_recorded_and_bounded(envelope, caplog):
    def broken(env, event):
        raise ValueError("no route to phone")

    seen = []
    dispatcher = HookDispatcher(max_failures=2)
    dispatcher.add_hook(broken)
    dispatcher.add_hook(lambda env, event: seen.append(event))

    for _ in range(3):
        await dispatcher.dispatch(envelope, HookEvent.STATUS_CHANGED)

    assert seen == ["status_changed"] * 3
    assert len(dispatcher.failures) == 2
    failure = dispatcher.failures[-1]
    assert failure.hook.endswith("broken")
    assert failure.ref == "2026-02-01-001"
    assert failure.error == "no route to phone"
    assert "no route to phone" in caplog.text


@pytest.mark.asyncio
async def test_remove_hook(envelope):
    seen = []
    dispatcher = HookDispatcher()
    remove = dispatcher.add_hook(lambda env, event: seen.append(event))
    remove()
    remove()
    await dispatcher.dispatch(envelope, HookEvent.MIGRATED)
    assert seen == []
    assert len(dispatcher) == 0
