"""Status transitions and partition mapping."""

import itertools

import pytest

from mess_exchange import lifecycle
from mess_exchange.errors import AlreadyClaimedError, InvalidTransitionError, ValidationError
from mess_exchange.lifecycle import FOLDERS, STATES, TERMINAL_STATES, TRANSITIONS, Folder, Status
from mess_exchange.models.envelope import Envelope, HistoryEntry

AT = "2026-02-01T10:00:00.000Z"


def _envelope(status: str = Status.PENDING, executor=None) -> Envelope:
    return Envelope(
        ref="2026-02-01-001",
        requestor="agent",
        executor=executor,
        status=status,
        created="2026-02-01T09:00:00.000Z",
        updated="2026-02-01T09:00:00.000Z",
        intent="check garage door",
        history=[HistoryEntry(action="created", at="2026-02-01T09:00:00.000Z", by="agent")],
    )


@pytest.mark.parametrize("current,requested", list(itertools.product(sorted(STATES), sorted(STATES))))
def test_apply_accepts_exactly_the_table(current, requested):
    # an executor is set for every post-claim state so claims hit the table, not the ownership check
    executor = None if current == Status.PENDING else "teague"
    envelope = _envelope(current, executor=executor if requested != Status.CLAIMED else None)
    legal = requested in TRANSITIONS[current]
    if legal:
        entry = lifecycle.apply(envelope, requested, "teague", at=AT, ref="2026-02-01-001/status-001")
        assert entry is not None
        assert envelope.status == requested
        assert envelope.history[-1] == entry
        assert envelope.updated == AT
    else:
        before = envelope.model_copy(deep=True)
        with pytest.raises(InvalidTransitionError):
            lifecycle.apply(envelope, requested, "teague", at=AT)
        assert envelope == before


def test_terminal_states_have_no_exits():
    for status in TERMINAL_STATES:
        assert TRANSITIONS[status] == frozenset()
        assert lifecycle.is_terminal(status)


def test_first_claim_sets_executor():
    envelope = _envelope()
    entry = lifecycle.apply(envelope, "claimed", "teague", at=AT, ref="2026-02-01-001/claim-001")
    assert envelope.executor == "teague"
    assert entry.action == "claimed"
    assert entry.by == "teague"
    assert entry.ref == "2026-02-01-001/claim-001"
    assert [h.action for h in envelope.history] == ["created", "claimed"]


def test_competing_claim_is_rejected():
    envelope = _envelope(Status.CLAIMED, executor="teague")
    with pytest.raises(AlreadyClaimedError) as exc:
        lifecycle.apply(envelope, "claimed", "roomba", at=AT)
    assert exc.value.details["executor"] == "teague"
    assert envelope.executor == "teague"
    assert len(envelope.history) == 1


def test_reclaim_by_same_executor_is_a_no_op():
    envelope = _envelope(Status.CLAIMED, executor="teague")
    assert lifecycle.apply(envelope, "claimed", "teague", at=AT) is None
    assert envelope.updated != AT
    assert len(envelope.history) == 1


def test_unknown_status():
    with pytest.raises(ValidationError):
        lifecycle.apply(_envelope(), "exploded", "teague", at=AT)


def test_hyphenated_status_is_accepted():
    envelope = _envelope(Status.CLAIMED, executor="teague")
    lifecycle.apply(envelope, "in-progress", "teague", at=AT)
    assert envelope.status == "in_progress"
    assert lifecycle.folder_for("in-progress") == Folder.EXECUTING


@pytest.mark.parametrize("status,folder", [
    ("pending", "received"),
    ("claimed", "executing"),
    ("needs_confirmation", "executing"),
    ("retrying", "executing"),
    ("completed", "finished"),
    ("partial", "finished"),
    ("failed", "canceled"),
    ("declined", "canceled"),
    ("expired", "canceled"),
    ("superseded", "canceled"),
    ("something-new", "received"),
])
def test_folder_for(status, folder):
    assert lifecycle.folder_for(status) == folder


def test_transitions_never_move_backwards_through_folders():
    order = {folder: index for index, folder in enumerate(FOLDERS)}
    for current, targets in TRANSITIONS.items():
        for target in targets:
            assert order[lifecycle.folder_for(target)] >= order[lifecycle.folder_for(current)]


def test_status_from_blocks():
    assert lifecycle.status_from_blocks([{"status": {"code": "claimed"}}]) == "claimed"
    assert lifecycle.status_from_blocks([{"status": {"code": "in-progress"}}]) == "in_progress"
    assert lifecycle.status_from_blocks([{"cancel": {"reason": "changed my mind"}}]) == "cancelled"
    assert lifecycle.status_from_blocks([{"response": {"content": ["done"]}}]) is None
