"""Folding event logs into threads."""

import json
import random

import pytest

from mess_exchange.errors import InvalidTransitionError, ValidationError
from mess_exchange.models.events import ThreadEvent
from mess_exchange.replay import fold_all, fold_events, load_event_log

REF = "2026-02-01-001"


def _event(id, type, at, actor, **payload):
    return ThreadEvent(id=id, type=type, at=at, actor=actor, ref=REF, payload=payload)


@pytest.fixture
def events():
    return [
        _event("e1", "thread_created", "2026-02-01T09:00:00.000Z", "agent",
               intent="check garage door", client_id="garage", context=["side door too"]),
        _event("e2", "status_changed", "2026-02-01T09:01:00.000Z", "teague", new_status="claimed"),
        _event("e3", "message_added", "2026-02-01T09:02:00.000Z", "teague",
               mess=[{"response": {"content": ["on my way"]}}]),
        _event("e4", "status_changed", "2026-02-01T09:03:00.000Z", "teague",
               new_status="completed", message="door is closed"),
    ]


def test_fold(events):
    thread = fold_events(events)
    envelope = thread.envelope
    assert envelope.ref == REF
    assert envelope.status == "completed"
    assert envelope.executor == "teague"
    assert envelope.updated == "2026-02-01T09:03:00.000Z"
    assert [h.action for h in envelope.history] == ["created", "claimed", "completed"]
    assert envelope.history[1].ref == f"{REF}/claim-001"

    assert thread.messages[0].first("request") == {
        "id": "garage", "intent": "check garage door", "context": ["side door too"], "response_hint": [],
    }
    assert thread.messages[1].mess == [{"ack": {"re": "garage", "ref": REF}}]
    assert thread.latest.mess == [{"status": {"code": "completed", "message": "door is closed"}}]
    acks = [m.first("ack")["ref"] for m in thread.messages if m.is_ack]
    assert acks == [REF, f"{REF}/claim-001", f"{REF}/response-002", f"{REF}/status-003"]


def test_fold_ignores_duplicates_and_arrival_order(events):
    expected = fold_events(events)
    shuffled = events + events[1:3]
    random.Random(7).shuffle(shuffled)
    assert fold_events(shuffled) == expected


def test_equal_timestamps_fold_the_same_in_any_order():
    created = _event("e1", "thread_created", "2026-02-01T09:00:00.000Z", "agent", intent="check garage door")
    claimed = _event("e2", "status_changed", "2026-02-01T09:01:00.000Z", "teague", new_status="claimed")
    started = _event("e3", "status_changed", "2026-02-01T09:01:00.000Z", "teague", new_status="in_progress")

    forward = fold_events([created, claimed, started])
    backward = fold_events([started, claimed, created])
    assert forward.envelope.status == "in_progress"
    assert backward.envelope == forward.envelope
    assert [h.action for h in backward.envelope.history] == ["created", "claimed", "in_progress"]


def test_events_without_ids_are_deduplicated_by_content(events):
    anonymous = [e.model_copy(update={"id": None}) for e in events]
    assert fold_events(anonymous + anonymous).envelope == fold_events(events).envelope


def test_illegal_transition_in_log(events):
    events.append(_event("e5", "status_changed", "2026-02-01T09:04:00.000Z", "agent", new_status="cancelled"))
    with pytest.raises(InvalidTransitionError):
        fold_events(events)


def test_missing_created_event(events):
    with pytest.raises(ValidationError):
        fold_events(events[1:])


def test_event_for_another_thread(events):
    events.append(ThreadEvent(id="x", type="message_added", at="2026-02-01T09:05:00.000Z", actor="agent",
                              ref="2026-02-01-002", payload={"mess": [{"reply": {"content": "hi"}}]}))
    with pytest.raises(ValidationError):
        fold_events(events)
    assert set(fold_all(events[:-1])) == {REF}


def test_load_event_log_accepts_exported_field_names(tmp_path, caplog):
    log = tmp_path / "events.jsonl"
    lines = [
        json.dumps({"event_id": "e1", "event_type": "thread_created", "ts": "2026-02-01T09:00:00.000Z",
                    "actor_id": "agent", "thread_ref": REF, "payload": {"intent": "water the plants"}}),
        "",
        "{not json",
        json.dumps({"event_id": "e2", "event_type": "thread_archived", "ts": "2026-02-01T09:01:00.000Z",
                    "actor_id": "agent", "thread_ref": REF}),
        json.dumps({"event_id": "e3", "event_type": "status_changed", "ts": "2026-02-01T09:02:00.000Z",
                    "actor_id": "roomba", "thread_ref": REF, "payload": {"new_status": "claimed"}}),
    ]
    log.write_text("\n".join(lines) + "\n")

    events = load_event_log(log)
    assert [e.id for e in events] == ["e1", "e3"]
    assert "events.jsonl:3" in caplog.text
    assert "thread_archived" in caplog.text

    thread = fold_events(events)
    assert thread.envelope.intent == "water the plants"
    assert thread.envelope.executor == "roomba"
