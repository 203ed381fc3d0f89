"""
Event log reconstructor.

Folds ``thread_created`` / ``status_changed`` / ``message_added`` events into
the same Thread read model the thread store returns, and exports a stored
thread back into events.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from mess_exchange import lifecycle
from mess_exchange.errors import ValidationError
from mess_exchange.lifecycle import Status
from mess_exchange.models.envelope import Envelope, HistoryEntry
from mess_exchange.models.events import EVENT_TYPES, EventType, ThreadEvent
from mess_exchange.models.message import PROTOCOL_VERSION, Message, ack_message
from mess_exchange.models.thread import Thread
from mess_exchange.refs import LAST, extract_local_id, generate_message_ref, message_type

logger = logging.getLogger(__name__)


def _dedup_key(event: ThreadEvent) -> str:
    if event.id:
        return event.id
    return json.dumps([event.type, event.at, event.actor, event.ref, event.payload], sort_keys=True, default=str)


def _ordered(events: Iterable[ThreadEvent]) -> list[ThreadEvent]:
    seen: set[str] = set()
    unique = []
    for event in events:
        key = _dedup_key(event)
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    # ties: thread_created first, then by id (or content)
    return sorted(unique, key=lambda e: (e.at, e.type != EventType.THREAD_CREATED, _dedup_key(e)))


class _Fold:
    """Mutable accumulator for a single fold."""

    def __init__(self, created: ThreadEvent):
        payload = copy.deepcopy(created.payload)
        requestor = payload.get("requestor_id") or created.actor
        self.ref = created.ref or payload.get("ref")
        if not self.ref:
            raise ValidationError("thread_created event has no thread ref")
        self.envelope = Envelope(
            ref=self.ref,
            requestor=requestor,
            status=Status.PENDING,
            created=created.at,
            updated=created.at,
            intent=payload.get("intent") or "",
            priority=payload.get("priority") or "normal",
            history=[HistoryEntry(action="created", at=created.at, by=requestor)],
        )
        local_id = payload.get("client_id")
        request: dict[str, Any] = {}
        if local_id:
            request["id"] = local_id
        request["intent"] = self.envelope.intent
        request["context"] = payload.get("context") or []
        request["response_hint"] = payload.get("response_hint") or []
        self.messages = [
            Message(
                sender=requestor,
                received=created.at,
                channel=payload.get("channel", "api"),
                mess=payload.get("mess") or [{"v": PROTOCOL_VERSION}, {"request": request}],
            ),
            ack_message(created.at, self.ref, re=local_id or LAST),
        ]
        self.serial = 0

    def _append(self, event: ThreadEvent, blocks: list[dict[str, Any]], status: Optional[str] = None) -> None:
        self.serial += 1
        local_id = extract_local_id(blocks)
        msg_ref = generate_message_ref(self.ref, message_type(blocks), self.serial, local_id)
        if status is not None:
            lifecycle.apply(self.envelope, status, event.actor, at=event.at, ref=msg_ref)
            executor = event.payload.get("executor_id")
            if executor and self.envelope.executor is None:
                self.envelope.executor = executor
        self.messages.append(Message(
            sender=event.actor,
            received=event.at,
            channel=event.payload.get("channel", "api"),
            re=event.payload.get("re") or self.ref,
            mess=blocks,
        ))
        self.messages.append(ack_message(event.at, msg_ref, re=local_id))

    def status_changed(self, event: ThreadEvent) -> None:
        status = event.payload.get("new_status")
        if not status:
            raise ValidationError("status_changed event has no new_status", details={"id": event.id})
        blocks = copy.deepcopy(event.payload.get("mess"))
        if not blocks:
            body = {"code": lifecycle.normalize_status(status)}
            if event.payload.get("message"):
                body["message"] = event.payload["message"]
            blocks = [{"status": body}]
        self._append(event, blocks, status)

    def message_added(self, event: ThreadEvent) -> None:
        self._append(event, copy.deepcopy(event.payload.get("mess") or []))


def fold_events(events: Iterable[ThreadEvent]) -> Thread:
    """Rebuild one thread from its events.

    Events are de-duplicated by id and sorted by ``at``, with ties broken by
    type and id, so the same events in any order and any number of times
    yield the same thread. Status changes go through the lifecycle rules and
    raise on illegal moves.
    """
    ordered = _ordered(events)
    created = [e for e in ordered if e.type == EventType.THREAD_CREATED]
    if not created:
        raise ValidationError("no thread_created event")
    fold = _Fold(created[0])

    for event in ordered:
        if event.ref and event.ref != fold.ref:
            raise ValidationError(
                f"event {event.id} belongs to {event.ref}, not {fold.ref}",
                details={"id": event.id, "ref": event.ref},
            )
        fold.envelope.updated = max(fold.envelope.updated, event.at)
        if event.type == EventType.THREAD_CREATED:
            continue
        if event.type == EventType.STATUS_CHANGED:
            fold.status_changed(event)
        elif event.type == EventType.MESSAGE_ADDED:
            fold.message_added(event)
        else:
            logger.debug("Ignoring event %s of type %s", event.id, event.type)

    return Thread(envelope=fold.envelope, messages=fold.messages)


def fold_all(events: Iterable[ThreadEvent]) -> dict[str, Thread]:
    """Fold a mixed log into one thread per ref."""
    by_ref: dict[str, list[ThreadEvent]] = {}
    for event in events:
        by_ref.setdefault(event.ref or "", []).append(event)
    return {ref: fold_events(group) for ref, group in by_ref.items() if ref}


def load_event_log(path: Union[str, Path]) -> list[ThreadEvent]:
    """Read a JSONL event log, skipping lines that do not parse."""
    events = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                event = ThreadEvent.model_validate(json.loads(line))
            except (json.JSONDecodeError, PydanticValidationError) as e:
                logger.warning("%s:%d: skipping malformed event: %s", path, lineno, e)
                continue
            if event.type not in EVENT_TYPES:
                logger.warning("%s:%d: skipping unknown event type %s", path, lineno, event.type)
                continue
            events.append(event)
    return events


def events_from_thread(thread: Thread) -> list[ThreadEvent]:
    """Export a stored thread as events that fold back into the same envelope."""
    envelope = thread.envelope
    ref = envelope.ref
    events: list[ThreadEvent] = []

    def emit(type_: str, at: str, actor: str, payload: dict[str, Any]) -> None:
        events.append(ThreadEvent(
            id=f"{ref}-{len(events):04d}", type=type_, at=at, actor=actor, ref=ref, payload=payload,
        ))

    request_message = thread.messages[0] if thread.messages else None
    request = (request_message.first("request") if request_message else None) or {}
    emit(EventType.THREAD_CREATED, envelope.created, envelope.requestor, {
        "requestor_id": envelope.requestor,
        "intent": envelope.intent,
        "priority": envelope.priority,
        "context": copy.deepcopy(request.get("context") or []),
        "response_hint": copy.deepcopy(request.get("response_hint") or []),
        **({"client_id": request["id"]} if request.get("id") else {}),
        **({"mess": copy.deepcopy(request_message.mess)} if request_message else {}),
        **({"channel": request_message.channel} if request_message else {}),
    })

    # history entries keyed by the message ref that caused them
    caused = {entry.ref: entry for entry in envelope.history if entry.ref}
    acked: dict[int, str] = {}
    for index, message in enumerate(thread.messages):
        if message.is_ack and index > 0:
            ack = message.first("ack") or {}
            acked[index - 1] = ack.get("ref")

    for index, message in enumerate(thread.messages[1:], 1):
        if message.is_ack:
            continue
        payload: dict[str, Any] = {"mess": copy.deepcopy(message.mess), "channel": message.channel}
        if message.re and message.re != ref:
            payload["re"] = message.re
        entry = caused.pop(acked.get(index), None)
        if entry is not None:
            payload["new_status"] = entry.action
            if entry.action == Status.CLAIMED:
                payload["executor_id"] = entry.by
            emit(EventType.STATUS_CHANGED, message.received, message.sender, payload)
        else:
            emit(EventType.MESSAGE_ADDED, message.received, message.sender, payload)

    # status changes recorded without a message (older files)
    for entry in envelope.history:
        if entry.action == "created" or entry.ref:
            continue
        emit(EventType.STATUS_CHANGED, entry.at, entry.by, {"new_status": entry.action})
    return events
