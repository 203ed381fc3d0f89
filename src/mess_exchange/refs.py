"""
Thread, message and sender-local identifiers.

    thread ref   2026-02-01-001[-slug]
    message ref  2026-02-01-001/claim-001[-slug]
    local id     whatever the sender put in a block's ``id`` field

The exchange answers every addressable message with an ack mapping the
sender's local id (or ``last``) to the canonical ref, which is what makes
local ids and ``last`` resolvable later.
"""

import re
from dataclasses import dataclass, field
from datetime import date as date_type
from typing import Any, Iterable, Optional, Sequence, Union

from mess_exchange.errors import NotFoundError
from mess_exchange.models.thread import Thread

MAX_SLUG_LENGTH = 24
LAST = "last"

THREAD_REF = re.compile(r"^(?P<date>\d{4}-\d{2}-\d{2})-(?P<serial>\d{3,})(?:-(?P<slug>[a-z0-9][a-z0-9-]*))?$")
MESSAGE_REF = re.compile(
    r"^(?P<thread>[^/]+)/(?P<type>[a-z_]+)-(?P<serial>\d{3,})(?:-(?P<slug>[a-z0-9][a-z0-9-]*))?$"
)


def tokenize(text: Optional[str]) -> str:
    """Lowercase slug of ``text`` for embedding in a ref."""
    if not text:
        return ""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-")


def _date_str(value: Union[str, date_type]) -> str:
    return value.isoformat() if isinstance(value, date_type) else value


def generate_thread_ref(
    date: Union[str, date_type],
    existing_serials: Iterable[int],
    local_id: Optional[str] = None,
) -> str:
    """Next ref for ``date``; ``existing_serials`` must cover every partition."""
    serial = max(existing_serials, default=0) + 1
    base = f"{_date_str(date)}-{serial:03d}"
    slug = tokenize(local_id)
    return f"{base}-{slug}" if slug else base


def generate_message_ref(thread_ref: str, message_type: str, serial: int, local_id: Optional[str] = None) -> str:
    base = f"{thread_ref}/{message_type}-{serial:03d}"
    slug = tokenize(local_id)
    return f"{base}-{slug}" if slug else base


def serial_for_date(name: str, date: Union[str, date_type]) -> Optional[int]:
    """Serial encoded in a stored thread name, if it belongs to ``date``."""
    match = THREAD_REF.match(name.removesuffix(".messe-af.yaml"))
    if match is None or match.group("date") != _date_str(date):
        return None
    return int(match.group("serial"))


def is_thread_ref(value: str) -> bool:
    return THREAD_REF.match(value) is not None


def is_message_ref(value: str) -> bool:
    match = MESSAGE_REF.match(value)
    return match is not None and is_thread_ref(match.group("thread"))


def thread_ref_of(ref: str) -> str:
    return ref.split("/", 1)[0]


def message_type(blocks: Sequence[dict[str, Any]]) -> str:
    """Ref type word for a message, derived from its first meaningful block."""
    for block in blocks or []:
        if "request" in block:
            return "request"
        if "response" in block:
            return "response"
        status = block.get("status")
        if isinstance(status, dict):
            code = status.get("code")
            if code == "claimed":
                return "claim"
            if code == "needs_input":
                return "question"
            return "status"
        if "answer" in block or "reply" in block:
            return "answer"
        if "cancel" in block:
            return "cancel"
    return "message"


def extract_local_id(blocks: Sequence[dict[str, Any]]) -> Optional[str]:
    for block in blocks or []:
        for kind in ("request", "response", "answer", "reply", "status", "cancel"):
            body = block.get(kind)
            if isinstance(body, dict) and body.get("id"):
                return str(body["id"])
    return None


@dataclass(frozen=True)
class AckMapping:
    """One ack: the message it confirms and the canonical ref it handed out."""

    thread_ref: str
    ref: str
    local_id: Optional[str]
    producer: Optional[str]
    received: str
    position: int


def ack_mappings(thread: Thread) -> list[AckMapping]:
    mappings = []
    producer: Optional[str] = None
    for position, message in enumerate(thread.messages):
        if not message.is_ack:
            producer = message.sender
            continue
        for block in message.mess:
            ack = block.get("ack") or {}
            if not ack.get("ref"):
                continue
            re_value = ack.get("re")
            mappings.append(AckMapping(
                thread_ref=thread.ref,
                ref=ack["ref"],
                local_id=re_value if re_value and re_value != LAST else None,
                producer=producer,
                received=message.received,
                position=position,
            ))
    return mappings


@dataclass
class ResolutionContext:
    actor_id: Optional[str] = None
    threads: Sequence[Thread] = field(default_factory=list)


class RefResolver:
    """Turn any accepted reference form into a canonical thread or message ref."""

    def resolve(self, reference: str, context: ResolutionContext) -> str:
        reference = (reference or "").strip()
        if not reference:
            raise NotFoundError("empty reference")
        known = {thread.ref: thread for thread in context.threads}

        if reference == LAST:
            return self._last(context)
        if is_thread_ref(reference) and reference in known:
            return reference
        if is_message_ref(reference):
            thread = known.get(thread_ref_of(reference))
            if thread is not None and self._has_message_ref(thread, reference):
                return reference
            raise NotFoundError(f"unknown message ref: {reference}", details={"ref": reference})

        matches = [
            m for thread in context.threads for m in ack_mappings(thread) if m.local_id == reference
        ]
        if matches:
            return max(matches, key=lambda m: (m.received, m.position)).ref
        raise NotFoundError(f"unknown reference: {reference}", details={"ref": reference})

    def _last(self, context: ResolutionContext) -> str:
        if not context.actor_id:
            raise NotFoundError("'last' needs an acting sender")
        mine = [
            m for thread in context.threads for m in ack_mappings(thread) if m.producer == context.actor_id
        ]
        if not mine:
            raise NotFoundError(f"{context.actor_id} has no messages to refer to as 'last'")
        return max(mine, key=lambda m: (m.received, m.position)).ref

    @staticmethod
    def _has_message_ref(thread: Thread, ref: str) -> bool:
        if any(m.ref == ref for m in ack_mappings(thread)):
            return True
        return any(entry.ref == ref for entry in thread.envelope.history)
