"""
Thread status state machine and status -> storage partition mapping.
"""

import logging
from typing import Optional

from mess_exchange.errors import AlreadyClaimedError, InvalidTransitionError, ValidationError
from mess_exchange.models.envelope import Envelope, HistoryEntry

logger = logging.getLogger(__name__)


class Status:
    PENDING = "pending"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    HELD = "held"
    NEEDS_INPUT = "needs_input"
    NEEDS_CONFIRMATION = "needs_confirmation"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    DELEGATED = "delegated"


class Folder:
    RECEIVED = "received"
    EXECUTING = "executing"
    FINISHED = "finished"
    CANCELED = "canceled"


FOLDERS = (Folder.RECEIVED, Folder.EXECUTING, Folder.FINISHED, Folder.CANCELED)

TERMINAL_STATES = frozenset({
    Status.COMPLETED, Status.PARTIAL, Status.FAILED, Status.DECLINED,
    Status.EXPIRED, Status.CANCELLED, Status.SUPERSEDED, Status.DELEGATED,
})

TRANSITIONS: dict[str, frozenset[str]] = {
    Status.PENDING: frozenset({Status.CLAIMED, Status.EXPIRED, Status.CANCELLED}),
    # an executor may finish a quick task straight from claimed
    Status.CLAIMED: frozenset({
        Status.IN_PROGRESS, Status.DECLINED, Status.CANCELLED,
        Status.COMPLETED, Status.PARTIAL, Status.FAILED,
    }),
    Status.IN_PROGRESS: frozenset({
        Status.NEEDS_INPUT, Status.NEEDS_CONFIRMATION, Status.WAITING, Status.HELD,
        Status.COMPLETED, Status.PARTIAL, Status.FAILED, Status.CANCELLED,
    }),
    Status.NEEDS_INPUT: frozenset({Status.IN_PROGRESS}),
    Status.NEEDS_CONFIRMATION: frozenset({Status.IN_PROGRESS, Status.CANCELLED, Status.HELD}),
    Status.WAITING: frozenset({Status.IN_PROGRESS, Status.EXPIRED}),
    Status.HELD: frozenset({Status.IN_PROGRESS, Status.EXPIRED}),
    **{status: frozenset() for status in TERMINAL_STATES},
}

STATES = frozenset(TRANSITIONS)

STATUS_FOLDERS = {
    Status.PENDING: Folder.RECEIVED,
    Status.CLAIMED: Folder.EXECUTING,
    Status.IN_PROGRESS: Folder.EXECUTING,
    Status.WAITING: Folder.EXECUTING,
    Status.HELD: Folder.EXECUTING,
    Status.NEEDS_INPUT: Folder.EXECUTING,
    Status.NEEDS_CONFIRMATION: Folder.EXECUTING,
    "retrying": Folder.EXECUTING,
    Status.COMPLETED: Folder.FINISHED,
    Status.PARTIAL: Folder.FINISHED,
    Status.FAILED: Folder.CANCELED,
    Status.DECLINED: Folder.CANCELED,
    Status.CANCELLED: Folder.CANCELED,
    Status.EXPIRED: Folder.CANCELED,
    Status.DELEGATED: Folder.CANCELED,
    Status.SUPERSEDED: Folder.CANCELED,
}


def normalize_status(status: str) -> str:
    """Accept the older hyphenated spelling (``in-progress``)."""
    return status.strip().replace("-", "_")


def folder_for(status: str) -> str:
    return STATUS_FOLDERS.get(normalize_status(status), Folder.RECEIVED)


def is_terminal(status: str) -> bool:
    return normalize_status(status) in TERMINAL_STATES


def can_transition(current: str, requested: str) -> bool:
    return normalize_status(requested) in TRANSITIONS.get(normalize_status(current), frozenset())


def apply(
    envelope: Envelope,
    requested: str,
    actor_id: str,
    *,
    at: str,
    ref: Optional[str] = None,
) -> Optional[HistoryEntry]:
    """Move ``envelope`` to ``requested`` on behalf of ``actor_id``.

    Returns the history entry that was appended, or None when the call is
    an idempotent re-claim by the executor already holding the thread.
    Raises InvalidTransitionError (AlreadyClaimedError for a competing claim)
    without touching the envelope.
    """
    requested = normalize_status(requested)
    current = normalize_status(envelope.status)
    if requested not in STATES:
        raise ValidationError(f"unknown status: {requested}", details={"status": requested})

    if requested == Status.CLAIMED and envelope.executor is not None:
        if envelope.executor != actor_id:
            raise AlreadyClaimedError(
                f"{envelope.ref} is already claimed by {envelope.executor}",
                details={"ref": envelope.ref, "executor": envelope.executor, "actor": actor_id},
            )
        if current == Status.CLAIMED:
            logger.debug("Re-claim of %s by %s ignored", envelope.ref, actor_id)
            return None

    if not can_transition(current, requested):
        raise InvalidTransitionError(
            f"cannot move {envelope.ref} from {current} to {requested}",
            details={"ref": envelope.ref, "from": current, "to": requested},
        )

    envelope.status = requested
    if requested == Status.CLAIMED and envelope.executor is None:
        envelope.executor = actor_id
    envelope.updated = at
    entry = HistoryEntry(action=requested, at=at, by=actor_id, ref=ref)
    envelope.history.append(entry)
    return entry


def status_from_blocks(blocks: list[dict]) -> Optional[str]:
    """Status a message asks for: a status block's code, or cancelled for a cancel block."""
    for block in blocks:
        if "cancel" in block:
            return Status.CANCELLED
        status = block.get("status")
        if isinstance(status, dict) and status.get("code"):
            return normalize_status(str(status["code"]))
    return None
