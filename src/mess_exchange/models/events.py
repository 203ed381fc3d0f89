"""
Event log records for deployments that persist threads as ordered events.

Field names from exported logs (``event_id``, ``ts``, ``event_type``,
``actor_id``, ``thread_ref``) are accepted as aliases.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EventType:
    THREAD_CREATED = "thread_created"
    STATUS_CHANGED = "status_changed"
    MESSAGE_ADDED = "message_added"


EVENT_TYPES = (EventType.THREAD_CREATED, EventType.STATUS_CHANGED, EventType.MESSAGE_ADDED)


class ThreadEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "event_id"))
    type: str = Field(validation_alias=AliasChoices("type", "event_type"))
    at: str = Field(validation_alias=AliasChoices("at", "ts"))
    actor: str = Field(validation_alias=AliasChoices("actor", "actor_id"))
    ref: Optional[str] = Field(default=None, validation_alias=AliasChoices("ref", "thread_ref"))
    payload: dict[str, Any] = Field(default_factory=dict)
