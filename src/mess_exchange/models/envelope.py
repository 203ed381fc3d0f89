"""
Thread envelope: the single mutable record of a thread.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

PRIORITIES = ("background", "normal", "elevated", "urgent")


class HistoryEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: str
    at: str
    by: str
    ref: Optional[str] = None  # message ref; absent for entries not caused by an addressable message


class Envelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    ref: str
    requestor: str
    executor: Optional[str] = None
    status: str = "pending"
    created: str
    updated: str
    intent: str = ""
    priority: str = "normal"
    history: list[HistoryEntry] = Field(default_factory=list)

    def to_doc(self) -> dict[str, Any]:
        """Plain mapping as written to the primary thread file."""
        doc = self.model_dump(exclude={"history"})
        doc["history"] = [entry.model_dump(exclude_none=True) for entry in self.history]
        return doc
