"""
Read model returned by the thread store and the event log reconstructor.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field

from mess_exchange.models.envelope import Envelope
from mess_exchange.models.message import Message

_ATTACHMENT_SERIAL = re.compile(r"^att-(\d+)-")


class Attachment(BaseModel):
    name: str
    mime: str = "application/octet-stream"
    size: int = 0
    path: Optional[str] = None
    content: Optional[bytes] = Field(default=None, repr=False)

    @property
    def serial(self) -> int:
        match = _ATTACHMENT_SERIAL.match(self.name)
        return int(match.group(1)) if match else 0


class Thread(BaseModel):
    envelope: Envelope
    messages: list[Message] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    folder: Optional[str] = None
    legacy: bool = False

    @property
    def ref(self) -> str:
        return self.envelope.ref

    @property
    def latest(self) -> Optional[Message]:
        """Most recent message that is not a system ack."""
        for message in reversed(self.messages):
            if not message.is_ack:
                return message
        return None

    def attachment(self, name: str) -> Optional[Attachment]:
        for att in self.attachments:
            if att.name == name:
                return att
        return None
