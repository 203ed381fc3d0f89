"""
Thread messages and their payload blocks.

A message carries an ordered MESS list of one-key blocks, e.g.
``{"status": {"code": "claimed"}}``. Known block kinds are validated
against a typed model, but the stored block is kept exactly as given so
fields this package does not know about survive a read/write cycle.
"""

import copy
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from mess_exchange.errors import ValidationError

SYSTEM_ACTOR = "exchange"
PROTOCOL_VERSION = "1.0.0"


class Block(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    re: Optional[str] = None


class RequestBlock(Block):
    intent: str
    context: list[Any] = Field(default_factory=list)
    response_hint: list[Any] = Field(default_factory=list)
    priority: Optional[str] = None


class StatusBlock(Block):
    code: str
    message: Optional[str] = None


class ResponseBlock(Block):
    content: list[Any] = Field(default_factory=list)


class ReplyBlock(Block):
    content: Optional[Any] = None


class AnswerBlock(Block):
    content: Optional[Any] = None


class CancelBlock(Block):
    reason: Optional[str] = None


class AckBlock(Block):
    ref: Optional[str] = None


class SuggestionBlock(Block):
    content: Optional[Any] = None


class ConfigBlock(Block):
    pass


class QueryBlock(Block):
    pass


BLOCK_TYPES: dict[str, type[Block]] = {
    "request": RequestBlock,
    "status": StatusBlock,
    "response": ResponseBlock,
    "reply": ReplyBlock,
    "answer": AnswerBlock,
    "cancel": CancelBlock,
    "ack": AckBlock,
    "suggestion": SuggestionBlock,
    "config": ConfigBlock,
    "query": QueryBlock,
}


def block_kind(block: dict[str, Any]) -> str:
    return next(iter(block))


def parse_block(block: Any) -> tuple[str, Any]:
    """Validate one payload block and return ``(kind, typed_body)``.

    The version marker ``{"v": "1.0.0"}`` is returned with its raw value.
    """
    if not isinstance(block, dict) or len(block) != 1:
        raise ValidationError("payload block must be a mapping with exactly one key", details={"block": block})
    kind = block_kind(block)
    body = block[kind]
    if kind == "v":
        return kind, body
    model = BLOCK_TYPES.get(kind)
    if model is None:
        raise ValidationError(f"unknown payload block kind: {kind}", details={"kind": kind})
    try:
        return kind, model.model_validate(body if body is not None else {})
    except PydanticValidationError as e:
        raise ValidationError(f"malformed {kind} block: {e.errors()[0]['msg']}", details={"kind": kind})


def validate_blocks(blocks: Any) -> list[dict[str, Any]]:
    """Validate a payload list and return a deep copy safe to store.

    Validation only: the stored blocks stay plain mappings. Use
    :meth:`Message.typed` for the typed view.
    """
    if not isinstance(blocks, list) or not blocks:
        raise ValidationError("a message needs at least one payload block")
    for block in blocks:
        parse_block(block)
    return copy.deepcopy(blocks)


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    sender: str = Field(alias="from")
    received: str
    channel: Optional[str] = None
    re: Optional[str] = None
    mess: list[dict[str, Any]] = Field(default_factory=list, alias="MESS")

    @property
    def is_ack(self) -> bool:
        return self.sender == SYSTEM_ACTOR and bool(self.mess) and all(block_kind(b) == "ack" for b in self.mess)

    def first(self, kind: str) -> Optional[Any]:
        """Body of the first block of ``kind``, or None."""
        for block in self.mess:
            if kind in block:
                return block[kind]
        return None

    def typed(self, kind: str) -> Optional[Block]:
        """First block of ``kind`` as its typed model (``StatusBlock`` etc.), or None.

        Unrecognized keys stay reachable through ``model_extra``.
        """
        for block in self.mess:
            if kind in block:
                _, body = parse_block(block)
                return body if isinstance(body, Block) else None
        return None

    def to_doc(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"from": self.sender, "received": self.received}
        if self.channel is not None:
            doc["channel"] = self.channel
        if self.re is not None:
            doc["re"] = self.re
        doc.update(copy.deepcopy(self.model_extra or {}))
        doc["MESS"] = copy.deepcopy(self.mess)
        return doc


def ack_message(received: str, ref: str, re: Optional[str] = None) -> Message:
    """System confirmation mapping a sender's id (or ``last``) to a canonical ref."""
    body: dict[str, Any] = {}
    if re is not None:
        body["re"] = re
    body["ref"] = ref
    return Message(sender=SYSTEM_ACTOR, received=received, mess=[{"ack": body}])
