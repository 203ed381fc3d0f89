from mess_exchange.models.envelope import PRIORITIES, Envelope, HistoryEntry
from mess_exchange.models.events import EventType, ThreadEvent
from mess_exchange.models.message import SYSTEM_ACTOR, Message, ack_message, parse_block, validate_blocks
from mess_exchange.models.thread import Attachment, Thread

__all__ = [
    "PRIORITIES",
    "Envelope",
    "HistoryEntry",
    "EventType",
    "ThreadEvent",
    "SYSTEM_ACTOR",
    "Message",
    "ack_message",
    "parse_block",
    "validate_blocks",
    "Attachment",
    "Thread",
]
