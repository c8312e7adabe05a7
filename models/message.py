"""
Chat Sync Core - Message Model
Domain representation of a chat message and its delivery status
"""

import itertools
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Union, Dict, Any

from utils.timestamps import utcnow

TEMP_ID_PREFIX = "temp_"

_temp_counter = itertools.count(1)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    INTERACTIVE = "interactive"

    @classmethod
    def coerce(cls, value: Any) -> "MessageType":
        """Unknown or missing types fall back to text"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.TEXT


class MessageStatus(str, Enum):
    DRAFTING = "drafting"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    RECEIVED = "received"

    @classmethod
    def coerce(cls, value: Any, default: "MessageStatus") -> "MessageStatus":
        if isinstance(value, cls):
            return value
        if value is None:
            return default
        value = str(value).lower()
        # Server-side outbox uses "pending"/"approved" for queued sends
        if value in ("pending", "approved"):
            return cls.SENDING
        try:
            return cls(value)
        except ValueError:
            return default


# Partial order of delivery progress. failed sits beside sending: the
# provider may still report a send it later accepted.
STATUS_RANK = {
    MessageStatus.DRAFTING: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.FAILED: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.READ: 4,
}


def is_forward(current: MessageStatus, incoming: MessageStatus) -> bool:
    """True when moving from current to incoming never goes backwards"""
    if current == incoming:
        return False
    if MessageStatus.RECEIVED in (current, incoming):
        # Inbound messages have no delivery progression
        return False
    return STATUS_RANK[incoming] > STATUS_RANK[current]


def furthest_status(a: MessageStatus, b: MessageStatus) -> MessageStatus:
    """The more advanced of two statuses (a wins ties)"""
    return b if is_forward(a, b) else a


Content = Union[str, Dict[str, Any]]


@dataclass(frozen=True)
class MediaRef:
    url: str
    mime_type: Optional[str] = None


@dataclass
class Message:
    """A single chat message as held by the MessageStore"""
    id: str
    conversation_id: str
    direction: Direction
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.RECEIVED
    content: Content = ""
    media_ref: Optional[MediaRef] = None
    provider_message_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    # Store-assigned insertion order, breaks timestamp ties
    sequence: int = 0

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)

    @property
    def text(self) -> str:
        """Plain-text view of the content"""
        if isinstance(self.content, str):
            return self.content
        for key in ("body", "text", "name", "address"):
            value = self.content.get(key)
            if isinstance(value, str) and value:
                return value
        return ""

    def copy(self, **changes) -> "Message":
        return replace(self, **changes)


# Fields a patch may touch; anything else in a patch is dropped
PATCHABLE_FIELDS = frozenset(
    f.name for f in fields(Message) if f.name not in ("id", "sequence")
)


def generate_temp_id() -> str:
    """Time-based temporary id, unique within the process"""
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{next(_temp_counter)}"


def is_temporary_id(message_id: Optional[str]) -> bool:
    return bool(message_id) and str(message_id).startswith(TEMP_ID_PREFIX)
