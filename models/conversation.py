"""
Chat Sync Core - Conversation Model
Conversation list entries and last-message preview formatting
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from models.message import Message, MessageType
from utils.sanitization import truncate

PREVIEW_MAX_LENGTH = 30
EMPTY_PREVIEW = "No messages"

# Media types collapse to an icon label in the conversation list
MEDIA_PREVIEW_LABELS = {
    MessageType.IMAGE: "🖼️ Image",
    MessageType.VIDEO: "🎥 Video",
    MessageType.AUDIO: "🎤 Audio",
    MessageType.DOCUMENT: "📄 Document",
    MessageType.LOCATION: "📍 Location",
    MessageType.INTERACTIVE: "🧩 Interactive",
}


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    CLOSED = "closed"

    @classmethod
    def coerce(cls, value: Any) -> "ConversationStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.ACTIVE


@dataclass
class Conversation:
    """Conversation list entry"""
    id: str
    phone: str
    display_name: str
    avatar: Optional[str] = None
    last_message_preview: str = EMPTY_PREVIEW
    last_message_time: Optional[datetime] = None
    unread_count: int = 0
    status: ConversationStatus = ConversationStatus.ACTIVE
    channel: str = "whatsapp"
    email: Optional[str] = None
    # Created locally (agent-initiated), unknown to the server so far
    is_new: bool = False

    def copy(self, **changes) -> "Conversation":
        return replace(self, **changes)

    def template_variables(self) -> Dict[str, Optional[str]]:
        """Values for {{n}} / {{name}} placeholders in outgoing text"""
        return {
            "1": self.display_name,
            "2": self.phone,
            "3": self.email,
            "name": self.display_name,
            "phone": self.phone,
            "email": self.email,
        }


def format_preview(message: Optional[Message]) -> str:
    """Human-readable summary of a message for the conversation list"""
    if message is None:
        return EMPTY_PREVIEW

    label = MEDIA_PREVIEW_LABELS.get(message.type)
    if label:
        return label

    text = message.text.strip()
    if not text:
        if message.media_ref is not None:
            return "📎 Attachment"
        return EMPTY_PREVIEW

    return truncate(text, PREVIEW_MAX_LENGTH)
