"""
Chat Sync Core - Domain Models Package
Re-exports the message and conversation models
"""

# Messages
from .message import (
    Direction,
    MessageType,
    MessageStatus,
    MediaRef,
    Message,
    STATUS_RANK,
    is_forward,
    furthest_status,
    generate_temp_id,
    is_temporary_id,
)

# Conversations
from .conversation import (
    Conversation,
    ConversationStatus,
    format_preview,
    EMPTY_PREVIEW,
)

__all__ = [
    'Direction',
    'MessageType',
    'MessageStatus',
    'MediaRef',
    'Message',
    'STATUS_RANK',
    'is_forward',
    'furthest_status',
    'generate_temp_id',
    'is_temporary_id',
    'Conversation',
    'ConversationStatus',
    'format_preview',
    'EMPTY_PREVIEW',
]
