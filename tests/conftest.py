"""
Chat Sync Core Test Fixtures
Shared pytest fixtures for the synchronization core
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

# Set test environment
os.environ["TESTING"] = "1"
os.environ["CHAT_API_BASE_URL"] = "http://chat.test/api/chat-live"
os.environ["CHAT_WS_URL"] = "ws://chat.test/ws/chat-live"
os.environ["LOG_LEVEL"] = "DEBUG"

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import SyncSettings  # noqa: E402
from models.message import Direction, Message, MessageStatus  # noqa: E402
from schemas.api import MarkReadResult, SendResult  # noqa: E402
from services.message_store import MessageStore  # noqa: E402
from services.sync_facade import SyncFacade  # noqa: E402

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float = 0.0) -> datetime:
    """A fixed timestamp offset from BASE_TIME"""
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(
    message_id: str,
    conversation_id: str = "conv-1",
    direction: Direction = Direction.INBOUND,
    status: MessageStatus = None,
    content: str = "hello",
    provider_message_id: str = None,
    seconds: float = 0.0,
    **kwargs,
) -> Message:
    if status is None:
        status = MessageStatus.RECEIVED if direction == Direction.INBOUND else MessageStatus.SENT
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        direction=direction,
        status=status,
        content=content,
        provider_message_id=provider_message_id,
        timestamp=at(seconds),
        **kwargs,
    )


@pytest.fixture
def store() -> MessageStore:
    return MessageStore()


@pytest.fixture
def fake_api() -> AsyncMock:
    """Provider API double with successful defaults"""
    api = AsyncMock()
    api.send_message = AsyncMock(
        return_value=SendResult(id="srv-1", provider_message_id="wamid.1", status="sent")
    )
    api.mark_read = AsyncMock(return_value=MarkReadResult(success=True, success_count=1))
    api.fetch_conversations = AsyncMock(return_value=[])
    api.fetch_messages = AsyncMock(return_value=[])
    return api


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(send_timeout=1.0, reconnect_delay=0.01)


@pytest.fixture
def facade(fake_api, settings) -> SyncFacade:
    return SyncFacade(fake_api, settings=settings)
