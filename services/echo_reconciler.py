"""
Chat Sync Core - Echo Reconciler
Matches provider echoes of outbound messages to the optimistic copies the
client inserted, so a sent message is shown once.
"""

from enum import Enum
from typing import Any, Optional, Tuple

from logging_config import get_logger
from models.message import Direction, Message, MessageStatus, furthest_status
from schemas.api import MessagePayload
from services.message_store import MessageStore
from utils.timestamps import millis_between

logger = get_logger(__name__)

DEFAULT_MATCH_WINDOW_MS = 1000


class EchoOutcome(str, Enum):
    EXACT = "exact"
    SOFT = "soft"
    NEW = "new"


def _same_content(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.strip() == b.strip()
    return a == b


class EchoReconciler:
    """
    Applies message_echo events to the store.

    Matching order: exact id / provider id, then a content + time soft
    match against unconfirmed local sends, then a plain append.
    """

    def __init__(self, store: MessageStore, match_window_ms: int = DEFAULT_MATCH_WINDOW_MS):
        self.store = store
        self.match_window_ms = match_window_ms

    def reconcile(self, conversation_id: str, payload: MessagePayload) -> Tuple[Message, EchoOutcome]:
        echo = payload.to_message(
            conversation_id,
            default_direction=Direction.OUTBOUND,
            default_status=MessageStatus.SENT,
        )
        # Echoes originate at the provider, so their id is a provider id
        if not echo.provider_message_id and payload.id:
            echo.provider_message_id = payload.id

        exact = self._exact_match(echo)
        if exact is not None:
            updated = self.store.patch(
                exact.id,
                provider_message_id=echo.provider_message_id or exact.provider_message_id,
                status=furthest_status(exact.status, echo.status),
            )
            logger.debug(f"Echo {echo.provider_message_id} matched {exact.id} exactly")
            return updated, EchoOutcome.EXACT

        candidate = self._soft_match(echo)
        if candidate is not None:
            status = echo.status if echo.status != MessageStatus.RECEIVED else MessageStatus.SENT
            updated = self.store.patch(
                candidate.id,
                provider_message_id=echo.provider_message_id,
                status=furthest_status(candidate.status, status),
            )
            logger.info(f"Echo {echo.provider_message_id} reconciled with local {candidate.id}")
            return updated, EchoOutcome.SOFT

        appended = self.store.append(echo)
        logger.info(f"Echo {echo.provider_message_id} appended as message authored elsewhere")
        return appended, EchoOutcome.NEW

    def _exact_match(self, echo: Message) -> Optional[Message]:
        for identifier in (echo.provider_message_id, echo.id):
            found = self.store.find(identifier)
            if found is not None:
                return found
        return None

    def _soft_match(self, echo: Message) -> Optional[Message]:
        best: Optional[Message] = None
        best_distance = None
        for message in self.store.iter_conversation(echo.conversation_id):
            if message.direction != echo.direction:
                continue
            if message.provider_message_id or message.status == MessageStatus.DRAFTING:
                continue
            if not _same_content(message.content, echo.content):
                continue
            distance = millis_between(message.timestamp, echo.timestamp)
            if distance >= self.match_window_ms:
                continue
            if best_distance is None or distance < best_distance:
                best, best_distance = message, distance
        return best
