"""
Chat Sync Core - Delivery State Machine
Lifecycle of a single outbound message from optimistic insert to terminal state.

    drafting -> sending -> sent | failed
    sent -> delivered -> read
    failed -> sending          (explicit retry only)
"""

import asyncio
from typing import Any, Dict, Iterable, Optional

from error_handling import classify_send_error
from error_messages import ErrorMessage, MessageErrors, OperationResult, SendErrors
from logging_config import get_logger
from models.message import (
    Direction,
    MediaRef,
    Message,
    MessageStatus,
    MessageType,
    generate_temp_id,
    is_forward,
)
from services.message_store import MessageStore

logger = get_logger(__name__)

DEFAULT_SEND_TIMEOUT = 15.0

# Provider can still report a failure after accepting a send
FAILABLE_STATUSES = (MessageStatus.SENDING, MessageStatus.SENT)


class DeliveryStateMachine:
    """
    Drives outbound messages through their delivery states.

    The provider API object must expose
    ``send_message(conversation_id, content, message_type, phone=None)``
    returning a SendResult.
    """

    def __init__(self, store: MessageStore, api: Any, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        self.store = store
        self.api = api
        self.send_timeout = send_timeout
        # message id -> why its last send failed
        self._errors: Dict[str, ErrorMessage] = {}

    def last_error(self, message_id: str) -> Optional[ErrorMessage]:
        return self._errors.get(message_id)

    def create_pending(
        self,
        conversation_id: str,
        content: Any,
        message_type: MessageType = MessageType.TEXT,
        media_ref: Optional[MediaRef] = None,
    ) -> Message:
        """Optimistic insert: the message is visible before any network call"""
        message = Message(
            id=generate_temp_id(),
            conversation_id=conversation_id,
            direction=Direction.OUTBOUND,
            type=MessageType.coerce(message_type),
            status=MessageStatus.SENDING,
            content=content,
            media_ref=media_ref,
        )
        return self.store.append(message)

    async def dispatch(self, message_id: str, phone: Optional[str] = None) -> OperationResult:
        """
        Perform the send call for a message in the sending state and apply
        its resolution, whatever happened to the message meanwhile.
        """
        message = self.store.get(message_id)
        if message is None or message.status != MessageStatus.SENDING:
            logger.warning(f"Dispatch skipped for {message_id}: not a pending send")
            return OperationResult.fail(MessageErrors.NOT_RETRYABLE)

        try:
            result = await asyncio.wait_for(
                self.api.send_message(
                    message.conversation_id,
                    message.content,
                    message.type,
                    phone=phone,
                ),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Send of {message_id} timed out after {self.send_timeout}s")
            return self._fail(message_id, SendErrors.TIMEOUT)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Send of {message_id} failed: {e}")
            return self._fail(message_id, classify_send_error(e))

        if result is None or result.message_status == MessageStatus.FAILED:
            return self._fail(message_id, SendErrors.REJECTED)

        return self._confirm(message_id, result)

    def _confirm(self, message_id: str, result) -> OperationResult:
        current = self.store.get(message_id)
        if current is None:
            # A reload already brought the confirmed copy from the server
            current = self.store.find_by_provider_id(result.provider_message_id)
            if current is None:
                logger.info(f"Send of {message_id} resolved after the message was removed")
                return OperationResult.fail(MessageErrors.NOT_FOUND)

        status = result.message_status
        if not is_forward(current.status, status):
            # An echo or status event got there first
            status = current.status

        promoted = self.store.promote(
            current.id,
            result.id or current.id,
            provider_message_id=result.provider_message_id,
            status=status,
        )
        self._errors.pop(message_id, None)
        logger.info(f"Message {message_id} confirmed as {promoted.id} ({promoted.status.value})")
        return OperationResult.ok(promoted)

    def _fail(self, message_id: str, error: ErrorMessage) -> OperationResult:
        current = self.store.get(message_id)
        if current is None:
            logger.info(f"Send of {message_id} failed after the message was removed")
            return OperationResult.fail(error)

        if current.status != MessageStatus.SENDING:
            # Echo confirmed it while the call was still failing
            return OperationResult.fail(error, data=current)

        failed = self.store.patch(message_id, status=MessageStatus.FAILED)
        self._errors[message_id] = error
        return OperationResult.fail(error, data=failed)

    def begin_retry(self, message_id: str) -> OperationResult:
        """
        failed -> sending. Content and type are reused; a new temporary id is
        generated only when the original id was already promoted.

        Returns:
            OperationResult carrying the message to dispatch
        """
        message = self.store.find(message_id)
        if message is None:
            return OperationResult.fail(MessageErrors.NOT_FOUND)
        if message.direction != Direction.OUTBOUND or message.status != MessageStatus.FAILED:
            return OperationResult.fail(MessageErrors.NOT_RETRYABLE)

        self._errors.pop(message.id, None)
        if message.is_temporary:
            retried = self.store.patch(message.id, status=MessageStatus.SENDING)
        else:
            retried = self.store.promote(
                message.id,
                generate_temp_id(),
                provider_message_id=None,
                status=MessageStatus.SENDING,
            )
        logger.info(f"Retrying message {message_id} as {retried.id}")
        return OperationResult.ok(retried)

    def apply_status(self, identifiers: Iterable[str], status: MessageStatus) -> Optional[Message]:
        """
        Apply a provider-reported delivery status. Regressions are dropped.

        Returns:
            The updated message, or None when nothing changed
        """
        identifiers = [i for i in identifiers if i]
        message = None
        for identifier in identifiers:
            message = self.store.find(identifier)
            if message is not None:
                break

        if message is None:
            logger.debug(f"Status {status.value} for unknown message {identifiers}")
            return None

        if message.direction != Direction.OUTBOUND:
            return None

        if status == MessageStatus.FAILED:
            if message.status not in FAILABLE_STATUSES:
                return None
            self._errors[message.id] = SendErrors.REJECTED
            return self.store.patch(message.id, status=MessageStatus.FAILED)

        if not is_forward(message.status, status):
            logger.debug(f"Dropping {message.status.value} -> {status.value} for {message.id}")
            return None

        return self.store.patch(message.id, status=status)
