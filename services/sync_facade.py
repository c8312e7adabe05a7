"""
Chat Sync Core - Sync Facade
The only API the UI layer talks to. Wires the store, the conversation
index, delivery, echo reconciliation, read receipts and the realtime
transport together.

Nothing raised inside the core crosses this boundary: stale references
and send faults come back as OperationResult soft failures.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

from config import SyncSettings
from error_handling import safe_execute
from error_messages import ConversationErrors, MessageErrors, OperationResult, SendErrors
from logging_config import get_logger, setup_logging
from models.conversation import Conversation
from models.message import PATCHABLE_FIELDS, Direction, MediaRef, Message, MessageStatus, MessageType
from schemas.events import (
    ConversationUpdatedEvent,
    MessageEchoEvent,
    NewMessageEvent,
    StatusUpdateEvent,
    TransportEvent,
)
from services.conversation_index import ConversationIndex
from services.delivery_state import DeliveryStateMachine
from services.echo_reconciler import EchoReconciler
from services.message_store import MessageStore
from services.provider_client import ChatApiClient
from services.read_receipts import ReadReceiptBatcher
from services.realtime_transport import ConnectionState, RealtimeTransport
from utils.sanitization import normalize_phone, replace_variables, sanitize_text

logger = get_logger(__name__)

MessagesListener = Callable[[List[Message]], None]
ConnectivityListener = Callable[[bool], None]


class SyncFacade:
    """
    Conversation/message synchronization core.

    Must be used from within a running asyncio event loop: send() and
    retry() return immediately and run the network call as a task.
    """

    def __init__(
        self,
        api: Any,
        transport: Optional[RealtimeTransport] = None,
        settings: Optional[SyncSettings] = None,
        store: Optional[MessageStore] = None,
    ):
        self.settings = settings or SyncSettings()
        self.api = api
        self.transport = transport
        self.store = store or MessageStore()
        self.receipts = ReadReceiptBatcher(
            api,
            batch_window=self.settings.read_receipt_batch_window,
            phone_for=self._phone_for,
        )
        self.index = ConversationIndex(self.store, receipts=self.receipts)
        self.delivery = DeliveryStateMachine(self.store, api, send_timeout=self.settings.send_timeout)
        self.echoes = EchoReconciler(self.store, match_window_ms=self.settings.echo_match_window_ms)

        self._pending_sends: Set[asyncio.Task] = set()
        self._message_listeners: Dict[str, List[MessagesListener]] = {}
        self._connectivity_listeners: List[ConnectivityListener] = []

        self.store.add_listener(self._on_conversation_touched)
        if transport is not None:
            transport.add_handler(self.handle_event)
            transport.on_connected(self.resync)
            transport.on_state_change(self._on_transport_state)

    @classmethod
    def from_settings(cls, settings: Optional[SyncSettings] = None) -> "SyncFacade":
        """Build a facade talking to the configured backend"""
        settings = settings or SyncSettings.from_env()
        setup_logging(settings.log_level)
        api = ChatApiClient(settings.api_base_url, api_key=settings.api_key, timeout=settings.send_timeout)
        headers = {"Authorization": f"Bearer {settings.api_key}"} if settings.api_key else None
        transport = RealtimeTransport(settings.ws_url, reconnect_delay=settings.reconnect_delay, headers=headers)
        return cls(api, transport=transport, settings=settings)

    # ============ Lifecycle ============

    async def start(self):
        await self.receipts.start()
        if self.transport is not None:
            await self.transport.start()
        else:
            await self.resync()
        logger.info("Sync core started")

    async def stop(self):
        if self.transport is not None:
            await self.transport.stop()
        await self.drain()
        await self.receipts.stop()
        logger.info("Sync core stopped")

    async def drain(self):
        """Wait for in-flight sends and queued read receipts"""
        while self._pending_sends:
            await asyncio.gather(*list(self._pending_sends), return_exceptions=True)
        await self.receipts.flush()

    @property
    def connection_state(self) -> ConnectionState:
        if self.transport is None:
            return ConnectionState.DISCONNECTED
        return self.transport.state

    @property
    def is_online(self) -> bool:
        return self.transport is not None and self.transport.is_connected

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self.index.active_id

    # ============ Subscriptions ============

    def on_conversations_changed(self, callback: Callable[[List[Conversation]], None]) -> Callable[[], None]:
        return self.index.add_listener(callback)

    def on_messages_changed(self, conversation_id: str, callback: MessagesListener) -> Callable[[], None]:
        key = self._resolve(conversation_id)
        self._message_listeners.setdefault(key, []).append(callback)

        def _remove():
            listeners = self._message_listeners.get(key, [])
            if callback in listeners:
                listeners.remove(callback)

        return _remove

    def on_connectivity_changed(self, callback: ConnectivityListener) -> Callable[[], None]:
        self._connectivity_listeners.append(callback)

        def _remove():
            if callback in self._connectivity_listeners:
                self._connectivity_listeners.remove(callback)

        return _remove

    def _on_conversation_touched(self, conversation_id: str):
        self.index.touch(conversation_id)
        listeners = self._message_listeners.get(conversation_id)
        if listeners:
            snapshot = self.store.list_ordered(conversation_id)
            for callback in list(listeners):
                safe_execute(callback, snapshot)
        if conversation_id == self.index.active_id:
            # Rendered while on screen
            self.receipts.request(conversation_id, self.store.iter_conversation(conversation_id))

    def _on_transport_state(self, state: ConnectionState):
        if state == ConnectionState.CONNECTING:
            return
        online = state == ConnectionState.CONNECTED
        for callback in list(self._connectivity_listeners):
            safe_execute(callback, online)

    # ============ Queries ============

    def _resolve(self, conversation_id: Optional[str]) -> str:
        return self.index.resolve(conversation_id) or str(conversation_id or "")

    def _phone_for(self, conversation_id: str) -> Optional[str]:
        conversation = self.index.get(conversation_id)
        return conversation.phone if conversation else None

    def get_ordered_messages(self, conversation_id: str) -> List[Message]:
        return self.store.list_ordered(self._resolve(conversation_id))

    def get_conversations(self) -> List[Conversation]:
        return self.index.list()

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.index.get(conversation_id)

    # ============ Selection ============

    async def select_conversation(self, conversation_id: str) -> OperationResult:
        """Make a conversation active, zero its unread count and load its history"""
        if not conversation_id:
            return OperationResult.fail(ConversationErrors.NOT_FOUND)

        self.index.set_active(self._resolve(conversation_id))
        active_id = self.index.active_id
        conversation = self.index.get(active_id)

        if conversation is not None and not conversation.is_new:
            result = await self.load_history(active_id, force_reload=True)
            if not result.success:
                return result

        self.index.mark_read(active_id)
        return OperationResult.ok(self.store.list_ordered(active_id))

    async def select_conversation_by_phone(self, phone: str, display_name: Optional[str] = None) -> OperationResult:
        """Open the conversation for a phone, creating a local one when unknown"""
        normalized = normalize_phone(phone)
        if not normalized:
            return OperationResult.fail(ConversationErrors.NOT_FOUND)

        if self.index.resolve(normalized) is None:
            self.index.ensure(normalized, phone=normalized, display_name=display_name, is_new=True)
            logger.info(f"Created local conversation for {normalized}")

        return await self.select_conversation(normalized)

    # ============ History ============

    async def load_history(
        self,
        conversation_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        force_reload: bool = False,
    ) -> OperationResult:
        """
        Fetch a page of messages. A forced reload of the first page replaces
        the conversation (keeping failed and in-flight local sends, and
        messages that arrived while the page was being fetched); anything
        else merges new messages in.
        """
        resolved = self._resolve(conversation_id)
        limit = limit or self.settings.history_page_size
        mark = self.store.sequence_mark()
        try:
            messages = await self.api.fetch_messages(resolved, page=page, limit=limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to load history for {resolved}: {e}")
            return OperationResult.fail(ConversationErrors.HISTORY_UNAVAILABLE)

        if force_reload and page == 1:
            self.store.replace_conversation(resolved, messages, since=mark)
        else:
            self.store.merge_conversation(resolved, messages)

        if resolved == self.index.active_id:
            self.index.mark_read(resolved)
        return OperationResult.ok(self.store.list_ordered(resolved))

    async def refresh_conversations(self) -> OperationResult:
        """Reload the conversation list from the server"""
        try:
            conversations = await self.api.fetch_conversations(
                page=1, limit=self.settings.conversation_page_size
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to refresh conversations: {e}")
            return OperationResult.fail(ConversationErrors.LIST_UNAVAILABLE)

        self.index.apply_server_list(conversations)
        return OperationResult.ok(self.index.list())

    async def resync(self):
        """Full resync after (re)connecting: events sent meanwhile are lost"""
        await self.refresh_conversations()
        active_id = self.index.active_id
        if active_id:
            conversation = self.index.get(active_id)
            if conversation is not None and not conversation.is_new:
                await self.load_history(active_id)

    # ============ Sending ============

    def send(
        self,
        conversation_id: str,
        content: Any,
        message_type: MessageType = MessageType.TEXT,
        media_ref: Optional[MediaRef] = None,
    ) -> OperationResult:
        """
        Insert the message optimistically and send it in the background.

        The returned message is already visible in get_ordered_messages()
        with status sending.
        """
        if isinstance(content, str) or content is None:
            content = sanitize_text(content)
            if not content and media_ref is None:
                return OperationResult.fail(MessageErrors.EMPTY_CONTENT)
        elif not isinstance(content, dict):
            content = sanitize_text(str(content))

        resolved = self._resolve(conversation_id)
        if not resolved:
            return OperationResult.fail(ConversationErrors.NOT_FOUND)
        conversation = self.index.ensure(resolved)

        if isinstance(content, str):
            content = replace_variables(content, conversation.template_variables())

        message = self.delivery.create_pending(resolved, content, message_type, media_ref)
        phone = conversation.phone if conversation.is_new else None
        return self._schedule_dispatch(message, phone)

    def retry(self, message_id: str) -> OperationResult:
        """Resend a failed message"""
        result = self.delivery.begin_retry(message_id)
        if not result.success:
            logger.info(f"Retry of {message_id} refused: {result.error_code}")
            return result

        message: Message = result.data
        conversation = self.index.get(message.conversation_id)
        phone = conversation.phone if conversation is not None and conversation.is_new else None
        return self._schedule_dispatch(message, phone)

    def _schedule_dispatch(self, message: Message, phone: Optional[str]) -> OperationResult:
        try:
            task = asyncio.get_running_loop().create_task(self.delivery.dispatch(message.id, phone=phone))
        except RuntimeError:
            logger.error(f"No running event loop to send {message.id}")
            failed = self.store.patch(message.id, status=MessageStatus.FAILED)
            return OperationResult.fail(SendErrors.CONNECTION, data=failed)

        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)
        return OperationResult.ok(message)

    def delete_message(self, message_id: str) -> OperationResult:
        """Remove a message from the local view only"""
        message = self.store.find(message_id)
        if message is None:
            return OperationResult.fail(MessageErrors.NOT_FOUND)
        self.store.remove_by_id(message.id)
        return OperationResult.ok(message)

    # ============ Realtime events ============

    def handle_event(self, event: TransportEvent):
        """Apply one validated realtime event"""
        if isinstance(event, NewMessageEvent):
            self._handle_new_message(event)
        elif isinstance(event, MessageEchoEvent):
            self.echoes.reconcile(self._resolve(event.conversation_id), event.message)
        elif isinstance(event, StatusUpdateEvent):
            self.delivery.apply_status(event.identifiers, event.status)
        elif isinstance(event, ConversationUpdatedEvent):
            conversation_id = event.conversation_id or event.patch.get("phone")
            self.index.apply_patch(conversation_id, event.patch)
        else:
            logger.debug(f"Ignoring event {type(event).__name__}")

    def _handle_new_message(self, event: NewMessageEvent):
        conversation_id = self._resolve(event.conversation_id)
        message = event.message.to_message(conversation_id, default_direction=Direction.INBOUND)

        if message.direction == Direction.OUTBOUND:
            # Sent from this account elsewhere; same path as an echo
            self.echoes.reconcile(conversation_id, event.message)
            return

        if not event.message.id and not event.message.provider_message_id:
            # No identity to deduplicate redeliveries against
            logger.warning(f"Dropping inbound message for {conversation_id}: no message id")
            return

        if message.provider_message_id:
            patch = {name: getattr(message, name) for name in PATCHABLE_FIELDS}
            patch["id"] = message.id
            stored, created = self.store.upsert_by_provider_id(message.provider_message_id, patch)
            if stored is None:
                return
        else:
            created = message.id not in self.store
            self.store.append(message)

        if created:
            self.index.increment_unread(conversation_id)
