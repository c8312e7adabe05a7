"""
Chat Sync Core - Conversation Index
Conversation list with preview, unread and ordering metadata.

Preview and time are derived from the MessageStore; unread counts come
from realtime events between full reloads, and from the server on reload.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from error_handling import safe_execute
from logging_config import get_logger
from models.conversation import Conversation, ConversationStatus, format_preview
from services.message_store import MessageStore
from utils.sanitization import normalize_phone

logger = get_logger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

ChangeListener = Callable[[List[Conversation]], None]

# conversation_updated patch keys -> Conversation fields
PATCH_ALIASES = {
    "name": "display_name",
    "display_name": "display_name",
    "displayName": "display_name",
    "contact_name": "display_name",
    "phone": "phone",
    "avatar": "avatar",
    "email": "email",
    "status": "status",
    "channel": "channel",
    "unread_count": "unread_count",
    "unreadCount": "unread_count",
}


class ConversationIndex:
    """
    Conversation metadata keyed by conversation id.

    The store notifies touch() on every mutation; listeners registered with
    add_listener() receive the ordered list after each change.
    """

    def __init__(self, store: MessageStore, receipts=None):
        self.store = store
        self.receipts = receipts
        self._conversations: Dict[str, Conversation] = {}
        # server id -> local id, for agent-created conversations the
        # server later reports under its own id
        self._aliases: Dict[str, str] = {}
        self._active_id: Optional[str] = None
        self._listeners: List[ChangeListener] = []

    # ============ Listeners ============

    def add_listener(self, callback: ChangeListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _changed(self):
        if not self._listeners:
            return
        snapshot = self.list()
        for callback in list(self._listeners):
            safe_execute(callback, snapshot)

    # ============ Queries ============

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def get(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        resolved = self.resolve(conversation_id)
        if resolved is None:
            return None
        return self._conversations[resolved].copy()

    def resolve(self, identifier: Optional[str]) -> Optional[str]:
        """
        Map an identifier to a known conversation id.

        Matches the id itself, an alias, or the phone number ignoring
        whitespace.
        """
        if not identifier:
            return None
        identifier = str(identifier)
        if identifier in self._conversations:
            return identifier
        if identifier in self._aliases:
            return self._aliases[identifier]

        phone = normalize_phone(identifier)
        if not phone:
            return None
        for conversation in self._conversations.values():
            if normalize_phone(conversation.phone) == phone or normalize_phone(conversation.id) == phone:
                return conversation.id
        return None

    def list(self) -> List[Conversation]:
        """Conversations, most recent first; never-active ones last"""
        ordered = sorted(
            self._conversations.values(),
            key=lambda c: c.last_message_time or _OLDEST,
            reverse=True,
        )
        return [c.copy() for c in ordered]

    def __len__(self) -> int:
        return len(self._conversations)

    # ============ Mutations ============

    def ensure(
        self,
        conversation_id: str,
        phone: Optional[str] = None,
        display_name: Optional[str] = None,
        is_new: bool = False,
        notify: bool = True,
    ) -> Conversation:
        """Return the conversation, creating a placeholder when unknown"""
        resolved = self.resolve(conversation_id)
        if resolved is not None:
            return self._conversations[resolved]

        conversation = Conversation(
            id=conversation_id,
            phone=phone or conversation_id,
            display_name=display_name or phone or conversation_id,
            is_new=is_new,
        )
        self._conversations[conversation_id] = conversation
        logger.debug(f"Conversation {conversation_id} created")
        if notify:
            self._changed()
        return conversation

    def touch(self, conversation_id: str):
        """Recompute preview and time from the store"""
        conversation = self.ensure(conversation_id, notify=False)
        last = self.store.last_message(conversation_id)
        if last is not None:
            conversation.last_message_preview = format_preview(last)
            conversation.last_message_time = last.timestamp
        self._changed()

    def increment_unread(self, conversation_id: str) -> bool:
        """Count one more unread inbound message unless the conversation is on screen"""
        conversation = self.ensure(conversation_id, notify=False)
        if conversation.id == self._active_id:
            return False
        conversation.unread_count += 1
        self._changed()
        return True

    def mark_read(self, conversation_id: str):
        """Zero the unread count and queue read acknowledgements upstream"""
        resolved = self.resolve(conversation_id)
        if resolved is None:
            return
        conversation = self._conversations[resolved]
        changed = conversation.unread_count != 0
        conversation.unread_count = 0

        if self.receipts is not None:
            self.receipts.request(resolved, self.store.iter_conversation(resolved))

        if changed:
            self._changed()

    def set_active(self, conversation_id: Optional[str]):
        self._active_id = self.resolve(conversation_id) if conversation_id else None
        if conversation_id and self._active_id is None:
            self._active_id = self.ensure(conversation_id).id
        if self._active_id is not None:
            self.mark_read(self._active_id)

    def apply_server_list(self, conversations: List[Conversation]):
        """
        Merge a full conversation list from the server.

        The server wins for unread counts except for the active
        conversation, which stays at zero. Conversations missing from the
        list are kept.
        """
        for incoming in conversations:
            target_id = self.resolve(incoming.id)
            if target_id is None and incoming.phone:
                target_id = self.resolve(incoming.phone)
            if target_id is None:
                target_id = incoming.id
            elif target_id != incoming.id:
                self._aliases[incoming.id] = target_id

            merged = incoming.copy(id=target_id, is_new=False)
            if target_id == self._active_id:
                merged.unread_count = 0

            last = self.store.last_message(target_id)
            if last is not None and (
                merged.last_message_time is None or last.timestamp >= merged.last_message_time
            ):
                merged.last_message_preview = format_preview(last)
                merged.last_message_time = last.timestamp

            self._conversations[target_id] = merged

        logger.info(f"Conversation list reloaded: {len(conversations)} from server, {len(self)} total")
        self._changed()

    def apply_patch(self, conversation_id: Optional[str], patch: Dict[str, Any]) -> Optional[Conversation]:
        """Apply a server-side metadata change (contact renamed, status...)"""
        resolved = self.resolve(conversation_id)
        if resolved is None and isinstance(patch, dict):
            resolved = self.resolve(patch.get("phone"))
        if resolved is None:
            logger.debug(f"Conversation update for unknown conversation {conversation_id}, ignored")
            return None

        conversation = self._conversations[resolved]
        for key, value in (patch or {}).items():
            field_name = PATCH_ALIASES.get(key)
            if field_name is None or value is None:
                continue
            if field_name == "status":
                value = ConversationStatus.coerce(value)
            elif field_name == "unread_count":
                try:
                    value = max(0, int(value))
                except (TypeError, ValueError):
                    continue
                if resolved == self._active_id:
                    value = 0
            else:
                value = str(value)
            setattr(conversation, field_name, value)

        self._changed()
        return conversation.copy()
