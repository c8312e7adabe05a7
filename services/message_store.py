"""
Chat Sync Core - Message Store
Ordered per-conversation message sequences with provider-id deduplication.

Every operation is total: bad input is logged and dropped, never raised,
so a malformed provider payload cannot corrupt ordering.
"""

import bisect
import itertools
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from error_handling import safe_execute
from logging_config import get_logger
from models.message import (
    PATCHABLE_FIELDS,
    Direction,
    MediaRef,
    Message,
    MessageStatus,
    MessageType,
    furthest_status,
)
from utils.timestamps import normalize_timestamp, parse_timestamp

logger = get_logger(__name__)

# Local sends the server does not know about; a reload must not drop them
LOCALLY_AUTHORITATIVE = (MessageStatus.FAILED, MessageStatus.SENDING)

ConversationListener = Callable[[str], None]


def _sort_key(message: Message):
    return (message.timestamp, message.sequence)


def clean_patch(patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Keep only known message fields with usable values.

    Unknown keys and values of the wrong shape are dropped.
    """
    if not isinstance(patch, dict):
        return {}

    cleaned: Dict[str, Any] = {}
    for key, value in patch.items():
        if key not in PATCHABLE_FIELDS:
            continue

        if key == "direction":
            try:
                cleaned[key] = Direction(value)
            except ValueError:
                continue
        elif key == "type":
            cleaned[key] = MessageType.coerce(value)
        elif key == "status":
            try:
                cleaned[key] = MessageStatus(value)
            except ValueError:
                continue
        elif key == "timestamp":
            parsed = parse_timestamp(value)
            if parsed is not None:
                cleaned[key] = parsed
        elif key == "content":
            if isinstance(value, (str, dict)):
                cleaned[key] = value
            elif value is not None:
                cleaned[key] = str(value)
        elif key == "media_ref":
            if value is None or isinstance(value, MediaRef):
                cleaned[key] = value
            elif isinstance(value, dict) and value.get("url"):
                cleaned[key] = MediaRef(url=str(value["url"]), mime_type=value.get("mime_type"))
        elif key in ("conversation_id", "provider_message_id"):
            if value is None and key == "provider_message_id":
                cleaned[key] = None
            elif value not in (None, ""):
                cleaned[key] = str(value)
        else:
            cleaned[key] = value

    return cleaned


class MessageStore:
    """
    Owns the ordered message sequence of every conversation.

    Listeners registered with add_listener() receive the conversation id
    after every successful mutation (conversation touched).
    """

    def __init__(self):
        self._by_conversation: Dict[str, List[Message]] = {}
        self._by_id: Dict[str, Message] = {}
        # provider_message_id -> message id
        self._provider_index: Dict[str, str] = {}
        self._sequence = itertools.count(1)
        self._last_sequence = 0
        self._listeners: List[ConversationListener] = []

    # ============ Listeners ============

    def add_listener(self, callback: ConversationListener) -> Callable[[], None]:
        """Subscribe to conversation-touched notifications; returns an unsubscribe callable"""
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _touched(self, conversation_id: str):
        for callback in list(self._listeners):
            safe_execute(callback, conversation_id)

    # ============ Queries ============

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    def get(self, message_id: Optional[str]) -> Optional[Message]:
        if not message_id:
            return None
        return self._by_id.get(message_id)

    def find_by_provider_id(self, provider_message_id: Optional[str]) -> Optional[Message]:
        if not provider_message_id:
            return None
        message_id = self._provider_index.get(provider_message_id)
        return self._by_id.get(message_id) if message_id else None

    def find(self, identifier: Optional[str]) -> Optional[Message]:
        """Look an identifier up as a local id first, then as a provider id"""
        return self.get(identifier) or self.find_by_provider_id(identifier)

    def list_ordered(self, conversation_id: str) -> List[Message]:
        """Snapshot of a conversation's messages, oldest first"""
        return [m.copy() for m in self._by_conversation.get(conversation_id, [])]

    def iter_conversation(self, conversation_id: str) -> Iterable[Message]:
        """Live view for collaborators inside the core; do not mutate"""
        return iter(self._by_conversation.get(conversation_id, []))

    def last_message(self, conversation_id: str) -> Optional[Message]:
        sequence = self._by_conversation.get(conversation_id)
        return sequence[-1].copy() if sequence else None

    def sequence_mark(self) -> int:
        """Sequence number of the most recent insert; later inserts compare greater"""
        return self._last_sequence

    # ============ Internal mutation helpers ============

    def _insert(self, message: Message):
        # Sort keys must all be aware UTC
        message.timestamp = normalize_timestamp(message.timestamp)
        if not message.sequence:
            message.sequence = self._last_sequence = next(self._sequence)
        sequence = self._by_conversation.setdefault(message.conversation_id, [])
        bisect.insort(sequence, message, key=_sort_key)
        self._by_id[message.id] = message
        if message.provider_message_id:
            self._provider_index[message.provider_message_id] = message.id

    def _detach(self, message: Message):
        sequence = self._by_conversation.get(message.conversation_id, [])
        for index, candidate in enumerate(sequence):
            if candidate is message:
                del sequence[index]
                break
        self._by_id.pop(message.id, None)
        if message.provider_message_id and self._provider_index.get(message.provider_message_id) == message.id:
            del self._provider_index[message.provider_message_id]

    def _apply(self, message: Message, changes: Dict[str, Any]) -> Tuple[Message, Set[str]]:
        """
        Apply cleaned changes to a stored message, keeping every index valid.

        Returns:
            (message, conversation ids touched)
        """
        touched = {message.conversation_id}
        new_pid = changes.get("provider_message_id", message.provider_message_id)
        if new_pid and new_pid != message.provider_message_id:
            holder = self.find_by_provider_id(new_pid)
            if holder is not None and holder is not message:
                # Another entry already carries this provider id; fold it in
                touched.add(holder.conversation_id)
                if "status" in changes:
                    changes["status"] = furthest_status(changes["status"], holder.status)
                else:
                    changes["status"] = furthest_status(message.status, holder.status)
                self._detach(holder)

        self._detach(message)
        for key, value in changes.items():
            setattr(message, key, value)
        self._insert(message)
        touched.add(message.conversation_id)
        return message, touched

    # ============ Mutations ============

    def append(self, message: Message) -> Message:
        """
        Insert a message keeping timestamp order.

        An existing message with the same id is overwritten in place (its
        insertion order is kept). A message whose provider id is already
        held by another entry updates that entry instead of duplicating it.
        """
        existing = self._by_id.get(message.id)
        if existing is None and message.provider_message_id:
            existing = self.find_by_provider_id(message.provider_message_id)

        if existing is not None:
            changes = {
                name: getattr(message, name)
                for name in PATCHABLE_FIELDS
            }
            result, touched = self._apply(existing, changes)
        else:
            stored = message.copy(sequence=0)
            self._insert(stored)
            result, touched = stored, {stored.conversation_id}

        for conversation_id in touched:
            self._touched(conversation_id)
        return result.copy()

    def upsert_by_provider_id(
        self,
        provider_message_id: str,
        patch: Optional[Dict[str, Any]],
    ) -> Tuple[Optional[Message], bool]:
        """
        Merge a patch into the message carrying provider_message_id, or
        insert a new inbound message when none does.

        Returns:
            (message or None when the patch cannot form a message, created)
        """
        if not provider_message_id:
            logger.warning("upsert_by_provider_id called without a provider id, ignored")
            return None, False

        changes = clean_patch(patch)
        changes["provider_message_id"] = str(provider_message_id)

        existing = self.find_by_provider_id(provider_message_id)
        if existing is None:
            raw_id = patch.get("id") if isinstance(patch, dict) else None
            if raw_id:
                existing = self._by_id.get(str(raw_id))

        if existing is not None:
            message, touched = self._apply(existing, changes)
            for conversation_id in touched:
                self._touched(conversation_id)
            return message.copy(), False

        conversation_id = changes.pop("conversation_id", None)
        if not conversation_id:
            logger.warning(f"Dropping message {provider_message_id}: no conversation id")
            return None, False

        raw_id = patch.get("id") if isinstance(patch, dict) else None
        changes.setdefault("direction", Direction.INBOUND)
        changes.setdefault("status", MessageStatus.RECEIVED)
        message = Message(
            id=str(raw_id) if raw_id else str(provider_message_id),
            conversation_id=conversation_id,
            **changes,
        )
        self._insert(message)
        self._touched(conversation_id)
        return message.copy(), True

    def patch(self, message_id: str, **fields) -> Optional[Message]:
        """Update fields of a stored message; None when the id is unknown"""
        message = self._by_id.get(message_id)
        if message is None:
            return None
        changes = clean_patch(fields)
        if not changes:
            return message.copy()
        message, touched = self._apply(message, changes)
        for conversation_id in touched:
            self._touched(conversation_id)
        return message.copy()

    def promote(self, message_id: str, new_id: str, **fields) -> Optional[Message]:
        """
        Replace a message's id (temporary -> confirmed) without appending.

        Any other entry already stored under new_id or under the new
        provider id is absorbed so the confirmed message exists once.
        """
        message = self._by_id.get(message_id)
        if message is None:
            return None

        changes = clean_patch(fields)
        touched = {message.conversation_id}

        if new_id and new_id != message_id:
            occupant = self._by_id.get(new_id)
            if occupant is not None:
                touched.add(occupant.conversation_id)
                changes["status"] = furthest_status(changes.get("status", message.status), occupant.status)
                if not changes.get("provider_message_id") and occupant.provider_message_id:
                    changes["provider_message_id"] = occupant.provider_message_id
                self._detach(occupant)
            self._detach(message)
            message.id = new_id
            self._insert(message)

        message, applied = self._apply(message, changes)
        touched |= applied
        for conversation_id in touched:
            self._touched(conversation_id)
        return message.copy()

    def remove_by_id(self, message_id: str) -> bool:
        message = self._by_id.get(message_id)
        if message is None:
            return False
        self._detach(message)
        self._touched(message.conversation_id)
        return True

    def replace_conversation(
        self,
        conversation_id: str,
        messages: List[Message],
        since: Optional[int] = None,
    ) -> List[Message]:
        """
        Full reload of a conversation from the server.

        Local sends that are failed or still in flight survive unless the
        server reports the same provider id (or id). So does anything
        inserted after the sequence_mark() passed as since, which the
        fetched page may predate. Server entries never regress a status the
        client already saw advance.
        """
        server_ids = {m.id for m in messages}
        server_pids = {m.provider_message_id for m in messages if m.provider_message_id}

        previous = list(self._by_conversation.get(conversation_id, []))
        previous_by_pid = {m.provider_message_id: m for m in previous if m.provider_message_id}
        previous_by_id = {m.id: m for m in previous}

        retained = [
            m for m in previous
            if (
                (m.direction == Direction.OUTBOUND and m.status in LOCALLY_AUTHORITATIVE)
                or (since is not None and m.sequence > since)
            )
            and m.id not in server_ids
            and not (m.provider_message_id and m.provider_message_id in server_pids)
        ]

        for message in previous:
            self._detach(message)

        for incoming in messages:
            message = incoming.copy(conversation_id=conversation_id, sequence=0)
            known = previous_by_id.get(message.id) or previous_by_pid.get(message.provider_message_id or "")
            if known is not None:
                message.status = furthest_status(message.status, known.status)
                message.sequence = known.sequence

            # Same id or provider id seen twice: the later entry wins
            for duplicate in (self.get(message.id), self.find_by_provider_id(message.provider_message_id)):
                if duplicate is not None and duplicate.id in self._by_id:
                    self._detach(duplicate)

            self._insert(message)

        for message in retained:
            self._insert(message)

        self._touched(conversation_id)
        return self.list_ordered(conversation_id)

    def merge_conversation(self, conversation_id: str, messages: List[Message]) -> int:
        """
        Incremental load: add messages not yet stored, advance statuses of
        known ones. Returns the number of messages added.
        """
        added = 0
        changed = False
        for incoming in messages:
            known = self.get(incoming.id) or self.find_by_provider_id(incoming.provider_message_id)
            if known is not None:
                status = furthest_status(known.status, incoming.status)
                if status != known.status:
                    self._apply(known, {"status": status})
                    changed = True
                continue
            self._insert(incoming.copy(conversation_id=conversation_id, sequence=0))
            added += 1
            changed = True

        if changed:
            self._touched(conversation_id)
        return added
