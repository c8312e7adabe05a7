"""
Chat Sync Core - Provider API Schemas
Normalize loosely-shaped provider/API payloads into domain models.

Provider payloads name the same field several ways (text/message/content,
created_at/sentAt, messageId/message_id ...). Every model here accepts all
known spellings and drops unknown fields.
"""

import json
import uuid
from typing import Optional, List, Any, Dict, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from logging_config import get_logger
from models.conversation import Conversation, ConversationStatus
from models.message import (
    Direction,
    MediaRef,
    Message,
    MessageStatus,
    MessageType,
)
from utils.timestamps import normalize_timestamp, parse_timestamp

logger = get_logger(__name__)

FLOW_REPLY_FALLBACK_BODY = "Flow response completed"


def _coerce_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def parse_interactive(interactive: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    """
    Turn an interactive payload into structured content plus a readable body.

    Flow replies (nfm_reply) carry their form data as a JSON string in
    response_json; it is decoded when possible.

    Returns:
        (content dict, body text)
    """
    interactive_type = interactive.get("type")
    content: Dict[str, Any] = {"interactive_type": interactive_type, "interactive": interactive}

    if interactive_type == "nfm_reply" and isinstance(interactive.get("nfm_reply"), dict):
        reply = interactive["nfm_reply"]
        response = reply.get("response_json")
        if isinstance(response, str):
            try:
                parsed = json.loads(response)
            except ValueError:
                parsed = None
        else:
            parsed = response
        body = reply.get("body") or FLOW_REPLY_FALLBACK_BODY
        content.update({
            "name": reply.get("name"),
            "body": body,
            "response": parsed,
        })
        return content, body

    body = ""
    for key in ("button_reply", "list_reply"):
        reply = interactive.get(key)
        if isinstance(reply, dict) and reply.get("title"):
            body = reply["title"]
            break
    content["body"] = body
    return content, body


def _interactive_from_text(text: str) -> Optional[Dict[str, Any]]:
    """Interactive payloads are sometimes stored as JSON inside the text field"""
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return None
    try:
        decoded = json.loads(stripped)
    except ValueError:
        return None
    if isinstance(decoded, dict) and decoded.get("type") == "interactive" and isinstance(decoded.get("interactive"), dict):
        return decoded["interactive"]
    return None


class ApiEnvelope(BaseModel):
    """Standard {success, data, error} response wrapper"""
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    data: Any = None
    error: Optional[str] = None


class MessagePayload(BaseModel):
    """A message as the API or the realtime channel describes it"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    provider_message_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("provider_message_id", "providerMessageId", "messageId", "message_id"),
    )
    direction: Optional[str] = None
    sender: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    content: Any = Field(None, validation_alias=AliasChoices("content", "text", "message", "body"))
    timestamp: Any = Field(
        None, validation_alias=AliasChoices("timestamp", "created_at", "sentAt", "sent_at", "received_at")
    )
    media_url: Optional[str] = Field(None, validation_alias=AliasChoices("media_url", "mediaUrl"))
    media_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("media_type", "mediaType", "mime_type", "mimeType")
    )
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = Field(None, validation_alias=AliasChoices("location_name", "locationName"))
    location_address: Optional[str] = Field(
        None, validation_alias=AliasChoices("location_address", "locationAddress")
    )
    interactive: Optional[Dict[str, Any]] = None

    @field_validator("id", "provider_message_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value):
        return _coerce_id(value)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _lenient_float(cls, value):
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def resolved_direction(self, default: Direction = Direction.INBOUND) -> Direction:
        value = (self.direction or "").lower()
        if value in ("outbound", "outgoing"):
            return Direction.OUTBOUND
        if value in ("inbound", "incoming"):
            return Direction.INBOUND
        if self.sender == "agent":
            return Direction.OUTBOUND
        return default

    def to_message(
        self,
        conversation_id: str,
        default_direction: Direction = Direction.INBOUND,
        default_status: Optional[MessageStatus] = None,
    ) -> Message:
        """Build a domain Message from this payload"""
        direction = self.resolved_direction(default_direction)
        if default_status is None:
            default_status = MessageStatus.RECEIVED if direction == Direction.INBOUND else MessageStatus.SENT

        message_type = MessageType.coerce(self.type or "text")
        content: Any = self.content if self.content is not None else ""
        if not isinstance(content, (str, dict)):
            content = str(content)

        interactive = self.interactive
        if interactive is None and isinstance(content, str):
            interactive = _interactive_from_text(content)
        if interactive is not None:
            content, _ = parse_interactive(interactive)
            message_type = MessageType.INTERACTIVE
        elif message_type == MessageType.LOCATION and self.latitude is not None and self.longitude is not None:
            content = {
                "latitude": self.latitude,
                "longitude": self.longitude,
                "name": self.location_name,
                "address": self.location_address,
            }

        media_ref = MediaRef(url=self.media_url, mime_type=self.media_type) if self.media_url else None

        message_id = self.id or self.provider_message_id or f"evt_{uuid.uuid4().hex[:12]}"

        return Message(
            id=message_id,
            conversation_id=conversation_id,
            direction=direction,
            type=message_type,
            status=MessageStatus.coerce(self.status, default_status),
            content=content,
            media_ref=media_ref,
            provider_message_id=self.provider_message_id,
            timestamp=normalize_timestamp(self.timestamp),
        )


class ConversationPayload(BaseModel):
    """A conversation list entry as the API describes it"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    phone: Optional[str] = Field(None, validation_alias=AliasChoices("phone", "contact_phone", "clientPhone"))
    name: Optional[str] = Field(
        None, validation_alias=AliasChoices("name", "display_name", "displayName", "contact_name", "clientName")
    )
    avatar: Optional[str] = None
    email: Optional[str] = None
    last_message: Optional[str] = Field(
        None, validation_alias=AliasChoices("lastMessage", "last_message", "last_message_content")
    )
    last_message_time: Any = Field(
        None, validation_alias=AliasChoices("lastMessageTime", "last_message_at", "timestamp")
    )
    unread_count: Optional[int] = Field(None, validation_alias=AliasChoices("unreadCount", "unread_count"))
    unread: Optional[bool] = None
    status: Optional[str] = None
    channel: Optional[str] = None

    @field_validator("id", "phone", mode="before")
    @classmethod
    def _stringify_ids(cls, value):
        return _coerce_id(value)

    @field_validator("unread_count", mode="before")
    @classmethod
    def _lenient_count(cls, value):
        if value in (None, ""):
            return None
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return None

    @model_validator(mode="after")
    def _require_identifier(self):
        if not self.id and not self.phone:
            raise ValueError("conversation needs an id or a phone")
        return self

    def to_conversation(self) -> Conversation:
        conversation_id = self.id or self.phone
        phone = self.phone or conversation_id
        if self.unread_count is not None:
            unread = self.unread_count
        else:
            unread = 1 if self.unread else 0
        return Conversation(
            id=conversation_id,
            phone=phone,
            display_name=self.name or phone or "Contact",
            avatar=self.avatar,
            email=self.email,
            last_message_preview=self.last_message or "No messages",
            last_message_time=parse_timestamp(self.last_message_time),
            unread_count=unread,
            status=ConversationStatus.coerce(self.status or "active"),
            channel=self.channel or "whatsapp",
        )


class SendResult(BaseModel):
    """Outcome of a successful send call"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    provider_message_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("provider_message_id", "providerMessageId", "messageId", "message_id"),
    )
    status: Optional[str] = None
    timestamp: Any = Field(
        None, validation_alias=AliasChoices("timestamp", "sentAt", "sent_at", "created_at")
    )

    @field_validator("id", "provider_message_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value):
        return _coerce_id(value)

    @model_validator(mode="after")
    def _fill_ids(self):
        if not self.id and not self.provider_message_id:
            raise ValueError("send result carries no message id")
        if not self.provider_message_id:
            self.provider_message_id = self.id
        if not self.id:
            self.id = self.provider_message_id
        return self

    @property
    def message_status(self) -> MessageStatus:
        return MessageStatus.coerce(self.status, MessageStatus.SENT)


class MarkReadResult(BaseModel):
    """Outcome of a mark-read call"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    success: bool = False
    success_count: int = Field(0, validation_alias=AliasChoices("success_count", "successCount"))
    failed_count: int = Field(0, validation_alias=AliasChoices("failed_count", "failedCount"))
    error: Optional[str] = None


def parse_messages(conversation_id: str, items: List[Any]) -> List[Message]:
    """Normalize a message list, skipping entries that are not objects"""
    messages = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            messages.append(MessagePayload.model_validate(item).to_message(conversation_id))
        except ValidationError as e:
            logger.warning(f"Skipping malformed message in {conversation_id}: {e.error_count()} errors")
    return messages


def parse_conversations(items: List[Any]) -> List[Conversation]:
    """Normalize a conversation list, skipping entries without an identifier"""
    conversations = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            conversations.append(ConversationPayload.model_validate(item).to_conversation())
        except ValidationError as e:
            logger.warning(f"Skipping malformed conversation: {e.error_count()} errors")
    return conversations
