"""
Chat Sync Core - Realtime Event Schemas
Tagged union of the events the realtime channel pushes, discriminated by
the frame's event name and validated before anything reaches the stores.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from error_handling import MalformedEventError
from models.message import MessageStatus
from schemas.api import MessagePayload

# Statuses a delivery_status event may carry
STATUS_UPDATE_VALUES = (
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.READ,
    MessageStatus.FAILED,
)


def _nest_flat_message(data: Any) -> Any:
    """Older emitters put message fields at the top level of the event"""
    if isinstance(data, dict) and not isinstance(data.get("message"), dict):
        data = dict(data)
        data["message"] = dict(data)
    return data


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("conversation_id", mode="before", check_fields=False)
    @classmethod
    def _stringify_conversation(cls, value):
        if value is None or value == "":
            return None
        return str(value)


class NewMessageEvent(_EventBase):
    """A message pushed in by a remote sender"""
    event: Literal["new_message"]
    conversation_id: str = Field(
        validation_alias=AliasChoices(
            "conversation_id", "conversationId", "contactPhone", "phone", "to", "from"
        )
    )
    message: MessagePayload

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data):
        return _nest_flat_message(data)


class MessageEchoEvent(_EventBase):
    """Provider confirmation of a message sent from this account"""
    event: Literal["message_echo"]
    conversation_id: str = Field(
        validation_alias=AliasChoices(
            "conversation_id", "conversationId", "to", "contactPhone", "phone"
        )
    )
    message: MessagePayload

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data):
        return _nest_flat_message(data)


class StatusUpdateEvent(_EventBase):
    """Delivery progress for an outbound message"""
    event: Literal["delivery_status", "status_update"]
    message_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("message_id", "messageId", "id", "outbox_id")
    )
    provider_message_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("provider_message_id", "providerMessageId", "platform_message_id"),
    )
    status: MessageStatus
    conversation_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("conversation_id", "conversationId", "phone")
    )

    @field_validator("message_id", "provider_message_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value):
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _lower_status(cls, value):
        return str(value).lower() if value is not None else value

    @model_validator(mode="after")
    def _check(self):
        if not self.message_id and not self.provider_message_id:
            raise ValueError("status update needs message_id or provider_message_id")
        if self.status not in STATUS_UPDATE_VALUES:
            raise ValueError(f"status {self.status.value} is not a delivery status")
        return self

    @property
    def identifiers(self):
        return [i for i in (self.message_id, self.provider_message_id) if i]


class ConversationUpdatedEvent(_EventBase):
    """Conversation metadata changed server-side (contact renamed, status ...)"""
    event: Literal["conversation_update", "contact_updated"]
    conversation_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("conversation_id", "conversationId", "phone", "id")
    )
    patch: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_patch(cls, data):
        if isinstance(data, dict) and "patch" not in data:
            data = dict(data)
            data["patch"] = {
                k: v for k, v in data.items()
                if k not in ("event", "conversation_id", "conversationId", "id")
            }
        return data


TransportEvent = Annotated[
    Union[NewMessageEvent, MessageEchoEvent, StatusUpdateEvent, ConversationUpdatedEvent],
    Field(discriminator="event"),
]

_event_adapter = TypeAdapter(TransportEvent)


def parse_event(event_name: str, data: Optional[Dict[str, Any]]) -> TransportEvent:
    """
    Validate a raw event into its typed form.

    Raises:
        MalformedEventError: unknown event name or missing required fields
    """
    if not isinstance(data, dict):
        data = {}
    payload = dict(data)
    payload["event"] = event_name
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid '{event_name}' event: {e.error_count()} validation errors") from e
