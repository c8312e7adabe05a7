"""
Chat Sync Core - Provider API Client
HTTP client for the chat backend that fronts the messaging provider.
"""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from error_handling import ProviderAPIError, SendTimeoutError, TransportError
from logging_config import get_logger
from models.conversation import Conversation
from models.message import Message, MessageType
from schemas.api import (
    ApiEnvelope,
    MarkReadResult,
    SendResult,
    parse_conversations,
    parse_messages,
)

logger = get_logger(__name__)


class ChatApiClient:
    """Chat backend REST API"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> Dict[str, Any]:
        """Make request to the chat API and unwrap the {success, data} envelope"""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=data,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise SendTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path} connection failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            raise ProviderAPIError(
                f"Non-JSON response from {path} (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        if not response.is_success:
            detail = body.get("error") if isinstance(body, dict) else None
            raise ProviderAPIError(
                detail or f"HTTP {response.status_code} from {path}",
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            raise ProviderAPIError(f"Unexpected response shape from {path}", status_code=response.status_code)

        envelope = ApiEnvelope.model_validate(body)
        if not envelope.success:
            raise ProviderAPIError(envelope.error or "Chat API error", status_code=response.status_code)
        return body

    async def send_message(
        self,
        conversation_id: str,
        content: Any,
        message_type: MessageType = MessageType.TEXT,
        phone: Optional[str] = None,
    ) -> SendResult:
        """Send a message; phone is included for conversations the server does not know yet"""
        payload: Dict[str, Any] = {
            "sender": "agent",
            "type": MessageType.coerce(message_type).value,
        }
        if isinstance(content, dict):
            payload["content"] = content
            payload["text"] = content.get("body") or content.get("text") or ""
        else:
            payload["text"] = content
        if phone:
            payload["phone"] = phone

        body = await self._request("POST", f"/conversations/{conversation_id}/messages", data=payload)
        try:
            return SendResult.model_validate(body.get("data") or {})
        except ValidationError as e:
            raise ProviderAPIError(f"Malformed send response: {e.error_count()} errors") from e

    async def mark_read(
        self,
        conversation_id: str,
        provider_message_ids: List[str],
        phone: Optional[str] = None,
    ) -> MarkReadResult:
        body = await self._request(
            "POST",
            "/mark-messages-read",
            data={"phone": phone or conversation_id, "messageIds": list(provider_message_ids)},
        )
        return MarkReadResult.model_validate(body)

    async def fetch_conversations(self, page: int = 1, limit: int = 50) -> List[Conversation]:
        body = await self._request("GET", "/conversations", params={"page": page, "limit": limit})
        data = body.get("data")
        if isinstance(data, dict):
            data = data.get("conversations")
        return parse_conversations(data if isinstance(data, list) else [])

    async def fetch_messages(self, conversation_id: str, page: int = 1, limit: int = 100) -> List[Message]:
        body = await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            params={"page": page, "limit": limit},
        )
        data = body.get("data")
        if isinstance(data, dict):
            data = data.get("messages")
        return parse_messages(conversation_id, data if isinstance(data, list) else [])
