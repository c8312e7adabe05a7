"""
Chat Sync Core - Centralized Error Messages
Bilingual error messages (English/Spanish) for soft failures reported to the UI.
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass


@dataclass(frozen=True)
class ErrorMessage:
    """Bilingual error message structure"""
    message_en: str
    message_es: str
    error_code: str
    retryable: bool = False


# ============ Message Errors ============

class MessageErrors:
    NOT_FOUND = ErrorMessage(
        message_en="Message not found. It may have been resent or deleted.",
        message_es="Mensaje no encontrado. Es posible que ya haya sido reenviado o eliminado.",
        error_code="MESSAGE_NOT_FOUND",
    )

    NOT_RETRYABLE = ErrorMessage(
        message_en="This message is not marked as failed",
        message_es="Este mensaje no está marcado como fallido.",
        error_code="MESSAGE_NOT_RETRYABLE",
    )

    EMPTY_CONTENT = ErrorMessage(
        message_en="Message cannot be empty",
        message_es="El mensaje no puede estar vacío",
        error_code="MESSAGE_EMPTY",
    )


# ============ Conversation Errors ============

class ConversationErrors:
    NOT_FOUND = ErrorMessage(
        message_en="Conversation not found",
        message_es="Conversación no encontrada",
        error_code="CONVERSATION_NOT_FOUND",
    )

    HISTORY_UNAVAILABLE = ErrorMessage(
        message_en="Could not load messages",
        message_es="No se pudieron cargar los mensajes",
        error_code="CONVERSATION_HISTORY_UNAVAILABLE",
        retryable=True,
    )

    LIST_UNAVAILABLE = ErrorMessage(
        message_en="Could not load conversations",
        message_es="No se pudieron cargar las conversaciones",
        error_code="CONVERSATION_LIST_UNAVAILABLE",
        retryable=True,
    )


# ============ Send Errors ============

class SendErrors:
    TIMEOUT = ErrorMessage(
        message_en="The provider did not answer in time",
        message_es="El proveedor no respondió a tiempo",
        error_code="SEND_TIMEOUT",
        retryable=True,
    )

    REJECTED = ErrorMessage(
        message_en="The provider rejected the message",
        message_es="El proveedor rechazó el mensaje",
        error_code="SEND_REJECTED",
        retryable=True,
    )

    CONNECTION = ErrorMessage(
        message_en="Connection failed while sending",
        message_es="Falló la conexión al enviar",
        error_code="SEND_CONNECTION_ERROR",
        retryable=True,
    )

    AUTHENTICATION = ErrorMessage(
        message_en="Authentication error with the provider",
        message_es="Error de autenticación con el proveedor",
        error_code="SEND_AUTHENTICATION_ERROR",
    )

    UNKNOWN = ErrorMessage(
        message_en="Unexpected error while sending",
        message_es="Error desconocido al enviar",
        error_code="SEND_UNKNOWN_ERROR",
        retryable=True,
    )


# ============ Result Type ============

@dataclass
class OperationResult:
    """Outcome of a UI-facing operation; soft failures carry an ErrorMessage"""
    success: bool
    error: Optional[ErrorMessage] = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ErrorMessage, data: Any = None) -> "OperationResult":
        return cls(success=False, error=error, data=data)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"error": False, "data": self.data}
        return get_error_response(self.error)


# ============ Helper Functions ============

def get_error_response(error: ErrorMessage, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create standardized error payload for the presentation layer.

    Args:
        error: ErrorMessage instance
        details: Optional additional details

    Returns:
        Standardized error dict
    """
    response = {
        "error": True,
        "error_code": error.error_code,
        "message": error.message_en,
        "message_es": error.message_es,
        "retryable": error.retryable,
    }

    if details:
        response["details"] = details

    return response
