"""
Chat Sync Core - Error Handling
Exception taxonomy and fault containment helpers for component boundaries
"""

import asyncio
from typing import Callable, Optional

from error_messages import ErrorMessage, SendErrors
from logging_config import get_logger

logger = get_logger(__name__)


class SyncError(Exception):
    """Base exception for synchronization errors"""
    pass


class ProviderAPIError(SyncError):
    """Provider/API layer rejected a request or answered with garbage"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SendTimeoutError(SyncError):
    """Send call got no network-layer response within the configured window"""
    pass


class TransportError(SyncError):
    """Realtime channel failure (connect refused, dropped socket)"""
    pass


class MalformedEventError(SyncError):
    """Inbound event missing required fields"""
    pass


def classify_send_error(error: BaseException) -> ErrorMessage:
    """
    Map a send failure to the user-facing error shown next to the message.

    Args:
        error: The exception raised by the send call

    Returns:
        ErrorMessage describing the failure
    """
    if isinstance(error, (SendTimeoutError, asyncio.TimeoutError)):
        return SendErrors.TIMEOUT

    if isinstance(error, ProviderAPIError):
        if error.status_code in (401, 403):
            return SendErrors.AUTHENTICATION
        return SendErrors.REJECTED

    error_message = str(error).lower()

    if "timeout" in error_message:
        return SendErrors.TIMEOUT

    if isinstance(error, (ConnectionError, TransportError)) or "connection" in error_message:
        return SendErrors.CONNECTION

    if "authentication" in error_message or "unauthorized" in error_message:
        return SendErrors.AUTHENTICATION

    return SendErrors.UNKNOWN


def safe_execute(func: Callable, *args, default_return=None, **kwargs):
    """
    Safely execute a function, returning default on error.

    Args:
        func: Function to execute
        *args: Positional arguments
        default_return: Value to return on error
        **kwargs: Keyword arguments

    Returns:
        Function result or default_return on error
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.error(f"Error in {getattr(func, '__name__', func)!s}: {e}", exc_info=True)
        return default_return

