"""
Chat Sync Core - Configuration
Environment-driven settings for the synchronization core
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class SyncSettings:
    """Runtime settings for the sync core"""
    api_base_url: str = "http://localhost:3000/api/chat-live"
    ws_url: str = "ws://localhost:3000/ws/chat-live"
    api_key: Optional[str] = None
    send_timeout: float = 15.0  # seconds
    reconnect_delay: float = 3.0  # seconds, fixed
    echo_match_window_ms: int = 1000
    read_receipt_batch_window: float = 0.0  # seconds added to one loop turn
    conversation_page_size: int = 50
    history_page_size: int = 100
    log_level: str = "INFO"

    def __post_init__(self):
        # Enforce limits
        self.send_timeout = max(0.1, self.send_timeout)
        self.reconnect_delay = max(0.0, self.reconnect_delay)
        self.echo_match_window_ms = max(0, self.echo_match_window_ms)
        self.read_receipt_batch_window = max(0.0, self.read_receipt_batch_window)
        self.conversation_page_size = max(1, self.conversation_page_size)
        self.history_page_size = max(1, self.history_page_size)

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from environment variables"""
        defaults = cls()
        return cls(
            api_base_url=os.getenv("CHAT_API_BASE_URL", defaults.api_base_url),
            ws_url=os.getenv("CHAT_WS_URL", defaults.ws_url),
            api_key=os.getenv("CHAT_API_KEY") or None,
            send_timeout=_env_float("SEND_TIMEOUT_SECONDS", defaults.send_timeout),
            reconnect_delay=_env_float("RECONNECT_DELAY_SECONDS", defaults.reconnect_delay),
            echo_match_window_ms=_env_int("ECHO_MATCH_WINDOW_MS", defaults.echo_match_window_ms),
            read_receipt_batch_window=_env_float(
                "READ_RECEIPT_BATCH_WINDOW", defaults.read_receipt_batch_window
            ),
            conversation_page_size=_env_int("CONVERSATION_PAGE_SIZE", defaults.conversation_page_size),
            history_page_size=_env_int("HISTORY_PAGE_SIZE", defaults.history_page_size),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )
