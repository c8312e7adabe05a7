"""
Chat Sync Core - Realtime Transport
Persistent websocket event channel: connect, fixed-delay reconnect and
typed event dispatch.

Events missed while disconnected are not buffered; every transition to
connected triggers the registered resync callbacks instead.
"""

import asyncio
import inspect
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import aiohttp

from error_handling import MalformedEventError
from logging_config import get_logger
from schemas.events import TransportEvent, parse_event
from utils.timestamps import to_utc_iso, utcnow

logger = get_logger(__name__)

DEFAULT_RECONNECT_DELAY = 3.0
HEARTBEAT_SECONDS = 20.0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class WebSocketMessage:
    """Structure for WebSocket messages"""
    event: str  # "new_message", "message_echo", "delivery_status", ...
    data: Dict[str, Any]
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = to_utc_iso(utcnow())

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, json_str: Union[str, bytes]) -> "WebSocketMessage":
        """
        Parse from JSON string.

        Frames without a "data" object carry their fields at the top level.

        Raises:
            ValueError: not JSON, not an object, or no event name
        """
        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("frame is not a JSON object")
        event = data.get("event") or data.get("type")
        if not event:
            raise ValueError("frame has no event name")
        payload = data.get("data")
        if not isinstance(payload, dict):
            payload = {k: v for k, v in data.items() if k not in ("event", "type", "timestamp")}
        return cls(
            event=str(event),
            data=payload,
            timestamp=data.get("timestamp") or "",
        )


async def _invoke(callback: Callable, *args):
    """Call a sync or async callback, containing its failures"""
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Realtime callback {getattr(callback, '__name__', callback)!s} failed: {e}", exc_info=True)


class RealtimeTransport:
    """
    Websocket client that keeps one connection alive.

    States: disconnected -> connecting -> connected -> disconnected ...
    After a connection ends or fails the next attempt waits the full
    reconnect delay, so there is at most one attempt per delay window.
    """

    def __init__(
        self,
        url: str,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        headers: Optional[Dict[str, str]] = None,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
        heartbeat: Optional[float] = HEARTBEAT_SECONDS,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.headers = headers or {}
        self.heartbeat = heartbeat
        self._session_factory = session_factory
        self._state = ConnectionState.DISCONNECTED
        self._handlers: List[Callable] = []
        self._connected_callbacks: List[Callable] = []
        self._state_listeners: List[Callable] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.connect_attempts = 0

    # ============ Registration ============

    def add_handler(self, callback: Callable[[TransportEvent], Any]):
        """Receive every validated event"""
        self._handlers.append(callback)

    def on_connected(self, callback: Callable[[], Any]):
        """Called on every transition to connected (resync hook)"""
        self._connected_callbacks.append(callback)

    def on_state_change(self, callback: Callable[[ConnectionState], None]):
        self._state_listeners.append(callback)

    # ============ State ============

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        logger.info(f"Realtime transport {self._state.value} -> {state.value}")
        self._state = state
        for callback in list(self._state_listeners):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    # ============ Lifecycle ============

    async def start(self):
        """Start the connection loop in the background"""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        """Close the connection and stop reconnecting"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _run(self):
        while self._running:
            await self._connect_once()
            if not self._running:
                break
            await asyncio.sleep(self.reconnect_delay)

    async def _connect_once(self):
        """One connection attempt; returns when the connection ends"""
        self._set_state(ConnectionState.CONNECTING)
        self.connect_attempts += 1
        try:
            async with self._session_factory() as session:
                async with session.ws_connect(
                    self.url,
                    heartbeat=self.heartbeat,
                    headers=self.headers,
                ) as ws:
                    self._set_state(ConnectionState.CONNECTED)
                    for callback in list(self._connected_callbacks):
                        await _invoke(callback)

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self.handle_frame(msg.data)
                        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Realtime connection to {self.url} failed: {e}")
        except Exception as e:
            logger.error(f"Realtime connection error: {e}", exc_info=True)
        finally:
            self._set_state(ConnectionState.DISCONNECTED)

    # ============ Dispatch ============

    async def handle_frame(self, raw: Union[str, bytes, Dict[str, Any]]) -> Optional[TransportEvent]:
        """
        Validate one frame and dispatch it to the handlers.

        Malformed frames are logged and dropped.

        Returns:
            The typed event, or None when the frame was dropped
        """
        try:
            if isinstance(raw, dict):
                raw = json.dumps(raw)
            envelope = WebSocketMessage.from_json(raw)
        except (ValueError, TypeError) as e:
            logger.warning(f"Dropping unparseable realtime frame: {e}")
            return None

        try:
            event = parse_event(envelope.event, envelope.data)
        except MalformedEventError as e:
            logger.warning(f"Dropping realtime frame: {e}")
            return None

        for callback in list(self._handlers):
            await _invoke(callback, event)
        return event
