"""
Chat Sync Core - Read Receipt Batching
Groups "mark read" acknowledgements so one request per conversation goes
upstream per render pass.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from logging_config import get_logger
from models.message import Direction, Message

logger = get_logger(__name__)


class ReadReceiptBatcher:
    """
    Batches read acknowledgements per conversation.

    Ids queued during one event-loop turn (plus the optional batch window)
    go out together. Acknowledged ids are remembered and never re-sent;
    ids of a failed request become eligible again.
    """

    def __init__(
        self,
        api: Any,
        batch_window: float = 0.0,
        phone_for: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.api = api
        self.batch_window = batch_window  # extra seconds to collect a batch
        self.phone_for = phone_for
        self._pending: Dict[str, List[str]] = defaultdict(list)
        self._batch_tasks: Dict[str, asyncio.Task] = {}
        self._acknowledged: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._running = True

    async def start(self):
        self._running = True
        logger.info("Read receipt batcher started")

    async def stop(self):
        """Stop batching; queued ids that were not flushed are dropped"""
        self._running = False
        for task in self._batch_tasks.values():
            task.cancel()
        self._batch_tasks.clear()
        self._pending.clear()
        logger.info("Read receipt batcher stopped")

    def request(self, conversation_id: str, messages: Iterable[Message]) -> int:
        """
        Queue acknowledgements for the inbound messages among messages.

        Messages without a provider id are skipped. Returns how many ids
        were newly queued.
        """
        queued = self._pending[conversation_id]
        added = 0
        for message in messages:
            pid = message.provider_message_id
            if message.direction != Direction.INBOUND or not pid:
                continue
            if pid in self._acknowledged or pid in self._in_flight or pid in queued:
                continue
            queued.append(pid)
            added += 1

        if not queued:
            self._pending.pop(conversation_id, None)
            return 0

        if self._running and conversation_id not in self._batch_tasks:
            try:
                self._batch_tasks[conversation_id] = asyncio.get_running_loop().create_task(
                    self._batch_timeout_handler(conversation_id)
                )
            except RuntimeError:
                # No loop yet; flush() sends it later
                logger.debug(f"No running loop, read receipts for {conversation_id} held until flush")
        return added

    async def _batch_timeout_handler(self, conversation_id: str):
        """Send the batch after one loop turn plus the batch window"""
        try:
            await asyncio.sleep(self.batch_window)
            await self._process_batch(conversation_id)
            # Ids queued while mark_read was in flight go out as the next batch
            while self._running and self._pending.get(conversation_id):
                await self._process_batch(conversation_id)
        finally:
            self._batch_tasks.pop(conversation_id, None)

    async def _process_batch(self, conversation_id: str):
        ids = self._pending.pop(conversation_id, [])
        if not ids:
            return

        self._in_flight.update(ids)
        phone = self.phone_for(conversation_id) if self.phone_for else None
        logger.debug(f"Marking {len(ids)} messages read in {conversation_id}")
        try:
            result = await self.api.mark_read(conversation_id, ids, phone=phone)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Mark read failed for {conversation_id}: {e}")
            return
        finally:
            self._in_flight.difference_update(ids)

        if result is not None and not result.success:
            logger.warning(f"Mark read rejected for {conversation_id}: {result.error}")
            return
        self._acknowledged.update(ids)

    async def flush(self):
        """Send everything queued now and wait for outstanding batches"""
        for conversation_id in list(self._pending):
            await self._process_batch(conversation_id)
        tasks = list(self._batch_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_acknowledged(self, provider_message_id: str) -> bool:
        return provider_message_id in self._acknowledged

    @property
    def pending_count(self) -> int:
        """Get count of queued ids"""
        return sum(len(ids) for ids in self._pending.values())
