"""SafePath Backend — Live broadcast of new reports to WebSocket subscribers

publish() never blocks and never raises: events go onto a bounded queue and a
single pump task fans them out. When the queue is full the event is dropped.
"""

import asyncio
import logging
from typing import Any, Optional

from fastapi import WebSocket

from config import BROADCAST_DRAIN_SECONDS, BROADCAST_QUEUE_MAX

logger = logging.getLogger("safepath.broadcast")


class SafetyBroadcaster:
    def __init__(self, max_queue: int = BROADCAST_QUEUE_MAX):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._subscribers: set[WebSocket] = set()
        self._pump: Optional[asyncio.Task] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._subscribers.add(websocket)
        logger.info(f"Subscriber connected ({len(self._subscribers)} total)")

    def disconnect(self, websocket: WebSocket):
        self._subscribers.discard(websocket)

    def publish(self, event: str, payload: Any) -> bool:
        """Queue an event for delivery. Returns False if it was dropped."""
        try:
            self._queue.put_nowait({"event": event, "data": payload})
        except asyncio.QueueFull:
            logger.warning(f"Broadcast queue full, dropping '{event}' event")
            return False
        return True

    async def start(self):
        if self._pump is None:
            self._pump = asyncio.create_task(self._run())

    async def stop(self, drain_timeout: float = BROADCAST_DRAIN_SECONDS):
        """Deliver what is already queued (bounded by drain_timeout), then stop."""
        if self._pump is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Broadcast shutdown: {self._queue.qsize()} events not delivered")
        self._pump.cancel()
        try:
            await self._pump
        except asyncio.CancelledError:
            pass
        self._pump = None

    async def _run(self):
        while True:
            message = await self._queue.get()
            try:
                await self._deliver(message)
            finally:
                self._queue.task_done()

    async def _deliver(self, message: dict):
        subscribers = list(self._subscribers)
        if not subscribers:
            return
        results = await asyncio.gather(
            *(ws.send_json(message) for ws in subscribers),
            return_exceptions=True,
        )
        for ws, result in zip(subscribers, results):
            if isinstance(result, Exception):
                logger.info(f"Dropping subscriber after send failure: {result}")
                self._subscribers.discard(ws)
