# ==============================================================================
# == backend/accesshub/websocket.py - Dashboard fan-out                     ==
# ==============================================================================
#
# publish() never awaits: every subscriber owns a bounded FIFO and a sender
# task drains it. A subscriber that falls a whole queue behind is evicted
# instead of slowing down ingestion.
#
# Messages on the wire: {"event": "<name>", "data": {...}}

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect

from .monitoring import HealthMonitor

logger = logging.getLogger(__name__)

SnapshotFactory = Callable[[], Awaitable[dict[str, Any]]]
MessageHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]

# Close code 1013: "try again later"
EVICTED_CLOSE_CODE = 1013


class Subscriber:
    def __init__(self, websocket: WebSocket, queue_size: int):
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.evicted = asyncio.Event()


class BroadcastHub:
    def __init__(self, queue_size: int = 256, monitor: HealthMonitor | None = None):
        self.queue_size = queue_size
        self.monitor = monitor
        self._subscribers: set[Subscriber] = set()

    @property
    def active_connections(self) -> int:
        return len(self._subscribers)

    def subscribe(self, websocket: WebSocket) -> Subscriber:
        subscriber = Subscriber(websocket, self.queue_size)
        self._subscribers.add(subscriber)
        self._update_gauge()
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)
        self._update_gauge()

    def publish(self, event: str, data: dict[str, Any]) -> None:
        message = {"event": event, "data": data}
        for subscriber in list(self._subscribers):
            self._enqueue(subscriber, message)

    def _enqueue(self, subscriber: Subscriber, message: dict[str, Any]) -> None:
        try:
            subscriber.queue.put_nowait(message)
        except asyncio.QueueFull:
            self._evict(subscriber)

    def _evict(self, subscriber: Subscriber) -> None:
        self.unsubscribe(subscriber)
        while not subscriber.queue.empty():
            subscriber.queue.get_nowait()
        subscriber.evicted.set()
        logger.warning(f"Evicted slow dashboard subscriber (queue size {self.queue_size})")
        if self.monitor is not None:
            self.monitor.record_error("subscriber_evicted", "dashboard could not keep up with the live stream")

    def _update_gauge(self) -> None:
        if self.monitor is not None:
            self.monitor.websocket_connections = len(self._subscribers)

    async def serve(
        self,
        websocket: WebSocket,
        snapshot: SnapshotFactory,
        on_message: MessageHandler | None = None,
    ) -> None:
        """
        Run one dashboard connection until it closes.

        The subscriber is registered before the snapshot is built, so events
        arriving meanwhile are buffered and delivered right after it.
        """
        await websocket.accept()
        subscriber = self.subscribe(websocket)
        logger.info("New dashboard client connected.")
        try:
            await websocket.send_json({"event": "snapshot", "data": await snapshot()})

            sender = asyncio.create_task(self._pump(subscriber))
            receiver = asyncio.create_task(self._listen(subscriber, on_message))
            # The sender may be stuck on a dead socket, eviction must not wait for it
            evicted = asyncio.create_task(subscriber.evicted.wait())
            done, pending = await asyncio.wait({sender, receiver, evicted}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        except WebSocketDisconnect:
            pass
        finally:
            self.unsubscribe(subscriber)
            if subscriber.evicted.is_set():
                try:
                    await websocket.close(code=EVICTED_CLOSE_CODE)
                except Exception as e:
                    logger.debug(f"Closing evicted subscriber failed: {e}")
            logger.info("Dashboard client disconnected.")

    async def _pump(self, subscriber: Subscriber) -> None:
        while True:
            message = await subscriber.queue.get()
            try:
                await subscriber.websocket.send_json(message)
            except Exception as e:
                logger.debug(f"Dashboard send failed, dropping subscriber: {e}")
                return

    async def _listen(self, subscriber: Subscriber, on_message: MessageHandler | None) -> None:
        while True:
            try:
                text = await subscriber.websocket.receive_text()
            except (WebSocketDisconnect, RuntimeError):
                return
            if on_message is None:
                continue
            try:
                data = json.loads(text)
            except ValueError:
                self._enqueue(subscriber, {"event": "error", "data": {"message": "frames must be JSON objects"}})
                continue
            if not isinstance(data, dict):
                self._enqueue(subscriber, {"event": "error", "data": {"message": "frames must be JSON objects"}})
                continue
            reply = await on_message(data)
            if reply is not None:
                # Replies go through the same FIFO so the socket has a single writer
                self._enqueue(subscriber, reply)
