# ==============================================================================
# == backend/accesshub/ingest.py - Per-device ingestion pipeline            ==
# ==============================================================================
#
# submit() runs on the event loop thread and is synchronous: it classifies
# the message, updates presence and appends the event to the device's FIFO.
# One worker task per device then broadcasts, persists and broadcasts the
# persisted records, so events of one device stay in arrival order while
# different devices progress independently. A worker exits as soon as its
# FIFO is empty; the next message for that device starts a new one.

import asyncio
import logging
from typing import Any

from .classifier import classify, fallback_event
from .events import CanonicalEvent
from .monitoring import HealthMonitor
from .presence import PresenceTracker
from .sync import PersistenceSynchronizer
from .websocket import BroadcastHub

logger = logging.getLogger(__name__)


class IngestPipeline:
    def __init__(
        self,
        presence: PresenceTracker,
        synchronizer: PersistenceSynchronizer,
        hub: BroadcastHub,
        monitor: HealthMonitor,
    ):
        self.presence = presence
        self.synchronizer = synchronizer
        self.hub = hub
        self.monitor = monitor
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    def submit(self, address: str, payload: Any) -> CanonicalEvent:
        try:
            event = classify(address, payload)
        except Exception as e:
            logger.error(f"Classifier failed on message from '{address}'", exc_info=True)
            self.monitor.record_error("classify", f"'{address}': {e}")
            event = fallback_event(address, payload)

        self.monitor.record_message(event.type)
        self.presence.observe(event)

        queue = self._queues.get(event.device_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[event.device_id] = queue
            self._workers[event.device_id] = asyncio.create_task(
                self._worker(event.device_id, queue), name=f"ingest-{event.device_id}"
            )
        queue.put_nowait(event)
        logger.debug(f"Queued {event.type} from '{event.device_id}' (address '{address}')")
        return event

    async def _worker(self, device_id: str, queue: asyncio.Queue) -> None:
        # submit() fills the queue before this task first runs
        while not queue.empty():
            event = queue.get_nowait()
            try:
                await self._process(event)
            except Exception as e:
                logger.error(f"Error processing {event.type} from '{device_id}'", exc_info=True)
                self.monitor.record_error("ingest", f"{event.type} from '{device_id}': {e}")
            finally:
                queue.task_done()

        # No await between the empty check and here, so no event can slip in
        if self._queues.get(device_id) is queue:
            del self._queues[device_id]
            del self._workers[device_id]

    async def _process(self, event: CanonicalEvent) -> None:
        self.hub.publish(event.type, event.to_wire())
        result = await self.synchronizer.apply(event)
        for kind, record in result.records:
            self.hub.publish("persisted", {"kind": kind, "deviceId": event.device_id, "record": record})
        if result.failures:
            logger.warning(f"{result.failures} write(s) dropped for {event.type} from '{event.device_id}'")

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def close(self) -> None:
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
