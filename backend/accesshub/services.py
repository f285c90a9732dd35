# ==============================================================================
# == backend/accesshub/services.py - Wiring of the ingestion core           ==
# ==============================================================================

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .commands import CommandDispatcher, CommandQueue
from .config import Settings
from .database import create_optimized_engine, create_session_factory, init_models
from .device_websocket import DeviceConnectionManager
from .errors import ValidationError
from .ingest import IngestPipeline
from .monitoring import HealthMonitor
from .mqtt import MqttBridge
from .presence import PresenceTracker
from .schemas import CommandRequest
from .sync import PersistenceSynchronizer
from .templates import TemplateStore
from .websocket import BroadcastHub

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    monitor: HealthMonitor
    presence: PresenceTracker
    hub: BroadcastHub
    synchronizer: PersistenceSynchronizer
    commands: CommandQueue
    device_channels: DeviceConnectionManager
    dispatcher: CommandDispatcher
    pipeline: IngestPipeline
    templates: TemplateStore
    mqtt: MqttBridge | None = None

    async def start(self) -> None:
        await init_models(self.engine)
        logger.info("✓ Database initialized")
        if self.mqtt is not None:
            self.mqtt.start()

    async def stop(self) -> None:
        if self.mqtt is not None:
            self.mqtt.stop()
        await self.pipeline.close()
        await self.engine.dispose()

    async def snapshot(self) -> dict[str, Any]:
        """Initial state for a dashboard that just connected."""
        devices = await self.synchronizer.list_devices()
        access_logs = await self.synchronizer.recent_access_logs()
        system_logs = await self.synchronizer.recent_system_logs()
        return {
            "devices": [d.model_dump(mode="json", by_alias=True) for d in devices],
            "presence": [p.to_wire() for p in self.presence.snapshot()],
            "accessLogs": [log.model_dump(mode="json", by_alias=True) for log in access_logs],
            "systemLogs": [log.model_dump(mode="json", by_alias=True) for log in system_logs],
            "pendingCommands": [c.to_wire() for c in self.commands.pending()],
        }

    async def handle_dashboard_message(self, data: dict[str, Any]) -> dict[str, Any] | None:
        """Dashboards may submit commands over their live socket."""
        if data.get("action") != "command":
            return {"event": "error", "data": {"message": f"unknown action '{data.get('action')}'"}}
        try:
            request = CommandRequest.model_validate(data.get("command") or {})
            result = await self.dispatcher.submit(request)
        except ValidationError as e:
            return {"event": "command-result", "data": e.to_dict()}
        except ValueError as e:
            return {"event": "command-result", "data": {"success": False, "message": str(e), "errors": []}}
        return {"event": "command-result", "data": result.model_dump(mode="json", by_alias=True)}


def build_services(settings: Settings) -> Services:
    engine = create_optimized_engine(settings)
    session_factory = create_session_factory(engine)
    monitor = HealthMonitor()
    presence = PresenceTracker()
    hub = BroadcastHub(queue_size=settings.SUBSCRIBER_QUEUE_SIZE, monitor=monitor)
    synchronizer = PersistenceSynchronizer(
        session_factory, monitor, presence=presence,
        log_limit_default=settings.LOG_LIMIT_DEFAULT, log_limit_max=settings.LOG_LIMIT_MAX,
    )
    pipeline = IngestPipeline(presence, synchronizer, hub, monitor)
    commands = CommandQueue()
    device_channels = DeviceConnectionManager()
    dispatcher = CommandDispatcher(
        commands, hub, synchronizer, settings.command_topic,
        device_channels=device_channels, push_enabled=settings.COMMAND_PUSH_ENABLED,
    )
    templates = TemplateStore(
        session_factory, settings.TEMPLATE_PAGE_THRESHOLD,
        page_size=settings.TEMPLATE_PAGE_SIZE, page_count=settings.TEMPLATE_PAGE_COUNT,
    )

    mqtt_bridge = None
    if settings.MQTT_ENABLED:
        mqtt_bridge = MqttBridge(
            settings, pipeline.submit, monitor, on_connected=dispatcher.redeliver_pending
        )
        dispatcher.mqtt = mqtt_bridge

    return Services(
        settings=settings, engine=engine, session_factory=session_factory, monitor=monitor,
        presence=presence, hub=hub, synchronizer=synchronizer, commands=commands,
        device_channels=device_channels, dispatcher=dispatcher, pipeline=pipeline,
        templates=templates, mqtt=mqtt_bridge,
    )
