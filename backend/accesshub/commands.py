# ==============================================================================
# == backend/accesshub/commands.py - Operator -> device command dispatch    ==
# ==============================================================================
#
# Each device has a single command slot:
#
#     Empty --submit--> Pending --take/ack--> Empty
#                       Pending --submit--> Pending   (older command superseded)
#
# Delivery is either pushed right away (MQTT, then the device WebSocket) or
# pulled by the device polling GET /device/{id}/command.

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .errors import ValidationError
from .schemas import CommandRequest, CommandResult

if TYPE_CHECKING:
    from .device_websocket import DeviceConnectionManager
    from .mqtt import MqttBridge
    from .sync import PersistenceSynchronizer
    from .websocket import BroadcastHub

logger = logging.getLogger(__name__)

COMMAND_KINDS = ("enroll", "delete", "clear", "getstatus")
NO_COMMAND = {"kind": "none"}


@dataclass(frozen=True)
class PendingCommand:
    device_id: str
    kind: str
    target_user_id: int | None = None
    name: str | None = None
    phone: str | None = None
    card_id: str | None = None
    command_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> dict[str, Any]:
        data = {
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "kind": self.kind,
            "createdAt": self.created_at.isoformat(),
        }
        if self.target_user_id is not None:
            data["targetUserId"] = self.target_user_id
        for key, value in (("name", self.name), ("phone", self.phone), ("cardId", self.card_id)):
            if value:
                data[key] = value
        return data


def validate_command(request: CommandRequest) -> PendingCommand:
    """Build a pending command or raise ValidationError listing every problem."""
    errors = []
    device_id = (request.device_id or "").strip()
    kind = (request.kind or "").strip().lower()
    name = (request.name or "").strip()

    if not device_id:
        errors.append({"field": "deviceId", "message": "deviceId is required"})
    if kind not in COMMAND_KINDS:
        errors.append({"field": "kind", "message": f"kind must be one of {list(COMMAND_KINDS)}"})

    if kind == "enroll":
        if request.target_user_id is None or request.target_user_id <= 0:
            errors.append({"field": "targetUserId", "message": "targetUserId is required for enroll"})
        if not name:
            errors.append({"field": "name", "message": "name is required for enroll"})

    if errors:
        raise ValidationError("Invalid command", errors)

    return PendingCommand(
        device_id=device_id,
        kind=kind,
        target_user_id=request.target_user_id,
        name=name or None,
        phone=(request.phone or "").strip() or None,
        card_id=(request.card_id or "").strip() or None,
    )


class CommandQueue:
    """At most one undelivered command per device."""

    def __init__(self):
        self._slots: dict[str, PendingCommand] = {}
        self._lock = threading.Lock()

    def submit(self, command: PendingCommand) -> PendingCommand | None:
        """Store the command; return the undelivered command it replaced, if any."""
        with self._lock:
            superseded = self._slots.get(command.device_id)
            self._slots[command.device_id] = command
            return superseded

    def take(self, device_id: str) -> PendingCommand | None:
        with self._lock:
            return self._slots.pop(device_id, None)

    def acknowledge(self, device_id: str, command_id: str) -> bool:
        """Clear the slot only if it still holds `command_id`."""
        with self._lock:
            current = self._slots.get(device_id)
            if current is None or current.command_id != command_id:
                return False
            del self._slots[device_id]
            return True

    def peek(self, device_id: str) -> PendingCommand | None:
        with self._lock:
            return self._slots.get(device_id)

    def pending(self) -> list[PendingCommand]:
        with self._lock:
            return sorted(self._slots.values(), key=lambda c: c.created_at)


class CommandDispatcher:
    def __init__(
        self,
        queue: CommandQueue,
        hub: "BroadcastHub",
        synchronizer: "PersistenceSynchronizer",
        command_topic,
        mqtt: "MqttBridge | None" = None,
        device_channels: "DeviceConnectionManager | None" = None,
        push_enabled: bool = True,
    ):
        self.queue = queue
        self.hub = hub
        self.synchronizer = synchronizer
        self.command_topic = command_topic
        self.mqtt = mqtt
        self.device_channels = device_channels
        self.push_enabled = push_enabled

    async def submit(self, request: CommandRequest) -> CommandResult:
        command = validate_command(request)

        superseded = self.queue.submit(command)
        if superseded is not None:
            logger.info(f"Command '{superseded.kind}' ({superseded.command_id}) for '{command.device_id}' superseded by '{command.kind}'")
            logged = await self.synchronizer.record_system_event(
                command.device_id, "system",
                f"command superseded: {superseded.kind} ({superseded.command_id}) replaced by {command.kind}",
            )
            for kind, record in logged.records:
                self.hub.publish("persisted", {"kind": kind, "deviceId": command.device_id, "record": record})

        channel = await self._push(command)
        self.hub.publish("command-sent", {**command.to_wire(), "channel": channel})

        if channel == "queued":
            message = f"Command '{command.kind}' queued for '{command.device_id}'"
        else:
            message = f"Command '{command.kind}' sent to '{command.device_id}' via {channel}"
        return CommandResult(success=True, message=message, command_id=command.command_id, channel=channel)

    def take(self, device_id: str) -> dict[str, Any]:
        command = self.queue.take(device_id)
        if command is None:
            return dict(NO_COMMAND)
        logger.info(f"Device '{device_id}' pulled command '{command.kind}' ({command.command_id})")
        return command.to_wire()

    async def redeliver_pending(self) -> int:
        """Push every queued command again, typically after the broker reconnects."""
        delivered = 0
        for command in self.queue.pending():
            if await self._push(command) != "queued":
                delivered += 1
        if delivered:
            logger.info(f"Re-delivered {delivered} pending command(s)")
        return delivered

    async def deliver_pending(self, device_id: str) -> str | None:
        command = self.queue.peek(device_id)
        if command is None:
            return None
        return await self._push(command)

    async def _push(self, command: PendingCommand) -> str:
        if not self.push_enabled:
            return "queued"

        message = command.to_wire()
        if self.mqtt is not None and self.mqtt.is_connected():
            if self.mqtt.publish_message(self.command_topic(command.device_id), json.dumps(message)):
                self.queue.acknowledge(command.device_id, command.command_id)
                return "mqtt"

        if self.device_channels is not None:
            if await self.device_channels.send_personal_message(command.device_id, message):
                self.queue.acknowledge(command.device_id, command.command_id)
                return "websocket"

        logger.debug(f"No push channel for '{command.device_id}', waiting for pull")
        return "queued"
