# backend/accesshub/presence.py
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

from .events import EventBase


@dataclass(frozen=True)
class DevicePresence:
    device_id: str
    last_seen_at: datetime
    ip: str | None = None
    signal_strength: int | None = None
    status: str = "online"

    def to_wire(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "deviceId": data["device_id"],
            "lastSeenAt": self.last_seen_at.isoformat(),
            "ip": data["ip"],
            "signalStrength": data["signal_strength"],
            "status": data["status"],
        }


class PresenceTracker:
    """
    Liveness of every device that ever sent anything.

    Any traffic counts, not only heartbeats. Nothing here expires: deciding
    that a device went quiet for too long is up to the dashboard.
    """

    def __init__(self):
        self._devices: dict[str, DevicePresence] = {}
        self._lock = threading.Lock()

    def observe(self, event: EventBase) -> DevicePresence:
        with self._lock:
            current = self._devices.get(event.device_id)
            if current is None:
                current = DevicePresence(device_id=event.device_id, last_seen_at=event.timestamp)
            updated = replace(
                current,
                last_seen_at=event.timestamp,
                status="online",
                ip=event.ip if event.ip is not None else current.ip,
                signal_strength=(
                    event.signal_strength if event.signal_strength is not None else current.signal_strength
                ),
            )
            self._devices[event.device_id] = updated
            return updated

    def get(self, device_id: str) -> DevicePresence | None:
        with self._lock:
            return self._devices.get(device_id)

    def snapshot(self) -> list[DevicePresence]:
        with self._lock:
            return [self._devices[key] for key in sorted(self._devices)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)
