# ==============================================================================
# == backend/accesshub/sync.py - Canonical events -> durable tables         ==
# ==============================================================================
#
# Writes for one event are independent of each other: a failed device upsert
# does not stop the access log append, and one bad roster row does not stop
# the rest of the roster. Every dropped write is reported to the health
# monitor and not retried.

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import crud, schemas
from .errors import PersistenceError
from .events import (
    AccessEvent, CanonicalEvent, DeviceEvent, EnrollmentEvent, RosterEntry, StatusEvent,
)
from .monitoring import HealthMonitor
from .presence import PresenceTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

CATEGORY_ENROLLMENT = "enrollment"
CATEGORY_SYSTEM = "system"


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or awaits it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter = Counter()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


@dataclass
class SyncResult:
    device_id: str
    event_type: str
    records: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    failures: int = 0


class PersistenceSynchronizer:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        monitor: HealthMonitor,
        presence: PresenceTracker | None = None,
        log_limit_default: int = 50,
        log_limit_max: int = 100,
    ):
        self.session_factory = session_factory
        self.monitor = monitor
        self.presence = presence
        self.log_limit_default = log_limit_default
        self.log_limit_max = log_limit_max
        self.roster_locks = KeyedLock()

    # --- WRITES ---
    async def apply(self, event: CanonicalEvent) -> SyncResult:
        result = SyncResult(device_id=event.device_id, event_type=event.type)

        device = await self._guarded(
            result, "device_upsert",
            lambda db: crud.upsert_device(db, event.device_id, event.timestamp, ip=event.ip),
        )
        if device is not None:
            result.records.append(("device", self._device_view(device).model_dump(mode="json", by_alias=True)))

        if isinstance(event, StatusEvent) and event.roster is not None:
            await self._replace_roster(result, event.device_id, event.roster)

        elif isinstance(event, AccessEvent):
            entry = await self._guarded(result, "access_log", lambda db: crud.add_access_log(db, event))
            if entry is not None:
                result.records.append(("access-log", schemas.AccessLog.model_validate(entry).model_dump(mode="json", by_alias=True)))

        elif isinstance(event, (EnrollmentEvent, DeviceEvent)):
            category = CATEGORY_ENROLLMENT if isinstance(event, EnrollmentEvent) else CATEGORY_SYSTEM
            await self._append_system_log(result, event.device_id, category, event.message, event.timestamp)

        return result

    async def record_system_event(self, device_id: str, category: str, message: str) -> SyncResult:
        result = SyncResult(device_id=device_id, event_type=category)
        await self._append_system_log(result, device_id, category, message, datetime.now(timezone.utc))
        return result

    async def _append_system_log(
        self, result: SyncResult, device_id: str, category: str, message: str, timestamp: datetime
    ) -> None:
        message = (message or "").strip()
        if not message:
            logger.debug(f"Dropping empty {category} message from '{device_id}'")
            return
        entry = await self._guarded(
            result, "system_log",
            lambda db: crud.add_system_log(db, device_id, category, message, timestamp),
        )
        if entry is not None:
            result.records.append(("system-log", schemas.SystemLog.model_validate(entry).model_dump(mode="json", by_alias=True)))

    async def _replace_roster(self, result: SyncResult, device_id: str, roster: list[RosterEntry]) -> None:
        async with self.roster_locks.hold(device_id):
            try:
                async with self.session_factory() as db:
                    inserted, failed = await crud.replace_roster(db, device_id, roster)
            except Exception as e:
                self._report(result, PersistenceError("roster_replace", device_id, e))
                return

        for entry, error in failed:
            self._report(result, PersistenceError(f"roster_row user_id={entry.user_id}", device_id, error))

        logger.info(f"Roster for '{device_id}' replaced: {len(inserted)} users stored, {len(failed)} dropped")
        result.records.append(("roster", {
            "deviceId": device_id,
            "users": [entry.to_wire() for entry in inserted],
        }))

    async def _guarded(self, result: SyncResult, operation: str, write: Callable[[Any], Awaitable[T]]) -> T | None:
        try:
            async with self.session_factory() as db:
                return await write(db)
        except Exception as e:
            self._report(result, PersistenceError(operation, result.device_id, e))
            return None

    def _report(self, result: SyncResult, error: PersistenceError) -> None:
        result.failures += 1
        self.monitor.record_error("persistence", str(error))

    # --- READS ---
    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.log_limit_default
        return max(1, min(int(limit), self.log_limit_max))

    async def list_devices(self) -> list[schemas.Device]:
        async with self.session_factory() as db:
            rows = await crud.get_all_devices(db)
        return [self._device_view(row) for row in rows]

    def _device_view(self, row) -> schemas.Device:
        device = schemas.Device.model_validate(row)
        seen = self.presence.get(row.device_id) if self.presence else None
        if seen is not None:
            device.signal_strength = seen.signal_strength
        return device

    async def get_roster(self, device_id: str) -> list[schemas.RosterUser]:
        # Same lock as the replace, so readers never see a half-written roster
        async with self.roster_locks.hold(device_id):
            async with self.session_factory() as db:
                rows = await crud.get_roster(db, device_id)
        return [schemas.RosterUser.model_validate(row) for row in rows]

    async def recent_access_logs(self, limit: int | None = None, device_id: str | None = None) -> list[schemas.AccessLog]:
        async with self.session_factory() as db:
            rows = await crud.get_recent_access_logs(db, self.clamp_limit(limit), device_id=device_id)
        return [schemas.AccessLog.model_validate(row) for row in rows]

    async def recent_system_logs(self, limit: int | None = None, device_id: str | None = None) -> list[schemas.SystemLog]:
        async with self.session_factory() as db:
            rows = await crud.get_recent_system_logs(db, self.clamp_limit(limit), device_id=device_id)
        return [schemas.SystemLog.model_validate(row) for row in rows]
