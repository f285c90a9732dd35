# backend/accesshub/crud.py
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import models
from .events import AccessEvent, RosterEntry


def _insert_for(db: AsyncSession):
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        return postgresql_insert
    return sqlite_insert


# --- DEVICE OPERATIONS ---
async def get_device(db: AsyncSession, device_id: str) -> models.Device | None:
    result = await db.execute(select(models.Device).filter(models.Device.device_id == device_id))
    return result.scalars().first()


async def get_all_devices(db: AsyncSession) -> list[models.Device]:
    result = await db.execute(select(models.Device).order_by(models.Device.device_id))
    return list(result.scalars().all())


async def upsert_device(db: AsyncSession, device_id: str, seen_at: datetime, ip: str | None = None) -> models.Device | None:
    """
    Mark the device online as of `seen_at`. The stored ip is only replaced
    when this message carried one.
    """
    values_to_set = {"last_seen_at": seen_at, "status": "online"}
    if ip is not None:
        values_to_set["ip"] = ip

    insert = _insert_for(db)
    stmt = (
        insert(models.Device)
        .values(device_id=device_id, **values_to_set)
        .on_conflict_do_update(index_elements=["device_id"], set_=values_to_set)
    )
    await db.execute(stmt)
    await db.commit()
    return await get_device(db, device_id)


# --- ROSTER OPERATIONS ---
async def get_roster(db: AsyncSession, device_id: str) -> list[models.DeviceUser]:
    result = await db.execute(
        select(models.DeviceUser)
        .filter(models.DeviceUser.device_id == device_id)
        .order_by(models.DeviceUser.user_id)
    )
    return list(result.scalars().all())


async def replace_roster(
    db: AsyncSession, device_id: str, roster: Iterable[RosterEntry]
) -> tuple[list[RosterEntry], list[tuple[RosterEntry, Exception]]]:
    """
    Delete every stored user of the device and insert the new roster, all in
    one transaction. Each row goes through its own savepoint so one bad row
    is dropped without losing the others.
    """
    inserted: list[RosterEntry] = []
    failed: list[tuple[RosterEntry, Exception]] = []

    await db.execute(delete(models.DeviceUser).where(models.DeviceUser.device_id == device_id))
    for entry in roster:
        try:
            async with db.begin_nested():
                db.add(models.DeviceUser(
                    device_id=device_id,
                    user_id=entry.user_id,
                    name=entry.name,
                    phone=entry.phone,
                    card_id=entry.card_id,
                ))
        except Exception as e:
            # Constraint violations and driver-level conversion errors alike
            failed.append((entry, e))
            continue
        inserted.append(entry)

    await db.commit()
    return inserted, failed


# --- LOG OPERATIONS ---
async def add_access_log(db: AsyncSession, event: AccessEvent) -> models.AccessLog:
    entry = models.AccessLog(
        device_id=event.device_id,
        user_id=event.user_id,
        user_name=event.user_name,
        card_id=event.card_id,
        granted=event.granted,
        timestamp=event.timestamp,
    )
    db.add(entry)
    await db.commit()
    return entry


async def add_system_log(
    db: AsyncSession, device_id: str, category: str, message: str, timestamp: datetime
) -> models.SystemLog:
    entry = models.SystemLog(device_id=device_id, category=category, message=message, timestamp=timestamp)
    db.add(entry)
    await db.commit()
    return entry


async def get_recent_access_logs(db: AsyncSession, limit: int, device_id: str | None = None) -> list[models.AccessLog]:
    stmt = select(models.AccessLog)
    if device_id:
        stmt = stmt.filter(models.AccessLog.device_id == device_id)
    stmt = stmt.order_by(models.AccessLog.timestamp.desc(), models.AccessLog.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_recent_system_logs(db: AsyncSession, limit: int, device_id: str | None = None) -> list[models.SystemLog]:
    stmt = select(models.SystemLog)
    if device_id:
        stmt = stmt.filter(models.SystemLog.device_id == device_id)
    stmt = stmt.order_by(models.SystemLog.timestamp.desc(), models.SystemLog.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# --- TEMPLATE OPERATIONS ---
async def get_template(db: AsyncSession, template_id: str) -> models.Template | None:
    result = await db.execute(select(models.Template).filter(models.Template.template_id == template_id))
    return result.scalars().first()


async def get_templates_by_digest(db: AsyncSession, digest: str) -> list[models.Template]:
    result = await db.execute(
        select(models.Template).filter(models.Template.digest == digest).order_by(models.Template.created_at)
    )
    return list(result.scalars().all())


async def save_template(
    db: AsyncSession, template_id: str, data: bytes, digest: str, created_at: datetime
) -> models.Template:
    template = await get_template(db, template_id)
    if template is None:
        template = models.Template(template_id=template_id)
        db.add(template)
    template.data = data
    template.digest = digest
    template.created_at = created_at
    await db.commit()
    return template
