# ==============================================================================
# == backend/accesshub/models.py - Durable tables                            ==
# ==============================================================================

from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, LargeBinary, String, Text, UniqueConstraint
)

from .database import Base


class Device(Base):
    __tablename__ = "devices"

    device_id = Column(String, primary_key=True, index=True)
    ip = Column(String, nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(String, default="offline", index=True)


class DeviceUser(Base):
    """One row of a device's enrolled-user roster."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, default="")
    card_id = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("device_id", "user_id", name="uq_device_user"),
    )


class AccessLog(Base):
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, default=0)
    user_name = Column(String, nullable=False, default="Unknown")
    card_id = Column(String, nullable=True)
    granted = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_access_device_timestamp", "device_id", "timestamp"),
    )


class SystemLog(Base):
    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False, index=True)  # enrollment | system
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_system_device_timestamp", "device_id", "timestamp"),
    )


class Template(Base):
    __tablename__ = "templates"

    template_id = Column(String, primary_key=True)
    data = Column(LargeBinary, nullable=False)
    digest = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
