# backend/accesshub/schemas.py
from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- DEVICE SCHEMAS ---
class Device(ApiModel):
    device_id: str
    ip: str | None = None
    last_seen_at: datetime | None = None
    status: str = "offline"
    signal_strength: int | None = None


class RosterUser(ApiModel):
    device_id: str
    user_id: int
    name: str
    phone: str = ""
    card_id: str | None = None


# --- LOG SCHEMAS ---
class AccessLog(ApiModel):
    id: int
    device_id: str
    user_id: int
    user_name: str
    card_id: str | None = None
    granted: bool
    timestamp: datetime


class SystemLog(ApiModel):
    id: int
    device_id: str
    category: str
    message: str
    timestamp: datetime


# --- COMMAND SCHEMAS ---
class CommandRequest(ApiModel):
    """
    Operator command. Everything is optional at the type level so missing
    fields come back as one structured validation error from the dispatcher.
    """
    device_id: str = ""
    kind: str = ""
    target_user_id: int | None = Field(
        default=None, validation_alias=AliasChoices("targetUserId", "target_user_id", "userId")
    )
    name: str | None = None
    phone: str | None = None
    card_id: str | None = None


class CommandResult(ApiModel):
    success: bool
    message: str
    command_id: str | None = None
    channel: str | None = None


# --- TEMPLATE SCHEMAS ---
class TemplateInfo(ApiModel):
    template_id: str
    size: int
    digest: str
    created_at: datetime


class TemplateMatch(ApiModel):
    matched: bool
    template_id: str | None = None
