# ==============================================================================
# == backend/accesshub/events.py - Canonical device events                  ==
# ==============================================================================
#
# Every device-originated fact is turned into exactly one of these models by
# the classifier. They are shared by the presence tracker, the persistence
# synchronizer and the broadcast hub.

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EVENT_TYPES = ("heartbeat", "status", "access", "enrollment", "device-event")
UNKNOWN_USER_NAME = "Unknown"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class EventBase(WireModel):
    device_id: str
    timestamp: datetime
    # Sparse: only set when the message actually carried a value
    ip: str | None = None
    signal_strength: int | None = None


class RosterEntry(WireModel):
    user_id: int
    name: str = UNKNOWN_USER_NAME
    phone: str = ""
    card_id: str | None = None


class HeartbeatEvent(EventBase):
    type: Literal["heartbeat"] = "heartbeat"
    uptime: int | None = None
    firmware: str | None = None


class StatusEvent(EventBase):
    type: Literal["status"] = "status"
    # None means "no roster in this message", [] means "device has no users"
    roster: list[RosterEntry] | None = None
    message: str = ""


class AccessEvent(EventBase):
    type: Literal["access"] = "access"
    user_id: int = 0
    user_name: str = UNKNOWN_USER_NAME
    card_id: str | None = None
    granted: bool = False


class EnrollmentEvent(EventBase):
    type: Literal["enrollment"] = "enrollment"
    user_id: int = 0
    user_name: str = UNKNOWN_USER_NAME
    message: str = ""
    success: bool | None = None


class DeviceEvent(EventBase):
    type: Literal["device-event"] = "device-event"
    message: str = ""


class UnclassifiedEvent(EventBase):
    type: Literal["unclassified"] = "unclassified"
    raw: str = ""
    hint: str | None = None


CanonicalEvent = Annotated[
    Union[HeartbeatEvent, StatusEvent, AccessEvent, EnrollmentEvent, DeviceEvent, UnclassifiedEvent],
    Field(discriminator="type"),
]
