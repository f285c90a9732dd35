# ==============================================================================
# == backend/accesshub/classifier.py - Topic/payload -> canonical event     ==
# ==============================================================================
#
# Firmware versions in the field disagree on field names (userName vs name,
# userId vs id, ...). Every alias is folded into one canonical field here so
# the rest of the system never touches raw payloads.
#
# classify() is total: it never raises, whatever arrives on the wire.

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from .events import (
    EVENT_TYPES, UNKNOWN_USER_NAME, AccessEvent, CanonicalEvent, DeviceEvent,
    EnrollmentEvent, HeartbeatEvent, RosterEntry, StatusEvent, UnclassifiedEvent,
)

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE_ID = "unknown"
INT_MIN, INT_MAX = -(2 ** 31), 2 ** 31 - 1

# Most specific name first
USER_ID_KEYS = ("userId", "user_id", "fid", "id")
USER_NAME_KEYS = ("userName", "user_name", "name")
CARD_ID_KEYS = ("cardId", "card_id", "card", "uid")
PHONE_KEYS = ("phone", "phoneNumber", "phone_number")
IP_KEYS = ("ip", "ipAddress", "ip_address")
SIGNAL_KEYS = ("signalStrength", "signal_strength", "rssi")
MESSAGE_KEYS = ("message", "msg", "event", "detail")
DEVICE_ID_KEYS = ("deviceId", "device_id")
ROSTER_KEYS = ("users", "roster", "students")

GRANTED_STRINGS = {"true", "1", "yes", "granted"}


def parse_address(address: str) -> tuple[str, str | None]:
    """
    Split `<namespace>/<deviceId>/<messageType>` into (device_id, type_hint).
    Missing segments come back as "" / None.
    """
    parts = (address or "").strip("/").split("/")
    device_id = parts[1].strip() if len(parts) > 1 else ""
    hint = parts[2].strip().lower() if len(parts) > 2 and parts[2].strip() else None
    return device_id, hint


def _decode_text(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload).decode("utf-8", errors="replace")
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload)
    except (TypeError, ValueError):
        return repr(payload)


def _first(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _as_int(value: Any) -> int | None:
    """Integers outside the 32-bit column range count as missing."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            number = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None
    if not INT_MIN <= number <= INT_MAX:
        return None
    return number


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_user_id(data: Mapping[str, Any]) -> int:
    user_id = _as_int(_first(data, USER_ID_KEYS))
    return user_id if user_id is not None else 0


def normalize_user_name(data: Mapping[str, Any]) -> str:
    return _as_str(_first(data, USER_NAME_KEYS)) or UNKNOWN_USER_NAME


def normalize_granted(value: Any) -> bool:
    """Fail closed: anything short of an explicit yes is a denial."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in GRANTED_STRINGS
    return False


def _normalize_roster(data: Mapping[str, Any]) -> list[RosterEntry] | None:
    raw = None
    for key in ROSTER_KEYS:
        if key in data:
            raw = data[key]
            break
    else:
        return None

    items: list[Mapping[str, Any]] = []
    if isinstance(raw, list):
        items = [item for item in raw if isinstance(item, Mapping)]
    elif isinstance(raw, Mapping):
        # {"7": {"name": "An", "phone": "..."}} keyed by user id
        for key, item in raw.items():
            if isinstance(item, Mapping):
                items.append({"id": key, **item})
    else:
        return []

    roster = []
    for item in items:
        user_id = _as_int(_first(item, USER_ID_KEYS))
        if user_id is None:
            logger.debug(f"Skipping roster entry without a user id: {item}")
            continue
        roster.append(RosterEntry(
            user_id=user_id,
            name=normalize_user_name(item),
            phone=_as_str(_first(item, PHONE_KEYS)) or "",
            card_id=_as_str(_first(item, CARD_ID_KEYS)),
        ))
    return roster


def _unclassified(device_id: str, text: str, hint: str | None, received_at: datetime) -> UnclassifiedEvent:
    return UnclassifiedEvent(
        device_id=device_id or UNKNOWN_DEVICE_ID, timestamp=received_at, raw=text, hint=hint
    )


def fallback_event(address: str, payload: Any, received_at: datetime | None = None) -> UnclassifiedEvent:
    """Last-resort event for a message that could not be classified at all."""
    device_id, hint = parse_address(address)
    return _unclassified(device_id, _decode_text(payload), hint, received_at or datetime.now(timezone.utc))


def classify(address: str, payload: Any, received_at: datetime | None = None) -> CanonicalEvent:
    """
    Turn one transport message into exactly one canonical event.

    `address` is an MQTT topic or HTTP route such as `fingerprint/DEV1/access`;
    `payload` may be bytes, text, or an already-decoded mapping.
    """
    received_at = received_at or datetime.now(timezone.utc)
    device_id, hint = parse_address(address)

    if isinstance(payload, Mapping):
        data, text = payload, _decode_text(payload)
    else:
        text = _decode_text(payload)
        try:
            data = json.loads(text)
        except ValueError:
            return _unclassified(device_id, text, hint, received_at)
        if not isinstance(data, dict):
            return _unclassified(device_id, text, hint, received_at)

    if not device_id:
        device_id = _as_str(_first(data, DEVICE_ID_KEYS)) or UNKNOWN_DEVICE_ID

    declared = data.get("type")
    event_type = declared.strip().lower() if isinstance(declared, str) and declared.strip() else hint
    if event_type not in EVENT_TYPES:
        return _unclassified(device_id, text, hint, received_at)

    common = {
        "device_id": device_id,
        "timestamp": received_at,
        "ip": _as_str(_first(data, IP_KEYS)),
        "signal_strength": _as_int(_first(data, SIGNAL_KEYS)),
    }
    message = _as_str(_first(data, MESSAGE_KEYS)) or ""

    if event_type == "heartbeat":
        return HeartbeatEvent(
            **common,
            uptime=_as_int(data.get("uptime")),
            firmware=_as_str(_first(data, ("firmware", "fw_version", "version"))),
        )

    if event_type == "status":
        return StatusEvent(**common, roster=_normalize_roster(data), message=message)

    if event_type == "access":
        return AccessEvent(
            **common,
            user_id=normalize_user_id(data),
            user_name=normalize_user_name(data),
            card_id=_as_str(_first(data, CARD_ID_KEYS)),
            granted=normalize_granted(_first(data, ("granted", "accessGranted", "access_granted"))),
        )

    if event_type == "enrollment":
        success = data.get("success")
        return EnrollmentEvent(
            **common,
            user_id=normalize_user_id(data),
            user_name=normalize_user_name(data),
            message=message,
            success=success if isinstance(success, bool) else None,
        )

    return DeviceEvent(**common, message=message)
