"""Typed view over the free-form bodies devices push to the webhook endpoint.

Devices disagree on where they put identifiers, so correlation walks an
ordered chain of matchers and keeps the first hit.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from devicehub.models import DeviceEventType

DEVICE_ID_KEYS = ("deviceId", "deviceID", "device_id", "serialNumber", "devIndex")
NESTED_DEVICE_ID_KEYS = ("deviceID", "deviceId", "serialNumber")
HOST_ID_KEYS = ("hostId", "hostID", "httpHostId", "host_id")
HOST_ID_QUERY_KEYS = ("hostId", "host_id")
MAX_DEVICE_ID = 2**31 - 1


class VendorEventType(str, enum.Enum):
    ACCESS_CONTROLLER_EVENT = "accesscontrollerevent"
    FACE_MATCH = "facematch"
    CARD_READER = "cardreader"
    DOOR_STATUS = "doorstatus"
    ALARM = "alarm"
    HEARTBEAT = "heartbeat"


class IdentitySource(str, enum.Enum):
    PATH = "PATH"
    PAYLOAD_ID = "PAYLOAD_ID"
    PAYLOAD_MAC = "PAYLOAD_MAC"
    PAYLOAD_IP = "PAYLOAD_IP"
    CLIENT_IP = "CLIENT_IP"


@dataclass(frozen=True, slots=True)
class HikvisionEventPayload:
    event_type: str
    body: dict[str, Any]
    event: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GenericDevicePayload:
    event_type: str
    body: dict[str, Any]


@dataclass(frozen=True, slots=True)
class RawPayload:
    body: dict[str, Any]


WebhookPayload = Union[HikvisionEventPayload, GenericDevicePayload, RawPayload]


@dataclass(frozen=True, slots=True)
class WebhookContext:
    path_device_id: int | None = None
    client_ip: str | None = None
    query: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    source: IdentitySource
    value: str


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    event_type: DeviceEventType
    vendor_event_type: str
    occurred_at: datetime
    employee_no: str | None = None
    card_no: str | None = None


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    cleaned = str(value).strip()
    return cleaned or None


def parse_device_id(value: Any) -> int | None:
    """ASCII digits inside the primary-key range; anything else is not a device id."""
    text = _text(value)
    if text is None or not (text.isascii() and text.isdigit()):
        return None
    parsed = int(text)
    if parsed < 1 or parsed > MAX_DEVICE_ID:
        return None
    return parsed


def _nested_event(body: dict[str, Any], event_type: str) -> dict[str, Any]:
    lowered = event_type.lower()
    for key, value in body.items():
        if isinstance(value, dict) and key.lower() == lowered:
            return value
    return {}


def classify_payload(body: Any) -> WebhookPayload:
    if not isinstance(body, dict):
        return RawPayload(body={"raw": body})

    event_type = _text(body.get("eventType"))
    if event_type is None:
        return RawPayload(body=body)

    nested = _nested_event(body, event_type)
    if nested or "ipAddress" in body:
        return HikvisionEventPayload(event_type=event_type, body=body, event=nested)
    return GenericDevicePayload(event_type=event_type, body=body)


def _payload_body(payload: WebhookPayload) -> dict[str, Any]:
    return payload.body


def _match_path(payload: WebhookPayload, context: WebhookContext) -> DeviceIdentity | None:
    if context.path_device_id is None:
        return None
    return DeviceIdentity(IdentitySource.PATH, str(context.path_device_id))


def _match_payload_id(payload: WebhookPayload, context: WebhookContext) -> DeviceIdentity | None:
    body = _payload_body(payload)
    for key in DEVICE_ID_KEYS:
        value = _text(body.get(key))
        if value:
            return DeviceIdentity(IdentitySource.PAYLOAD_ID, value)
    if isinstance(payload, HikvisionEventPayload):
        for key in NESTED_DEVICE_ID_KEYS:
            value = _text(payload.event.get(key))
            if value:
                return DeviceIdentity(IdentitySource.PAYLOAD_ID, value)
    return None


def _match_payload_mac(payload: WebhookPayload, context: WebhookContext) -> DeviceIdentity | None:
    value = _text(_payload_body(payload).get("macAddress"))
    if value:
        return DeviceIdentity(IdentitySource.PAYLOAD_MAC, value.upper().replace("-", ":"))
    return None


def _match_payload_ip(payload: WebhookPayload, context: WebhookContext) -> DeviceIdentity | None:
    value = _text(_payload_body(payload).get("ipAddress"))
    if value:
        return DeviceIdentity(IdentitySource.PAYLOAD_IP, value)
    return None


def _match_client_ip(payload: WebhookPayload, context: WebhookContext) -> DeviceIdentity | None:
    if context.client_ip:
        return DeviceIdentity(IdentitySource.CLIENT_IP, context.client_ip)
    return None


IdentityMatcher = Callable[[WebhookPayload, WebhookContext], Union[DeviceIdentity, None]]

IDENTITY_MATCHERS: tuple[IdentityMatcher, ...] = (
    _match_path,
    _match_payload_id,
    _match_payload_mac,
    _match_payload_ip,
    _match_client_ip,
)


def extract_device_identity(
    payload: WebhookPayload,
    context: WebhookContext,
    matchers: tuple[IdentityMatcher, ...] = IDENTITY_MATCHERS,
) -> DeviceIdentity | None:
    for matcher in matchers:
        identity = matcher(payload, context)
        if identity is not None:
            return identity
    return None


def extract_host_id(payload: WebhookPayload, context: WebhookContext) -> str | None:
    body = _payload_body(payload)
    for key in HOST_ID_KEYS:
        value = _text(body.get(key))
        if value:
            return value
    notification = body.get("HttpHostNotification")
    if isinstance(notification, dict):
        value = _text(notification.get("id"))
        if value:
            return value
    for key in HOST_ID_QUERY_KEYS:
        value = _text(context.query.get(key))
        if value:
            return value
    return None


def vendor_event_type(payload: WebhookPayload) -> VendorEventType | None:
    if isinstance(payload, RawPayload):
        return None
    try:
        return VendorEventType(payload.event_type.strip().lower())
    except ValueError:
        return None


def _parse_occurred_at(body: dict[str, Any]) -> datetime:
    raw = _text(body.get("dateTime")) or _text(body.get("timestamp"))
    if raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


_ACCESS_MINOR_EVENTS: dict[int, DeviceEventType] = {
    1: DeviceEventType.ACCESS_GRANTED,
    2: DeviceEventType.ACCESS_GRANTED,
    6: DeviceEventType.ACCESS_DENIED,
    9: DeviceEventType.ACCESS_DENIED,
    21: DeviceEventType.DOOR_OPEN,
    22: DeviceEventType.DOOR_CLOSE,
    38: DeviceEventType.FINGERPRINT_SCAN,
    39: DeviceEventType.ACCESS_DENIED,
    75: DeviceEventType.FACE_RECOGNITION,
    76: DeviceEventType.ACCESS_DENIED,
}
_MAJOR_EVENTS: dict[int, DeviceEventType] = {
    1: DeviceEventType.ALARM,
    2: DeviceEventType.NETWORK_ERROR,
}


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _classify_access_event(event: dict[str, Any], card_no: str | None) -> DeviceEventType:
    major = _as_int(event.get("majorEventType"))
    minor = _as_int(event.get("subEventType"))
    if major in _MAJOR_EVENTS:
        return _MAJOR_EVENTS[major]
    if minor is not None and minor in _ACCESS_MINOR_EVENTS:
        return _ACCESS_MINOR_EVENTS[minor]
    if card_no:
        return DeviceEventType.CARD_SCAN
    return DeviceEventType.ACCESS_GRANTED


def _classify_door_status(payload: HikvisionEventPayload | GenericDevicePayload) -> DeviceEventType:
    source = payload.event if isinstance(payload, HikvisionEventPayload) and payload.event else payload.body
    state = " ".join(
        str(source.get(key) or "") for key in ("doorStatus", "status", "eventState", "state")
    ).lower()
    if "close" in state:
        return DeviceEventType.DOOR_CLOSE
    return DeviceEventType.DOOR_OPEN


def normalize_event(payload: WebhookPayload) -> NormalizedEvent | None:
    """Map a known vendor event onto the internal event type; None for heartbeats and unknowns."""
    kind = vendor_event_type(payload)
    if kind is None or kind == VendorEventType.HEARTBEAT or isinstance(payload, RawPayload):
        return None

    event = payload.event if isinstance(payload, HikvisionEventPayload) else {}
    merged = {**payload.body, **event}
    employee_no = _text(merged.get("employeeNoString")) or _text(merged.get("employeeNo"))
    card_no = _text(merged.get("cardNo"))

    if kind == VendorEventType.ACCESS_CONTROLLER_EVENT:
        event_type = _classify_access_event(event or payload.body, card_no)
    elif kind == VendorEventType.FACE_MATCH:
        event_type = DeviceEventType.FACE_RECOGNITION
    elif kind == VendorEventType.CARD_READER:
        event_type = DeviceEventType.CARD_SCAN
    elif kind == VendorEventType.DOOR_STATUS:
        event_type = _classify_door_status(payload)
    else:
        description = str(merged.get("eventDescription") or merged.get("alarmType") or "").lower()
        event_type = DeviceEventType.TAMPER if "tamper" in description else DeviceEventType.ALARM

    return NormalizedEvent(
        event_type=event_type,
        vendor_event_type=payload.event_type,
        occurred_at=_parse_occurred_at(payload.body),
        employee_no=employee_no,
        card_no=card_no,
    )
