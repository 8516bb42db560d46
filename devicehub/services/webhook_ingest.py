from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from devicehub.models import Device, DeviceEvent, DeviceStatus, DeviceWebhook
from devicehub.services.webhook_payloads import (
    DeviceIdentity,
    IdentitySource,
    WebhookContext,
    WebhookPayload,
    classify_payload,
    extract_device_identity,
    extract_host_id,
    normalize_event,
    parse_device_id,
    vendor_event_type,
)

logger = logging.getLogger("devicehub.webhooks")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_device(db: Session, *conditions) -> Device | None:
    return db.scalar(select(Device).where(*conditions).order_by(Device.is_active.desc(), Device.id.asc()).limit(1))


def resolve_device(db: Session, identity: DeviceIdentity | None) -> Device | None:
    if identity is None:
        return None
    value = identity.value
    numeric_id = parse_device_id(value)

    if identity.source == IdentitySource.PATH:
        return db.get(Device, numeric_id) if numeric_id is not None else None

    if identity.source == IdentitySource.PAYLOAD_ID:
        if numeric_id is not None:
            device = db.get(Device, numeric_id)
            if device is not None:
                return device
        device = _first_device(db, Device.serial_number == value)
        if device is not None:
            return device
        device = _first_device(db, Device.mac_address == value.upper().replace("-", ":"))
        if device is not None:
            return device
        return _first_device(db, Device.host == value)

    if identity.source == IdentitySource.PAYLOAD_MAC:
        return _first_device(db, Device.mac_address == value)

    return _first_device(db, Device.host == value)


def _find_webhook_id(db: Session, device: Device | None, host_id: str | None) -> int | None:
    if not host_id:
        return None
    stmt = select(DeviceWebhook.id).where(DeviceWebhook.host_id == host_id)
    if device is not None:
        stmt = stmt.where(DeviceWebhook.device_id == device.id)
    return db.scalar(stmt.order_by(DeviceWebhook.is_active.desc(), DeviceWebhook.id.asc()).limit(1))


def _record_delivery(db: Session, webhook_id: int, *, now: datetime, error: str | None) -> None:
    values: dict[str, Any] = {
        "trigger_count": DeviceWebhook.trigger_count + 1,
        "last_triggered": now,
    }
    if error is None:
        values["last_error"] = None
    else:
        values["last_error"] = error[:2000]
        values["last_error_at"] = now
    db.execute(update(DeviceWebhook).where(DeviceWebhook.id == webhook_id).values(**values))


def _dispatch(
    db: Session,
    payload: WebhookPayload,
    device: Device | None,
    *,
    host_id: str | None,
    now: datetime,
) -> str | None:
    kind = vendor_event_type(payload)
    if kind is None:
        logger.info(
            "webhook_event_ignored",
            extra={
                "device_id": device.id if device else None,
                "event_type": getattr(payload, "event_type", None),
                "payload_kind": type(payload).__name__,
            },
        )
        return None

    if device is None:
        logger.warning("webhook_device_unresolved", extra={"event_type": kind.value, "host_id": host_id})
        return None

    device.last_seen = now
    device.status = DeviceStatus.ONLINE

    normalized = normalize_event(payload)
    if normalized is None:
        return kind.value

    db.add(
        DeviceEvent(
            device_id=device.id,
            organization_id=device.organization_id,
            event_type=normalized.event_type,
            vendor_event_type=normalized.vendor_event_type,
            occurred_at=normalized.occurred_at,
            employee_no=normalized.employee_no,
            card_no=normalized.card_no,
            webhook_host_id=host_id,
            payload=payload.body,
        )
    )
    logger.info(
        "device_event_recorded",
        extra={
            "device_id": device.id,
            "event_type": normalized.event_type.value,
            "vendor_event_type": normalized.vendor_event_type,
            "employee_no": normalized.employee_no,
        },
    )
    return kind.value


def handle_webhook_event(db: Session, *, body: Any, context: WebhookContext) -> dict[str, Any]:
    """Ingest one device push. Never raises; failures are reported in the returned body."""
    now = _utcnow()
    webhook_id: int | None = None
    identity: DeviceIdentity | None = None
    device_id: int | None = None
    try:
        payload = classify_payload(body)
        identity = extract_device_identity(payload, context)
        host_id = extract_host_id(payload, context)
        device = resolve_device(db, identity)
        device_id = device.id if device is not None else None
        webhook_id = _find_webhook_id(db, device, host_id)

        handled = _dispatch(db, payload, device, host_id=host_id, now=now)
        if webhook_id is not None:
            _record_delivery(db, webhook_id, now=now, error=None)
        db.commit()
    except Exception as exc:
        db.rollback()
        message = str(exc) or type(exc).__name__
        logger.exception(
            "webhook_event_failed",
            extra={
                "device_id": device_id,
                "identity_source": identity.source.value if identity else None,
                "identity_value": identity.value if identity else None,
                "webhook_id": webhook_id,
            },
        )
        if webhook_id is not None:
            try:
                _record_delivery(db, webhook_id, now=now, error=message)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("webhook_stats_update_failed", extra={"webhook_id": webhook_id})
        return {"status": "error", "message": message, "timestamp": now.isoformat()}

    logger.info(
        "webhook_event_processed",
        extra={
            "device_id": device_id,
            "identity_source": identity.source.value if identity else None,
            "webhook_id": webhook_id,
            "handled": handled,
        },
    )
    return {"status": "success", "timestamp": now.isoformat()}
