from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from devicehub.adapters.base import DeviceAdapterError, DeviceCommand, DeviceCommandName, EventHostConfig
from devicehub.errors import ApiError, device_api_error
from devicehub.models import DeviceWebhook
from devicehub.runtime import DeviceRuntime
from devicehub.schemas import WebhookConfigureRequest
from devicehub.security import DataScope
from devicehub.services.devices import get_scoped_device, require_active_device
from devicehub.settings import build_default_webhook_url

logger = logging.getLogger("devicehub.webhooks")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_host_id(db: Session, device_id: int) -> str:
    existing = set(db.scalars(select(DeviceWebhook.host_id).where(DeviceWebhook.device_id == device_id)).all())
    candidate_ts = int(_utcnow().timestamp() * 1000)
    candidate = f"webhook_{candidate_ts}"
    while candidate in existing:
        candidate_ts += 1
        candidate = f"webhook_{candidate_ts}"
    return candidate


def configure_webhook(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    payload: WebhookConfigureRequest,
    created_by: str | None = None,
) -> DeviceWebhook:
    device = get_scoped_device(db, scope, device_id)
    require_active_device(device)
    if not runtime.strategy.supports_webhooks(device):
        raise ApiError(
            status_code=400,
            code="WEBHOOK_NOT_SUPPORTED",
            message=f"Device {device.id} does not support webhooks.",
        )

    host_id = _generate_host_id(db, device.id)
    url = (payload.url or "").strip() or build_default_webhook_url(device.id)
    event_host = EventHostConfig(
        host_id=host_id,
        url=url,
        host=payload.host,
        port=payload.port,
        protocol_type=payload.protocol_type.value,
        parameter_format_type=payload.parameter_format_type.value,
        event_types=tuple(payload.event_types),
    )
    try:
        runtime.strategy.configure_event_host(device, event_host)
    except DeviceAdapterError as exc:
        raise device_api_error(exc, device_id=device.id) from exc

    webhook = DeviceWebhook(
        device_id=device.id,
        organization_id=device.organization_id,
        host_id=host_id,
        url=url,
        host=payload.host,
        port=payload.port,
        event_types=list(payload.event_types),
        protocol_type=payload.protocol_type,
        parameter_format_type=payload.parameter_format_type,
        is_active=True,
        created_by=created_by,
    )
    db.add(webhook)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="WEBHOOK_CONFLICT",
            message=f"Webhook host {host_id} is already registered for device {device.id}.",
        ) from exc
    db.refresh(webhook)
    logger.info(
        "device_webhook_configured",
        extra={"device_id": device.id, "host_id": host_id, "url": url, "event_types": list(payload.event_types)},
    )
    return webhook


def get_webhook_configuration(db: Session, *, scope: DataScope, device_id: int) -> list[DeviceWebhook]:
    device = get_scoped_device(db, scope, device_id)
    return list(
        db.scalars(
            select(DeviceWebhook).where(DeviceWebhook.device_id == device.id).order_by(DeviceWebhook.id.asc())
        ).all()
    )


def get_device_webhook_hosts(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
) -> list[dict[str, Any]]:
    device = get_scoped_device(db, scope, device_id)
    try:
        return runtime.strategy.get_webhook_configurations(device)
    except DeviceAdapterError as exc:
        raise device_api_error(exc, device_id=device.id) from exc


def _get_webhook(db: Session, device_id: int, host_id: str) -> DeviceWebhook:
    webhook = db.scalar(
        select(DeviceWebhook).where(
            DeviceWebhook.device_id == device_id,
            DeviceWebhook.host_id == host_id,
        )
    )
    if webhook is None:
        raise ApiError(status_code=404, code="WEBHOOK_NOT_FOUND", message=f"Webhook {host_id} not found.")
    return webhook


def remove_webhook(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    host_id: str,
    force: bool = False,
) -> DeviceWebhook:
    device = get_scoped_device(db, scope, device_id)
    webhook = _get_webhook(db, device.id, host_id)
    try:
        runtime.strategy.delete_webhooks(device, [host_id])
    except DeviceAdapterError as exc:
        if not force:
            raise device_api_error(exc, device_id=device.id) from exc
        logger.warning(
            "device_webhook_remove_forced",
            extra={"device_id": device.id, "host_id": host_id, "error": str(exc)},
        )

    webhook.is_active = False
    db.commit()
    db.refresh(webhook)
    logger.info("device_webhook_removed", extra={"device_id": device.id, "host_id": host_id})
    return webhook


def test_webhook(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    host_id: str,
) -> dict[str, Any]:
    device = get_scoped_device(db, scope, device_id)
    require_active_device(device)
    _get_webhook(db, device.id, host_id)
    tested_at = _utcnow()
    try:
        result = runtime.strategy.execute_command(
            device,
            DeviceCommand(command=DeviceCommandName.TEST_WEBHOOK.value, parameters={"host_id": host_id}),
        )
    except DeviceAdapterError as exc:
        return {"success": False, "message": exc.message, "data": None, "tested_at": tested_at}
    return {
        "success": result.success,
        "message": result.message or ("Webhook test sent" if result.success else "Webhook test failed"),
        "data": result.data,
        "tested_at": tested_at,
    }
