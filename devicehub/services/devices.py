from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from devicehub.adapters.base import (
    AdapterKind,
    DeviceAdapterError,
    DeviceCommand,
    DeviceCommandResult,
    DeviceHealth,
    DeviceInfo,
)
from devicehub.errors import ApiError, device_api_error
from devicehub.models import Device, DeviceStatus
from devicehub.runtime import DeviceRuntime
from devicehub.schemas import DeviceCommandRequest, DeviceCreate, DeviceUpdate
from devicehub.security import DataScope, encrypt_secret

logger = logging.getLogger("devicehub.devices")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_mac_address(value: str | None) -> str | None:
    cleaned = (value or "").strip().upper().replace("-", ":")
    return cleaned or None


def get_scoped_device(db: Session, scope: DataScope, device_id: int) -> Device:
    device = db.get(Device, device_id)
    if device is None or device.organization_id != scope.organization_id or not scope.allows_branch(device.branch_id):
        raise ApiError(status_code=404, code="DEVICE_NOT_FOUND", message=f"Device {device_id} not found.")
    return device


def require_active_device(device: Device) -> None:
    if not device.is_active:
        raise ApiError(
            status_code=400,
            code="DEVICE_INACTIVE",
            message=f"Device {device.id} is inactive.",
        )


def _assert_branch_in_scope(scope: DataScope, branch_id: int) -> None:
    if not scope.allows_branch(branch_id):
        raise ApiError(
            status_code=400,
            code="BRANCH_OUT_OF_SCOPE",
            message=f"Branch {branch_id} is outside of the allowed scope.",
        )


def _assert_mac_available(db: Session, organization_id: int, mac_address: str | None, *, exclude_id: int | None) -> None:
    if not mac_address:
        return
    stmt = select(Device.id).where(
        Device.organization_id == organization_id,
        Device.mac_address == mac_address,
    )
    if exclude_id is not None:
        stmt = stmt.where(Device.id != exclude_id)
    if db.scalar(stmt) is not None:
        raise ApiError(
            status_code=409,
            code="DEVICE_CONFLICT",
            message=f"A device with MAC address {mac_address} already exists.",
        )


def _apply_discovered_info(device: Device, info: DeviceInfo) -> None:
    device.manufacturer = device.manufacturer or info.manufacturer
    device.model = device.model or info.model
    device.serial_number = device.serial_number or info.serial_number
    device.firmware = device.firmware or info.firmware
    device.mac_address = device.mac_address or normalize_mac_address(info.mac_address)


def _auto_discover(runtime: DeviceRuntime, device: Device, *, organization_id: int) -> None:
    adapter = runtime.strategy.select_adapter(device)
    if adapter.kind == AdapterKind.STUB:
        # Stub replies involve no I/O.
        logger.info(
            "device_auto_discovery_skipped",
            extra={"host": device.host, "organization_id": organization_id, "adapter_kind": adapter.kind.value},
        )
        return
    try:
        info = runtime.strategy.get_device_info(device)
    except DeviceAdapterError as exc:
        logger.warning(
            "device_auto_discovery_failed",
            extra={"host": device.host, "organization_id": organization_id, "error": str(exc)},
        )
        return
    _apply_discovered_info(device, info)
    device.status = DeviceStatus.ONLINE
    device.last_seen = _utcnow()


def create_device(db: Session, runtime: DeviceRuntime, *, scope: DataScope, payload: DeviceCreate) -> Device:
    _assert_branch_in_scope(scope, payload.branch_id)

    device = Device(
        organization_id=scope.organization_id,
        branch_id=payload.branch_id,
        department_id=payload.department_id,
        name=payload.name.strip(),
        type=payload.type,
        host=payload.host.strip(),
        port=payload.port,
        protocol=payload.protocol,
        username=payload.username,
        password_encrypted=encrypt_secret(payload.password) if payload.password else None,
        mac_address=normalize_mac_address(payload.mac_address),
        manufacturer=payload.manufacturer,
        model=payload.model,
        serial_number=payload.serial_number,
        firmware=payload.firmware,
        description=payload.description,
        status=DeviceStatus.OFFLINE,
        is_active=True,
        timeout_seconds=payload.timeout_seconds,
        retry_attempts=payload.retry_attempts,
    )

    if not device.manufacturer or not device.model:
        _auto_discover(runtime, device, organization_id=scope.organization_id)

    _assert_mac_available(db, scope.organization_id, device.mac_address, exclude_id=None)

    db.add(device)
    db.commit()
    db.refresh(device)
    return device


def update_device(db: Session, *, scope: DataScope, device_id: int, payload: DeviceUpdate) -> Device:
    device = get_scoped_device(db, scope, device_id)
    changes = payload.model_dump(exclude_unset=True)

    if "branch_id" in changes and changes["branch_id"] is not None:
        _assert_branch_in_scope(scope, changes["branch_id"])
    if "mac_address" in changes:
        changes["mac_address"] = normalize_mac_address(changes["mac_address"])
        _assert_mac_available(db, scope.organization_id, changes["mac_address"], exclude_id=device.id)
    if "password" in changes:
        password = changes.pop("password")
        device.password_encrypted = encrypt_secret(password) if password else None

    for field_name, value in changes.items():
        if value is None and field_name in {"name", "branch_id", "type", "host", "port", "protocol", "status"}:
            continue
        setattr(device, field_name, value)

    db.commit()
    db.refresh(device)
    return device


def delete_device(db: Session, *, scope: DataScope, device_id: int) -> None:
    device = get_scoped_device(db, scope, device_id)
    db.delete(device)
    db.commit()


def set_device_active(db: Session, *, scope: DataScope, device_id: int, is_active: bool) -> Device:
    device = get_scoped_device(db, scope, device_id)
    device.is_active = is_active
    db.commit()
    db.refresh(device)
    return device


def _scoped_devices_stmt(scope: DataScope):
    stmt = select(Device).where(Device.organization_id == scope.organization_id)
    if scope.branch_ids is not None:
        stmt = stmt.where(Device.branch_id.in_(scope.branch_ids))
    return stmt


def list_devices(
    db: Session,
    *,
    scope: DataScope,
    branch_id: int | None = None,
    is_active: bool | None = None,
) -> list[Device]:
    stmt = _scoped_devices_stmt(scope).order_by(Device.id.asc())
    if branch_id is not None:
        stmt = stmt.where(Device.branch_id == branch_id)
    if is_active is not None:
        stmt = stmt.where(Device.is_active.is_(is_active))
    return list(db.scalars(stmt).all())


def count_devices(db: Session, *, scope: DataScope) -> int:
    stmt = select(func.count(Device.id)).where(Device.organization_id == scope.organization_id)
    if scope.branch_ids is not None:
        stmt = stmt.where(Device.branch_id.in_(scope.branch_ids))
    return int(db.scalar(stmt) or 0)


def test_device_connection(db: Session, runtime: DeviceRuntime, *, scope: DataScope, device_id: int) -> dict[str, Any]:
    device = get_scoped_device(db, scope, device_id)
    ok = runtime.strategy.test_connection(device)
    if ok:
        device.last_seen = _utcnow()
        device.status = DeviceStatus.ONLINE
    elif device.status != DeviceStatus.MAINTENANCE:
        device.status = DeviceStatus.OFFLINE
    db.commit()
    return {
        "success": ok,
        "message": "Connection successful" if ok else "Connection failed",
        "device_id": device.id,
        "status": device.status.value,
    }


def send_device_command(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    payload: DeviceCommandRequest,
) -> DeviceCommandResult:
    device = get_scoped_device(db, scope, device_id)
    require_active_device(device)
    command = DeviceCommand(command=payload.command, parameters=dict(payload.parameters), timeout=payload.timeout)
    try:
        return runtime.strategy.execute_command(device, command)
    except DeviceAdapterError as exc:
        raise device_api_error(exc, device_id=device.id) from exc


def get_device_health(db: Session, runtime: DeviceRuntime, *, scope: DataScope, device_id: int) -> DeviceHealth:
    device = get_scoped_device(db, scope, device_id)
    try:
        return runtime.strategy.get_device_health(device)
    except DeviceAdapterError as exc:
        logger.warning("device_health_unavailable", extra={"device_id": device.id, "error": str(exc)})
        return DeviceHealth(status="critical", uptime=0, issues=["Unable to connect to device"])


def get_device_info(db: Session, runtime: DeviceRuntime, *, scope: DataScope, device_id: int) -> DeviceInfo:
    device = get_scoped_device(db, scope, device_id)
    try:
        return runtime.strategy.get_device_info(device)
    except DeviceAdapterError as exc:
        raise device_api_error(exc, device_id=device.id) from exc


def discover_devices(db: Session, runtime: DeviceRuntime, *, scope: DataScope) -> list[DeviceInfo]:
    discovered = runtime.strategy.discover_devices()
    rows = db.execute(
        select(Device.serial_number, Device.host).where(Device.organization_id == scope.organization_id)
    ).all()
    known_serials = {serial for serial, _host in rows if serial}
    known_hosts = {host for _serial, host in rows if host}
    return [
        info
        for info in discovered
        if not (info.serial_number and info.serial_number in known_serials)
        and not (info.host and info.host in known_hosts)
    ]
