from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from devicehub.adapters.base import DeviceCommand, DeviceCommandName
from devicehub.errors import ApiError
from devicehub.models import (
    CredentialType,
    Device,
    Employee,
    EmployeeCredential,
    EmployeeDeviceSync,
    SyncStatus,
    SyncType,
)
from devicehub.runtime import DeviceRuntime
from devicehub.schemas import EmployeeSyncRequest
from devicehub.security import DataScope
from devicehub.services.devices import get_scoped_device, require_active_device

logger = logging.getLogger("devicehub.sync")

RECENT_SYNCS_LIMIT = 10
MASKED_CREDENTIAL_TYPES = {CredentialType.PASSWORD_HASH}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _SyncCounters:
    added: int = 0
    updated: int = 0
    removed: int = 0
    failed: int = 0

    @property
    def succeeded(self) -> int:
        return self.added + self.updated + self.removed


def _active_credentials(employee: Employee, credential_type: CredentialType | None) -> list[EmployeeCredential]:
    return [
        credential
        for credential in employee.credentials
        if credential.is_active and (credential_type is None or credential.type == credential_type)
    ]


def _employee_no(employee: Employee | None, employee_id: int) -> str:
    if employee is not None and (employee.employee_code or "").strip():
        return employee.employee_code.strip()
    return str(employee_id)


def build_person_parameters(employee: Employee, credentials: list[EmployeeCredential]) -> dict[str, Any]:
    return {
        "employee_no": _employee_no(employee, employee.id),
        "employee_id": employee.id,
        "name": employee.full_name,
        "email": employee.email,
        "photo_key": employee.photo_key,
        "credentials": [
            {
                "type": credential.type.value,
                "value": credential.value,
                "metadata": dict(credential.credential_metadata or {}),
            }
            for credential in credentials
        ],
    }


def _payload_preview(employee: Employee, credentials: list[EmployeeCredential]) -> dict[str, Any]:
    return {
        "employee_id": employee.id,
        "employee_code": employee.employee_code,
        "name": employee.full_name,
        "credentials": [
            {
                "id": credential.id,
                "type": credential.type.value,
                "value": "***" if credential.type in MASKED_CREDENTIAL_TYPES else credential.value,
            }
            for credential in credentials
        ],
    }


def _employees_stmt(organization_id: int, scope: DataScope):
    stmt = (
        select(Employee)
        .options(selectinload(Employee.credentials))
        .where(
            Employee.organization_id == organization_id,
            Employee.is_active.is_(True),
        )
        .order_by(Employee.id.asc())
    )
    if scope.branch_ids is not None:
        stmt = stmt.where(Employee.branch_id.in_(scope.branch_ids))
    return stmt


def _with_credential_type(stmt, credential_type: CredentialType):
    return stmt.where(
        exists().where(
            EmployeeCredential.employee_id == Employee.id,
            EmployeeCredential.type == credential_type,
            EmployeeCredential.is_active.is_(True),
        )
    )


def resolve_desired_employees(
    db: Session,
    *,
    scope: DataScope,
    device: Device,
    request: EmployeeSyncRequest,
) -> list[Employee]:
    stmt = _employees_stmt(device.organization_id, scope)
    if request.employee_ids:
        stmt = stmt.where(Employee.id.in_(request.employee_ids))
    elif request.department_id is not None:
        stmt = stmt.where(Employee.department_id == request.department_id)
    elif request.branch_id is not None:
        if not scope.allows_branch(request.branch_id):
            raise ApiError(
                status_code=400,
                code="BRANCH_OUT_OF_SCOPE",
                message=f"Branch {request.branch_id} is outside of the allowed scope.",
            )
        stmt = stmt.where(Employee.branch_id == request.branch_id)

    if request.credential_type is not None:
        stmt = _with_credential_type(stmt, request.credential_type)
    return list(db.scalars(stmt).all())


def _push(runtime: DeviceRuntime, device: Device, command_name: DeviceCommandName, parameters: dict[str, Any]) -> str | None:
    """Send one person command; returns an error message or None on success."""
    try:
        result = runtime.strategy.execute_command(
            device,
            DeviceCommand(command=command_name.value, parameters=parameters),
        )
    except Exception as exc:
        logger.warning(
            "employee_sync_push_failed",
            extra={
                "device_id": device.id,
                "command": command_name.value,
                "employee_no": parameters.get("employee_no"),
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return str(exc) or type(exc).__name__
    if not result.success:
        return result.message or "Device reported failure."
    return None


def _record_outcome(
    db: Session,
    row: EmployeeDeviceSync | None,
    *,
    device: Device,
    employee_id: int,
    sync_type: SyncType,
    error: str | None,
) -> bool:
    now = _utcnow()
    if row is None:
        row = EmployeeDeviceSync(
            device_id=device.id,
            employee_id=employee_id,
            organization_id=device.organization_id,
            sync_type=sync_type,
            sync_status=SyncStatus.FAILED,
            sync_attempted=now,
        )
        db.add(row)
    row.sync_type = sync_type
    row.sync_attempted = now
    if error is None:
        row.sync_status = SyncStatus.SYNCED
        row.error_message = None
        row.synced_at = now
    else:
        row.sync_status = SyncStatus.FAILED
        row.error_message = error[:2000]
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "employee_sync_ledger_write_failed",
            extra={"device_id": device.id, "employee_id": employee_id},
        )
        return False
    return error is None


def _sync_status_label(counters: _SyncCounters) -> str:
    if counters.failed == 0:
        return "SUCCESS"
    if counters.succeeded > 0:
        return "PARTIAL"
    return "FAILED"


def sync_employees_to_device(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    request: EmployeeSyncRequest,
) -> dict[str, Any]:
    device = get_scoped_device(db, scope, device_id)
    require_active_device(device)
    with runtime.sync_locks.hold(device.id):
        return _run_sync(db, runtime, scope=scope, device=device, request=request)


def _run_sync(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device: Device,
    request: EmployeeSyncRequest,
) -> dict[str, Any]:
    desired = resolve_desired_employees(db, scope=scope, device=device, request=request)
    desired_ids = {employee.id for employee in desired}
    current_rows = {
        row.employee_id: row
        for row in db.scalars(
            select(EmployeeDeviceSync).where(
                EmployeeDeviceSync.device_id == device.id,
                EmployeeDeviceSync.organization_id == device.organization_id,
            )
        ).all()
    }

    to_add = [employee for employee in desired if employee.id not in current_rows]
    to_update = [employee for employee in desired if employee.id in current_rows] if request.force_sync else []
    to_remove = (
        [row for employee_id, row in current_rows.items() if employee_id not in desired_ids]
        if request.remove_missing
        else []
    )

    logger.info(
        "employee_sync_started",
        extra={
            "device_id": device.id,
            "organization_id": device.organization_id,
            "desired": len(desired),
            "current": len(current_rows),
            "to_add": len(to_add),
            "to_update": len(to_update),
            "to_remove": len(to_remove),
            "credential_type": request.credential_type.value if request.credential_type else None,
        },
    )

    counters = _SyncCounters()
    pushed_payload: list[dict[str, Any]] = []

    for employee in to_add:
        credentials = _active_credentials(employee, request.credential_type)
        pushed_payload.append(_payload_preview(employee, credentials))
        error = _push(runtime, device, DeviceCommandName.ADD_PERSON, build_person_parameters(employee, credentials))
        if _record_outcome(db, None, device=device, employee_id=employee.id, sync_type=SyncType.ADD, error=error):
            counters.added += 1
        else:
            counters.failed += 1

    for employee in to_update:
        row = current_rows[employee.id]
        credentials = _active_credentials(employee, request.credential_type)
        pushed_payload.append(_payload_preview(employee, credentials))
        # A person whose add never landed on the device has nothing to modify yet.
        replay_add = row.sync_status == SyncStatus.FAILED and row.sync_type == SyncType.ADD
        command_name = DeviceCommandName.ADD_PERSON if replay_add else DeviceCommandName.UPDATE_PERSON
        sync_type = SyncType.ADD if replay_add else SyncType.UPDATE
        error = _push(runtime, device, command_name, build_person_parameters(employee, credentials))
        if _record_outcome(db, row, device=device, employee_id=employee.id, sync_type=sync_type, error=error):
            counters.updated += 1
        else:
            counters.failed += 1

    for row in to_remove:
        if _remove_row(db, runtime, device=device, row=row):
            counters.removed += 1
        else:
            counters.failed += 1

    synced_at = _utcnow()
    message = (
        f"Sync completed: {counters.added} added, {counters.updated} updated, "
        f"{counters.removed} removed, {counters.failed} failed"
    )
    logger.info(
        "employee_sync_completed",
        extra={
            "device_id": device.id,
            "added": counters.added,
            "updated": counters.updated,
            "removed": counters.removed,
            "failed": counters.failed,
        },
    )
    return {
        "device_id": device.id,
        "device_name": device.name,
        "total_employees": len(desired),
        "employees_with_credentials": pushed_payload,
        "added": counters.added,
        "updated": counters.updated,
        "removed": counters.removed,
        "failed": counters.failed,
        "synced_at": synced_at,
        "status": _sync_status_label(counters),
        "message": message,
    }


def _remove_row(db: Session, runtime: DeviceRuntime, *, device: Device, row: EmployeeDeviceSync) -> bool:
    employee = db.get(Employee, row.employee_id)
    error = _push(
        runtime,
        device,
        DeviceCommandName.DELETE_PERSON,
        {"employee_no": _employee_no(employee, row.employee_id), "employee_id": row.employee_id},
    )
    if error is None:
        db.delete(row)
    else:
        row.sync_attempted = _utcnow()
        row.error_message = f"Removal failed: {error}"[:2000]
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "employee_sync_ledger_write_failed",
            extra={"device_id": device.id, "employee_id": row.employee_id},
        )
        return False
    return error is None


def retry_failed_syncs(db: Session, runtime: DeviceRuntime, *, scope: DataScope, device_id: int) -> dict[str, int]:
    device = get_scoped_device(db, scope, device_id)
    require_active_device(device)
    with runtime.sync_locks.hold(device.id):
        rows = list(
            db.scalars(
                select(EmployeeDeviceSync)
                .where(
                    EmployeeDeviceSync.device_id == device.id,
                    EmployeeDeviceSync.sync_status == SyncStatus.FAILED,
                )
                .order_by(EmployeeDeviceSync.id.asc())
            ).all()
        )
        successful = 0
        failed = 0
        for row in rows:
            employee = db.get(Employee, row.employee_id)
            if employee is None or not employee.is_active:
                error: str | None = "Employee is inactive or no longer exists."
            else:
                command_name = (
                    DeviceCommandName.ADD_PERSON if row.sync_type == SyncType.ADD else DeviceCommandName.UPDATE_PERSON
                )
                credentials = _active_credentials(employee, None)
                error = _push(runtime, device, command_name, build_person_parameters(employee, credentials))
            if _record_outcome(
                db,
                row,
                device=device,
                employee_id=row.employee_id,
                sync_type=row.sync_type,
                error=error,
            ):
                successful += 1
            else:
                failed += 1

    logger.info(
        "employee_sync_retry_completed",
        extra={"device_id": device.id, "total": len(rows), "successful": successful, "failed": failed},
    )
    return {"total": len(rows), "successful": successful, "failed": failed}


def _sync_row_to_dict(row: EmployeeDeviceSync, employee: Employee | None = None, device: Device | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": row.id,
        "device_id": row.device_id,
        "employee_id": row.employee_id,
        "sync_status": row.sync_status.value,
        "sync_type": row.sync_type.value,
        "error_message": row.error_message,
        "sync_attempted": row.sync_attempted,
        "synced_at": row.synced_at,
    }
    if employee is not None:
        payload["employee_code"] = employee.employee_code
        payload["employee_name"] = employee.full_name
    if device is not None:
        payload["device_name"] = device.name
    return payload


def get_sync_status(db: Session, *, scope: DataScope, device_id: int) -> dict[str, Any]:
    device = get_scoped_device(db, scope, device_id)
    counts_rows = db.execute(
        select(EmployeeDeviceSync.sync_status, func.count(EmployeeDeviceSync.id))
        .where(EmployeeDeviceSync.device_id == device.id)
        .group_by(EmployeeDeviceSync.sync_status)
    ).all()
    status_counts = {status.value: 0 for status in SyncStatus}
    for status, count in counts_rows:
        key = status.value if isinstance(status, SyncStatus) else str(status)
        status_counts[key] = int(count)

    recent = db.execute(
        select(EmployeeDeviceSync, Employee)
        .join(Employee, Employee.id == EmployeeDeviceSync.employee_id)
        .where(EmployeeDeviceSync.device_id == device.id)
        .order_by(EmployeeDeviceSync.sync_attempted.desc(), EmployeeDeviceSync.id.desc())
        .limit(RECENT_SYNCS_LIMIT)
    ).all()
    return {
        "device_id": device.id,
        "device_name": device.name,
        "total_synced": status_counts.get(SyncStatus.SYNCED.value, 0),
        "status_counts": status_counts,
        "recent_syncs": [_sync_row_to_dict(row, employee) for row, employee in recent],
    }


def get_employee_sync_history(db: Session, *, scope: DataScope, employee_id: int) -> list[dict[str, Any]]:
    employee = db.get(Employee, employee_id)
    if (
        employee is None
        or employee.organization_id != scope.organization_id
        or not scope.allows_branch(employee.branch_id)
    ):
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message=f"Employee {employee_id} not found.")

    rows = db.execute(
        select(EmployeeDeviceSync, Device)
        .join(Device, Device.id == EmployeeDeviceSync.device_id)
        .where(EmployeeDeviceSync.employee_id == employee.id)
        .order_by(EmployeeDeviceSync.sync_attempted.desc(), EmployeeDeviceSync.id.desc())
    ).all()
    return [_sync_row_to_dict(row, device=device) for row, device in rows]


def get_employees_with_credential_type(
    db: Session,
    *,
    scope: DataScope,
    device_id: int,
    credential_type: CredentialType,
) -> list[dict[str, Any]]:
    device = get_scoped_device(db, scope, device_id)
    stmt = _with_credential_type(_employees_stmt(device.organization_id, scope), credential_type)
    employees = db.scalars(stmt).all()
    return [_payload_preview(employee, _active_credentials(employee, credential_type)) for employee in employees]


def sync_employees_with_credential_type(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    credential_type: CredentialType,
) -> dict[str, Any]:
    request = EmployeeSyncRequest(credential_type=credential_type, force_sync=True, remove_missing=False)
    return sync_employees_to_device(db, runtime, scope=scope, device_id=device_id, request=request)
