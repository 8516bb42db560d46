from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from devicehub.audit import AuditContext, log_audit, request_actor_id
from devicehub.db import get_db
from devicehub.errors import ApiError
from devicehub.models import CredentialType
from devicehub.runtime import DeviceRuntime, get_device_runtime
from devicehub.schemas import (
    DeviceActiveUpdate,
    DeviceCommandRequest,
    DeviceConfigurationFields,
    DeviceConfigurationRead,
    DeviceConfigurationUpdate,
    DeviceCreate,
    DeviceRead,
    DeviceTemplateCreate,
    DeviceTemplateRead,
    DeviceTemplateUpdate,
    DeviceUpdate,
    DeviceWebhookRead,
    EmployeeSyncRequest,
    EmployeeSyncSummary,
    RetryFailedSyncsResponse,
    WebhookConfigureRequest,
)
from devicehub.security import DataScope, require_data_scope
from devicehub.services import device_configuration as configuration_service
from devicehub.services import devices as device_service
from devicehub.services import employee_sync as sync_service
from devicehub.services import templates as template_service
from devicehub.services import webhooks as webhook_service

router = APIRouter(tags=["devices"])


@router.post("/api/devices", response_model=DeviceRead, status_code=status.HTTP_201_CREATED)
def create_device(
    payload: DeviceCreate,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> DeviceRead:
    device = device_service.create_device(db, runtime, scope=scope, payload=payload)
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_CREATED",
        success=True,
        entity_type="device",
        entity_id=device.id,
        details={"name": device.name, "host": device.host, "manufacturer": device.manufacturer},
    )
    return device


@router.get("/api/devices", response_model=list[DeviceRead])
def list_devices(
    branch_id: int | None = Query(default=None, ge=1),
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> list[DeviceRead]:
    return device_service.list_devices(db, scope=scope, branch_id=branch_id, is_active=is_active)


@router.get("/api/devices/count")
def count_devices(
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> dict[str, int]:
    return {"count": device_service.count_devices(db, scope=scope)}


@router.post("/api/devices/discover")
def discover_devices(
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> list[dict[str, Any]]:
    return [info.to_dict() for info in device_service.discover_devices(db, runtime, scope=scope)]


@router.get("/api/devices/{device_id}", response_model=DeviceRead)
def get_device(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceRead:
    return device_service.get_scoped_device(db, scope, device_id)


@router.patch("/api/devices/{device_id}", response_model=DeviceRead)
def update_device(
    device_id: int,
    payload: DeviceUpdate,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceRead:
    device = device_service.update_device(db, scope=scope, device_id=device_id, payload=payload)
    changed = sorted(key for key in payload.model_fields_set if key != "password")
    if "password" in payload.model_fields_set:
        changed.append("password")
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_UPDATED",
        success=True,
        entity_type="device",
        entity_id=device.id,
        details={"fields": changed},
    )
    return device


@router.delete("/api/devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_device(
    device_id: int,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> Response:
    device_service.delete_device(db, scope=scope, device_id=device_id)
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_DELETED",
        success=True,
        entity_type="device",
        entity_id=device_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/api/devices/{device_id}/active", response_model=DeviceRead)
def update_device_active_status(
    device_id: int,
    payload: DeviceActiveUpdate,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceRead:
    device = device_service.set_device_active(db, scope=scope, device_id=device_id, is_active=payload.is_active)
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_ACTIVATED" if payload.is_active else "DEVICE_DEACTIVATED",
        success=True,
        entity_type="device",
        entity_id=device.id,
        details={"is_active": payload.is_active},
    )
    return device


@router.post("/api/devices/{device_id}/test-connection")
def test_device_connection(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    return device_service.test_device_connection(db, runtime, scope=scope, device_id=device_id)


@router.post("/api/devices/{device_id}/commands")
def send_device_command(
    device_id: int,
    payload: DeviceCommandRequest,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    try:
        result = device_service.send_device_command(
            db,
            runtime,
            scope=scope,
            device_id=device_id,
            payload=payload,
        )
    except ApiError as exc:
        log_audit(
            db,
            AuditContext.from_request(request, scope),
            action="DEVICE_COMMAND_FAILED",
            success=False,
            entity_type="device",
            entity_id=device_id,
            details={"command": payload.command, "code": exc.code, "message": exc.message},
        )
        raise

    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_COMMAND_SENT",
        success=result.success,
        entity_type="device",
        entity_id=device_id,
        details={"command": payload.command, "message": result.message},
    )
    return result.to_dict()


@router.get("/api/devices/{device_id}/health")
def get_device_health(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    return device_service.get_device_health(db, runtime, scope=scope, device_id=device_id).to_dict()


@router.get("/api/devices/{device_id}/info")
def get_device_info(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    return device_service.get_device_info(db, runtime, scope=scope, device_id=device_id).to_dict()


@router.post("/api/devices/{device_id}/sync-employees", response_model=EmployeeSyncSummary)
def sync_employees(
    device_id: int,
    payload: EmployeeSyncRequest,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> EmployeeSyncSummary:
    summary = sync_service.sync_employees_to_device(db, runtime, scope=scope, device_id=device_id, request=payload)
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_EMPLOYEE_SYNC_COMPLETED",
        success=summary["failed"] == 0,
        entity_type="device",
        entity_id=device_id,
        details={
            key: summary[key]
            for key in ("total_employees", "added", "updated", "removed", "failed", "status")
        },
    )
    return EmployeeSyncSummary(**summary)


@router.post("/api/devices/{device_id}/sync-credential-type/{credential_type}", response_model=EmployeeSyncSummary)
def sync_employees_with_credential_type(
    device_id: int,
    credential_type: CredentialType,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> EmployeeSyncSummary:
    summary = sync_service.sync_employees_with_credential_type(
        db,
        runtime,
        scope=scope,
        device_id=device_id,
        credential_type=credential_type,
    )
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_EMPLOYEE_SYNC_COMPLETED",
        success=summary["failed"] == 0,
        entity_type="device",
        entity_id=device_id,
        details={"credential_type": credential_type.value, "added": summary["added"], "failed": summary["failed"]},
    )
    return EmployeeSyncSummary(**summary)


@router.get("/api/devices/{device_id}/credential-type/{credential_type}/employees")
def get_employees_with_credential_type(
    device_id: int,
    credential_type: CredentialType,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> list[dict[str, Any]]:
    return sync_service.get_employees_with_credential_type(
        db,
        scope=scope,
        device_id=device_id,
        credential_type=credential_type,
    )


@router.post("/api/devices/{device_id}/retry-failed-syncs", response_model=RetryFailedSyncsResponse)
def retry_failed_syncs(
    device_id: int,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> RetryFailedSyncsResponse:
    result = sync_service.retry_failed_syncs(db, runtime, scope=scope, device_id=device_id)
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_EMPLOYEE_SYNC_RETRY",
        success=result["failed"] == 0,
        entity_type="device",
        entity_id=device_id,
        details=result,
    )
    return RetryFailedSyncsResponse(**result)


@router.get("/api/devices/{device_id}/sync-status")
def get_sync_status(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> dict[str, Any]:
    return sync_service.get_sync_status(db, scope=scope, device_id=device_id)


@router.get("/api/employees/{employee_id}/device-sync-history")
def get_employee_sync_history(
    employee_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> list[dict[str, Any]]:
    return sync_service.get_employee_sync_history(db, scope=scope, employee_id=employee_id)


@router.post("/api/devices/{device_id}/webhooks", response_model=DeviceWebhookRead, status_code=status.HTTP_201_CREATED)
def configure_webhook(
    device_id: int,
    payload: WebhookConfigureRequest,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> DeviceWebhookRead:
    webhook = webhook_service.configure_webhook(
        db,
        runtime,
        scope=scope,
        device_id=device_id,
        payload=payload,
        created_by=request_actor_id(request),
    )
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_WEBHOOK_CONFIGURED",
        success=True,
        entity_type="device_webhook",
        entity_id=webhook.id,
        details={"device_id": device_id, "host_id": webhook.host_id, "url": webhook.url},
    )
    return webhook


@router.get("/api/devices/{device_id}/webhooks", response_model=list[DeviceWebhookRead])
def get_webhook_configuration(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> list[DeviceWebhookRead]:
    return webhook_service.get_webhook_configuration(db, scope=scope, device_id=device_id)


@router.get("/api/devices/{device_id}/webhooks/device-hosts")
def get_device_webhook_hosts(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> list[dict[str, Any]]:
    return webhook_service.get_device_webhook_hosts(db, runtime, scope=scope, device_id=device_id)


@router.delete("/api/devices/{device_id}/webhooks/{host_id}", response_model=DeviceWebhookRead)
def remove_webhook(
    device_id: int,
    host_id: str,
    request: Request,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> DeviceWebhookRead:
    webhook = webhook_service.remove_webhook(
        db,
        runtime,
        scope=scope,
        device_id=device_id,
        host_id=host_id,
        force=force,
    )
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_WEBHOOK_REMOVED",
        success=True,
        entity_type="device_webhook",
        entity_id=webhook.id,
        details={"device_id": device_id, "host_id": host_id, "force": force},
    )
    return webhook


@router.post("/api/devices/{device_id}/webhooks/{host_id}/test")
def test_webhook(
    device_id: int,
    host_id: str,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    return webhook_service.test_webhook(db, runtime, scope=scope, device_id=device_id, host_id=host_id)


@router.get("/api/devices/{device_id}/configuration", response_model=DeviceConfigurationRead)
def get_device_configuration(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceConfigurationRead:
    return configuration_service.get_device_configuration(db, scope=scope, device_id=device_id)


@router.get("/api/devices/{device_id}/configuration/live")
def get_live_device_configuration(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    return configuration_service.get_live_device_configuration(db, runtime, scope=scope, device_id=device_id)


@router.post(
    "/api/devices/{device_id}/configuration",
    response_model=DeviceConfigurationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_device_configuration(
    device_id: int,
    payload: DeviceConfigurationFields,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceConfigurationRead:
    return configuration_service.create_device_configuration(db, scope=scope, device_id=device_id, payload=payload)


@router.patch("/api/devices/{device_id}/configuration")
def update_device_configuration(
    device_id: int,
    payload: DeviceConfigurationUpdate,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    config, push_result = configuration_service.update_device_configuration(
        db,
        runtime,
        scope=scope,
        device_id=device_id,
        payload=payload,
    )
    return {
        "configuration": DeviceConfigurationRead.model_validate(config).model_dump(mode="json"),
        "push": push_result,
    }


@router.delete("/api/devices/{device_id}/configuration", status_code=status.HTTP_204_NO_CONTENT)
def delete_device_configuration(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> Response:
    configuration_service.delete_device_configuration(db, scope=scope, device_id=device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/api/devices/{device_id}/template-suggestions", response_model=list[DeviceTemplateRead])
def get_suggested_templates(
    device_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> list[DeviceTemplateRead]:
    return template_service.get_suggested_templates(db, scope=scope, device_id=device_id)


@router.post("/api/devices/{device_id}/auto-apply-template")
def auto_apply_template(
    device_id: int,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    result = template_service.auto_apply_matching_template(db, runtime, scope=scope, device_id=device_id)
    if result["status"] == template_service.AUTO_APPLY_APPLIED:
        log_audit(
            db,
            AuditContext.from_request(request, scope),
            action="DEVICE_TEMPLATE_APPLIED",
            success=True,
            entity_type="device",
            entity_id=device_id,
            details={"template_id": result["template_id"], "automatic": True},
        )
    return result


@router.post("/api/device-templates", response_model=DeviceTemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    payload: DeviceTemplateCreate,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceTemplateRead:
    return template_service.create_template(db, scope=scope, payload=payload)


@router.get("/api/device-templates", response_model=list[DeviceTemplateRead])
def list_templates(
    manufacturer: str | None = Query(default=None),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> list[DeviceTemplateRead]:
    return template_service.list_templates(db, scope=scope, manufacturer=manufacturer, active_only=active_only)


@router.get("/api/device-templates/{template_id}", response_model=DeviceTemplateRead)
def get_template(
    template_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceTemplateRead:
    return template_service.get_template(db, scope=scope, template_id=template_id)


@router.patch("/api/device-templates/{template_id}", response_model=DeviceTemplateRead)
def update_template(
    template_id: int,
    payload: DeviceTemplateUpdate,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> DeviceTemplateRead:
    return template_service.update_template(db, scope=scope, template_id=template_id, payload=payload)


@router.delete("/api/device-templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
) -> Response:
    template_service.delete_template(db, scope=scope, template_id=template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/device-templates/{template_id}/apply/{device_id}")
def apply_template(
    template_id: int,
    device_id: int,
    request: Request,
    db: Session = Depends(get_db),
    scope: DataScope = Depends(require_data_scope),
    runtime: DeviceRuntime = Depends(get_device_runtime),
) -> dict[str, Any]:
    result = template_service.apply_template_to_device(
        db,
        runtime,
        scope=scope,
        template_id=template_id,
        device_id=device_id,
    )
    log_audit(
        db,
        AuditContext.from_request(request, scope),
        action="DEVICE_TEMPLATE_APPLIED",
        success=True,
        entity_type="device",
        entity_id=device_id,
        details={"template_id": template_id, "device_updated": result["device_updated"]},
    )
    return result
