from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from devicehub.errors import ApiError
from devicehub.models import Device, DeviceConfiguration, DeviceTemplate
from devicehub.runtime import DeviceRuntime
from devicehub.schemas import DeviceConfigurationFields, DeviceTemplateCreate, DeviceTemplateUpdate
from devicehub.security import DataScope
from devicehub.services.device_configuration import (
    CONFIGURATION_FIELDS,
    EXTRA_SETTINGS_PREFIX,
    NULLABLE_CONFIGURATION_FIELDS,
    push_configuration,
)
from devicehub.services.devices import get_scoped_device

logger = logging.getLogger("devicehub.templates")

AUTO_APPLY_APPLIED = "APPLIED"
AUTO_APPLY_NO_MATCH = "NO_MATCH"
AUTO_APPLY_AMBIGUOUS = "AMBIGUOUS"


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def coerce_default_settings(default_settings: dict[str, Any]) -> dict[str, Any]:
    """Typed copy of a template's defaults; unknown keys pass through as extra settings."""
    known = {key: value for key, value in default_settings.items() if key in CONFIGURATION_FIELDS}
    try:
        typed = DeviceConfigurationFields.model_validate(known).model_dump(exclude_unset=True)
    except ValidationError as exc:
        raise ApiError(
            status_code=422,
            code="VALIDATION_ERROR",
            message=f"Invalid template default settings: {exc.errors()}",
        ) from exc

    not_clearable = sorted(
        key for key, value in typed.items() if value is None and key not in NULLABLE_CONFIGURATION_FIELDS
    )
    if not_clearable:
        raise ApiError(
            status_code=422,
            code="VALIDATION_ERROR",
            message=f"Template default settings cannot be null: {', '.join(not_clearable)}",
        )

    coerced = dict(default_settings)
    coerced.update(typed)
    return coerced


def _assert_name_available(db: Session, organization_id: int, name: str, *, exclude_id: int | None) -> None:
    stmt = select(DeviceTemplate.id).where(
        DeviceTemplate.organization_id == organization_id,
        DeviceTemplate.name == name,
    )
    if exclude_id is not None:
        stmt = stmt.where(DeviceTemplate.id != exclude_id)
    if db.scalar(stmt) is not None:
        raise ApiError(
            status_code=409,
            code="TEMPLATE_NAME_CONFLICT",
            message=f"Template '{name}' already exists.",
        )


def _commit_template(db: Session, template: DeviceTemplate) -> DeviceTemplate:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="TEMPLATE_NAME_CONFLICT",
            message=f"Template '{template.name}' already exists.",
        ) from exc
    db.refresh(template)
    return template


def create_template(db: Session, *, scope: DataScope, payload: DeviceTemplateCreate) -> DeviceTemplate:
    name = payload.name.strip()
    _assert_name_available(db, scope.organization_id, name, exclude_id=None)
    default_settings = coerce_default_settings(payload.default_settings)
    template = DeviceTemplate(
        organization_id=scope.organization_id,
        name=name,
        manufacturer=payload.manufacturer.strip(),
        model=payload.model.strip(),
        description=payload.description,
        protocol=payload.protocol,
        default_settings=default_settings,
        capabilities=list(payload.capabilities),
        priority=payload.priority,
        is_active=payload.is_active,
    )
    db.add(template)
    return _commit_template(db, template)


def list_templates(
    db: Session,
    *,
    scope: DataScope,
    manufacturer: str | None = None,
    active_only: bool = False,
) -> list[DeviceTemplate]:
    stmt = (
        select(DeviceTemplate)
        .where(DeviceTemplate.organization_id == scope.organization_id)
        .order_by(DeviceTemplate.priority.desc(), DeviceTemplate.id.asc())
    )
    if active_only:
        stmt = stmt.where(DeviceTemplate.is_active.is_(True))
    templates = list(db.scalars(stmt).all())
    if manufacturer:
        wanted = _normalize(manufacturer)
        templates = [template for template in templates if _normalize(template.manufacturer) == wanted]
    return templates


def get_template(db: Session, *, scope: DataScope, template_id: int) -> DeviceTemplate:
    template = db.get(DeviceTemplate, template_id)
    if template is None or template.organization_id != scope.organization_id:
        raise ApiError(status_code=404, code="TEMPLATE_NOT_FOUND", message=f"Template {template_id} not found.")
    return template


def update_template(
    db: Session,
    *,
    scope: DataScope,
    template_id: int,
    payload: DeviceTemplateUpdate,
) -> DeviceTemplate:
    template = get_template(db, scope=scope, template_id=template_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name") is not None:
        changes["name"] = changes["name"].strip()
        _assert_name_available(db, scope.organization_id, changes["name"], exclude_id=template.id)
    if changes.get("default_settings") is not None:
        changes["default_settings"] = coerce_default_settings(changes["default_settings"])

    for field_name, value in changes.items():
        if value is None and field_name not in {"description", "protocol"}:
            continue
        setattr(template, field_name, value)
    return _commit_template(db, template)


def delete_template(db: Session, *, scope: DataScope, template_id: int) -> None:
    template = get_template(db, scope=scope, template_id=template_id)
    db.execute(
        update(DeviceConfiguration)
        .where(DeviceConfiguration.applied_template_id == template.id)
        .values(applied_template_id=None)
    )
    db.delete(template)
    db.commit()


def _matching_templates(db: Session, device: Device) -> list[DeviceTemplate]:
    manufacturer = _normalize(device.manufacturer)
    model = _normalize(device.model)
    if not manufacturer or not model:
        return []
    candidates = db.scalars(
        select(DeviceTemplate).where(
            DeviceTemplate.organization_id == device.organization_id,
            DeviceTemplate.is_active.is_(True),
        )
    ).all()
    matches = [
        template
        for template in candidates
        if _normalize(template.manufacturer) == manufacturer and _normalize(template.model) == model
    ]
    return sorted(matches, key=lambda item: (-item.priority, item.id))


def get_suggested_templates(db: Session, *, scope: DataScope, device_id: int) -> list[DeviceTemplate]:
    return _matching_templates(db, get_scoped_device(db, scope, device_id))


def _merge_template(
    config: DeviceConfiguration,
    template: DeviceTemplate,
    default_settings: dict[str, Any],
) -> tuple[list[str], list[str]]:
    overridden = set(config.overridden_fields or [])
    applied: list[str] = []
    skipped: list[str] = []
    extra = dict(config.extra_settings or {})
    for key, value in default_settings.items():
        if key in CONFIGURATION_FIELDS:
            if key in overridden:
                skipped.append(key)
                continue
            setattr(config, key, value)
            applied.append(key)
        else:
            if f"{EXTRA_SETTINGS_PREFIX}{key}" in overridden:
                skipped.append(key)
                continue
            extra[key] = value
            applied.append(key)
    config.extra_settings = extra
    config.applied_template_id = template.id
    return applied, skipped


def _apply(db: Session, runtime: DeviceRuntime, template: DeviceTemplate, device: Device) -> dict[str, Any]:
    if not template.is_active:
        raise ApiError(
            status_code=400,
            code="TEMPLATE_INACTIVE",
            message=f"Template {template.id} is inactive.",
        )
    default_settings = coerce_default_settings(template.default_settings or {})

    created = device.configuration is None
    if created:
        device.configuration = DeviceConfiguration(extra_settings={}, overridden_fields=[])
    config = device.configuration
    applied, skipped = _merge_template(config, template, default_settings)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "device_template_apply_failed",
            extra={"device_id": device.id, "template_id": template.id},
        )
        raise
    db.refresh(config)

    push_result = push_configuration(runtime, device, config)
    logger.info(
        "device_template_applied",
        extra={
            "device_id": device.id,
            "template_id": template.id,
            "configuration_created": created,
            "applied_fields": applied,
            "skipped_fields": skipped,
            "device_updated": push_result["device_updated"],
        },
    )
    return {
        "status": AUTO_APPLY_APPLIED,
        "device_id": device.id,
        "template_id": template.id,
        "template_name": template.name,
        "configuration_id": config.id,
        "created": created,
        "applied_fields": applied,
        "skipped_fields": skipped,
        **push_result,
    }


def apply_template_to_device(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    template_id: int,
    device_id: int,
) -> dict[str, Any]:
    template = get_template(db, scope=scope, template_id=template_id)
    device = get_scoped_device(db, scope, device_id)
    return _apply(db, runtime, template, device)


def auto_apply_matching_template(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
) -> dict[str, Any]:
    device = get_scoped_device(db, scope, device_id)
    candidates = _matching_templates(db, device)
    if not candidates:
        logger.info("device_template_no_match", extra={"device_id": device.id})
        return {"status": AUTO_APPLY_NO_MATCH, "device_id": device.id}

    top_priority = candidates[0].priority
    tied = [template for template in candidates if template.priority == top_priority]
    if len(tied) > 1:
        logger.warning(
            "device_template_ambiguous",
            extra={"device_id": device.id, "template_ids": [template.id for template in tied]},
        )
        return {
            "status": AUTO_APPLY_AMBIGUOUS,
            "device_id": device.id,
            "candidates": [
                {"id": template.id, "name": template.name, "priority": template.priority}
                for template in tied
            ],
        }
    return _apply(db, runtime, candidates[0], device)
