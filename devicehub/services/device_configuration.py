from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from devicehub.adapters.base import DeviceAdapterError
from devicehub.errors import ApiError, device_api_error
from devicehub.models import Device, DeviceConfiguration
from devicehub.runtime import DeviceRuntime
from devicehub.schemas import DeviceConfigurationFields, DeviceConfigurationUpdate
from devicehub.security import DataScope
from devicehub.services.devices import get_scoped_device

logger = logging.getLogger("devicehub.configuration")

CONFIGURATION_FIELDS: tuple[str, ...] = tuple(
    name for name in DeviceConfigurationFields.model_fields if name != "extra_settings"
)
EXTRA_SETTINGS_PREFIX = "extra_settings."
NULLABLE_CONFIGURATION_FIELDS = frozenset({"network_static_ip", "network_subnet", "network_gateway", "ntp_server"})


def configuration_to_settings(config: DeviceConfiguration) -> dict[str, Any]:
    settings: dict[str, Any] = dict(config.extra_settings or {})
    for name in CONFIGURATION_FIELDS:
        settings[name] = getattr(config, name)
    return settings


def _apply_explicit_fields(config: DeviceConfiguration, changes: dict[str, Any]) -> list[str]:
    overridden = list(config.overridden_fields or [])
    touched: list[str] = []
    extra = changes.pop("extra_settings", None)
    for name, value in changes.items():
        if name not in CONFIGURATION_FIELDS:
            continue
        if value is None and name not in NULLABLE_CONFIGURATION_FIELDS:
            continue
        setattr(config, name, value)
        touched.append(name)
    if extra:
        merged = dict(config.extra_settings or {})
        merged.update(extra)
        config.extra_settings = merged
        touched.extend(f"{EXTRA_SETTINGS_PREFIX}{key}" for key in extra)
    for name in touched:
        if name not in overridden:
            overridden.append(name)
    config.overridden_fields = overridden
    return touched


def _get_configuration(device: Device) -> DeviceConfiguration:
    if device.configuration is None:
        raise ApiError(
            status_code=404,
            code="CONFIGURATION_NOT_FOUND",
            message=f"Device {device.id} has no stored configuration.",
        )
    return device.configuration


def get_device_configuration(db: Session, *, scope: DataScope, device_id: int) -> DeviceConfiguration:
    return _get_configuration(get_scoped_device(db, scope, device_id))


def get_live_device_configuration(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
) -> dict[str, Any]:
    device = get_scoped_device(db, scope, device_id)
    try:
        return runtime.strategy.get_device_configuration(device)
    except DeviceAdapterError as exc:
        raise device_api_error(exc, device_id=device.id) from exc


def create_device_configuration(
    db: Session,
    *,
    scope: DataScope,
    device_id: int,
    payload: DeviceConfigurationFields,
) -> DeviceConfiguration:
    device = get_scoped_device(db, scope, device_id)
    if device.configuration is not None:
        raise ApiError(
            status_code=409,
            code="CONFIGURATION_EXISTS",
            message=f"Device {device.id} already has a configuration.",
        )
    config = DeviceConfiguration(extra_settings={}, overridden_fields=[])
    _apply_explicit_fields(config, payload.model_dump(exclude_unset=True))
    device.configuration = config
    db.commit()
    db.refresh(config)
    return config


def push_configuration(runtime: DeviceRuntime, device: Device, config: DeviceConfiguration) -> dict[str, Any]:
    if not device.is_active:
        return {"device_updated": False, "device_error": "Device is inactive."}
    try:
        runtime.strategy.update_device_configuration(device, configuration_to_settings(config))
    except DeviceAdapterError as exc:
        logger.warning(
            "device_configuration_push_failed",
            extra={"device_id": device.id, "error": str(exc)},
        )
        return {"device_updated": False, "device_error": exc.message}
    return {"device_updated": True, "device_error": None}


def update_device_configuration(
    db: Session,
    runtime: DeviceRuntime,
    *,
    scope: DataScope,
    device_id: int,
    payload: DeviceConfigurationUpdate,
) -> tuple[DeviceConfiguration, dict[str, Any] | None]:
    device = get_scoped_device(db, scope, device_id)
    config = _get_configuration(device)
    changes = payload.model_dump(exclude_unset=True)
    push_to_device = bool(changes.pop("push_to_device", False))
    touched = _apply_explicit_fields(config, changes)
    db.commit()
    db.refresh(config)
    logger.info(
        "device_configuration_updated",
        extra={"device_id": device.id, "fields": touched, "push_to_device": push_to_device},
    )

    push_result = push_configuration(runtime, device, config) if push_to_device else None
    return config, push_result


def delete_device_configuration(db: Session, *, scope: DataScope, device_id: int) -> None:
    device = get_scoped_device(db, scope, device_id)
    config = _get_configuration(device)
    device.configuration = None
    db.delete(config)
    db.commit()
