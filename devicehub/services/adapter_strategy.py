from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from devicehub.adapters.base import (
    AdapterKind,
    DeviceAdapter,
    DeviceAdapterError,
    DeviceBackoffActive,
    DeviceCommand,
    DeviceCommandResult,
    DeviceConnection,
    DeviceConnectionError,
    DeviceHealth,
    DeviceInfo,
    EventHostConfig,
)
from devicehub.adapters.registry import AdapterRegistry, classify_adapter_kind
from devicehub.logging_utils import measure_latency
from devicehub.models import Device
from devicehub.security import decrypt_secret
from devicehub.settings import get_settings

logger = logging.getLogger("devicehub.adapters")


def build_device_connection(device: Device) -> DeviceConnection:
    settings = get_settings()
    password = decrypt_secret(device.password_encrypted) if device.password_encrypted else None
    protocol = getattr(device.protocol, "value", device.protocol) or "HTTP"
    return DeviceConnection(
        device_id=device.id,
        host=device.host,
        port=int(device.port or 80),
        protocol=str(protocol),
        username=device.username,
        password=password,
        manufacturer=device.manufacturer,
        model=device.model,
        timeout_seconds=float(device.timeout_seconds or settings.device_default_timeout_seconds),
        retry_attempts=int(device.retry_attempts or settings.device_default_retry_attempts),
    )


@dataclass(slots=True)
class _BackoffState:
    failures: int
    blocked_until: float


class DeviceBackoff:
    """Per-device exponential back-off after connectivity failures."""

    def __init__(
        self,
        *,
        base_seconds: float,
        max_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_seconds = max(0.0, float(base_seconds))
        self.max_seconds = max(self.base_seconds, float(max_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, _BackoffState] = {}

    @property
    def enabled(self) -> bool:
        return self.base_seconds > 0

    def delay_for(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.max_seconds, self.base_seconds * (2 ** (failures - 1)))

    def remaining(self, key: str) -> float:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return 0.0
            return max(0.0, state.blocked_until - self._clock())

    def check(self, key: str, *, host: str | None = None) -> None:
        remaining = self.remaining(key)
        if remaining > 0:
            raise DeviceBackoffActive(
                f"Device {host or key} is backing off after repeated failures; retry in {remaining:.1f}s",
                device_host=host,
                retry_after_seconds=remaining,
            )

    def record_failure(self, key: str) -> float:
        if not self.enabled:
            return 0.0
        with self._lock:
            state = self._states.get(key)
            failures = 1 if state is None else state.failures + 1
            delay = self.delay_for(failures)
            self._states[key] = _BackoffState(failures=failures, blocked_until=self._clock() + delay)
            return delay

    def record_success(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def snapshot(self) -> dict[str, dict[str, float]]:
        now = self._clock()
        with self._lock:
            return {
                key: {
                    "failures": state.failures,
                    "retry_after_seconds": round(max(0.0, state.blocked_until - now), 2),
                }
                for key, state in self._states.items()
            }


def _backoff_key(device: Device) -> str:
    if device.id is not None:
        return f"device:{device.id}"
    return f"host:{device.host}:{device.port}"


class DeviceAdapterStrategy:
    def __init__(self, registry: AdapterRegistry, backoff: DeviceBackoff):
        self.registry = registry
        self.backoff = backoff

    def select_adapter(self, device: Device) -> DeviceAdapter:
        kind = classify_adapter_kind(device.manufacturer, device.protocol)
        adapter = self.registry.resolve(kind)
        logger.debug(
            "adapter_selected",
            extra={
                "device_id": device.id,
                "manufacturer": device.manufacturer,
                "adapter_kind": kind.value,
                "adapter": type(adapter).__name__,
            },
        )
        return adapter

    def _call(self, device: Device, operation: str, func: Callable[[DeviceAdapter, DeviceConnection], Any]) -> Any:
        key = _backoff_key(device)
        self.backoff.check(key, host=device.host)
        adapter = self.select_adapter(device)
        connection = build_device_connection(device)
        try:
            result = func(adapter, connection)
        except DeviceConnectionError:
            delay = self.backoff.record_failure(key)
            logger.warning(
                "device_backoff_started",
                extra={"device_id": device.id, "host": device.host, "operation": operation, "backoff_seconds": delay},
            )
            raise
        self.backoff.record_success(key)
        return result

    def execute_command(self, device: Device, command: DeviceCommand) -> DeviceCommandResult:
        with measure_latency() as watch:
            try:
                result = self._call(device, command.command, lambda adapter, conn: adapter.send_command(conn, command))
            except DeviceAdapterError as exc:
                logger.error(
                    "device_command_failed",
                    extra={
                        "device_id": device.id,
                        "host": device.host,
                        "command": command.command,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        "latency_ms": watch.stop(),
                    },
                )
                raise
        logger.info(
            "device_command_executed",
            extra={
                "device_id": device.id,
                "host": device.host,
                "command": command.command,
                "success": result.success,
                "latency_ms": watch.elapsed_ms,
            },
        )
        return result

    def test_connection(self, device: Device) -> bool:
        adapter = self.select_adapter(device)
        key = _backoff_key(device)
        with measure_latency() as watch:
            try:
                ok = bool(adapter.test_connection(build_device_connection(device)))
            except Exception as exc:
                logger.warning(
                    "device_connection_test_error",
                    extra={"device_id": device.id, "host": device.host, "error": str(exc)},
                )
                ok = False
        if ok:
            self.backoff.record_success(key)
        logger.info(
            "device_connection_tested",
            extra={"device_id": device.id, "host": device.host, "success": ok, "latency_ms": watch.elapsed_ms},
        )
        return ok

    def get_device_info(self, device: Device) -> DeviceInfo:
        return self._call(device, "get_device_info", lambda adapter, conn: adapter.get_device_info(conn))

    def get_device_health(self, device: Device) -> DeviceHealth:
        return self._call(device, "get_device_health", lambda adapter, conn: adapter.get_device_health(conn))

    def get_device_configuration(self, device: Device) -> dict[str, Any]:
        return self._call(
            device,
            "get_device_configuration",
            lambda adapter, conn: adapter.get_device_configuration(conn),
        )

    def update_device_configuration(self, device: Device, settings: dict[str, Any]) -> None:
        self._call(
            device,
            "update_device_configuration",
            lambda adapter, conn: adapter.update_device_configuration(conn, settings),
        )

    def supports_webhooks(self, device: Device) -> bool:
        try:
            return bool(self.select_adapter(device).supports_webhooks(build_device_connection(device)))
        except Exception as exc:
            logger.warning(
                "device_webhook_support_check_failed",
                extra={"device_id": device.id, "host": device.host, "error": str(exc)},
            )
            return False

    def get_webhook_configurations(self, device: Device) -> list[dict[str, Any]]:
        return self._call(
            device,
            "get_webhook_configurations",
            lambda adapter, conn: adapter.get_webhook_configurations(conn),
        )

    def configure_event_host(self, device: Device, host: EventHostConfig) -> None:
        self._call(device, "configure_event_host", lambda adapter, conn: adapter.configure_event_host(conn, host))

    def delete_webhooks(self, device: Device, host_ids: list[str]) -> None:
        self._call(device, "delete_webhooks", lambda adapter, conn: adapter.delete_webhooks(conn, host_ids))

    def discover_devices(self) -> list[DeviceInfo]:
        discovered: list[DeviceInfo] = []
        for kind in self.registry.registered_kinds():
            if kind == AdapterKind.STUB:
                continue
            adapter = self.registry.resolve(kind)
            try:
                discovered.extend(adapter.discover_devices())
            except Exception as exc:
                logger.warning("device_discovery_failed", extra={"adapter_kind": kind.value, "error": str(exc)})
        return discovered
