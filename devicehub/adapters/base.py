from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdapterKind(str, enum.Enum):
    HIKVISION = "HIKVISION"
    ZKTECO = "ZKTECO"
    DAHUA = "DAHUA"
    STUB = "STUB"


class DeviceCommandName(str, enum.Enum):
    UNLOCK_DOOR = "unlock_door"
    LOCK_DOOR = "lock_door"
    REBOOT = "reboot"
    ADD_PERSON = "add_person"
    UPDATE_PERSON = "update_person"
    DELETE_PERSON = "delete_person"
    CONFIGURE_WEBHOOK = "configure_webhook"
    REMOVE_WEBHOOK = "remove_webhook"
    TEST_WEBHOOK = "test_webhook"


class DeviceAdapterError(Exception):
    def __init__(self, message: str, *, device_host: str | None = None):
        super().__init__(message)
        self.message = message
        self.device_host = device_host


class DeviceConnectionError(DeviceAdapterError):
    """Device could not be reached: refused, unreachable, timed out."""


class DeviceBackoffActive(DeviceConnectionError):
    def __init__(self, message: str, *, device_host: str | None = None, retry_after_seconds: float = 0.0):
        super().__init__(message, device_host=device_host)
        self.retry_after_seconds = retry_after_seconds


class DeviceCommandError(DeviceAdapterError):
    """Device answered but rejected the request."""

    def __init__(self, message: str, *, device_host: str | None = None, status_code: int | None = None):
        super().__init__(message, device_host=device_host)
        self.status_code = status_code


class DeviceCommandParameterError(DeviceCommandError):
    """Command parameters were rejected before anything was sent to the device."""


@dataclass(frozen=True, slots=True)
class DeviceConnection:
    """Connection context handed to adapters. The password is already decrypted."""

    device_id: int | None
    host: str
    port: int
    protocol: str
    username: str | None
    password: str | None
    manufacturer: str | None = None
    model: str | None = None
    timeout_seconds: float = 10.0
    retry_attempts: int = 3

    @property
    def base_url(self) -> str:
        scheme = "https" if self.protocol.upper() == "HTTPS" else "http"
        default_port = 443 if scheme == "https" else 80
        if self.port and self.port != default_port:
            return f"{scheme}://{self.host}:{self.port}"
        return f"{scheme}://{self.host}"


@dataclass(frozen=True, slots=True)
class DeviceCommand:
    command: str
    parameters: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None


@dataclass(slots=True)
class DeviceCommandResult:
    success: bool
    message: str | None = None
    data: Any = None
    executed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "executed_at": self.executed_at.isoformat(),
        }


@dataclass(slots=True)
class DeviceInfo:
    manufacturer: str | None = None
    model: str | None = None
    firmware: str | None = None
    serial_number: str | None = None
    mac_address: str | None = None
    device_name: str | None = None
    host: str | None = None
    port: int | None = None
    capabilities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manufacturer": self.manufacturer,
            "model": self.model,
            "firmware": self.firmware,
            "serial_number": self.serial_number,
            "mac_address": self.mac_address,
            "device_name": self.device_name,
            "host": self.host,
            "port": self.port,
            "capabilities": list(self.capabilities),
        }


@dataclass(slots=True)
class DeviceHealth:
    status: str
    uptime: int = 0
    issues: list[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "uptime": self.uptime,
            "issues": list(self.issues),
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class EventHostConfig:
    host_id: str
    url: str
    host: str
    port: int
    protocol_type: str = "HTTP"
    parameter_format_type: str = "JSON"
    event_types: tuple[str, ...] = ()


class DeviceAdapter(ABC):
    kind: AdapterKind

    @abstractmethod
    def send_command(self, connection: DeviceConnection, command: DeviceCommand) -> DeviceCommandResult:
        raise NotImplementedError

    @abstractmethod
    def test_connection(self, connection: DeviceConnection) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_device_info(self, connection: DeviceConnection) -> DeviceInfo:
        raise NotImplementedError

    @abstractmethod
    def get_device_health(self, connection: DeviceConnection) -> DeviceHealth:
        raise NotImplementedError

    @abstractmethod
    def get_device_configuration(self, connection: DeviceConnection) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_device_configuration(self, connection: DeviceConnection, settings: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def supports_webhooks(self, connection: DeviceConnection) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_webhook_configurations(self, connection: DeviceConnection) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def configure_event_host(self, connection: DeviceConnection, host: EventHostConfig) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_webhooks(self, connection: DeviceConnection, host_ids: list[str]) -> None:
        raise NotImplementedError

    def discover_devices(self) -> list[DeviceInfo]:
        return []

    def close(self) -> None:
        return None
