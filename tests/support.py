from __future__ import annotations

from collections.abc import Generator, Iterable
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from devicehub.adapters.base import (
    AdapterKind,
    DeviceAdapter,
    DeviceCommand,
    DeviceCommandError,
    DeviceCommandResult,
    DeviceConnection,
    DeviceConnectionError,
    DeviceHealth,
    DeviceInfo,
    EventHostConfig,
)
from devicehub.adapters.registry import AdapterRegistry
from devicehub.db import Base
from devicehub.models import (
    CredentialType,
    Device,
    DeviceProtocol,
    DeviceStatus,
    Employee,
    EmployeeCredential,
)
from devicehub.runtime import DeviceLockRegistry, DeviceRuntime
from devicehub.security import DataScope
from devicehub.services.adapter_strategy import DeviceAdapterStrategy, DeviceBackoff

ORG_ID = 1
BRANCH_ID = 10
SCOPE = DataScope(organization_id=ORG_ID)


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_get_db(db: Session):
    def _override() -> Generator[Session, None, None]:
        yield db

    return _override


class RecordingAdapter(DeviceAdapter):
    """In-memory device that records every call and fails on demand."""

    kind = AdapterKind.HIKVISION

    def __init__(self) -> None:
        self.commands: list[DeviceCommand] = []
        self.pushed_settings: list[dict[str, Any]] = []
        self.event_hosts: list[EventHostConfig] = []
        self.deleted_host_ids: list[str] = []
        self.fail_employee_nos: set[str] = set()
        self.fail_commands: set[str] = set()
        self.unreachable = False
        self.webhooks_supported = True
        self.fail_webhook_delete = False
        self.closed = False
        self.info = DeviceInfo(
            manufacturer="Hikvision",
            model="DS-K1T341",
            firmware="V3.2.0",
            serial_number="DS-K1T341-0001",
            mac_address="aa-bb-cc-dd-ee-01",
        )

    def _ensure_reachable(self, connection: DeviceConnection) -> None:
        if self.unreachable:
            raise DeviceConnectionError(f"Unable to reach device at {connection.host}", device_host=connection.host)

    def commands_named(self, name: str) -> list[DeviceCommand]:
        return [command for command in self.commands if command.command == name]

    def send_command(self, connection: DeviceConnection, command: DeviceCommand) -> DeviceCommandResult:
        self.commands.append(command)
        self._ensure_reachable(connection)
        employee_no = command.parameters.get("employee_no")
        if command.command in self.fail_commands or (employee_no and employee_no in self.fail_employee_nos):
            raise DeviceCommandError(f"Device rejected {command.command}", device_host=connection.host, status_code=400)
        return DeviceCommandResult(success=True, message=f"{command.command} ok", data={"employee_no": employee_no})

    def test_connection(self, connection: DeviceConnection) -> bool:
        return not self.unreachable

    def get_device_info(self, connection: DeviceConnection) -> DeviceInfo:
        self._ensure_reachable(connection)
        return self.info

    def get_device_health(self, connection: DeviceConnection) -> DeviceHealth:
        self._ensure_reachable(connection)
        return DeviceHealth(status="healthy", uptime=3600)

    def get_device_configuration(self, connection: DeviceConnection) -> dict[str, Any]:
        self._ensure_reachable(connection)
        return {"time": {"timeZone": "UTC"}}

    def update_device_configuration(self, connection: DeviceConnection, settings: dict[str, Any]) -> None:
        self._ensure_reachable(connection)
        self.pushed_settings.append(dict(settings))

    def supports_webhooks(self, connection: DeviceConnection) -> bool:
        return self.webhooks_supported

    def get_webhook_configurations(self, connection: DeviceConnection) -> list[dict[str, Any]]:
        self._ensure_reachable(connection)
        return [{"host_id": host.host_id, "url": host.url} for host in self.event_hosts]

    def configure_event_host(self, connection: DeviceConnection, host: EventHostConfig) -> None:
        self._ensure_reachable(connection)
        self.event_hosts.append(host)

    def delete_webhooks(self, connection: DeviceConnection, host_ids: list[str]) -> None:
        self._ensure_reachable(connection)
        if self.fail_webhook_delete:
            raise DeviceCommandError("httpHosts delete failed", device_host=connection.host, status_code=500)
        self.deleted_host_ids.extend(host_ids)

    def close(self) -> None:
        self.closed = True


def build_runtime(
    adapter: DeviceAdapter,
    *,
    backoff: DeviceBackoff | None = None,
    lock_timeout_seconds: float = 0.05,
) -> DeviceRuntime:
    registry = AdapterRegistry({AdapterKind.HIKVISION: lambda: adapter})
    strategy = DeviceAdapterStrategy(registry, backoff or DeviceBackoff(base_seconds=0, max_seconds=0))
    return DeviceRuntime(strategy=strategy, sync_locks=DeviceLockRegistry(timeout_seconds=lock_timeout_seconds))


def add_device(db: Session, **overrides: Any) -> Device:
    values: dict[str, Any] = {
        "organization_id": ORG_ID,
        "branch_id": BRANCH_ID,
        "name": "Main entrance",
        "host": "10.0.0.5",
        "port": 80,
        "protocol": DeviceProtocol.HTTP,
        "manufacturer": "Hikvision",
        "model": "DS-K1T341",
        "status": DeviceStatus.OFFLINE,
        "is_active": True,
    }
    values.update(overrides)
    device = Device(**values)
    db.add(device)
    db.commit()
    return device


def add_employee(
    db: Session,
    code: str,
    *,
    credentials: Iterable[tuple[CredentialType, str]] = (),
    **overrides: Any,
) -> Employee:
    values: dict[str, Any] = {
        "organization_id": ORG_ID,
        "branch_id": BRANCH_ID,
        "employee_code": code,
        "first_name": "Emp",
        "last_name": code,
        "is_active": True,
    }
    values.update(overrides)
    employee = Employee(**values)
    employee.credentials = [
        EmployeeCredential(type=credential_type, value=value, credential_metadata={}, is_active=True)
        for credential_type, value in credentials
    ]
    db.add(employee)
    db.commit()
    return employee
