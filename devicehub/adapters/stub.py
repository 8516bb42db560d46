from __future__ import annotations

import logging
from typing import Any

from devicehub.adapters.base import (
    AdapterKind,
    DeviceAdapter,
    DeviceCommand,
    DeviceCommandResult,
    DeviceConnection,
    DeviceHealth,
    DeviceInfo,
    EventHostConfig,
)

logger = logging.getLogger("devicehub.adapters")


class StubDeviceAdapter(DeviceAdapter):
    """No-op adapter for devices without a vendor implementation.

    Commands are accepted and logged, connection tests report failure and
    nothing is ever pushed to hardware.
    """

    kind = AdapterKind.STUB

    def send_command(self, connection: DeviceConnection, command: DeviceCommand) -> DeviceCommandResult:
        logger.info(
            "stub_adapter_command",
            extra={"host": connection.host, "device_id": connection.device_id, "command": command.command},
        )
        return DeviceCommandResult(
            success=True,
            message=f"Command {command.command} accepted by stub adapter.",
            data={"noop": True},
        )

    def test_connection(self, connection: DeviceConnection) -> bool:
        return False

    def get_device_info(self, connection: DeviceConnection) -> DeviceInfo:
        return DeviceInfo(
            manufacturer=connection.manufacturer,
            model=connection.model,
            host=connection.host,
            port=connection.port,
        )

    def get_device_health(self, connection: DeviceConnection) -> DeviceHealth:
        return DeviceHealth(status="unknown", uptime=0, issues=["No adapter available for this device"])

    def get_device_configuration(self, connection: DeviceConnection) -> dict[str, Any]:
        return {}

    def update_device_configuration(self, connection: DeviceConnection, settings: dict[str, Any]) -> None:
        logger.info(
            "stub_adapter_configuration_skipped",
            extra={"host": connection.host, "device_id": connection.device_id, "keys": sorted(settings)},
        )

    def supports_webhooks(self, connection: DeviceConnection) -> bool:
        return False

    def get_webhook_configurations(self, connection: DeviceConnection) -> list[dict[str, Any]]:
        return []

    def configure_event_host(self, connection: DeviceConnection, host: EventHostConfig) -> None:
        return None

    def delete_webhooks(self, connection: DeviceConnection, host_ids: list[str]) -> None:
        return None
