from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any
from urllib.parse import urlparse

import requests
from requests.auth import HTTPDigestAuth

from devicehub.adapters.base import (
    AdapterKind,
    DeviceAdapter,
    DeviceAdapterError,
    DeviceCommand,
    DeviceCommandError,
    DeviceCommandName,
    DeviceCommandParameterError,
    DeviceCommandResult,
    DeviceConnection,
    DeviceConnectionError,
    DeviceHealth,
    DeviceInfo,
    EventHostConfig,
)

logger = logging.getLogger("devicehub.adapters")

DEVICE_INFO_PATH = "/ISAPI/System/deviceInfo"
DEVICE_STATUS_PATH = "/ISAPI/System/status?format=json"
REBOOT_PATH = "/ISAPI/System/reboot"
TIME_PATH = "/ISAPI/System/time?format=json"
NTP_SERVER_PATH = "/ISAPI/System/time/ntpServers/1?format=json"
ACS_CONFIG_PATH = "/ISAPI/AccessControl/AcsCfg?format=json"
ANTI_PASSBACK_PATH = "/ISAPI/AccessControl/AntiPassback?format=json"
DOOR_CONTROL_PATH = "/ISAPI/AccessControl/RemoteControl/door/{door_no}"
USER_RECORD_PATH = "/ISAPI/AccessControl/UserInfo/Record?format=json"
USER_MODIFY_PATH = "/ISAPI/AccessControl/UserInfo/Modify?format=json"
USER_DELETE_PATH = "/ISAPI/AccessControl/UserInfoDetail/Delete?format=json"
CARD_RECORD_PATH = "/ISAPI/AccessControl/CardInfo/Record?format=json"
FACE_RECORD_PATH = "/ISAPI/Intelligent/FDLib/FaceDataRecord?format=json"
HTTP_HOSTS_PATH = "/ISAPI/Event/notification/httpHosts?format=json"
HTTP_HOST_PATH = "/ISAPI/Event/notification/httpHosts/{host_id}?format=json"
HTTP_HOST_TEST_PATH = "/ISAPI/Event/notification/httpHosts/{host_id}/test?format=json"

DEFAULT_VALID_BEGIN = "2020-01-01T00:00:00"
DEFAULT_VALID_END = "2037-12-31T23:59:59"


def _strip_namespace(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _xml_to_dict(raw: str) -> dict[str, Any]:
    root = ET.fromstring(raw)
    return {_strip_namespace(child.tag): (child.text or "").strip() for child in root}


def _text_param(params: dict[str, Any], key: str, *, host: str) -> str:
    value = params.get(key)
    text = "" if value is None or isinstance(value, (dict, list)) else str(value).strip()
    if not text:
        raise DeviceCommandParameterError(f"{key} is required", device_host=host)
    return text


def _int_param(params: dict[str, Any], key: str, *, host: str, default: int | None = None, minimum: int = 0) -> int:
    raw = params.get(key)
    if raw is None or raw == "":
        if default is None:
            raise DeviceCommandParameterError(f"{key} is required", device_host=host)
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise DeviceCommandParameterError(f"{key} must be an integer, got {raw!r}", device_host=host) from exc
    if value < minimum:
        raise DeviceCommandParameterError(f"{key} must be at least {minimum}", device_host=host)
    return value


def _list_param(params: dict[str, Any], key: str, *, host: str) -> list[Any]:
    value = params.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise DeviceCommandParameterError(f"{key} must be a list", device_host=host)
    return list(value)


class HikvisionAdapter(DeviceAdapter):
    kind = AdapterKind.HIKVISION

    def __init__(self, session: requests.Session | None = None):
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _request(
        self,
        connection: DeviceConnection,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        data: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        url = f"{connection.base_url}{path}"
        auth = HTTPDigestAuth(connection.username or "", connection.password or "")
        effective_timeout = timeout if timeout is not None else connection.timeout_seconds
        attempts = max(1, int(connection.retry_attempts or 1))

        response: requests.Response | None = None
        last_error: DeviceConnectionError | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = self._session.request(
                    method,
                    url,
                    auth=auth,
                    json=json_body,
                    data=data,
                    timeout=effective_timeout,
                )
                break
            except requests.Timeout as exc:
                last_error = DeviceConnectionError(
                    f"Timed out after {effective_timeout}s calling {path}",
                    device_host=connection.host,
                )
                logger.warning(
                    "hikvision_request_timeout",
                    extra={"host": connection.host, "path": path, "attempt": attempt, "error": str(exc)},
                )
            except requests.ConnectionError as exc:
                last_error = DeviceConnectionError(
                    f"Unable to reach device at {connection.host}",
                    device_host=connection.host,
                )
                logger.warning(
                    "hikvision_request_unreachable",
                    extra={"host": connection.host, "path": path, "attempt": attempt, "error": str(exc)},
                )
            except requests.RequestException as exc:
                raise DeviceAdapterError(str(exc), device_host=connection.host) from exc

        if response is None:
            raise last_error or DeviceConnectionError(f"No response from {connection.host}", device_host=connection.host)

        body = self._parse_body(response)
        if response.status_code == 401:
            raise DeviceCommandError(
                "Device rejected the credentials.",
                device_host=connection.host,
                status_code=401,
            )
        if response.status_code >= 400 or str(body.get("statusCode", "1")) not in {"1", "OK"}:
            message = (
                body.get("errorMsg")
                or body.get("subStatusCode")
                or body.get("statusString")
                or f"HTTP {response.status_code}"
            )
            raise DeviceCommandError(
                f"{path.split('?', 1)[0]} failed: {message}",
                device_host=connection.host,
                status_code=response.status_code,
            )
        return body

    @staticmethod
    def _parse_body(response: requests.Response) -> dict[str, Any]:
        text = response.text or ""
        if not text.strip():
            return {}
        content_type = (response.headers.get("Content-Type") or "").lower()
        if "xml" in content_type or text.lstrip().startswith("<"):
            try:
                return _xml_to_dict(text)
            except ET.ParseError:
                return {"raw": text}
        try:
            parsed = response.json()
        except ValueError:
            return {"raw": text}
        return parsed if isinstance(parsed, dict) else {"data": parsed}

    def send_command(self, connection: DeviceConnection, command: DeviceCommand) -> DeviceCommandResult:
        params = command.parameters or {}
        name = command.command
        if name in (DeviceCommandName.UNLOCK_DOOR.value, DeviceCommandName.LOCK_DOOR.value):
            door_no = _int_param(params, "door_no", host=connection.host, default=1, minimum=1)
            action = "open" if name == DeviceCommandName.UNLOCK_DOOR.value else "close"
            self._request(
                connection,
                "PUT",
                DOOR_CONTROL_PATH.format(door_no=door_no),
                data=f"<RemoteControlDoor><cmd>{action}</cmd></RemoteControlDoor>",
                timeout=command.timeout,
            )
            return DeviceCommandResult(success=True, message=f"Door {door_no} {action} command accepted.")

        if name == DeviceCommandName.REBOOT.value:
            self._request(connection, "PUT", REBOOT_PATH, timeout=command.timeout)
            return DeviceCommandResult(success=True, message="Reboot requested.")

        if name == DeviceCommandName.ADD_PERSON.value:
            return self._upsert_person(connection, params, path=USER_RECORD_PATH, method="POST", timeout=command.timeout)

        if name == DeviceCommandName.UPDATE_PERSON.value:
            return self._upsert_person(connection, params, path=USER_MODIFY_PATH, method="PUT", timeout=command.timeout)

        if name == DeviceCommandName.DELETE_PERSON.value:
            employee_no = _text_param(params, "employee_no", host=connection.host)
            self._request(
                connection,
                "PUT",
                USER_DELETE_PATH,
                json_body={
                    "UserInfoDetail": {
                        "mode": "byEmployeeNo",
                        "EmployeeNoList": [{"employeeNo": employee_no}],
                    }
                },
                timeout=command.timeout,
            )
            return DeviceCommandResult(success=True, message="Person removed.", data={"employee_no": employee_no})

        if name == DeviceCommandName.CONFIGURE_WEBHOOK.value:
            host = EventHostConfig(
                host_id=_text_param(params, "host_id", host=connection.host),
                url=_text_param(params, "url", host=connection.host),
                host=_text_param(params, "host", host=connection.host),
                port=_int_param(params, "port", host=connection.host, minimum=1),
                protocol_type=str(params.get("protocol_type") or "HTTP"),
                parameter_format_type=str(params.get("parameter_format_type") or "JSON"),
                event_types=tuple(str(item) for item in _list_param(params, "event_types", host=connection.host)),
            )
            self.configure_event_host(connection, host)
            return DeviceCommandResult(success=True, message="Event host configured.", data={"host_id": host.host_id})

        if name == DeviceCommandName.REMOVE_WEBHOOK.value:
            host_id = _text_param(params, "host_id", host=connection.host)
            self.delete_webhooks(connection, [host_id])
            return DeviceCommandResult(success=True, message="Event host removed.", data={"host_id": host_id})

        if name == DeviceCommandName.TEST_WEBHOOK.value:
            host_id = _text_param(params, "host_id", host=connection.host)
            body = self._request(
                connection,
                "POST",
                HTTP_HOST_TEST_PATH.format(host_id=host_id),
                timeout=command.timeout,
            )
            return DeviceCommandResult(success=True, message="Test notification sent.", data=body)

        raise DeviceCommandError(f"Unsupported command: {name}", device_host=connection.host)

    def _upsert_person(
        self,
        connection: DeviceConnection,
        params: dict[str, Any],
        *,
        path: str,
        method: str,
        timeout: float | None,
    ) -> DeviceCommandResult:
        employee_no = _text_param(params, "employee_no", host=connection.host)
        credentials = _list_param(params, "credentials", host=connection.host)
        if not all(isinstance(credential, dict) for credential in credentials):
            raise DeviceCommandParameterError("credentials must be objects", device_host=connection.host)

        user_info = {
            "employeeNo": employee_no,
            "name": str(params.get("name") or employee_no)[:32],
            "userType": "normal",
            "Valid": {
                "enable": True,
                "beginTime": params.get("valid_from") or DEFAULT_VALID_BEGIN,
                "endTime": params.get("valid_to") or DEFAULT_VALID_END,
            },
            "doorRight": "1",
            "RightPlan": [{"doorNo": 1, "planTemplateNo": "1"}],
        }
        self._request(connection, method, path, json_body={"UserInfo": user_info}, timeout=timeout)

        pushed: list[str] = []
        for credential in credentials:
            credential_type = str(credential.get("type") or "").upper()
            value = str(credential.get("value") or "").strip()
            if not value:
                continue
            if credential_type == "CARD":
                self._request(
                    connection,
                    "POST",
                    CARD_RECORD_PATH,
                    json_body={"CardInfo": {"employeeNo": employee_no, "cardNo": value, "cardType": "normalCard"}},
                    timeout=timeout,
                )
                pushed.append(credential_type)
            elif credential_type == "FACE":
                self._request(
                    connection,
                    "POST",
                    FACE_RECORD_PATH,
                    json_body={"faceLibType": "blackFD", "FDID": "1", "FPID": employee_no, "faceURL": value},
                    timeout=timeout,
                )
                pushed.append(credential_type)
            else:
                logger.debug(
                    "hikvision_credential_type_skipped",
                    extra={"host": connection.host, "employee_no": employee_no, "credential_type": credential_type},
                )

        return DeviceCommandResult(
            success=True,
            message="Person synchronized.",
            data={"employee_no": employee_no, "credentials": pushed},
        )

    def test_connection(self, connection: DeviceConnection) -> bool:
        try:
            self._request(connection, "GET", DEVICE_INFO_PATH)
        except DeviceAdapterError:
            return False
        return True

    def get_device_info(self, connection: DeviceConnection) -> DeviceInfo:
        body = self._request(connection, "GET", DEVICE_INFO_PATH)
        return DeviceInfo(
            manufacturer="Hikvision",
            model=body.get("model"),
            firmware=body.get("firmwareVersion"),
            serial_number=body.get("serialNumber"),
            mac_address=body.get("macAddress"),
            device_name=body.get("deviceName"),
            host=connection.host,
            port=connection.port,
            capabilities=["access_control", "webhooks", "face", "card"],
        )

    def get_device_health(self, connection: DeviceConnection) -> DeviceHealth:
        body = self._request(connection, "GET", DEVICE_STATUS_PATH)
        status = body.get("DeviceStatus") if isinstance(body.get("DeviceStatus"), dict) else body
        issues: list[str] = []
        for cpu in status.get("CPUList") or []:
            utilization = (cpu.get("CPU") or {}).get("cpuUtilization")
            if isinstance(utilization, (int, float)) and utilization >= 90:
                issues.append(f"High CPU utilization: {utilization}%")
        uptime = status.get("deviceUpTime") or 0
        try:
            uptime_seconds = int(uptime)
        except (TypeError, ValueError):
            uptime_seconds = 0
        return DeviceHealth(status="warning" if issues else "healthy", uptime=uptime_seconds, issues=issues)

    def get_device_configuration(self, connection: DeviceConnection) -> dict[str, Any]:
        time_config = self._request(connection, "GET", TIME_PATH)
        acs_config = self._request(connection, "GET", ACS_CONFIG_PATH)
        return {
            "time": time_config.get("Time", time_config),
            "access_control": acs_config.get("AcsCfg", acs_config),
        }

    def update_device_configuration(self, connection: DeviceConnection, settings: dict[str, Any]) -> None:
        ntp_server = settings.get("ntp_server")
        if settings.get("timezone") or ntp_server:
            self._request(
                connection,
                "PUT",
                TIME_PATH,
                json_body={
                    "Time": {
                        "timeMode": "NTP" if ntp_server else "manual",
                        "timeZone": settings.get("timezone") or "UTC",
                    }
                },
            )
        if ntp_server:
            self._request(
                connection,
                "PUT",
                NTP_SERVER_PATH,
                json_body={
                    "NTPServer": {
                        "id": "1",
                        "addressingFormatType": "hostname",
                        "hostName": ntp_server,
                        "portNo": 123,
                        "synchronizeInterval": int(settings.get("sync_interval") or 60),
                    }
                },
            )
        if "anti_passback_enabled" in settings:
            self._request(
                connection,
                "PUT",
                ANTI_PASSBACK_PATH,
                json_body={"AntiPassback": {"enable": bool(settings["anti_passback_enabled"])}},
            )

    def supports_webhooks(self, connection: DeviceConnection) -> bool:
        return True

    def get_webhook_configurations(self, connection: DeviceConnection) -> list[dict[str, Any]]:
        body = self._request(connection, "GET", HTTP_HOSTS_PATH)
        hosts = body.get("HttpHostNotificationList") or []
        if isinstance(hosts, dict):
            hosts = [hosts]
        result: list[dict[str, Any]] = []
        for item in hosts:
            entry = item.get("HttpHostNotification", item) if isinstance(item, dict) else {}
            result.append(
                {
                    "host_id": str(entry.get("id") or ""),
                    "url": entry.get("url"),
                    "host": entry.get("ipAddress") or entry.get("hostName"),
                    "port": entry.get("portNo"),
                    "protocol_type": entry.get("protocolType"),
                    "parameter_format_type": entry.get("parameterFormatType"),
                }
            )
        return result

    def configure_event_host(self, connection: DeviceConnection, host: EventHostConfig) -> None:
        parsed = urlparse(host.url)
        url_path = parsed.path or "/"
        if parsed.query:
            url_path = f"{url_path}?{parsed.query}"
        self._request(
            connection,
            "PUT",
            HTTP_HOST_PATH.format(host_id=host.host_id),
            json_body={
                "HttpHostNotification": {
                    "id": host.host_id,
                    "url": url_path,
                    "protocolType": host.protocol_type,
                    "parameterFormatType": host.parameter_format_type,
                    "addressingFormatType": "ipaddress",
                    "ipAddress": host.host,
                    "portNo": host.port,
                    "httpAuthenticationMethod": "none",
                }
            },
        )

    def delete_webhooks(self, connection: DeviceConnection, host_ids: list[str]) -> None:
        for host_id in host_ids:
            self._request(connection, "DELETE", HTTP_HOST_PATH.format(host_id=host_id))
