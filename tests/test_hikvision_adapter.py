from __future__ import annotations

import json
import unittest
from typing import Any

import requests

from devicehub.adapters.base import (
    DeviceCommand,
    DeviceCommandError,
    DeviceCommandParameterError,
    DeviceConnection,
    DeviceConnectionError,
    EventHostConfig,
)
from devicehub.adapters.hikvision import HikvisionAdapter

OK_BODY = {"statusCode": 1, "statusString": "OK"}


class _FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, *, text: str | None = None, content_type: str = "application/json"):
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self.text = text if text is not None else json.dumps(body if body is not None else OK_BODY)

    def json(self) -> Any:
        return json.loads(self.text)


class _FakeSession:
    def __init__(self, responses: list[Any] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"method": method, "url": url, **kwargs})
        outcome = self.responses.pop(0) if self.responses else _FakeResponse()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


def _connection(**overrides) -> DeviceConnection:
    values = {
        "device_id": 1,
        "host": "10.0.0.5",
        "port": 80,
        "protocol": "HTTP",
        "username": "admin",
        "password": "secret",
        "timeout_seconds": 2.0,
        "retry_attempts": 3,
    }
    values.update(overrides)
    return DeviceConnection(**values)


class HikvisionAdapterTests(unittest.TestCase):
    def test_add_person_pushes_user_and_card(self) -> None:
        session = _FakeSession()
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        result = adapter.send_command(
            _connection(),
            DeviceCommand(
                command="add_person",
                parameters={
                    "employee_no": "E1",
                    "name": "Emp One",
                    "credentials": [
                        {"type": "CARD", "value": "1001"},
                        {"type": "PASSWORD_HASH", "value": "hash"},
                    ],
                },
            ),
        )

        self.assertTrue(result.success)
        self.assertEqual(result.data, {"employee_no": "E1", "credentials": ["CARD"]})
        self.assertEqual(len(session.calls), 2)
        user_call, card_call = session.calls
        self.assertEqual(user_call["method"], "POST")
        self.assertEqual(user_call["url"], "http://10.0.0.5/ISAPI/AccessControl/UserInfo/Record?format=json")
        self.assertEqual(user_call["json"]["UserInfo"]["employeeNo"], "E1")
        self.assertEqual(user_call["timeout"], 2.0)
        self.assertEqual(card_call["json"]["CardInfo"]["cardNo"], "1001")

    def test_timeouts_are_retried_then_reported_as_connection_error(self) -> None:
        session = _FakeSession([requests.Timeout("slow")] * 3)
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        with self.assertRaises(DeviceConnectionError):
            adapter.send_command(_connection(), DeviceCommand(command="reboot"))
        self.assertEqual(len(session.calls), 3)

    def test_transient_failure_recovers_on_retry(self) -> None:
        session = _FakeSession([requests.ConnectionError("refused"), _FakeResponse()])
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        result = adapter.send_command(_connection(), DeviceCommand(command="unlock_door", parameters={"door_no": 2}))

        self.assertTrue(result.success)
        self.assertEqual(session.calls[-1]["url"], "http://10.0.0.5/ISAPI/AccessControl/RemoteControl/door/2")
        self.assertIn("<cmd>open</cmd>", session.calls[-1]["data"])

    def test_device_error_status_raises_command_error(self) -> None:
        body = {"statusCode": 4, "statusString": "Invalid Operation", "errorMsg": "employeeNo already exists"}
        session = _FakeSession([_FakeResponse(400, body)])
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        with self.assertRaises(DeviceCommandError) as ctx:
            adapter.send_command(_connection(), DeviceCommand(command="add_person", parameters={"employee_no": "E1"}))
        self.assertIn("employeeNo already exists", ctx.exception.message)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_rejected_credentials(self) -> None:
        session = _FakeSession([_FakeResponse(401, text="", content_type="text/html")])
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        with self.assertRaises(DeviceCommandError) as ctx:
            adapter.get_device_info(_connection())
        self.assertEqual(ctx.exception.status_code, 401)

    def test_device_info_parses_xml(self) -> None:
        xml = (
            '<DeviceInfo version="2.0" xmlns="http://www.hikvision.com/ver20/XMLSchema">'
            "<deviceName>Lobby</deviceName><model>DS-K1T341</model><serialNumber>DS-123</serialNumber>"
            "<macAddress>aa:bb:cc:dd:ee:ff</macAddress><firmwareVersion>V3.2.0</firmwareVersion>"
            "</DeviceInfo>"
        )
        session = _FakeSession([_FakeResponse(text=xml, content_type="application/xml")])
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        info = adapter.get_device_info(_connection(port=8080, protocol="HTTPS"))

        self.assertEqual(info.model, "DS-K1T341")
        self.assertEqual(info.serial_number, "DS-123")
        self.assertEqual(info.device_name, "Lobby")
        self.assertEqual(session.calls[0]["url"], "https://10.0.0.5:8080/ISAPI/System/deviceInfo")

    def test_connection_test_is_false_when_unreachable(self) -> None:
        session = _FakeSession([requests.ConnectionError("refused")])
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        self.assertFalse(adapter.test_connection(_connection(retry_attempts=1)))

    def test_unsupported_command(self) -> None:
        adapter = HikvisionAdapter(session=_FakeSession())  # type: ignore[arg-type]

        with self.assertRaises(DeviceCommandError):
            adapter.send_command(_connection(), DeviceCommand(command="self_destruct"))

    def test_malformed_door_number_is_rejected_before_sending(self) -> None:
        session = _FakeSession()
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        with self.assertRaises(DeviceCommandParameterError) as ctx:
            adapter.send_command(_connection(), DeviceCommand(command="unlock_door", parameters={"door_no": "abc"}))

        self.assertIn("door_no", ctx.exception.message)
        self.assertEqual(session.calls, [])

    def test_webhook_command_requires_host_and_port(self) -> None:
        session = _FakeSession()
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        for parameters in (
            {"host_id": "webhook_1", "url": "/webhook/device-events/1"},
            {"host_id": "webhook_1", "url": "/webhook/device-events/1", "host": "hub.local", "port": "eighty"},
            {"host_id": "webhook_1", "url": "/webhook/device-events/1", "host": {"name": "hub"}, "port": 8000},
        ):
            with self.subTest(parameters=parameters):
                with self.assertRaises(DeviceCommandParameterError):
                    adapter.send_command(_connection(), DeviceCommand(command="configure_webhook", parameters=parameters))

        self.assertEqual(session.calls, [])

    def test_person_credentials_must_be_objects(self) -> None:
        session = _FakeSession()
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        with self.assertRaises(DeviceCommandParameterError):
            adapter.send_command(
                _connection(),
                DeviceCommand(command="add_person", parameters={"employee_no": "E1", "credentials": ["1001"]}),
            )
        self.assertEqual(session.calls, [])

    def test_event_host_uses_url_path(self) -> None:
        session = _FakeSession()
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        adapter.configure_event_host(
            _connection(),
            EventHostConfig(
                host_id="webhook_1",
                url="http://hub.local:8000/webhook/device-events/1?hostId=webhook_1",
                host="hub.local",
                port=8000,
            ),
        )

        call = session.calls[0]
        self.assertEqual(call["method"], "PUT")
        self.assertEqual(call["url"], "http://10.0.0.5/ISAPI/Event/notification/httpHosts/webhook_1?format=json")
        notification = call["json"]["HttpHostNotification"]
        self.assertEqual(notification["url"], "/webhook/device-events/1?hostId=webhook_1")
        self.assertEqual(notification["portNo"], 8000)

    def test_close_closes_session(self) -> None:
        session = _FakeSession()
        adapter = HikvisionAdapter(session=session)  # type: ignore[arg-type]

        adapter.close()

        self.assertTrue(session.closed)


if __name__ == "__main__":
    unittest.main()
