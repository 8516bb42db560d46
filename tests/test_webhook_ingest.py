from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from devicehub.db import get_db
from devicehub.main import app
from devicehub.models import DeviceEvent, DeviceEventType, DeviceStatus, DeviceWebhook
from devicehub.services import webhook_ingest
from devicehub.services.webhook_payloads import WebhookContext

from support import ORG_ID, add_device, make_session_factory, override_get_db


def _face_event(**extra) -> dict:
    return {
        "dateTime": "2024-05-01T08:00:00+00:00",
        "eventType": "AccessControllerEvent",
        "AccessControllerEvent": {"majorEventType": 5, "subEventType": 75, "employeeNoString": "E1"},
        **extra,
    }


class WebhookIngestServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.device = add_device(self.db, serial_number="DS-K1T341-0001", mac_address="AA:BB:CC:DD:EE:01")
        self.webhook = DeviceWebhook(
            device_id=self.device.id,
            organization_id=ORG_ID,
            host_id="webhook_1",
            url="http://hub.local/webhook/device-events/1",
            host="hub.local",
            port=80,
            event_types=[],
        )
        self.db.add(self.webhook)
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def _events(self) -> list[DeviceEvent]:
        return list(self.db.scalars(select(DeviceEvent).order_by(DeviceEvent.id)).all())

    def _trigger_stats(self) -> tuple[int, str | None]:
        row = self.db.execute(
            select(DeviceWebhook.trigger_count, DeviceWebhook.last_error).where(DeviceWebhook.id == self.webhook.id)
        ).one()
        return int(row[0]), row[1]

    def test_known_event_is_recorded_and_device_marked_online(self) -> None:
        result = webhook_ingest.handle_webhook_event(
            self.db,
            body=_face_event(hostId="webhook_1"),
            context=WebhookContext(path_device_id=self.device.id),
        )

        self.assertEqual(result["status"], "success")
        events = self._events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].event_type, DeviceEventType.FACE_RECOGNITION)
        self.assertEqual(events[0].employee_no, "E1")
        self.assertEqual(events[0].webhook_host_id, "webhook_1")
        self.assertEqual(self.device.status, DeviceStatus.ONLINE)
        self.assertIsNotNone(self.device.last_seen)
        self.assertEqual(self._trigger_stats(), (1, None))

    def test_device_is_resolved_from_serial_in_payload(self) -> None:
        result = webhook_ingest.handle_webhook_event(
            self.db,
            body=_face_event(deviceID="DS-K1T341-0001"),
            context=WebhookContext(client_ip="192.168.1.50"),
        )

        self.assertEqual(result["status"], "success")
        self.assertEqual(self._events()[0].device_id, self.device.id)

    def test_unknown_event_type_is_ignored(self) -> None:
        result = webhook_ingest.handle_webhook_event(
            self.db,
            body={"eventType": "videoLoss"},
            context=WebhookContext(path_device_id=self.device.id),
        )

        self.assertEqual(result["status"], "success")
        self.assertEqual(self._events(), [])
        self.assertEqual(self.device.status, DeviceStatus.OFFLINE)

    def test_heartbeat_refreshes_liveness_without_event(self) -> None:
        webhook_ingest.handle_webhook_event(
            self.db,
            body={"eventType": "heartBeat"},
            context=WebhookContext(path_device_id=self.device.id),
        )

        self.assertEqual(self._events(), [])
        self.assertEqual(self.device.status, DeviceStatus.ONLINE)

    def test_unresolved_device_is_acknowledged(self) -> None:
        result = webhook_ingest.handle_webhook_event(
            self.db,
            body=_face_event(),
            context=WebhookContext(client_ip="203.0.113.7"),
        )

        self.assertEqual(result["status"], "success")
        self.assertEqual(self._events(), [])

    def test_processing_failure_is_reported_and_counted(self) -> None:
        with patch.object(webhook_ingest, "normalize_event", side_effect=RuntimeError("bad payload")):
            result = webhook_ingest.handle_webhook_event(
                self.db,
                body=_face_event(),
                context=WebhookContext(path_device_id=self.device.id, query={"hostId": "webhook_1"}),
            )

        self.assertEqual(result["status"], "error")
        self.assertEqual(result["message"], "bad payload")
        self.assertEqual(self._events(), [])
        self.assertEqual(self._trigger_stats(), (1, "bad payload"))


class WebhookEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.device = add_device(self.db)
        app.dependency_overrides[get_db] = override_get_db(self.db)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def test_endpoint_records_event_for_path_device(self) -> None:
        response = self.client.post(f"/webhook/device-events/{self.device.id}", json=_face_event())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "success")
        count = self.db.scalar(select(func.count(DeviceEvent.id)))
        self.assertEqual(count, 1)

    def test_endpoint_accepts_non_json_bodies(self) -> None:
        response = self.client.post(
            "/webhook/device-events",
            content=b"<EventNotificationAlert>garbled",
            headers={"Content-Type": "application/xml"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "success")

    def test_endpoint_accepts_deeply_nested_bodies(self) -> None:
        response = self.client.post(
            "/webhook/device-events",
            content=b"[" * 200000,
            headers={"Content-Type": "application/json"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "success")

    def test_endpoint_ignores_path_ids_that_are_not_device_ids(self) -> None:
        for raw_id in ("%C2%B2", "99999999999999999999999", "0"):
            response = self.client.post(f"/webhook/device-events/{raw_id}", json={"eventType": "heartBeat"})

            self.assertEqual(response.status_code, 200, raw_id)
            self.assertEqual(response.json()["status"], "success", raw_id)
        self.assertEqual(self.db.scalar(select(func.count(DeviceEvent.id))), 0)

    def test_endpoint_answers_200_when_processing_fails(self) -> None:
        with patch.object(webhook_ingest, "normalize_event", side_effect=RuntimeError("boom")):
            response = self.client.post(f"/webhook/device-events/{self.device.id}", json=_face_event())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "error")


if __name__ == "__main__":
    unittest.main()
