from __future__ import annotations

import unittest
from unittest import mock

import requests
from fastapi.testclient import TestClient
from sqlalchemy import select

from devicehub.adapters.hikvision import HikvisionAdapter
from devicehub.db import get_db
from devicehub.main import app
from devicehub.models import AuditLog, CredentialType
from devicehub.runtime import get_device_runtime

from support import RecordingAdapter, add_device, add_employee, build_runtime, make_session_factory, override_get_db

HEADERS = {"X-Organization-Id": "1", "X-Actor-Id": "admin-7"}


class DeviceRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.adapter = RecordingAdapter()
        self.runtime = build_runtime(self.adapter)
        app.dependency_overrides[get_db] = override_get_db(self.db)
        app.dependency_overrides[get_device_runtime] = lambda: self.runtime
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def _audit_actions(self) -> list[str]:
        return list(self.db.scalars(select(AuditLog.action).order_by(AuditLog.id)).all())

    def test_scope_header_is_required(self) -> None:
        response = self.client.get("/api/devices")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "SCOPE_REQUIRED")

    def test_create_device_returns_discovered_identity_and_audits(self) -> None:
        response = self.client.post(
            "/api/devices",
            headers=HEADERS,
            json={"name": "Front door", "branch_id": 10, "host": "10.0.0.5", "password": "device-pass"},
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["manufacturer"], "Hikvision")
        self.assertEqual(body["status"], "ONLINE")
        self.assertNotIn("password", body)
        self.assertNotIn("password_encrypted", body)
        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "DEVICE_CREATED"))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.actor_id, "admin-7")
        self.assertEqual(audit.organization_id, 1)

    def test_device_from_other_organization_is_hidden(self) -> None:
        device = add_device(self.db, organization_id=2)

        response = self.client.get(f"/api/devices/{device.id}", headers=HEADERS)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "DEVICE_NOT_FOUND")

    def test_count_and_list(self) -> None:
        add_device(self.db)
        add_device(self.db, name="Inactive gate", is_active=False)

        count = self.client.get("/api/devices/count", headers=HEADERS)
        active = self.client.get("/api/devices", params={"is_active": "true"}, headers=HEADERS)

        self.assertEqual(count.json(), {"count": 2})
        self.assertEqual([item["name"] for item in active.json()], ["Main entrance"])

    def test_failed_command_is_mapped_and_audited(self) -> None:
        device = add_device(self.db)
        self.adapter.unreachable = True

        response = self.client.post(
            f"/api/devices/{device.id}/commands",
            headers=HEADERS,
            json={"command": "unlock_door", "parameters": {"door_no": 1}},
        )

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["error"]["code"], "DEVICE_UNREACHABLE")
        self.assertIn("DEVICE_COMMAND_FAILED", self._audit_actions())

    def test_malformed_command_parameters_are_rejected_and_audited(self) -> None:
        device = add_device(self.db)
        session = mock.Mock(spec=requests.Session)
        runtime = build_runtime(HikvisionAdapter(session=session))
        app.dependency_overrides[get_device_runtime] = lambda: runtime

        response = self.client.post(
            f"/api/devices/{device.id}/commands",
            headers=HEADERS,
            json={"command": "unlock_door", "parameters": {"door_no": "abc"}},
        )

        self.assertEqual(response.status_code, 400)
        error = response.json()["error"]
        self.assertEqual(error["code"], "INVALID_COMMAND_PARAMETERS")
        self.assertEqual(error["device_id"], device.id)
        session.request.assert_not_called()
        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "DEVICE_COMMAND_FAILED"))
        self.assertIsNotNone(audit)
        self.assertFalse(audit.success)
        self.assertEqual(audit.entity_id, str(device.id))
        self.assertEqual(audit.details["code"], "INVALID_COMMAND_PARAMETERS")

    def test_webhook_command_without_host_is_a_client_error(self) -> None:
        device = add_device(self.db)
        runtime = build_runtime(HikvisionAdapter(session=mock.Mock(spec=requests.Session)))
        app.dependency_overrides[get_device_runtime] = lambda: runtime

        response = self.client.post(
            f"/api/devices/{device.id}/commands",
            headers=HEADERS,
            json={"command": "configure_webhook", "parameters": {"host_id": "webhook_1", "url": "/hook"}},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_COMMAND_PARAMETERS")

    def test_sync_employees_endpoint_returns_summary(self) -> None:
        device = add_device(self.db)
        add_employee(self.db, "E1", credentials=[(CredentialType.CARD, "1001")])

        response = self.client.post(f"/api/devices/{device.id}/sync-employees", headers=HEADERS, json={})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["added"], 1)
        self.assertEqual(body["status"], "SUCCESS")
        self.assertIn("DEVICE_EMPLOYEE_SYNC_COMPLETED", self._audit_actions())

    def test_deactivated_device_rejects_sync(self) -> None:
        device = add_device(self.db)

        toggled = self.client.patch(f"/api/devices/{device.id}/active", headers=HEADERS, json={"is_active": False})
        response = self.client.post(f"/api/devices/{device.id}/sync-employees", headers=HEADERS, json={})

        self.assertEqual(toggled.status_code, 200)
        self.assertFalse(toggled.json()["is_active"])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "DEVICE_INACTIVE")

    def test_template_update_requires_a_field(self) -> None:
        created = self.client.post(
            "/api/device-templates",
            headers=HEADERS,
            json={"name": "Lobby", "manufacturer": "Hikvision", "model": "DS-K1T341"},
        )

        response = self.client.patch(f"/api/device-templates/{created.json()['id']}", headers=HEADERS, json={})

        self.assertEqual(created.status_code, 201)
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_health_reports_runtime_and_schema_guard(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertIn("schema_guard", body)
        self.assertIn("device_runtime", body)


if __name__ == "__main__":
    unittest.main()
