from __future__ import annotations

import unittest

from devicehub.errors import ApiError
from devicehub.schemas import DeviceConfigurationFields, DeviceConfigurationUpdate, DeviceTemplateCreate
from devicehub.services import device_configuration as configuration_service
from devicehub.services import templates as template_service

from support import SCOPE, RecordingAdapter, add_device, build_runtime, make_session_factory


class DeviceConfigurationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.adapter = RecordingAdapter()
        self.runtime = build_runtime(self.adapter)
        self.device = add_device(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def _create(self, **fields):  # type: ignore[no-untyped-def]
        return configuration_service.create_device_configuration(
            self.db,
            scope=SCOPE,
            device_id=self.device.id,
            payload=DeviceConfigurationFields(**fields),
        )

    def test_explicit_fields_are_marked_as_overrides(self) -> None:
        config = self._create(timezone="Europe/Istanbul", extra_settings={"door_delay": 5})

        self.assertEqual(config.timezone, "Europe/Istanbul")
        self.assertEqual(config.sync_interval, 60)
        self.assertEqual(config.extra_settings, {"door_delay": 5})
        self.assertEqual(sorted(config.overridden_fields), ["extra_settings.door_delay", "timezone"])

    def test_second_configuration_conflicts(self) -> None:
        self._create()

        with self.assertRaises(ApiError) as ctx:
            self._create()
        self.assertEqual(ctx.exception.code, "CONFIGURATION_EXISTS")

    def test_missing_configuration_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            configuration_service.get_device_configuration(self.db, scope=SCOPE, device_id=self.device.id)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_update_pushes_to_device_on_request(self) -> None:
        self._create()

        config, push = configuration_service.update_device_configuration(
            self.db,
            self.runtime,
            scope=SCOPE,
            device_id=self.device.id,
            payload=DeviceConfigurationUpdate(ntp_server="pool.ntp.org", push_to_device=True),
        )

        self.assertEqual(config.ntp_server, "pool.ntp.org")
        self.assertEqual(push, {"device_updated": True, "device_error": None})
        self.assertEqual(self.adapter.pushed_settings[-1]["ntp_server"], "pool.ntp.org")

    def test_update_keeps_stored_values_when_push_fails(self) -> None:
        self._create()
        self.adapter.unreachable = True

        config, push = configuration_service.update_device_configuration(
            self.db,
            self.runtime,
            scope=SCOPE,
            device_id=self.device.id,
            payload=DeviceConfigurationUpdate(max_users=500, push_to_device=True),
        )

        self.assertEqual(config.max_users, 500)
        self.assertFalse(push["device_updated"])
        self.assertIn("Unable to reach", push["device_error"])

    def test_update_without_push_does_not_touch_device(self) -> None:
        self._create()

        _config, push = configuration_service.update_device_configuration(
            self.db,
            self.runtime,
            scope=SCOPE,
            device_id=self.device.id,
            payload=DeviceConfigurationUpdate(offline_mode=False),
        )

        self.assertIsNone(push)
        self.assertEqual(self.adapter.pushed_settings, [])


class DeviceTemplateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.adapter = RecordingAdapter()
        self.runtime = build_runtime(self.adapter)
        self.device = add_device(self.db, manufacturer="Hikvision", model="DS-K1T341")

    def tearDown(self) -> None:
        self.db.close()

    def _template(self, name: str, **fields):  # type: ignore[no-untyped-def]
        values = {
            "name": name,
            "manufacturer": "hikvision",
            "model": "ds-k1t341",
            "default_settings": {"timezone": "UTC", "ntp_server": "ntp.local", "door_delay": 3},
        }
        values.update(fields)
        return template_service.create_template(self.db, scope=SCOPE, payload=DeviceTemplateCreate(**values))

    def test_duplicate_template_name_conflicts(self) -> None:
        self._template("Lobby readers")

        with self.assertRaises(ApiError) as ctx:
            self._template("Lobby readers")
        self.assertEqual(ctx.exception.code, "TEMPLATE_NAME_CONFLICT")

    def test_invalid_default_settings_are_rejected(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._template("Broken", default_settings={"sync_interval": 0})
        self.assertEqual(ctx.exception.status_code, 422)

    def test_apply_respects_local_overrides(self) -> None:
        configuration_service.create_device_configuration(
            self.db,
            scope=SCOPE,
            device_id=self.device.id,
            payload=DeviceConfigurationFields(timezone="Europe/Istanbul"),
        )
        template = self._template("Lobby readers")

        result = template_service.apply_template_to_device(
            self.db,
            self.runtime,
            scope=SCOPE,
            template_id=template.id,
            device_id=self.device.id,
        )

        self.assertEqual(result["status"], "APPLIED")
        self.assertFalse(result["created"])
        self.assertEqual(result["skipped_fields"], ["timezone"])
        self.assertEqual(sorted(result["applied_fields"]), ["door_delay", "ntp_server"])
        self.assertTrue(result["device_updated"])
        config = self.device.configuration
        self.assertEqual(config.timezone, "Europe/Istanbul")
        self.assertEqual(config.ntp_server, "ntp.local")
        self.assertEqual(config.extra_settings, {"door_delay": 3})
        self.assertEqual(config.applied_template_id, template.id)

    def test_apply_creates_configuration_when_missing(self) -> None:
        template = self._template("Lobby readers")

        result = template_service.apply_template_to_device(
            self.db,
            self.runtime,
            scope=SCOPE,
            template_id=template.id,
            device_id=self.device.id,
        )

        self.assertTrue(result["created"])
        self.assertEqual(self.device.configuration.timezone, "UTC")

    def test_string_typed_defaults_are_stored_typed_and_applied(self) -> None:
        template = self._template(
            "Offline readers",
            default_settings={"offline_mode": "yes", "max_users": "500", "door_delay": "3"},
        )

        self.assertEqual(template.default_settings, {"offline_mode": True, "max_users": 500, "door_delay": "3"})

        result = template_service.apply_template_to_device(
            self.db,
            self.runtime,
            scope=SCOPE,
            template_id=template.id,
            device_id=self.device.id,
        )

        self.assertEqual(result["status"], "APPLIED")
        config = self.device.configuration
        self.assertIs(config.offline_mode, True)
        self.assertEqual(config.max_users, 500)
        self.assertEqual(config.extra_settings, {"door_delay": "3"})

    def test_untyped_stored_defaults_are_coerced_on_apply(self) -> None:
        template = self._template("Legacy readers")
        template.default_settings = {"allow_unknown_cards": "false", "sync_interval": "30"}
        self.db.commit()

        template_service.apply_template_to_device(
            self.db,
            self.runtime,
            scope=SCOPE,
            template_id=template.id,
            device_id=self.device.id,
        )

        self.assertIs(self.device.configuration.allow_unknown_cards, False)
        self.assertEqual(self.device.configuration.sync_interval, 30)

    def test_null_default_for_required_field_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._template("Nulls", default_settings={"timezone": None, "ntp_server": None})

        self.assertEqual(ctx.exception.status_code, 422)
        self.assertIn("timezone", ctx.exception.message)
        self.assertNotIn("ntp_server", ctx.exception.message)

    def test_inactive_template_cannot_be_applied(self) -> None:
        template = self._template("Retired", is_active=False)

        with self.assertRaises(ApiError) as ctx:
            template_service.apply_template_to_device(
                self.db,
                self.runtime,
                scope=SCOPE,
                template_id=template.id,
                device_id=self.device.id,
            )
        self.assertEqual(ctx.exception.code, "TEMPLATE_INACTIVE")

    def test_auto_apply_without_match(self) -> None:
        self._template("Other model", model="DS-K1T671")

        result = template_service.auto_apply_matching_template(
            self.db,
            self.runtime,
            scope=SCOPE,
            device_id=self.device.id,
        )

        self.assertEqual(result["status"], "NO_MATCH")

    def test_auto_apply_with_tied_priorities_is_ambiguous(self) -> None:
        self._template("First", priority=5)
        self._template("Second", priority=5)
        self._template("Fallback", priority=1)

        result = template_service.auto_apply_matching_template(
            self.db,
            self.runtime,
            scope=SCOPE,
            device_id=self.device.id,
        )

        self.assertEqual(result["status"], "AMBIGUOUS")
        self.assertEqual(sorted(item["name"] for item in result["candidates"]), ["First", "Second"])
        self.assertIsNone(self.device.configuration)

    def test_auto_apply_picks_highest_priority(self) -> None:
        self._template("Low", priority=1)
        preferred = self._template("High", priority=9)

        result = template_service.auto_apply_matching_template(
            self.db,
            self.runtime,
            scope=SCOPE,
            device_id=self.device.id,
        )

        self.assertEqual(result["status"], "APPLIED")
        self.assertEqual(result["template_id"], preferred.id)

    def test_suggestions_are_sorted_by_priority(self) -> None:
        low = self._template("Low", priority=1)
        high = self._template("High", priority=9)
        self._template("Elsewhere", manufacturer="ZKTeco")

        suggested = template_service.get_suggested_templates(self.db, scope=SCOPE, device_id=self.device.id)

        self.assertEqual([item.id for item in suggested], [high.id, low.id])

    def test_deleting_template_detaches_configurations(self) -> None:
        template = self._template("Lobby readers")
        template_service.apply_template_to_device(
            self.db,
            self.runtime,
            scope=SCOPE,
            template_id=template.id,
            device_id=self.device.id,
        )

        template_service.delete_template(self.db, scope=SCOPE, template_id=template.id)

        self.db.refresh(self.device.configuration)
        self.assertIsNone(self.device.configuration.applied_template_id)


if __name__ == "__main__":
    unittest.main()
