from __future__ import annotations

import threading
import time
import unittest
from types import SimpleNamespace
from unittest import mock

from devicehub.errors import ApiError
from devicehub.runtime import DeviceLockRegistry, DeviceRuntime, get_device_runtime
from devicehub.security import decrypt_secret, encrypt_secret

from support import RecordingAdapter, build_runtime


class DeviceLockRegistryTests(unittest.TestCase):
    def test_second_holder_times_out_with_conflict(self) -> None:
        locks = DeviceLockRegistry(timeout_seconds=0.05)
        entered = threading.Event()
        release = threading.Event()

        def _hold() -> None:
            with locks.hold(5):
                entered.set()
                release.wait(2)

        worker = threading.Thread(target=_hold)
        worker.start()
        try:
            self.assertTrue(entered.wait(2))
            self.assertTrue(locks.is_locked(5))
            with self.assertRaises(ApiError) as ctx:
                with locks.hold(5):
                    pass
            self.assertEqual(ctx.exception.code, "SYNC_IN_PROGRESS")

            with locks.hold(6):
                self.assertTrue(locks.is_locked(6))
        finally:
            release.set()
            worker.join(2)

        self.assertFalse(locks.is_locked(5))

    def test_lock_is_released_when_body_raises(self) -> None:
        locks = DeviceLockRegistry(timeout_seconds=0.05)

        with self.assertRaises(RuntimeError):
            with locks.hold(1):
                raise RuntimeError("sync blew up")

        with locks.hold(1):
            pass


class DeviceRuntimeTests(unittest.TestCase):
    def test_health_and_shutdown(self) -> None:
        adapter = RecordingAdapter()
        runtime = build_runtime(adapter)

        health = runtime.health()
        runtime.shutdown()

        self.assertEqual(health["adapters"]["HIKVISION"], "RecordingAdapter")
        self.assertEqual(health["adapters"]["STUB"], "StubDeviceAdapter")
        self.assertEqual(health["backoff"], {})
        self.assertTrue(adapter.closed)

    def test_runtime_is_built_lazily_once_per_app(self) -> None:
        request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

        first = get_device_runtime(request)  # type: ignore[arg-type]
        second = get_device_runtime(request)  # type: ignore[arg-type]

        self.assertIsInstance(first, DeviceRuntime)
        self.assertIs(first, second)
        first.shutdown()

    def test_concurrent_first_requests_share_one_runtime(self) -> None:
        request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))
        built: list[DeviceRuntime] = []

        def _slow_build() -> DeviceRuntime:
            time.sleep(0.02)
            runtime = build_runtime(RecordingAdapter())
            built.append(runtime)
            return runtime

        barrier = threading.Barrier(6)
        seen: list[DeviceRuntime] = []

        def _request() -> None:
            barrier.wait(2)
            seen.append(get_device_runtime(request))  # type: ignore[arg-type]

        with mock.patch.object(DeviceRuntime, "build", side_effect=_slow_build):
            workers = [threading.Thread(target=_request) for _ in range(6)]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(5)

        self.assertEqual(len(built), 1)
        self.assertEqual(len(seen), 6)
        self.assertTrue(all(item is built[0] for item in seen))


class CredentialCipherTests(unittest.TestCase):
    def test_secret_is_not_stored_in_clear(self) -> None:
        token = encrypt_secret("device-pass")

        self.assertNotIn("device-pass", token)
        self.assertEqual(decrypt_secret(token), "device-pass")

    def test_tampered_secret_raises_api_error(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            decrypt_secret("not-a-fernet-token")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.code, "CREDENTIAL_DECRYPT_FAILED")


if __name__ == "__main__":
    unittest.main()
