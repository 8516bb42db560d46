from __future__ import annotations

import logging
import threading
import time
import unittest

from devicehub.adapters.base import AdapterKind
from devicehub.adapters.registry import AdapterRegistry, classify_adapter_kind
from devicehub.adapters.stub import StubDeviceAdapter
from devicehub.models import DeviceProtocol

from support import RecordingAdapter


class _CountingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


class ClassifyAdapterKindTests(unittest.TestCase):
    def test_manufacturer_substrings_pick_vendor(self) -> None:
        self.assertEqual(classify_adapter_kind("Hikvision", DeviceProtocol.HTTP), AdapterKind.HIKVISION)
        self.assertEqual(classify_adapter_kind("  HIK-Vision Ltd ", None), AdapterKind.HIKVISION)
        self.assertEqual(classify_adapter_kind("ZKTeco", DeviceProtocol.TCP), AdapterKind.ZKTECO)
        self.assertEqual(classify_adapter_kind("Dahua Technology", DeviceProtocol.HTTP), AdapterKind.DAHUA)

    def test_unbranded_http_devices_fall_back_to_hikvision(self) -> None:
        self.assertEqual(classify_adapter_kind(None, DeviceProtocol.HTTPS), AdapterKind.HIKVISION)
        self.assertEqual(classify_adapter_kind("", "http"), AdapterKind.HIKVISION)

    def test_everything_else_is_stub(self) -> None:
        self.assertEqual(classify_adapter_kind(None, "tcp"), AdapterKind.STUB)
        self.assertEqual(classify_adapter_kind("Acme", DeviceProtocol.SDK), AdapterKind.STUB)
        self.assertEqual(classify_adapter_kind(None, None), AdapterKind.STUB)


class AdapterRegistryTests(unittest.TestCase):
    def test_missing_vendor_falls_back_to_stub_and_warns_once(self) -> None:
        registry = AdapterRegistry({})
        handler = _CountingHandler()
        adapters_logger = logging.getLogger("devicehub.adapters")
        adapters_logger.addHandler(handler)
        try:
            first = registry.resolve(AdapterKind.ZKTECO)
            second = registry.resolve(AdapterKind.ZKTECO)
        finally:
            adapters_logger.removeHandler(handler)

        self.assertIsInstance(first, StubDeviceAdapter)
        self.assertIs(first, second)
        self.assertEqual(handler.messages.count("adapter_not_implemented"), 1)

    def test_registered_instance_wins_and_is_closed(self) -> None:
        adapter = RecordingAdapter()
        registry = AdapterRegistry({})
        registry.register(AdapterKind.HIKVISION, adapter)

        self.assertIs(registry.resolve(AdapterKind.HIKVISION), adapter)
        self.assertIn(AdapterKind.HIKVISION, registry.registered_kinds())
        self.assertEqual(registry.describe()["HIKVISION"], "RecordingAdapter")

        registry.close()
        self.assertTrue(adapter.closed)

    def test_concurrent_resolves_build_one_instance(self) -> None:
        built: list[RecordingAdapter] = []

        def _factory() -> RecordingAdapter:
            time.sleep(0.02)
            adapter = RecordingAdapter()
            built.append(adapter)
            return adapter

        registry = AdapterRegistry({AdapterKind.HIKVISION: _factory})
        barrier = threading.Barrier(8)
        resolved: list[object] = []

        def _resolve() -> None:
            barrier.wait(2)
            resolved.append(registry.resolve(AdapterKind.HIKVISION))

        workers = [threading.Thread(target=_resolve) for _ in range(8)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(5)

        self.assertEqual(len(built), 1)
        self.assertEqual(len(resolved), 8)
        self.assertTrue(all(item is built[0] for item in resolved))


if __name__ == "__main__":
    unittest.main()
