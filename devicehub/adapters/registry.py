from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from devicehub.adapters.base import AdapterKind, DeviceAdapter
from devicehub.adapters.hikvision import HikvisionAdapter
from devicehub.adapters.stub import StubDeviceAdapter

logger = logging.getLogger("devicehub.adapters")

_MANUFACTURER_PATTERNS: tuple[tuple[AdapterKind, tuple[str, ...]], ...] = (
    (AdapterKind.HIKVISION, ("hikvision", "hik")),
    (AdapterKind.ZKTECO, ("zkteco", "zk")),
    (AdapterKind.DAHUA, ("dahua",)),
)
_HTTP_PROTOCOLS = {"HTTP", "HTTPS"}


def classify_adapter_kind(manufacturer: str | None, protocol: object | None) -> AdapterKind:
    """Map a device's manufacturer/protocol pair to an adapter kind.

    Pure and total. Manufacturer substrings win; a device that only speaks
    HTTP(S) falls back to HIKVISION, everything else to STUB.
    """
    brand = manufacturer.strip().lower() if isinstance(manufacturer, str) else ""
    if brand:
        for kind, patterns in _MANUFACTURER_PATTERNS:
            if any(pattern in brand for pattern in patterns):
                return kind

    protocol_value = getattr(protocol, "value", protocol)
    if isinstance(protocol_value, str) and protocol_value.strip().upper() in _HTTP_PROTOCOLS:
        # Historical default for unbranded HTTP devices.
        return AdapterKind.HIKVISION
    return AdapterKind.STUB


def _default_factories() -> dict[AdapterKind, Callable[[], DeviceAdapter]]:
    return {
        AdapterKind.HIKVISION: HikvisionAdapter,
        AdapterKind.STUB: StubDeviceAdapter,
    }


class AdapterRegistry:
    def __init__(self, factories: dict[AdapterKind, Callable[[], DeviceAdapter]] | None = None):
        self._factories = dict(factories) if factories is not None else _default_factories()
        self._factories.setdefault(AdapterKind.STUB, StubDeviceAdapter)
        self._instances: dict[AdapterKind, DeviceAdapter] = {}
        self._missing_logged: set[AdapterKind] = set()
        self._lock = threading.RLock()

    def register(self, kind: AdapterKind, adapter: DeviceAdapter) -> None:
        with self._lock:
            self._instances[kind] = adapter

    def resolve(self, kind: AdapterKind) -> DeviceAdapter:
        adapter = self._instances.get(kind)
        if adapter is not None:
            return adapter

        with self._lock:
            adapter = self._instances.get(kind)
            if adapter is not None:
                return adapter

            factory = self._factories.get(kind)
            if factory is None:
                if kind not in self._missing_logged:
                    logger.warning("adapter_not_implemented", extra={"adapter_kind": kind.value, "fallback": "STUB"})
                    self._missing_logged.add(kind)
                return self.resolve(AdapterKind.STUB)

            adapter = factory()
            self._instances[kind] = adapter
            return adapter

    def registered_kinds(self) -> list[AdapterKind]:
        return sorted(set(self._factories) | set(self._instances), key=lambda item: item.value)

    def describe(self) -> dict[str, str]:
        return {kind.value: type(self.resolve(kind)).__name__ for kind in AdapterKind}

    def close(self) -> None:
        with self._lock:
            instances = list(self._instances.items())
            self._instances.clear()
        for kind, adapter in instances:
            try:
                adapter.close()
            except Exception:
                logger.exception("adapter_close_failed", extra={"adapter_kind": kind.value})
