from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import Request

from devicehub.adapters.registry import AdapterRegistry
from devicehub.errors import ApiError
from devicehub.services.adapter_strategy import DeviceAdapterStrategy, DeviceBackoff
from devicehub.settings import Settings, get_settings

logger = logging.getLogger("devicehub.runtime")
_runtime_build_lock = threading.Lock()


class DeviceLockRegistry:
    """One reconciliation pass per device at a time."""

    def __init__(self, *, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, device_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[device_id] = lock
            return lock

    @contextmanager
    def hold(self, device_id: int) -> Iterator[None]:
        lock = self._lock_for(device_id)
        acquired = lock.acquire(timeout=self.timeout_seconds) if self.timeout_seconds > 0 else lock.acquire(False)
        if not acquired:
            logger.warning("device_sync_lock_timeout", extra={"device_id": device_id})
            raise ApiError(
                status_code=409,
                code="SYNC_IN_PROGRESS",
                message=f"Another synchronization is already running for device {device_id}.",
            )
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, device_id: int) -> bool:
        with self._guard:
            lock = self._locks.get(device_id)
        return bool(lock is not None and lock.locked())


class DeviceRuntime:
    def __init__(self, *, strategy: DeviceAdapterStrategy, sync_locks: DeviceLockRegistry):
        self.strategy = strategy
        self.sync_locks = sync_locks

    @classmethod
    def build(cls, settings: Settings | None = None, *, registry: AdapterRegistry | None = None) -> DeviceRuntime:
        settings = settings or get_settings()
        backoff = DeviceBackoff(
            base_seconds=settings.device_backoff_base_seconds,
            max_seconds=settings.device_backoff_max_seconds,
        )
        strategy = DeviceAdapterStrategy(registry or AdapterRegistry(), backoff)
        runtime = cls(
            strategy=strategy,
            sync_locks=DeviceLockRegistry(timeout_seconds=settings.sync_lock_timeout_seconds),
        )
        logger.info(
            "device_runtime_started",
            extra={
                "backoff_base_seconds": backoff.base_seconds,
                "backoff_max_seconds": backoff.max_seconds,
                "sync_lock_timeout_seconds": settings.sync_lock_timeout_seconds,
            },
        )
        return runtime

    def health(self) -> dict[str, Any]:
        return {
            "adapters": self.strategy.registry.describe(),
            "backoff": self.strategy.backoff.snapshot(),
        }

    def shutdown(self) -> None:
        self.strategy.registry.close()
        logger.info("device_runtime_stopped")


def get_device_runtime(request: Request) -> DeviceRuntime:
    runtime: DeviceRuntime | None = getattr(request.app.state, "device_runtime", None)
    if runtime is not None:
        return runtime
    with _runtime_build_lock:
        runtime = getattr(request.app.state, "device_runtime", None)
        if runtime is None:
            runtime = DeviceRuntime.build()
            request.app.state.device_runtime = runtime
    return runtime
