"""Device/property registry shared by the Homie and Home Assistant parsers.

Every message is handled in its own task, so all mutation goes through
:meth:`Registry.transaction`: it holds the single registry lock for the whole
fetch, mutate and store-back cycle and commits the working copy only when the
block exits normally.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mqtt_sensor_exporter.structs import Device, DeviceKey, SourceType


class Registry:
    """Process-lifetime cache of devices. Devices are never removed."""

    def __init__(self) -> None:
        self._devices: dict[DeviceKey, Device] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self, key: DeviceKey, create: bool = True) -> AsyncIterator[Device | None]:
        """Yield a working copy of device ``key`` under the registry lock.

        A missing device is created when ``create`` is set, otherwise ``None``
        is yielded and nothing is stored. The copy replaces the stored device
        on normal exit; an exception discards it.
        """
        async with self._lock:
            current = self._devices.get(key)
            if current is None:
                if not create:
                    yield None
                    return
                working = Device(path=key.id if key.source is SourceType.HOMIE else "")
            else:
                working = current.copy()
            yield working
            self._devices[key] = working

    def get(self, key: DeviceKey) -> Device | None:
        """Copy of the committed device, or None."""
        device = self._devices.get(key)
        return device.copy() if device is not None else None

    def snapshot(self) -> dict[DeviceKey, Device]:
        """Copy of every committed device."""
        return {key: device.copy() for key, device in self._devices.items()}

    def __contains__(self, key: object) -> bool:
        return key in self._devices

    def __len__(self) -> int:
        return len(self._devices)
