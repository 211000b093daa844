"""Device registry for tracking connected tablets and phones."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger("relay.registry")


class DeviceType(str, Enum):
    TABLET = "tablet"
    PHONE = "phone"


class InvalidDeviceType(ValueError):
    pass


@dataclass
class Device:
    device_id: str
    device_type: DeviceType
    handle: str  # connection handle id owned by the gateway
    registered_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "deviceType": self.device_type.value,
            "registeredAt": self.registered_at,
        }


class DeviceRegistry:
    """Process-wide map of device_id -> Device.

    All mutation goes through the lock so the map is never touched
    concurrently, even if handlers interleave at await points.
    """

    def __init__(self):
        self._devices: dict[str, Device] = {}
        self._lock = asyncio.Lock()

    async def register(self, device_id: str, device_type, handle: str) -> Device:
        """Insert or replace the entry for device_id.

        Re-registering an existing id replaces its role and handle; the
        entry is re-inserted at the end so it counts as the newest device.
        """
        try:
            dtype = DeviceType(device_type)
        except ValueError:
            raise InvalidDeviceType(f"Unknown device type: {device_type!r}") from None
        if not device_id:
            raise ValueError("deviceId must be non-empty")

        async with self._lock:
            old = self._devices.pop(device_id, None)
            # One connection owns at most one device id
            shadowed = [did for did, d in self._devices.items() if d.handle == handle]
            for did in shadowed:
                del self._devices[did]
            device = Device(device_id=device_id, device_type=dtype, handle=handle)
            self._devices[device_id] = device

        for did in shadowed:
            logger.warning(f"Device {did} dropped: {handle} re-registered as {device_id}")
        if old:
            logger.info(
                f"Device re-registered: {device_id} ({old.device_type.value} -> {dtype.value}, "
                f"handle {old.handle} -> {handle})"
            )
        else:
            logger.info(f"Device registered: {device_id} ({dtype.value}) on {handle}")
        return device

    async def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    async def find_by_type(self, device_type) -> Optional[Device]:
        """Return the most recently registered device of a type, or None."""
        dtype = DeviceType(device_type)
        async with self._lock:
            for device in reversed(self._devices.values()):
                if device.device_type is dtype:
                    return device
        return None

    async def find_by_handle(self, handle: str) -> Optional[Device]:
        async with self._lock:
            for device in self._devices.values():
                if device.handle == handle:
                    return device
        return None

    async def remove_by_connection(self, handle: str) -> Optional[Device]:
        """Delete the entry owned by a connection handle. Returns it, if any."""
        async with self._lock:
            for device_id, device in self._devices.items():
                if device.handle == handle:
                    del self._devices[device_id]
                    break
            else:
                return None
        logger.info(f"Device removed from registry: {device.device_id} ({device.device_type.value})")
        return device

    async def list_devices(self) -> list[Device]:
        async with self._lock:
            return list(self._devices.values())

    def __len__(self) -> int:
        return len(self._devices)
