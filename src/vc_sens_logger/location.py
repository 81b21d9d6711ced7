"""Position sources paired with each sensor reading.

The collector only needs three things from a location provider: whether
the location service is enabled, what permission the app holds, and a
single position fix. Desktop hosts have no GNSS receiver, so the shipped
providers are a fixed position (from the command line), a jittering mock
for demos, and a disabled provider.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod

from .models import LocationPermission, Position


class LocationProvider(ABC):
    """Source of device position fixes."""

    @abstractmethod
    async def is_service_enabled(self) -> bool:
        pass

    @abstractmethod
    async def check_permission(self) -> LocationPermission:
        pass

    @abstractmethod
    async def current_position(self) -> Position:
        """Return one best-accuracy fix.

        Callers bound the wait themselves; implementations may block for
        as long as the fix takes.
        """
        pass


class StaticLocationProvider(LocationProvider):
    """Always reports the same position."""

    def __init__(self, latitude: float, longitude: float, accuracy: float = 0.0):
        self._position = Position(latitude, longitude, accuracy)

    async def is_service_enabled(self) -> bool:
        return True

    async def check_permission(self) -> LocationPermission:
        return LocationPermission.WHILE_IN_USE

    async def current_position(self) -> Position:
        return self._position


class MockLocationProvider(LocationProvider):
    """Random walk around a starting point, for demos without hardware."""

    def __init__(
        self,
        latitude: float = 0.0,
        longitude: float = 0.0,
        step_deg: float = 0.00005,
        fix_delay: float = 0.05,
    ):
        self._latitude = latitude
        self._longitude = longitude
        self._step = step_deg
        self._fix_delay = fix_delay

    async def is_service_enabled(self) -> bool:
        return True

    async def check_permission(self) -> LocationPermission:
        return LocationPermission.ALWAYS

    async def current_position(self) -> Position:
        await asyncio.sleep(self._fix_delay)
        self._latitude += random.uniform(-self._step, self._step)
        self._longitude += random.uniform(-self._step, self._step)
        return Position(
            latitude=self._latitude,
            longitude=self._longitude,
            accuracy=abs(random.gauss(5.0, 1.5)),
        )


class NullLocationProvider(LocationProvider):
    """Location service turned off; no fix is ever attempted."""

    async def is_service_enabled(self) -> bool:
        return False

    async def check_permission(self) -> LocationPermission:
        return LocationPermission.DENIED

    async def current_position(self) -> Position:
        raise RuntimeError("Location service is disabled")
