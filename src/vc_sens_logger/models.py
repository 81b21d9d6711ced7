"""Typed records exchanged between the logging session and its collaborators.

``Sample`` is one combined sensor/location reading, ``StatusEvent`` is the
single message type sent to the presentation layer, and ``StartCommand``
is the payload of a start request.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


MISSING = "N/A"

CSV_HEADER = (
    "Timestamp",
    "Temperature",
    "Humidity",
    "Latitude",
    "Longitude",
    "Accuracy",
)


def _fixed(value: Optional[float]) -> str:
    return MISSING if value is None else f"{value:.2f}"


def _full(value: Optional[float]) -> str:
    return MISSING if value is None else repr(float(value))


@dataclass(frozen=True)
class Sample:
    """One logged row: a sensor reading paired with the device position.

    Any field whose source was unavailable during the tick is ``None`` and
    is written as ``N/A``.

    Attributes:
        timestamp: ISO-8601 local time of the tick.
        temperature: Degrees Celsius decoded from the characteristic.
        humidity: Relative humidity in percent.
        latitude: Decimal degrees, full precision.
        longitude: Decimal degrees, full precision.
        accuracy: Horizontal accuracy of the fix in metres.
    """

    timestamp: str
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None

    def to_row(self) -> list[str]:
        """Format as the six CSV columns, in header order."""
        return [
            self.timestamp,
            _fixed(self.temperature),
            _fixed(self.humidity),
            _full(self.latitude),
            _full(self.longitude),
            _fixed(self.accuracy),
        ]


class LocationPermission(Enum):
    DENIED = "denied"
    DENIED_FOREVER = "denied_forever"
    WHILE_IN_USE = "while_in_use"
    ALWAYS = "always"

    @property
    def granted(self) -> bool:
        return self in (LocationPermission.WHILE_IN_USE, LocationPermission.ALWAYS)


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    accuracy: float


@dataclass(frozen=True)
class StartCommand:
    """Request to begin a logging session.

    Attributes:
        device_name: Advertised name (or fragment of it) of the sensor.
        file_path: CSV log file for this session.
    """

    device_name: str
    file_path: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StartCommand":
        return cls(
            device_name=str(payload["deviceName"]).strip(),
            file_path=str(payload["filePath"]),
        )


@dataclass(frozen=True)
class StatusEvent:
    """Advisory update for the presentation layer.

    Only ``status`` is always present. ``None`` in any other field means
    "unchanged since the previous event"; ``show_toast`` is a one-shot
    message for fatal or notable conditions.
    """

    status: str
    bt_data: Optional[str] = None
    location_data: Optional[str] = None
    is_scanning: Optional[bool] = None
    show_toast: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the presentation-layer schema, omitting unset fields."""
        data: dict[str, Any] = {"status": self.status}
        if self.bt_data is not None:
            data["btData"] = self.bt_data
        if self.location_data is not None:
            data["locationData"] = self.location_data
        if self.is_scanning is not None:
            data["isScanning"] = self.is_scanning
        if self.show_toast:
            data["showToast"] = self.show_toast
        return data

    def merged_onto(self, previous: Optional["StatusEvent"]) -> "StatusEvent":
        """Return a complete view by filling unset fields from ``previous``."""
        if previous is None:
            return self
        return StatusEvent(
            status=self.status,
            bt_data=self.bt_data if self.bt_data is not None else previous.bt_data,
            location_data=(
                self.location_data
                if self.location_data is not None
                else previous.location_data
            ),
            is_scanning=(
                self.is_scanning
                if self.is_scanning is not None
                else previous.is_scanning
            ),
            show_toast=self.show_toast,
        )


# Messages shared by the session and the presentation layer
NO_BT_DATA = "No data"
NO_GPS_DATA = "No GPS data"
STATUS_STOPPED = "Service stopped"

CLEARED_EVENT = StatusEvent(
    status=STATUS_STOPPED,
    bt_data=NO_BT_DATA,
    location_data=NO_GPS_DATA,
    is_scanning=False,
)
