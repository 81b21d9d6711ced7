"""Per-tick sample collection.

Each tick reads the sensor characteristic and the device position, builds
one ``Sample``, appends it to the session's CSV log and reports it as a
status event. Neither source is allowed to end the session: every failure
becomes a human-readable string and the affected columns are written as
``N/A``.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

from .ble_adapter import BleLink
from .csv_sink import CsvSink
from .location import LocationProvider
from .models import Sample, StatusEvent

logger = logging.getLogger(__name__)

PAYLOAD_SIZE = 8
LOCATION_TIMEOUT = 5.0

BT_DISCONNECTED = "Device disconnected."
GPS_UNAVAILABLE = "GPS service/permission disabled or denied."

_PAIR = struct.Struct("<ff")


def decode_payload(value: bytes) -> Tuple[float, float]:
    """Decode the characteristic value into (temperature, humidity).

    The first 8 bytes are two little-endian float32 values; anything after
    them is ignored.

    Raises:
        ValueError: If fewer than 8 bytes were received.
    """
    if len(value) < PAYLOAD_SIZE:
        raise ValueError(
            f"Not enough bytes ({len(value)}) from BT device. Expected {PAYLOAD_SIZE}+"
        )
    temperature, humidity = _PAIR.unpack_from(bytes(value), 0)
    return temperature, humidity


def _is_error(text: str) -> bool:
    return "Error" in text


@dataclass(frozen=True)
class TickResult:
    """Outcome of one tick before it is persisted."""

    sample: Sample
    bt_text: str
    location_text: str

    def to_event(self) -> StatusEvent:
        status = (
            f"Bluetooth: {'Error' if _is_error(self.bt_text) else 'OK'}, "
            f"GPS: {'Error' if _is_error(self.location_text) else 'OK'}"
        )
        return StatusEvent(
            status=status, bt_data=self.bt_text, location_data=self.location_text
        )


class SampleCollector:
    """Produces, persists and reports one ``Sample`` per tick.

    ``read`` has no side effects so that the owning session can drop the
    result if it stopped while the reads were in flight; ``publish`` writes
    the row and emits the event.
    """

    def __init__(
        self,
        sink: CsvSink,
        location: LocationProvider,
        emit: Callable[[StatusEvent], None],
        location_timeout: float = LOCATION_TIMEOUT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._sink = sink
        self._location = location
        self._emit = emit
        self._location_timeout = location_timeout
        self._clock = clock

    @property
    def sink(self) -> CsvSink:
        return self._sink

    async def read(self, link: Optional[BleLink], characteristic: Any) -> TickResult:
        timestamp = self._clock().isoformat()
        temperature, humidity, bt_text = await self._read_sensor(link, characteristic)
        latitude, longitude, accuracy, location_text = await self._read_location()
        sample = Sample(
            timestamp=timestamp,
            temperature=temperature,
            humidity=humidity,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
        )
        return TickResult(sample=sample, bt_text=bt_text, location_text=location_text)

    def publish(self, result: TickResult) -> None:
        event = result.to_event()
        try:
            self._sink.append(result.sample.to_row())
        except OSError as e:
            event = StatusEvent(
                status=f"Error writing log: {e}",
                bt_data=event.bt_data,
                location_data=event.location_data,
            )
        self._emit(event)

    async def _read_sensor(
        self, link: Optional[BleLink], characteristic: Any
    ) -> Tuple[Optional[float], Optional[float], str]:
        # Connection state is checked right before the read to narrow the
        # window for a concurrent disconnect.
        if link is None or characteristic is None or not link.is_connected:
            logger.debug(BT_DISCONNECTED)
            return None, None, BT_DISCONNECTED

        try:
            value = await link.read(characteristic)
        except Exception as e:
            text = f"Error reading BT data: {e}"
            logger.warning(text)
            return None, None, text

        try:
            temperature, humidity = decode_payload(value)
        except ValueError as e:
            text = f"Error: {e}"
            logger.warning(text)
            return None, None, text

        text = f"Temp: {temperature:.2f} °C, Hum: {humidity:.2f} %"
        logger.debug("Bluetooth data read: %s", text)
        return temperature, humidity, text

    async def _read_location(
        self,
    ) -> Tuple[Optional[float], Optional[float], Optional[float], str]:
        try:
            enabled = await self._location.is_service_enabled()
            permission = await self._location.check_permission()
            if not (enabled and permission.granted):
                logger.debug(
                    "%s (enabled=%s, permission=%s)",
                    GPS_UNAVAILABLE,
                    enabled,
                    permission.value,
                )
                return None, None, None, GPS_UNAVAILABLE

            position = await asyncio.wait_for(
                self._location.current_position(), timeout=self._location_timeout
            )
        except asyncio.TimeoutError:
            text = f"Error getting location: no fix within {self._location_timeout:.0f}s"
            logger.warning(text)
            return None, None, None, text
        except Exception as e:
            text = f"Error getting location: {e}"
            logger.warning(text)
            return None, None, None, text

        text = f"Lat: {position.latitude:.6f}, Lon: {position.longitude:.6f}"
        logger.debug("GPS data: %s", text)
        return position.latitude, position.longitude, position.accuracy, text
