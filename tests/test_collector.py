from __future__ import annotations

import asyncio
import struct
from datetime import datetime
from typing import List

import pytest
from bleak.exc import BleakError

from conftest import FakeLink, FakeLocation
from vc_sens_logger.collector import (
    BT_DISCONNECTED,
    GPS_UNAVAILABLE,
    SampleCollector,
    decode_payload,
)
from vc_sens_logger.csv_sink import CsvSink
from vc_sens_logger.models import LocationPermission, Sample, StatusEvent


FIXED_TIME = datetime(2024, 5, 1, 12, 30, 0)


def _collector(tmp_path, location=None):
    events: List[StatusEvent] = []
    sink = CsvSink(tmp_path / "log.csv")
    sink.ensure_header()
    collector = SampleCollector(
        sink,
        location or FakeLocation(),
        events.append,
        location_timeout=0.05,
        clock=lambda: FIXED_TIME,
    )
    return collector, sink, events


def _link(payload=struct.pack("<ff", 21.5, 40.0)) -> FakeLink:
    return FakeLink("VC_SENS_1", lambda: None, payload=payload)


def _collect(collector: SampleCollector, link: FakeLink) -> Sample:
    result = asyncio.run(collector.read(link, "ff01"))
    collector.publish(result)
    return result.sample


def test_decode_payload_little_endian_pair() -> None:
    value = bytes([0x00, 0x00, 0x80, 0x3F, 0x00, 0x00, 0x00, 0x40])
    assert decode_payload(value) == (1.0, 2.0)


def test_decode_payload_ignores_trailing_bytes() -> None:
    value = struct.pack("<ff", 22.25, 55.5) + b"\x01\x02\x03"
    assert decode_payload(value) == (22.25, 55.5)


def test_decode_payload_rejects_short_value() -> None:
    with pytest.raises(ValueError, match=r"Not enough bytes \(4\)"):
        decode_payload(b"\x00\x00\x80\x3f")


def test_collect_writes_full_row(tmp_path) -> None:
    collector, sink, events = _collector(tmp_path)
    link = _link(bytes([0x00, 0x00, 0x80, 0x3F, 0x00, 0x00, 0x00, 0x40]))

    sample = _collect(collector, link)

    assert sample.temperature == 1.0
    lines = sink.filepath.read_text(encoding="utf-8").splitlines()
    assert lines[1] == "2024-05-01T12:30:00,1.00,2.00,45.5017,-73.5673,4.00"
    assert events[-1].status == "Bluetooth: OK, GPS: OK"
    assert events[-1].bt_data == "Temp: 1.00 °C, Hum: 2.00 %"
    assert events[-1].location_data == "Lat: 45.501700, Lon: -73.567300"


def test_short_payload_is_logged_as_missing(tmp_path) -> None:
    collector, sink, events = _collector(tmp_path)

    sample = _collect(collector, _link(b"\x01\x02\x03\x04"))

    assert sample.temperature is None and sample.humidity is None
    row = sink.filepath.read_text(encoding="utf-8").splitlines()[1].split(",")
    assert row[1:3] == ["N/A", "N/A"]
    assert row[3] == "45.5017"
    assert events[-1].bt_data.startswith("Error: Not enough bytes (4)")
    assert events[-1].status == "Bluetooth: Error, GPS: OK"


def test_read_error_becomes_status_text(tmp_path) -> None:
    collector, _, events = _collector(tmp_path)
    link = _link(BleakError("GATT read failed"))

    _collect(collector, link)

    assert events[-1].bt_data == "Error reading BT data: GATT read failed"


def test_disconnected_link_skips_read(tmp_path) -> None:
    collector, sink, events = _collector(tmp_path)
    link = _link()
    link.connected = False

    _collect(collector, link)

    assert link.reads == 0
    assert events[-1].bt_data == BT_DISCONNECTED
    assert sink.rows_written == 1


@pytest.mark.parametrize(
    "location",
    [
        FakeLocation(permission=LocationPermission.DENIED),
        FakeLocation(permission=LocationPermission.DENIED_FOREVER),
        FakeLocation(enabled=False),
    ],
)
def test_location_unavailable_keeps_sensor_columns(tmp_path, location) -> None:
    collector, sink, events = _collector(tmp_path, location)

    sample = _collect(collector, _link())

    assert location.fixes == 0
    assert sample.temperature == 21.5
    row = sink.filepath.read_text(encoding="utf-8").splitlines()[1].split(",")
    assert row[1:] == ["21.50", "40.00", "N/A", "N/A", "N/A"]
    assert events[-1].location_data == GPS_UNAVAILABLE


def test_slow_fix_times_out(tmp_path) -> None:
    collector, _, events = _collector(tmp_path, FakeLocation(delay=1.0))

    sample = _collect(collector, _link())

    assert sample.latitude is None
    assert events[-1].location_data.startswith("Error getting location")
    assert events[-1].status == "Bluetooth: OK, GPS: Error"


def test_location_error_becomes_status_text(tmp_path) -> None:
    location = FakeLocation(error=RuntimeError("no satellites"))
    collector, _, events = _collector(tmp_path, location)

    _collect(collector, _link())

    assert events[-1].location_data == "Error getting location: no satellites"


def test_read_has_no_side_effects(tmp_path) -> None:
    collector, sink, events = _collector(tmp_path)

    result = asyncio.run(collector.read(_link(), "ff01"))

    assert result.sample.temperature == 21.5
    assert events == []
    assert sink.rows_written == 0


def test_write_failure_reported_as_event(tmp_path) -> None:
    collector, sink, events = _collector(tmp_path)
    result = asyncio.run(collector.read(_link(), "ff01"))
    sink.filepath.unlink()
    sink.filepath.mkdir()

    collector.publish(result)

    assert events[-1].status.startswith("Error writing log")


def test_sample_row_formatting() -> None:
    sample = Sample(
        timestamp="2024-05-01T12:30:00",
        temperature=21.456,
        humidity=40.0,
        latitude=45.123456789,
        longitude=-73.5,
        accuracy=3.25,
    )
    assert sample.to_row() == [
        "2024-05-01T12:30:00",
        "21.46",
        "40.00",
        "45.123456789",
        "-73.5",
        "3.25",
    ]
    assert Sample(timestamp="t").to_row() == ["t", "N/A", "N/A", "N/A", "N/A", "N/A"]
