from __future__ import annotations

from conftest import FakeAdapter, FakeLocation
from vc_sens_logger.controller import SessionController
from vc_sens_logger.csv_sink import CsvSink
from vc_sens_logger.dashboard.app import LoggerDashboard, parse_readings
from vc_sens_logger.dashboard.plots import create_environment_plot
from vc_sens_logger.models import CLEARED_EVENT, Sample, StatusEvent


def test_parse_readings_from_status_text() -> None:
    event = StatusEvent(
        status="Bluetooth: OK, GPS: OK",
        bt_data="Temp: 21.50 °C, Hum: 40.25 %",
        location_data="Lat: 45.501700, Lon: -73.567300",
    )

    assert parse_readings(event) == {
        "temperature": 21.5,
        "humidity": 40.25,
        "latitude": 45.5017,
        "longitude": -73.5673,
    }


def test_parse_readings_without_values() -> None:
    empty = {"temperature": None, "humidity": None, "latitude": None, "longitude": None}

    assert parse_readings(None) == empty
    assert parse_readings(CLEARED_EVENT) == empty
    assert parse_readings(StatusEvent(status="x", bt_data="Error reading BT data: x")) == empty


def test_environment_plot_has_both_series() -> None:
    samples = [
        Sample(timestamp="2024-05-01T12:00:00", temperature=21.0, humidity=40.0),
        Sample(timestamp="2024-05-01T12:00:01"),
        Sample(timestamp="2024-05-01T12:00:02", temperature=21.5, humidity=41.0),
    ]

    fig = create_environment_plot(samples)

    assert len(fig.data) == 2
    assert list(fig.data[0].y) == [21.0, None, 21.5]


def test_environment_plot_empty() -> None:
    fig = create_environment_plot([])
    assert len(fig.data) == 0


def test_log_table_keeps_quoted_commas_in_one_cell(tmp_path) -> None:
    path = tmp_path / "log.csv"
    sink = CsvSink(path)
    sink.ensure_header()
    sink.append(["t", "1,5", "40.00", "N/A", "N/A", "N/A"])
    dashboard = LoggerDashboard(SessionController(FakeAdapter(), FakeLocation()), tmp_path)

    header, row = dashboard._log_table(str(path))

    assert len(header.children) == 6
    assert [cell.children for cell in row.children] == ["t", "1,5", "40.00", "N/A", "N/A", "N/A"]
    assert dashboard._file_info(None) == "No log file"
