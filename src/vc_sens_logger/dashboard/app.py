"""
Dash application: live status, log tail and log file actions.
"""

import logging
import re
import threading
from collections import deque
from pathlib import Path
from typing import Any, Deque, List, Optional, Tuple

import dash  # type: ignore
from dash import dcc, html, Input, Output, State

from ..controller import ACTION_FOREGROUND, ACTION_START, ACTION_STOP, SessionController
from ..log_files import (
    delete_all_csv,
    generate_csv_file_path,
    load_samples,
    parse_log_line,
    read_latest_lines,
    zip_all_csv,
)
from ..models import CSV_HEADER, NO_BT_DATA, NO_GPS_DATA, STATUS_STOPPED, StatusEvent
from .plots import create_environment_plot

logger = logging.getLogger(__name__)

_TEMP_RE = re.compile(r"Temp[:=]?\s*([-\d.]+)")
_HUM_RE = re.compile(r"Hum[:=]?\s*([-\d.]+)")
_LAT_RE = re.compile(r"Lat[:=]?\s*([-\d.]+)")
_LON_RE = re.compile(r"(?:Long|Lon)[:=]?\s*([-\d.]+)")

_PANEL_STYLE = {
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}


def _match_value(pattern: "re.Pattern[str]", text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = pattern.search(text)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def parse_readings(event: Optional[StatusEvent]) -> dict:
    """Extract display values from the event's free-text fields."""
    bt_data = event.bt_data if event else None
    location_data = event.location_data if event else None
    return {
        "temperature": _match_value(_TEMP_RE, bt_data),
        "humidity": _match_value(_HUM_RE, bt_data),
        "latitude": _match_value(_LAT_RE, location_data),
        "longitude": _match_value(_LON_RE, location_data),
    }


def _fmt(value: Optional[float], unit: str = "", digits: int = 2) -> str:
    return "--" if value is None else f"{value:.{digits}f}{unit}"


class LoggerDashboard:
    """Web front end for one ``SessionController``.

    The controller pushes status events into this object from its session
    thread; Dash callbacks read the latest state on each refresh, so the
    session never waits on the browser.
    """

    def __init__(
        self,
        controller: SessionController,
        log_dir: Path,
        default_device: str = "",
        refresh_ms: int = 1000,
        table_rows: int = 10,
    ):
        self.controller = controller
        self.log_dir = Path(log_dir)
        self.default_device = default_device
        self.refresh_ms = refresh_ms
        self.table_rows = table_rows

        self._toasts: Deque[str] = deque(maxlen=5)
        self._toast_lock = threading.Lock()
        self._unsubscribe = controller.subscribe(self._on_status)

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _on_status(self, event: StatusEvent) -> None:
        if event.show_toast:
            with self._toast_lock:
                self._toasts.append(event.show_toast)

    def pop_toast(self) -> str:
        with self._toast_lock:
            return self._toasts.popleft() if self._toasts else ""

    def _setup_layout(self) -> None:
        self.app.layout = html.Div(
            [
                html.H1("VC_SENS Logger", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Session"),
                                dcc.Input(
                                    id="device-name-input",
                                    type="text",
                                    value=self.default_device,
                                    placeholder="VC_SENS_XXXXXX",
                                    style={"marginRight": "10px"},
                                ),
                                html.Button("Start", id="start-btn"),
                                html.Button(
                                    "Stop",
                                    id="stop-btn",
                                    disabled=True,
                                    style={"marginLeft": "10px"},
                                ),
                                html.Div(id="action-message", style={"marginTop": "8px"}),
                                html.Div(id="file-info-text", style={"marginTop": "8px"}),
                            ],
                            style={**_PANEL_STYLE, "width": "30%"},
                        ),
                        html.Div(
                            [
                                html.H3("Live Status"),
                                html.Div(id="status-text", children=STATUS_STOPPED),
                                html.Div(id="bt-data-text", children=NO_BT_DATA),
                                html.Div(id="location-data-text", children=NO_GPS_DATA),
                                html.Div(id="readings-text"),
                                html.Div(
                                    id="toast-text",
                                    style={"color": "#dc3545", "marginTop": "8px"},
                                ),
                            ],
                            style={**_PANEL_STYLE, "width": "35%"},
                        ),
                        html.Div(
                            [
                                html.H3("Log Files"),
                                html.Button("Zip logs", id="zip-btn"),
                                html.Button(
                                    "Delete logs",
                                    id="delete-btn",
                                    style={"marginLeft": "10px"},
                                ),
                                html.Div(id="files-message", style={"marginTop": "8px"}),
                            ],
                            style={**_PANEL_STYLE, "width": "25%"},
                        ),
                    ]
                ),
                dcc.Graph(id="environment-plot"),
                html.H3("Latest Entries"),
                html.Table(id="log-table"),
                dcc.Interval(id="refresh-interval", interval=self.refresh_ms, n_intervals=0),
            ]
        )

    def _file_info(self, path: Optional[str]) -> str:
        if path is None:
            return "No log file"
        size_kb = self.controller.current_file_size / 1024
        return f"{Path(path).name} ({size_kb:.1f} KB)"

    def _log_table(self, path: Optional[str]) -> List[Any]:
        header = html.Tr([html.Th(col) for col in CSV_HEADER])
        rows = []
        for line in read_latest_lines(path, self.table_rows):
            cells = parse_log_line(line)
            if len(cells) == len(CSV_HEADER):
                rows.append(html.Tr([html.Td(c) for c in cells]))
            else:
                rows.append(html.Tr([html.Td(line, colSpan=len(CSV_HEADER))]))
        return [header] + rows

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("status-text", "children"),
                Output("bt-data-text", "children"),
                Output("location-data-text", "children"),
                Output("readings-text", "children"),
                Output("file-info-text", "children"),
                Output("toast-text", "children"),
                Output("log-table", "children"),
                Output("environment-plot", "figure"),
                Output("start-btn", "disabled"),
                Output("stop-btn", "disabled"),
                Output("delete-btn", "disabled"),
            ],
            [Input("refresh-interval", "n_intervals")],
        )
        def refresh(n_intervals: int) -> Tuple[Any, ...]:
            event = self.controller.latest_status
            readings = parse_readings(event)
            running = self.controller.is_running
            scanning = bool(event and event.is_scanning)
            path = self.controller.current_file_path

            readings_text = (
                f"Temp {_fmt(readings['temperature'], '°C')} | "
                f"Hum {_fmt(readings['humidity'], '%')} | "
                f"Lat {_fmt(readings['latitude'])} | "
                f"Lon {_fmt(readings['longitude'])}"
            )
            return (
                event.status if event else STATUS_STOPPED,
                (event.bt_data if event else None) or NO_BT_DATA,
                (event.location_data if event else None) or NO_GPS_DATA,
                readings_text,
                self._file_info(path),
                self.pop_toast(),
                self._log_table(path),
                create_environment_plot(load_samples(path, limit=600)),
                running or scanning,
                not running,
                running or scanning,
            )

        @self.app.callback(  # type: ignore
            Output("action-message", "children"),
            [Input("start-btn", "n_clicks")],
            [State("device-name-input", "value")],
            prevent_initial_call=True,
        )
        def start_logging(n_clicks: int, device_name: Optional[str]):  # type: ignore
            device_name = (device_name or "").strip()
            if not n_clicks:
                return ""
            if not device_name:
                return "Enter a device name (VC_SENS_XXXXXX)."
            path = generate_csv_file_path(self.log_dir, device_name)
            self.controller.dispatch(ACTION_FOREGROUND)
            self.controller.dispatch(
                ACTION_START, {"deviceName": device_name, "filePath": str(path)}
            )
            logger.info("Logging requested for %s -> %s", device_name, path)
            return f"Logging started: {path.name}"

        @self.app.callback(  # type: ignore
            Output("action-message", "children", allow_duplicate=True),
            [Input("stop-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def stop_logging(n_clicks: int):  # type: ignore
            if not n_clicks:
                return ""
            self.controller.dispatch(ACTION_STOP)
            return "Logging stopped."

        @self.app.callback(  # type: ignore
            Output("files-message", "children"),
            [Input("zip-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def zip_logs(n_clicks: int):  # type: ignore
            archive = zip_all_csv(self.log_dir)
            if archive is None:
                return "No CSV files to archive."
            return f"Archive ready: {archive}"

        @self.app.callback(  # type: ignore
            Output("files-message", "children", allow_duplicate=True),
            [Input("delete-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def delete_logs(n_clicks: int):  # type: ignore
            if self.controller.is_running:
                return "Stop logging before deleting files."
            result = delete_all_csv(self.log_dir)
            if not result.ok:
                failed = ", ".join(str(path.name) for path, _ in result.failed)
                return f"Deleted {len(result.deleted)} file(s); could not delete: {failed}"
            return f"Deleted {len(result.deleted)} file(s)."

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self._unsubscribe()
            self.controller.shutdown()


def create_app(controller: SessionController, log_dir: Path, **kwargs: Any) -> LoggerDashboard:
    """Factory function to create the dashboard.

    Args:
        controller: Session controller the dashboard drives.
        log_dir: Directory holding session CSV files.
        **kwargs: Additional arguments for LoggerDashboard
    """
    return LoggerDashboard(controller=controller, log_dir=log_dir, **kwargs)
