from __future__ import annotations

import asyncio
import struct
from typing import Any, Callable, List, Optional

import pytest
from bleak.exc import BleakError

from vc_sens_logger.ble_adapter import MATCH_EXACT, BleAdapter, BleLink, match_device_name
from vc_sens_logger.csv_sink import CsvSink
from vc_sens_logger.collector import SampleCollector
from vc_sens_logger.location import LocationProvider
from vc_sens_logger.models import LocationPermission, Position, StatusEvent
from vc_sens_logger.session import ConnectionSession, SessionConfig, SessionState


PAYLOAD = struct.pack("<ff", 21.5, 40.0)

# Reconnection outcomes for FakeLink.reconnect
RECONNECT_OK = "ok"
RECONNECT_FAIL = "fail"
RECONNECT_NO_CHAR = "no_char"


class FakeLink(BleLink):
    def __init__(
        self,
        name: str,
        on_disconnect: Callable[[], None],
        payload: Any = PAYLOAD,
        characteristic: Any = "ff01",
        reconnect_outcomes: Optional[List[str]] = None,
        drops_during_resolve: int = 0,
    ) -> None:
        self._name = name
        self._on_disconnect = on_disconnect
        self.payload = payload
        self.characteristic = characteristic
        self.reconnect_outcomes = list(reconnect_outcomes or [])
        self.drops_during_resolve = drops_during_resolve
        self.connected = True
        self.reads = 0
        self.reconnect_calls = 0
        self.disconnect_calls = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def find_characteristic(self, service_uuid: str, char_uuid: str) -> Any:
        if self.reconnect_calls and self.drops_during_resolve:
            self.drops_during_resolve -= 1
            self.drop()
        return self.characteristic

    async def read(self, characteristic: Any) -> bytes:
        self.reads += 1
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def reconnect(self, timeout: float) -> None:
        self.reconnect_calls += 1
        outcome = self.reconnect_outcomes.pop(0) if self.reconnect_outcomes else RECONNECT_OK
        if outcome == RECONNECT_FAIL:
            raise BleakError("Device not reachable")
        self.connected = True
        if outcome == RECONNECT_NO_CHAR:
            self.characteristic = None
        else:
            self.characteristic = "ff01"

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.connected:
            self.connected = False
            self._on_disconnect()

    def drop(self) -> None:
        """Simulate the peripheral going away."""
        self.connected = False
        self._on_disconnect()


class FakeAdapter(BleAdapter):
    def __init__(
        self,
        advertised: Optional[List[str]] = None,
        powered: bool = True,
        scan_delay: float = 0.0,
        power_delay: float = 0.0,
        connect_error: Optional[Exception] = None,
        **link_kwargs: Any,
    ) -> None:
        self.advertised = ["VC_SENS_1"] if advertised is None else list(advertised)
        self.powered = powered
        self.scan_delay = scan_delay
        self.power_delay = power_delay
        self.connect_error = connect_error
        self.link_kwargs = link_kwargs
        self.links: List[FakeLink] = []
        self.scan_calls = 0
        self.stop_scan_calls = 0
        self.power_callback: Optional[Callable[[bool], None]] = None

    async def is_powered(self) -> bool:
        await asyncio.sleep(self.power_delay)
        return self.powered

    async def scan(
        self, name_filter: str, *, timeout: float, match: str = MATCH_EXACT
    ) -> Optional[str]:
        self.scan_calls += 1
        await asyncio.sleep(self.scan_delay)
        for name in self.advertised:
            if match_device_name(name, name_filter, match):
                return name
        return None

    async def stop_scan(self) -> None:
        self.stop_scan_calls += 1

    async def connect(
        self, device: Any, *, timeout: float, on_disconnect: Callable[[], None]
    ) -> FakeLink:
        if self.connect_error is not None:
            raise self.connect_error
        link = FakeLink(device, on_disconnect, **self.link_kwargs)
        self.links.append(link)
        return link

    def watch_power(self, callback: Callable[[bool], None]) -> None:
        self.power_callback = callback

    def unwatch_power(self) -> None:
        self.power_callback = None

    def set_power(self, powered: bool) -> None:
        self.powered = powered
        if self.power_callback is not None:
            self.power_callback(powered)


class FakeLocation(LocationProvider):
    def __init__(
        self,
        enabled: bool = True,
        permission: LocationPermission = LocationPermission.WHILE_IN_USE,
        position: Position = Position(45.5017, -73.5673, 4.0),
        delay: float = 0.0,
        error: Optional[Exception] = None,
        delays: Optional[List[float]] = None,
    ) -> None:
        self.enabled = enabled
        self.permission = permission
        self.position = position
        self.delay = delay
        self.delays = list(delays or [])
        self.error = error
        self.fixes = 0

    async def is_service_enabled(self) -> bool:
        return self.enabled

    async def check_permission(self) -> LocationPermission:
        return self.permission

    async def current_position(self) -> Position:
        self.fixes += 1
        delay = self.delays.pop(0) if self.delays else self.delay
        if delay:
            await asyncio.sleep(delay)
        if self.error is not None:
            raise self.error
        return self.position


class SessionHarness:
    """A session wired to fakes, with every emitted event recorded."""

    def __init__(
        self,
        tmp_path,
        adapter: FakeAdapter,
        location: Optional[FakeLocation] = None,
        **config: Any,
    ) -> None:
        self.events: List[StatusEvent] = []
        self.adapter = adapter
        self.location = location or FakeLocation()
        self.sink = CsvSink(tmp_path / "session.csv")
        self.sink.ensure_header()
        settings = dict(
            poll_interval=60.0, scan_timeout=0.1, reconnect_delay=0.0, location_timeout=0.5
        )
        settings.update(config)
        self.config = SessionConfig(**settings)
        self.collector = SampleCollector(
            self.sink,
            self.location,
            self.events.append,
            location_timeout=self.config.location_timeout,
        )
        self.session = ConnectionSession(
            adapter, self.collector, self.events.append, self.config
        )

    @property
    def link(self) -> FakeLink:
        return self.adapter.links[-1]

    def lines(self) -> List[str]:
        return self.sink.filepath.read_text(encoding="utf-8").splitlines()

    def toasts(self) -> List[str]:
        return [e.show_toast for e in self.events if e.show_toast]

    def statuses(self) -> List[str]:
        return [e.status for e in self.events]


async def wait_for_state(
    session: ConnectionSession, state: SessionState, timeout: float = 2.0
) -> None:
    async def poll() -> None:
        while session.state is not state:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def fake_location() -> FakeLocation:
    return FakeLocation()
