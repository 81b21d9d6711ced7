"""Connection session: scan, connect, poll, reconnect, stop.

One ``ConnectionSession`` tracks exactly one sensor from a start command
until it stops. Its lifecycle is an explicit state machine:

    IDLE -> SCANNING -> CONNECTING -> DISCOVERING -> POLLING <-> RECONNECTING
                                                      any state -> STOPPED

Transitions are driven only by the start/stop commands, the poll timer,
and the two asynchronous callbacks the session registers: device
disconnection and adapter power. Everything runs on a single asyncio
event loop, so session fields are never mutated from two threads.

Error handling follows three tiers:

1. **Transient** read errors inside a tick become status strings (see
   ``SampleCollector``) and the session keeps polling.
2. **Session-fatal** conditions (device not found, characteristic missing,
   reconnection exhausted, adapter off, BLE failures during setup) end the
   session through ``stop()`` with a final status event and toast.
3. **Cleanup** failures while stopping are logged and never block shutdown.

No exception leaves the session; the outside world only sees events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .ble_adapter import (
    CHARACTERISTIC_UUID,
    MATCH_EXACT,
    SERVICE_UUID,
    BleAdapter,
    BleLink,
)
from .collector import LOCATION_TIMEOUT, SampleCollector
from .models import (
    CLEARED_EVENT,
    NO_BT_DATA,
    NO_GPS_DATA,
    StartCommand,
    StatusEvent,
)

logger = logging.getLogger(__name__)

SCAN_TIMEOUT = 15.0
POLL_INTERVAL = 0.5
CONNECT_TIMEOUT = 10.0
MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY = 1.0


class SessionError(Exception):
    """Base class for conditions that end a session."""


class DeviceNotFoundError(SessionError):
    pass


class CharacteristicNotFoundError(SessionError):
    pass


class AdapterUnavailableError(SessionError):
    pass


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    POLLING = "polling"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionConfig:
    """Tunables for one session. Defaults match the VC_SENS firmware."""

    service_uuid: str = SERVICE_UUID
    characteristic_uuid: str = CHARACTERISTIC_UUID
    scan_timeout: float = SCAN_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    connect_timeout: float = CONNECT_TIMEOUT
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    reconnect_delay: float = RECONNECT_DELAY
    location_timeout: float = LOCATION_TIMEOUT
    match: str = MATCH_EXACT


class ConnectionSession:
    """State machine for one logging session against one device.

    Args:
        adapter: BLE capability used for scanning and connecting.
        collector: Produces and persists one sample per poll tick.
        emit: Receives every status event, in transition order.
        config: Timeouts, UUIDs and retry policy.
        on_stopped: Called once after the session reaches ``STOPPED``.
    """

    def __init__(
        self,
        adapter: BleAdapter,
        collector: SampleCollector,
        emit: Callable[[StatusEvent], None],
        config: Optional[SessionConfig] = None,
        on_stopped: Optional[Callable[["ConnectionSession"], None]] = None,
    ) -> None:
        self._adapter = adapter
        self._collector = collector
        self._emit = emit
        self._config = config or SessionConfig()
        self._on_stopped = on_stopped

        self._state = SessionState.IDLE
        self._retry_count = 0
        self._command: Optional[StartCommand] = None
        self._link: Optional[BleLink] = None
        self._characteristic: Any = None

        self._setup_task: Optional[asyncio.Future] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    # -- queries -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def device_name(self) -> Optional[str]:
        return self._command.device_name if self._command else None

    @property
    def file_path(self) -> Optional[str]:
        return self._command.file_path if self._command else None

    @property
    def is_active(self) -> bool:
        """True from the start command until the session has stopped."""
        return self._command is not None and self._state is not SessionState.STOPPED

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # -- commands ----------------------------------------------------------

    async def start(self, command: StartCommand) -> None:
        """Run discovery, connection and characteristic resolution.

        Returns once the session is polling or has stopped. Polling itself
        continues in a background task. A session only runs once; later
        start commands are reported and ignored.
        """
        if self._command is not None or self._state is not SessionState.IDLE:
            logger.warning(
                "Start ignored: session for %s already %s",
                self.device_name,
                self._state.value,
            )
            if self.is_active:
                status = f'Logging already active for "{self.device_name}".'
            else:
                status = "Session already stopped."
            self._emit(StatusEvent(status=status))
            return

        # Claimed before the first await so a concurrent start sees it
        self._command = command
        self._adapter.watch_power(self._on_adapter_power)
        self._setup_task = asyncio.ensure_future(self._establish())
        await asyncio.wait({self._setup_task})

    async def stop(self) -> None:
        """Tear the session down. Safe to call repeatedly and from any state."""
        if self._state is SessionState.STOPPED:
            await self._stopped.wait()
            return

        previous = self._state
        self._transition(SessionState.STOPPED)

        current = asyncio.current_task()
        for task in (self._setup_task, self._poll_task, self._reconnect_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._adapter.unwatch_power()

        if previous is SessionState.SCANNING:
            try:
                await self._adapter.stop_scan()
            except Exception as e:
                logger.warning("Error stopping scan on stop: %s", e)

        link, self._link = self._link, None
        self._characteristic = None
        if link is not None:
            try:
                if link.is_connected:
                    logger.info("Disconnecting from %s...", link.name)
                    await link.disconnect()
                    logger.info("Bluetooth device disconnected cleanly")
            except Exception as e:
                logger.warning("Error disconnecting device on stop: %s", e)

        self._emit(CLEARED_EVENT)
        self._stopped.set()
        logger.info("Session stopped")

        if self._on_stopped is not None:
            self._on_stopped(self)

    async def tick(self) -> bool:
        """Collect one sample if polling.

        Returns:
            True if a sample was written, False if the tick was a no-op
            (reconnecting, stopped, or results discarded after a stop).
        """
        if self._state is not SessionState.POLLING:
            return False

        result = await self._collector.read(self._link, self._characteristic)
        if self._state is SessionState.STOPPED:
            logger.debug("Discarding tick result: session stopped during read")
            return False

        self._collector.publish(result)
        return True

    # -- setup path --------------------------------------------------------

    async def _establish(self) -> None:
        name = self._command.device_name
        try:
            if not await self._adapter.is_powered():
                raise AdapterUnavailableError("Bluetooth off")

            self._transition(SessionState.SCANNING)
            self._emit(
                StatusEvent(
                    status=f'Searching for "{name}"...',
                    bt_data=NO_BT_DATA,
                    location_data=NO_GPS_DATA,
                    is_scanning=True,
                )
            )
            try:
                await self._adapter.stop_scan()
            except Exception as e:
                logger.warning("Error stopping previous scan: %s", e)

            device = await self._adapter.scan(
                name, timeout=self._config.scan_timeout, match=self._config.match
            )
            if device is None:
                raise DeviceNotFoundError(name)

            self._transition(SessionState.CONNECTING)
            link = await self._adapter.connect(
                device,
                timeout=self._config.connect_timeout,
                on_disconnect=self._on_disconnect,
            )
            self._link = link
            self._emit(
                StatusEvent(
                    status=f"Connecting to {name}. Initializing...", is_scanning=False
                )
            )

            self._transition(SessionState.DISCOVERING)
            self._characteristic = await self._resolve_characteristic(link)
            if self._characteristic is None:
                raise CharacteristicNotFoundError(name)

            self._transition(SessionState.POLLING)
            self._poll_task = asyncio.ensure_future(self._poll_loop())
            interval_ms = int(self._config.poll_interval * 1000)
            self._emit(StatusEvent(status=f"Connected. Logging every {interval_ms}ms."))
            logger.info("Logging successfully initiated for %s", name)

        except AdapterUnavailableError:
            logger.warning("Bluetooth is off, cannot start logging")
            self._emit(StatusEvent(status="Bluetooth off. Cannot start logging."))
            await self.stop()
        except DeviceNotFoundError:
            logger.warning("Device '%s' not found", name)
            self._emit(
                StatusEvent(
                    status="BT: no, GPS: no",
                    bt_data=NO_BT_DATA,
                    location_data=NO_GPS_DATA,
                    is_scanning=False,
                    show_toast=f'Error: Device "{name}" not found.',
                )
            )
            await self.stop()
        except CharacteristicNotFoundError:
            logger.warning("Target characteristic not found on %s", name)
            self._emit(
                StatusEvent(
                    status=f"Characteristic not found for {name}.",
                    show_toast=f"Error: characteristic not found for {name}.",
                )
            )
            await self.stop()
        except Exception as e:
            if self._state is SessionState.STOPPED:
                return
            logger.error("Critical Bluetooth error during setup: %s", e)
            message = f"Bluetooth error: {e}"
            self._emit(
                StatusEvent(
                    status=message,
                    bt_data=NO_BT_DATA,
                    location_data=NO_GPS_DATA,
                    is_scanning=False,
                    show_toast=message,
                )
            )
            await self.stop()

    async def _resolve_characteristic(self, link: BleLink) -> Any:
        return await link.find_characteristic(
            self._config.service_uuid, self._config.characteristic_uuid
        )

    # -- polling -----------------------------------------------------------

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.poll_interval
        next_tick = loop.time()
        while self._state in (SessionState.POLLING, SessionState.RECONNECTING):
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Unexpected error during tick: %s", e)
            next_tick += interval
            now = loop.time()
            if next_tick < now:
                # Overran: skip the missed slots instead of replaying them
                skipped = int((now - next_tick) // interval) + 1
                logger.debug("Tick overran, skipping %d slot(s)", skipped)
                next_tick += skipped * interval
            await asyncio.sleep(next_tick - now)

    # -- reconnection ------------------------------------------------------

    def _on_disconnect(self) -> None:
        if self._state is not SessionState.POLLING:
            logger.debug("Disconnect ignored in state %s", self._state.value)
            return

        name = self.device_name
        self._transition(SessionState.RECONNECTING)
        self._emit(
            StatusEvent(
                status="Connection lost",
                bt_data="Disconnected",
                location_data=NO_GPS_DATA,
                is_scanning=True,
                show_toast=f"Error: {name} disconnected. Trying to reconnect...",
            )
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        name = self.device_name
        link = self._link
        while self._retry_count < self._config.max_reconnect_attempts:
            self._retry_count += 1
            logger.info(
                "Reconnecting to %s (attempt %d/%d)",
                name,
                self._retry_count,
                self._config.max_reconnect_attempts,
            )
            try:
                await link.reconnect(self._config.connect_timeout)
                characteristic = await self._resolve_characteristic(link)
            except Exception as e:
                logger.warning("Reconnection to %s failed: %s", name, e)
                message = f"Reconnection to {name} failed."
            else:
                if self._state is not SessionState.RECONNECTING:
                    return
                if not link.is_connected:
                    # Dropped again during re-resolution; that disconnect
                    # was ignored while reconnecting, so count it here.
                    logger.warning("Link to %s dropped during reconnection", name)
                    message = f"Reconnection to {name} failed."
                elif characteristic is not None:
                    self._characteristic = characteristic
                    self._retry_count = 0
                    self._transition(SessionState.POLLING)
                    message = f"Reconnected to {name}."
                    self._emit(
                        StatusEvent(
                            status=message,
                            bt_data="Reconnected",
                            is_scanning=False,
                            show_toast=message,
                        )
                    )
                    return
                else:
                    message = "Reconnection failed (characteristic not found)."

            if self._state is not SessionState.RECONNECTING:
                return
            self._emit(StatusEvent(status=message, bt_data="Disconnected", is_scanning=False))
            if self._retry_count < self._config.max_reconnect_attempts:
                await asyncio.sleep(self._config.reconnect_delay)

        attempts = self._config.max_reconnect_attempts
        logger.error("Giving up on %s after %d reconnection attempts", name, attempts)
        self._emit(
            StatusEvent(
                status=f"Reconnection failed after {attempts} attempts.",
                bt_data="Disconnected",
                location_data=NO_GPS_DATA,
                is_scanning=False,
                show_toast=f"Unable to reconnect after {attempts} attempts.",
            )
        )
        await self.stop()

    # -- adapter power -----------------------------------------------------

    def _on_adapter_power(self, powered: bool) -> None:
        if self._state is SessionState.STOPPED:
            return
        if powered:
            if self._state is SessionState.POLLING:
                self._emit(StatusEvent(status="Bluetooth on. Logging in progress..."))
            return

        logger.warning("Bluetooth adapter turned off, stopping session")
        self._emit(
            StatusEvent(
                status="Bluetooth off. Logging stopped.",
                bt_data="Bluetooth off",
                location_data=NO_GPS_DATA,
                show_toast="Bluetooth is off. Logging stopped.",
            )
        )
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self.stop())

    # -- helpers -----------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        logger.info("Session state: %s -> %s", self._state.value, new_state.value)
        self._state = new_state
