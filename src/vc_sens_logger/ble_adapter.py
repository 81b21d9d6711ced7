"""BLE capability consumed by the logging session.

The session never talks to a Bluetooth stack directly. It drives a
``BleAdapter`` (power state, scanning, connecting) and the ``BleLink``
returned by a successful connection (characteristic lookup, reads,
reconnection). Two implementations ship here:

- ``BleakAdapter``: real hardware through the cross-platform Bleak library.
- ``MockBleAdapter``: a simulated VC_SENS sensor for demos and UI work.

Requirements:
- bleak: Cross-platform BLE library for device communication
"""

from __future__ import annotations

import asyncio
import logging
import math
import platform
import random
import struct
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData


logger = logging.getLogger(__name__)


def _uuid16(short: str) -> str:
    return f"0000{short.lower()}-0000-1000-8000-00805f9b34fb"


# Environmental Sensing service with the vendor temperature/humidity register
SERVICE_UUID = _uuid16("181A")
CHARACTERISTIC_UUID = _uuid16("FF01")

DEFAULT_DEVICE_PREFIX = "VC_SENS"

MATCH_EXACT = "exact"
MATCH_SUBSTRING = "substring"

DisconnectCallback = Callable[[], None]
PowerCallback = Callable[[bool], None]


def match_device_name(
    advertised: Optional[str], name_filter: str, match: str = MATCH_EXACT
) -> bool:
    """Case-insensitive comparison of an advertised name against the filter.

    ``exact`` requires equality, ``substring`` accepts the filter anywhere
    in the advertised name. Devices that advertise no name never match.
    """
    if not advertised or not name_filter:
        return False
    advertised = advertised.lower()
    wanted = name_filter.lower()
    if match == MATCH_SUBSTRING:
        return wanted in advertised
    return advertised == wanted


class BleLink(ABC):
    """An established connection to one device."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def find_characteristic(self, service_uuid: str, char_uuid: str) -> Any:
        """Resolve a characteristic handle, or None if the pair is absent."""
        pass

    @abstractmethod
    async def read(self, characteristic: Any) -> bytes:
        pass

    @abstractmethod
    async def reconnect(self, timeout: float) -> None:
        """Re-establish the connection to the same device.

        Raises:
            BleakError or asyncio.TimeoutError on failure.
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass


class BleAdapter(ABC):
    """Host Bluetooth adapter: power state, discovery and connection."""

    @abstractmethod
    async def is_powered(self) -> bool:
        pass

    @abstractmethod
    async def scan(
        self, name_filter: str, *, timeout: float, match: str = MATCH_EXACT
    ) -> Optional[Any]:
        """Scan until the first device whose name matches, or until timeout.

        The scan halts as soon as one advertisement matches; later
        advertisements are not considered.

        Returns:
            The matched device, or None if nothing matched in time.
        """
        pass

    @abstractmethod
    async def stop_scan(self) -> None:
        pass

    @abstractmethod
    async def connect(
        self, device: Any, *, timeout: float, on_disconnect: DisconnectCallback
    ) -> BleLink:
        pass

    @abstractmethod
    def watch_power(self, callback: PowerCallback) -> None:
        """Report adapter power changes to ``callback`` until unwatched."""
        pass

    @abstractmethod
    def unwatch_power(self) -> None:
        pass


def probe_adapter_power() -> bool:
    """Best-effort check that the host Bluetooth adapter is powered.

    Uses ``bluetoothctl`` on Linux and ``system_profiler`` on macOS. When
    the state cannot be determined the adapter is assumed to be on, so that
    a missing tool never blocks logging.
    """
    system = platform.system().lower()

    if system == "linux":
        command, marker = ["bluetoothctl", "show"], "Powered: yes"
    elif system == "darwin":
        command, marker = ["system_profiler", "SPBluetoothDataType"], "State: On"
    else:
        return True

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Could not check Bluetooth power on %s: %s", system, e)
        return True

    if not result.stdout.strip():
        return True
    return marker in result.stdout


class BleakLink(BleLink):
    """``BleLink`` over a ``BleakClient``.

    Bleak invokes the disconnected callback on the event loop, for both
    remote drops and local ``disconnect()`` calls.
    """

    def __init__(
        self, device: BLEDevice, on_disconnect: DisconnectCallback, timeout: float
    ) -> None:
        self._device = device
        self._on_disconnect = on_disconnect
        self._client = BleakClient(
            device, disconnected_callback=self._handle_disconnect, timeout=timeout
        )

    def _handle_disconnect(self, _client: BleakClient) -> None:
        logger.warning("BLE connection lost (callback): %s", self._device.address)
        self._on_disconnect()

    @property
    def name(self) -> str:
        return self._device.name or self._device.address

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    async def connect(self, timeout: float) -> None:
        logger.info("BLE connection starting: %s", self._device.address)
        await asyncio.wait_for(self._client.connect(), timeout=timeout)
        logger.info("BLE connection established: %s", self._device.address)

    async def find_characteristic(self, service_uuid: str, char_uuid: str) -> Any:
        services = self._client.services
        for service in services:
            logger.debug("Service discovered: %s", service.uuid)
        service = services.get_service(service_uuid)
        if service is None:
            return None
        return service.get_characteristic(char_uuid)

    async def read(self, characteristic: Any) -> bytes:
        return bytes(await self._client.read_gatt_char(characteristic))

    async def reconnect(self, timeout: float) -> None:
        await self.connect(timeout)

    async def disconnect(self) -> None:
        await self._client.disconnect()


class BleakAdapter(BleAdapter):
    """Production adapter backed by ``BleakScanner`` and ``BleakClient``."""

    def __init__(self, power_poll_interval: float = 2.0) -> None:
        self._scanner: Optional[BleakScanner] = None
        self._power_poll_interval = power_poll_interval
        self._power_task: Optional[asyncio.Task] = None

    async def is_powered(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, probe_adapter_power)

    async def scan(
        self, name_filter: str, *, timeout: float, match: str = MATCH_EXACT
    ) -> Optional[BLEDevice]:
        await self.stop_scan()
        found: asyncio.Future[BLEDevice] = asyncio.get_running_loop().create_future()

        def on_detect(dev: BLEDevice, adv: AdvertisementData) -> None:
            advertised = dev.name or adv.local_name
            logger.debug(
                "Device discovered: addr=%s name=%s rssi=%s",
                dev.address,
                advertised,
                adv.rssi,
            )
            if found.done():
                return
            if match_device_name(advertised, name_filter, match):
                logger.info("Device selected by name match: %s (%s)", advertised, dev.address)
                found.set_result(dev)

        logger.info(
            "BLE device discovery started: name='%s' match=%s timeout=%.1fs",
            name_filter,
            match,
            timeout,
        )
        self._scanner = BleakScanner(detection_callback=on_detect)
        await self._scanner.start()
        try:
            return await asyncio.wait_for(found, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("No device matching '%s' within %.1fs", name_filter, timeout)
            return None
        finally:
            await self.stop_scan()

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await scanner.stop()
            logger.debug("BLE scan stopped")

    async def connect(
        self, device: BLEDevice, *, timeout: float, on_disconnect: DisconnectCallback
    ) -> BleakLink:
        link = BleakLink(device, on_disconnect, timeout)
        await link.connect(timeout)
        return link

    def watch_power(self, callback: PowerCallback) -> None:
        self.unwatch_power()
        self._power_task = asyncio.ensure_future(self._poll_power(callback))

    def unwatch_power(self) -> None:
        task, self._power_task = self._power_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll_power(self, callback: PowerCallback) -> None:
        last: Optional[bool] = None
        while True:
            powered = await self.is_powered()
            if last is not None and powered != last:
                logger.info("Bluetooth adapter power changed: %s", "on" if powered else "off")
                callback(powered)
            last = powered
            await asyncio.sleep(self._power_poll_interval)


class MockDevice:
    def __init__(self, name: str) -> None:
        self.name = name
        self.address = "00:00:00:00:00:00"


class MockBleLink(BleLink):
    """Simulated sensor producing a little-endian float32 pair per read.

    Temperature drifts slowly around 20 °C and humidity around 45 %, each
    with gaussian noise.
    """

    def __init__(self, device: MockDevice, on_disconnect: DisconnectCallback) -> None:
        self._device = device
        self._on_disconnect = on_disconnect
        self._connected = True
        self._start_time = time.time()

    @property
    def name(self) -> str:
        return self._device.name

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def find_characteristic(self, service_uuid: str, char_uuid: str) -> Any:
        if service_uuid == SERVICE_UUID and char_uuid == CHARACTERISTIC_UUID:
            return char_uuid
        return None

    async def read(self, characteristic: Any) -> bytes:
        elapsed = time.time() - self._start_time
        temperature = (
            20.0 + 3.0 * math.sin(2 * math.pi * 0.01 * elapsed) + random.gauss(0, 0.2)
        )
        humidity = (
            45.0 + 5.0 * math.cos(2 * math.pi * 0.005 * elapsed) + random.gauss(0, 0.5)
        )
        return struct.pack("<ff", temperature, humidity)

    async def reconnect(self, timeout: float) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        if self._connected:
            self._connected = False
            self._on_disconnect()


class MockBleAdapter(BleAdapter):
    """Adapter whose only visible device is one simulated sensor."""

    def __init__(self, device_name: str = f"{DEFAULT_DEVICE_PREFIX}_MOCK") -> None:
        self._device = MockDevice(device_name)

    async def is_powered(self) -> bool:
        return True

    async def scan(
        self, name_filter: str, *, timeout: float, match: str = MATCH_EXACT
    ) -> Optional[MockDevice]:
        await asyncio.sleep(min(timeout, 0.5))
        if match_device_name(self._device.name, name_filter, match):
            return self._device
        return None

    async def stop_scan(self) -> None:
        pass

    async def connect(
        self, device: MockDevice, *, timeout: float, on_disconnect: DisconnectCallback
    ) -> MockBleLink:
        return MockBleLink(device, on_disconnect)

    def watch_power(self, callback: PowerCallback) -> None:
        pass

    def unwatch_power(self) -> None:
        pass
