"""Command surface between the presentation layer and the logging session.

``SessionController`` owns at most one live ``ConnectionSession``. The
session runs on a dedicated background thread with its own asyncio event
loop, so the UI thread never blocks on BLE or GPS I/O. Commands coming
from other threads are marshalled onto that loop; status events travel
the other way through a single listener callback.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Optional, Union

from .ble_adapter import BleAdapter
from .collector import SampleCollector
from .csv_sink import CsvSink
from .location import LocationProvider
from .models import StartCommand, StatusEvent
from .session import ConnectionSession, SessionConfig, SessionState

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusEvent], None]

# Service message names
ACTION_START = "startLogging"
ACTION_STOP = "stopService"
ACTION_FOREGROUND = "setAsForeground"
ACTION_BACKGROUND = "setAsBackground"


class SessionController:
    """Start/stop entry point for logging sessions.

    All public methods are thread-safe and return immediately; the
    returned ``concurrent.futures.Future`` completes once the command has
    been handled on the session loop. Callers that only drive a UI can
    ignore it.

    Attributes:
        adapter: BLE capability handed to every new session.
        location: Position source handed to every new session's collector.
        config: Session tunables.
    """

    def __init__(
        self,
        adapter: BleAdapter,
        location: LocationProvider,
        config: Optional[SessionConfig] = None,
    ) -> None:
        self.adapter = adapter
        self.location = location
        self.config = config or SessionConfig()

        self._session: Optional[ConnectionSession] = None
        self._sink: Optional[CsvSink] = None
        self._listener: Optional[StatusListener] = None
        self._latest: Optional[StatusEvent] = None
        self._foreground = False
        self._lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    # -- events ------------------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register the status listener, replacing any previous one.

        Returns:
            A callable that removes the listener again.
        """
        with self._lock:
            self._listener = listener

        def unsubscribe() -> None:
            with self._lock:
                if self._listener is listener:
                    self._listener = None

        return unsubscribe

    @property
    def latest_status(self) -> Optional[StatusEvent]:
        """All fields of every event so far, merged; ``show_toast`` is the last one's."""
        with self._lock:
            return self._latest

    def _emit(self, event: StatusEvent) -> None:
        logger.debug("Status event: %s", event.to_dict())
        with self._lock:
            self._latest = event.merged_onto(self._latest)
            listener = self._listener
        if listener is None:
            return
        try:
            listener(event)
        except Exception:
            logger.exception("Status listener raised; event dropped")

    # -- queries -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        session = self._session
        return session.state if session is not None else SessionState.IDLE

    @property
    def is_running(self) -> bool:
        session = self._session
        return session is not None and session.is_active

    @property
    def current_file_path(self) -> Optional[str]:
        session = self._session
        return session.file_path if session is not None else None

    @property
    def current_file_size(self) -> int:
        sink = self._sink
        return sink.file_size_bytes if sink is not None else 0

    @property
    def is_foreground(self) -> bool:
        return self._foreground

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Block until the current session has stopped.

        Returns:
            True if there is no session or it stopped, False on timeout.
        """
        session = self._session
        if session is None:
            return True
        future = self._submit(session.wait_stopped())
        try:
            future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            return False
        return True

    # -- commands ----------------------------------------------------------

    def start(
        self, device_name: str, file_path: Union[str, Path]
    ) -> concurrent.futures.Future:
        command = StartCommand(device_name=device_name.strip(), file_path=str(file_path))
        return self._submit(self._start(command))

    def stop(self) -> concurrent.futures.Future:
        return self._submit(self._stop())

    def dispatch(
        self, action: str, payload: Optional[Dict[str, Any]] = None
    ) -> Optional[concurrent.futures.Future]:
        """Handle a service message from the presentation layer.

        Actions are ``startLogging`` (payload ``{deviceName, filePath}``),
        ``stopService``, ``setAsForeground`` and ``setAsBackground``.

        Raises:
            ValueError: If the action is unknown or the start payload is
                incomplete.
        """
        if action == ACTION_START:
            try:
                command = StartCommand.from_dict(payload or {})
            except KeyError as e:
                raise ValueError(f"startLogging payload is missing {e}") from None
            return self._submit(self._start(command))
        if action == ACTION_STOP:
            return self.stop()
        if action == ACTION_FOREGROUND:
            self.set_foreground()
            return None
        if action == ACTION_BACKGROUND:
            self.set_background()
            return None
        raise ValueError(f"Unknown action: {action}")

    def set_foreground(self) -> None:
        self._foreground = True
        logger.info("Service set as foreground")

    def set_background(self) -> None:
        self._foreground = False
        logger.info("Service set as background")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop any session and terminate the session loop thread."""
        loop, thread = self._loop, self._thread
        if loop is None or thread is None or not thread.is_alive():
            return

        try:
            self.stop().result(timeout=timeout)
        except Exception as e:
            logger.warning("Error stopping session during shutdown: %s", e)

        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Session loop thread did not stop gracefully")
        else:
            loop.close()
            logger.info("Session loop closed")
        self._loop = None
        self._thread = None

    # -- session loop ------------------------------------------------------

    async def _start(self, command: StartCommand) -> None:
        current = self._session
        if current is not None and current.is_active:
            logger.info("Start ignored: logging already active for %s", current.device_name)
            self._emit(
                StatusEvent(status=f'Logging already active for "{current.device_name}".')
            )
            return

        if not command.device_name:
            self._emit(
                StatusEvent(status="Device name required.", show_toast="Enter a device name.")
            )
            return

        sink = CsvSink(command.file_path)
        try:
            sink.ensure_header()
        except OSError as e:
            logger.error("Cannot prepare log file %s: %s", command.file_path, e)
            self._emit(
                StatusEvent(status=f"Cannot open log file: {e}", show_toast=str(e))
            )
            return

        collector = SampleCollector(
            sink,
            self.location,
            self._emit,
            location_timeout=self.config.location_timeout,
        )
        session = ConnectionSession(self.adapter, collector, self._emit, self.config)
        self._session = session
        self._sink = sink
        logger.info("Starting session for '%s' -> %s", command.device_name, command.file_path)
        await session.start(command)

    async def _stop(self) -> None:
        session = self._session
        if session is None:
            return
        await session.stop()

    def _submit(self, coro: Coroutine) -> concurrent.futures.Future:
        loop = self._ensure_loop()
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is not None and self._thread is not None and self._thread.is_alive():
                return self._loop

            loop = asyncio.new_event_loop()
            thread = threading.Thread(
                target=self._run_loop, args=(loop,), daemon=True, name="SessionLoop"
            )
            self._loop = loop
            self._thread = thread
            thread.start()
            return loop

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        logger.info("Session loop thread started")
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            logger.info("Session loop thread finished")


def run(
    controller: SessionController,
    device_name: str,
    file_path: Union[str, Path],
    status_interval: float = 10.0,
) -> int:
    """Run one session without a UI until interrupted.

    A session only stops by itself on a fatal condition, so reaching
    ``STOPPED`` without Ctrl+C is reported as a failure.

    Returns:
        int: Exit code following Unix conventions:
            1: The session stopped on its own (device lost, not found, etc.)
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """

    def on_status(event: StatusEvent) -> None:
        if event.show_toast:
            logger.warning("%s", event.show_toast)
        logger.info("Status: %s", event.status)

    unsubscribe = controller.subscribe(on_status)
    try:
        controller.start(device_name, file_path).result()
        while not controller.wait_stopped(status_interval):
            latest = controller.latest_status
            if latest is not None:
                logger.info(
                    "Logging to %s | %s | %s", file_path, latest.bt_data, latest.location_data
                )
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        unsubscribe()
        controller.shutdown()
