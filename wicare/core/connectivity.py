"""
Device connectivity manager for WiCare.

Owns the DeviceConfig and the single authoritative ConnectionState:
- The health probe decides reachability (checking -> connected/disconnected)
- One transport task streams or polls samples and is their only source
- A streaming channel that cannot be opened, or drops, degrades to polling
  without leaving the connected state
- Failed probes are not retried here; callers decide the retry cadence
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from pydantic import ValidationError

from wicare.core.config import (
    ConnectivityConfig,
    DeviceConfig,
    SettingsStore,
    TransportMode,
)
from wicare.core.errors import (
    ConfigValidationError,
    ConnectivityError,
    TransportDegradation,
)
from wicare.core.events import ConnectionState, Sample
from wicare.transport.base import BaseTransport, SampleSource

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, "str | None"], None]
SampleListener = Callable[[Sample], None]


class ConnectivityManager:
    """
    Health probing and transport arbitration for one device.

    Connectivity failures never escape as exceptions: they become
    ConnectionState transitions with a human-readable status_reason.
    """

    def __init__(
        self,
        transport: BaseTransport,
        settings: SettingsStore | None = None,
        config: ConnectivityConfig | None = None,
        device: DeviceConfig | None = None,
    ):
        self._transport = transport
        self._settings = settings
        self._config = config or ConnectivityConfig()
        self._device = device or DeviceConfig()

        self._state = ConnectionState.DISCONNECTED
        self._reason: str | None = "Not checked yet"

        self._transport_task: asyncio.Task | None = None
        self._stream: SampleSource | None = None
        self._active_transport: str | None = None
        self._degradation: TransportDegradation | None = None
        self._probe_lock = asyncio.Lock()
        self._closed = False

        self._state_listeners: list[StateListener] = []
        self._sample_listeners: list[SampleListener] = []

    # ========================================================================
    # Read Accessors
    # ========================================================================

    def get_connection_status(self) -> ConnectionState:
        return self._state

    def get_config(self) -> DeviceConfig:
        return self._device.model_copy()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status_reason(self) -> str | None:
        """Why the device is not connected, for display."""
        return self._reason

    @property
    def active_transport(self) -> str | None:
        """"streaming", "polling", or None when no transport is running."""
        return self._active_transport

    @property
    def degraded(self) -> bool:
        """True while streaming was wanted but polling is in use."""
        return self._degradation is not None

    @property
    def degradation_reason(self) -> str | None:
        return self._degradation.reason if self._degradation else None

    @property
    def is_stream_open(self) -> bool:
        return self._stream is not None

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_sample_listener(self, listener: SampleListener) -> None:
        self._sample_listeners.append(listener)

    # ========================================================================
    # Public Operations
    # ========================================================================

    async def start(self) -> bool:
        """Load the stored device config and run the first probe."""
        if self._settings:
            self._device = self._settings.load_device_config()

        logger.info(
            f"Connectivity manager starting for {self._device.host}:{self._device.port} "
            f"({self._device.transport_mode.value})"
        )
        return await self.check_health()

    async def update_config(
        self,
        host: str,
        port: int,
        mode: TransportMode | str,
    ) -> DeviceConfig:
        """
        Replace the device config and re-probe.

        Raises:
            ConfigValidationError: If host, port or mode are invalid; the
                stored config and the connection state are left unchanged
        """
        try:
            new_device = DeviceConfig(host=host, port=port, transport_mode=mode)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigValidationError(f"Invalid device config: {problems}") from e

        await self._stop_transport()

        self._device = new_device
        self._degradation = None
        logger.info(
            f"Device config updated: {new_device.host}:{new_device.port} "
            f"({new_device.transport_mode.value})"
        )

        if self._settings:
            self._settings.save_device_config(new_device)

        self._set_state(ConnectionState.CHECKING, "Configuration changed")
        await self.check_health()
        return self.get_config()

    async def check_health(self) -> bool:
        """
        Probe the device and update the connection state.

        A running transport (including an open stream) is left untouched on
        success; a transport is started only if none is running.
        """
        async with self._probe_lock:
            self._set_state(ConnectionState.CHECKING, self._reason)
            healthy, reason = await self._probe()

            if healthy:
                self._set_state(ConnectionState.CONNECTED, None)
            else:
                self._set_state(ConnectionState.DISCONNECTED, reason)

        if healthy:
            self._ensure_transport()
        else:
            await self._stop_transport()

        return healthy

    async def connect(self) -> bool:
        """
        Best-effort upgrade to the streaming channel.

        Idempotent: returns True immediately if a stream is already open.
        Tried regardless of the configured mode; failure is only logged.
        """
        if self._stream is not None:
            return True

        if self._state is not ConnectionState.CONNECTED:
            logger.debug("Not connected, skipping stream upgrade")
            return False

        opened = await self._try_open_stream()
        if opened:
            self._ensure_transport()
        return opened

    async def send_command(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Send a request/response command to the device.

        Raises:
            ConnectivityError: If not connected or the device does not answer
        """
        if self._state is not ConnectionState.CONNECTED:
            raise ConnectivityError(f"Cannot send '{name}': device is {self._state.value}")

        host, port = self._device.host, self._device.port
        try:
            return await asyncio.wait_for(
                self._transport.send_command(host, port, name, payload),
                timeout=self._config.probe_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"Command '{name}' timed out") from e

    async def close(self) -> None:
        """Tear down the transport task, any open stream and the transport."""
        self._closed = True
        await self._stop_transport()
        await self._transport.close()
        logger.info("Connectivity manager closed")

    # ========================================================================
    # Probe & State
    # ========================================================================

    async def _probe(self) -> tuple[bool, str | None]:
        host, port = self._device.host, self._device.port
        timeout = self._config.probe_timeout_seconds

        try:
            healthy = await asyncio.wait_for(
                self._transport.health_check(host, port),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return False, f"Health check to {host}:{port} timed out after {timeout:g}s"
        except Exception as e:
            return False, f"Health check to {host}:{port} failed: {e}"

        if not healthy:
            return False, f"Device at {host}:{port} did not report healthy"

        return True, None

    def _set_state(self, state: ConnectionState, reason: str | None) -> None:
        if state is self._state and reason == self._reason:
            return

        previous = self._state
        self._state = state
        self._reason = reason

        if state is not previous:
            if state is ConnectionState.DISCONNECTED:
                logger.warning(f"Device disconnected: {reason}")
            else:
                logger.info(f"Connection state {previous.value} -> {state.value}")

        for listener in list(self._state_listeners):
            listener(state, reason)

    # ========================================================================
    # Transport Task
    # ========================================================================

    def _ensure_transport(self) -> None:
        if self._closed:
            return
        if self._transport_task and not self._transport_task.done():
            return
        self._transport_task = asyncio.create_task(self._run_transport_guarded())

    async def _stop_transport(self) -> None:
        task = self._transport_task
        self._transport_task = None

        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_stream()
        self._active_transport = None

    async def _close_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                await stream.aclose()
            except Exception as e:
                logger.debug(f"Error closing stream: {e}")

    async def _run_transport_guarded(self) -> None:
        """Wrapper around the transport loop with error handling."""
        try:
            await self._run_transport()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Transport loop crashed")
            self._set_state(ConnectionState.DISCONNECTED, f"Transport error: {e}")
        finally:
            await self._close_stream()
            self._active_transport = None

    async def _run_transport(self) -> None:
        prefer_stream = self._device.transport_mode is TransportMode.STREAMING

        while self._state is not ConnectionState.DISCONNECTED and not self._closed:
            if self._stream is None and prefer_stream:
                await self._try_open_stream()

            if self._stream is not None:
                reason = await self._consume_stream()
                # A drop after a successful probe is recovered by polling
                prefer_stream = False
                self._degrade(reason)
            else:
                reason = await self._poll_until_fault()
                if reason is None:
                    continue  # upgraded to a stream
                prefer_stream = self._device.transport_mode is TransportMode.STREAMING

            if not await self._recheck_after_fault(reason):
                return

    async def _try_open_stream(self) -> bool:
        host, port = self._device.host, self._device.port

        try:
            source = await asyncio.wait_for(
                self._transport.open_stream(host, port),
                timeout=self._config.probe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._degrade("stream open timed out")
            return False
        except Exception as e:
            self._degrade(str(e))
            return False

        if self._stream is not None:
            # Lost a race with another opener
            await source.aclose()
            return True

        self._stream = source
        self._degradation = None
        self._active_transport = "streaming"
        logger.info(f"Streaming from {host}:{port}")
        return True

    def _degrade(self, reason: str) -> None:
        self._degradation = TransportDegradation(reason)
        logger.warning(str(self._degradation))

    async def _consume_stream(self) -> str:
        """Deliver streamed samples until the stream ends. Returns why it ended."""
        source = self._stream
        assert source is not None

        try:
            async for sample in source:
                self._deliver(sample)
            return "Stream closed by device"
        except ConnectivityError as e:
            return str(e)
        finally:
            if self._stream is source:
                await self._close_stream()
            self._active_transport = None

    async def _poll_until_fault(self) -> str | None:
        """
        Poll at the configured interval.

        Returns the fault reason after max_poll_failures consecutive
        failures, or None once a stream has been opened.
        """
        loop = asyncio.get_running_loop()
        host, port = self._device.host, self._device.port
        failures = 0
        last_upgrade_attempt = loop.time()

        self._active_transport = "polling"
        logger.info(
            f"Polling {host}:{port} every {self._config.poll_interval_seconds:g}s"
        )

        while True:
            if self._stream is not None:
                return None

            if self._upgrade_due(last_upgrade_attempt, loop.time()):
                last_upgrade_attempt = loop.time()
                if await self._try_open_stream():
                    return None

            try:
                sample = await asyncio.wait_for(
                    self._transport.poll_once(host, port),
                    timeout=self._config.probe_timeout_seconds,
                )
            except asyncio.TimeoutError:
                failures += 1
                logger.debug(f"Poll timed out ({failures}/{self._config.max_poll_failures})")
            except ConnectivityError as e:
                failures += 1
                logger.debug(f"Poll failed ({failures}/{self._config.max_poll_failures}): {e}")
            else:
                failures = 0
                self._deliver(sample)

            if failures >= self._config.max_poll_failures:
                return f"{failures} consecutive polling failures"

            await asyncio.sleep(self._config.poll_interval_seconds)

    def _upgrade_due(self, last_attempt: float, now: float) -> bool:
        interval = self._config.stream_upgrade_interval_seconds
        if interval is None:
            return False
        if self._device.transport_mode is not TransportMode.STREAMING:
            return False
        return now - last_attempt >= interval

    async def _recheck_after_fault(self, reason: str) -> bool:
        """Transport fault: connected -> checking, then probe once."""
        logger.warning(f"Transport fault: {reason}")

        async with self._probe_lock:
            self._set_state(ConnectionState.CHECKING, reason)
            healthy, probe_reason = await self._probe()

            if healthy:
                self._set_state(ConnectionState.CONNECTED, None)
            else:
                self._set_state(ConnectionState.DISCONNECTED, probe_reason)

        return healthy

    def _deliver(self, sample: Sample) -> None:
        for listener in list(self._sample_listeners):
            try:
                listener(sample)
            except Exception:
                logger.exception("Sample listener failed")
