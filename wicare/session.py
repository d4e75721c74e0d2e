"""
Monitoring session: one caregiver, one device.

Wires the core components together and owns their lifecycle. Several
sessions can run side by side in one process; nothing here is global.

    device -> ConnectivityManager -> SampleBuffer
                                  -> detector -> AlertStateMachine
    dashboard -> CalibrationController -> ConnectivityManager -> device
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from wicare.core.buffer import SampleBuffer, WaveformStats
from wicare.core.calibration import CalibrationController
from wicare.core.config import Config, DeviceConfig, SettingsStore
from wicare.core.connectivity import ConnectivityManager
from wicare.core.engine import AlertStateMachine
from wicare.core.errors import ConfigValidationError
from wicare.core.events import ConnectionState, Sample
from wicare.core.notifiers.base import BaseNotifier
from wicare.detectors.base import BaseFallDetector
from wicare.transport.base import BaseTransport

logger = logging.getLogger(__name__)


class MonitorSession:
    """Per-session context holding the buffer, manager, calibration and alerts."""

    def __init__(
        self,
        transport: BaseTransport,
        detector: BaseFallDetector | None = None,
        settings: SettingsStore | None = None,
        config: Config | None = None,
        debug_enabled: bool | None = None,
        notifiers: list[BaseNotifier] | None = None,
        watch_settings: bool = False,
    ):
        self._config = config or Config.default()
        cfg = self._config

        if debug_enabled is None:
            debug_enabled = cfg.alerts.debug_enabled

        self.buffer = SampleBuffer(capacity=cfg.buffer.capacity)
        self.manager = ConnectivityManager(
            transport,
            settings=settings,
            config=cfg.connectivity,
            device=cfg.device,
        )
        self.calibration = CalibrationController(
            self.manager,
            steps=cfg.calibration.steps,
            duration_seconds=cfg.calibration.duration_seconds,
        )
        self.alerts = AlertStateMachine(
            debug_enabled=debug_enabled,
            notifiers=notifiers,
            history_size=cfg.alerts.history_size,
        )
        self.detector = detector

        self._settings = settings
        self._notifiers = notifiers or []
        self._watch_settings = watch_settings
        self._monitoring = True
        self._started_at: float | None = None
        self._recheck_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

        self.manager.add_state_listener(self._on_connection_change)
        self.manager.add_sample_listener(self._on_sample)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start notifiers, probe the device and begin telemetry."""
        if self._started_at is not None:
            return
        self._started_at = time.time()

        for notifier in self._notifiers:
            await notifier.start()

        await self.manager.start()

        interval = self._config.connectivity.recheck_interval_seconds
        if interval:
            self._recheck_task = asyncio.create_task(self._recheck_loop(interval))

        if self._settings and self._watch_settings:
            loop = asyncio.get_running_loop()

            def on_settings_changed(device: DeviceConfig) -> None:
                # Runs on the watchdog thread
                loop.call_soon_threadsafe(self._schedule_config_update, device)

            self._settings.watch(on_settings_changed)

    async def close(self) -> None:
        """Tear down streams, timers and any in-flight calibration."""
        if self._recheck_task:
            self._recheck_task.cancel()
            try:
                await self._recheck_task
            except asyncio.CancelledError:
                pass
            self._recheck_task = None

        for task in list(self._pending):
            task.cancel()

        if self._settings:
            self._settings.stop_watching()

        await self.calibration.close()
        await self.manager.close()

        for notifier in self._notifiers:
            await notifier.stop()

        self._started_at = None
        logger.info("Monitoring session closed")

    # ========================================================================
    # Monitoring Toggle
    # ========================================================================

    def pause_monitoring(self) -> None:
        """Stop feeding the waveform window. Fall detection keeps running."""
        if self._monitoring:
            self._monitoring = False
            logger.info("Waveform monitoring paused")

    def resume_monitoring(self) -> None:
        if not self._monitoring:
            self._monitoring = True
            logger.info("Waveform monitoring resumed")

    # ========================================================================
    # Status
    # ========================================================================

    def status(self) -> dict[str, Any]:
        """Everything the dashboard shows, as plain data."""
        device = self.manager.get_config()
        samples = self.buffer.snapshot()

        return {
            "system": self.alerts.snapshot().to_dict(),
            "connection": {
                "state": self.manager.get_connection_status().value,
                "reason": self.manager.status_reason,
                "transport": self.manager.active_transport,
                "degraded": self.manager.degraded,
                "degradation_reason": self.manager.degradation_reason,
                "device": device.model_dump(mode="json"),
            },
            "calibration": self.calibration.run.to_dict(),
            "monitoring": self._monitoring,
            "waveform": WaveformStats.from_samples(samples).to_dict(),
            "detector": self.detector.get_state() if self.detector else None,
            "debug_enabled": self.alerts.debug_enabled,
            "uptime_seconds": time.time() - self._started_at if self._started_at else 0.0,
        }

    # ========================================================================
    # Wiring
    # ========================================================================

    def _on_sample(self, sample: Sample) -> None:
        if self._monitoring:
            self.buffer.push(sample)

        if self.detector is None:
            return

        signal = self.detector.update(sample)
        if signal is not None:
            self.alerts.on_fall_detected(signal)

    def _on_connection_change(self, state: ConnectionState, reason: str | None) -> None:
        if state is ConnectionState.DISCONNECTED:
            # Stale waveform must not outlive the connection
            self.buffer.clear()
            if self.detector:
                self.detector.reset()

        self.calibration.on_connection_change(state, reason)
        self.alerts.on_connection_change(state)

    async def _recheck_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.manager.get_connection_status() is ConnectionState.DISCONNECTED:
                logger.debug("Re-checking disconnected device")
                await self.manager.check_health()

    def _schedule_config_update(self, device: DeviceConfig) -> None:
        task = asyncio.create_task(self._apply_external_config(device))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _apply_external_config(self, device: DeviceConfig) -> None:
        logger.info(f"Device settings changed on disk: {device.host}:{device.port}")
        try:
            await self.manager.update_config(device.host, device.port, device.transport_mode)
        except ConfigValidationError as e:
            logger.warning(f"Ignoring invalid device settings: {e}")
