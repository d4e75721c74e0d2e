"""
Calibration workflow for the sensor appliance.

A single-flight, cancellable routine: the device is told to start sampling
its baseline, progress advances in equal steps over a fixed duration, and
the result is committed. Losing the connection fails the run and freezes
its progress.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from wicare.core.connectivity import ConnectivityManager
from wicare.core.errors import ConnectivityError, PreconditionError
from wicare.core.events import CalibrationRun, CalibrationStatus, ConnectionState

logger = logging.getLogger(__name__)

CALIBRATE_COMMAND = "calibrate"


class CalibrationController:
    """Drives one calibration run at a time against a connected device."""

    def __init__(
        self,
        manager: ConnectivityManager,
        steps: int = 10,
        duration_seconds: float = 3.0,
    ):
        if steps < 1:
            raise ValueError(f"Steps must be at least 1, got {steps}")

        self._manager = manager
        self._steps = steps
        self._duration = duration_seconds
        self._run = CalibrationRun()
        self._task: asyncio.Task | None = None
        self._listeners: list[Callable[[CalibrationRun], None]] = []

    @property
    def run(self) -> CalibrationRun:
        """Copy of the current run."""
        return self._run.copy()

    @property
    def is_running(self) -> bool:
        return self._run.status is CalibrationStatus.RUNNING

    def add_listener(self, listener: Callable[[CalibrationRun], None]) -> None:
        self._listeners.append(listener)

    async def start(self) -> CalibrationRun:
        """
        Start a new run.

        Raises:
            PreconditionError: If the device is not connected or a run is
                already in progress
        """
        if self.is_running:
            raise PreconditionError("Calibration already running")

        state = self._manager.get_connection_status()
        if state is not ConnectionState.CONNECTED:
            raise PreconditionError(f"Calibration requires a connected device (device is {state.value})")

        self._run = CalibrationRun(
            status=CalibrationStatus.RUNNING,
            progress=0,
            started_at=time.time(),
        )
        self._notify()

        logger.info(f"Calibration started ({self._steps} steps over {self._duration:g}s)")
        self._task = asyncio.create_task(self._execute())
        return self.run

    async def cancel(self) -> bool:
        """
        Abort the current run and reset to idle.

        Returns False if there was no run to cancel.
        """
        task = self._task
        self._task = None
        was_running = self.is_running

        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if was_running:
            try:
                await self._manager.send_command(CALIBRATE_COMMAND, {"action": "abort"})
            except ConnectivityError as e:
                logger.debug(f"Abort command not delivered: {e}")
            logger.info("Calibration cancelled")

        if self._run.status is not CalibrationStatus.IDLE:
            self._run = CalibrationRun()
            self._notify()

        return was_running

    def on_connection_change(self, state: ConnectionState, reason: str | None = None) -> None:
        """Fail a running calibration when the device disconnects."""
        if state is ConnectionState.DISCONNECTED and self.is_running:
            self._fail(reason or "Device disconnected")
            if self._task and not self._task.done():
                self._task.cancel()

    async def wait(self) -> CalibrationRun:
        """Wait for the current run to finish and return its final state."""
        task = self._task
        if task:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.run

    async def close(self) -> None:
        """Halt an in-flight run without talking to the device."""
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self.is_running:
            self._run = CalibrationRun()
            self._notify()

    async def _execute(self) -> None:
        interval = self._duration / self._steps

        try:
            await self._manager.send_command(CALIBRATE_COMMAND, {"action": "start"})

            for step in range(1, self._steps + 1):
                await asyncio.sleep(interval)

                if self._manager.get_connection_status() is ConnectionState.DISCONNECTED:
                    self._fail("Device disconnected")
                    return

                # Exact 100 on the final step regardless of rounding
                progress = 100 if step == self._steps else (step * 100) // self._steps
                self._set_progress(progress)

            await self._manager.send_command(CALIBRATE_COMMAND, {"action": "commit"})

        except ConnectivityError as e:
            self._fail(str(e))
            return

        self._run.status = CalibrationStatus.SUCCESS
        self._run.finished_at = time.time()
        self._run.message = "Calibration complete"
        logger.info("Calibration complete")
        self._notify()

    def _set_progress(self, progress: int) -> None:
        if progress < self._run.progress:
            return
        self._run.progress = progress
        logger.debug(f"Calibration progress {progress}%")
        self._notify()

    def _fail(self, reason: str) -> None:
        if not self.is_running:
            return
        self._run.status = CalibrationStatus.FAILED
        self._run.finished_at = time.time()
        self._run.message = reason
        logger.warning(f"Calibration failed at {self._run.progress}%: {reason}")
        self._notify()

    def _notify(self) -> None:
        snapshot = self.run
        for listener in list(self._listeners):
            listener(snapshot)
