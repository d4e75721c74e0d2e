"""
Alert state machine for WiCare.

Turns detector output and connectivity into the system state the caregiver
sees:
- offline whenever the device is not connected (connectivity always wins)
- fall while an unacknowledged alert exists
- safe otherwise

Only one alert is active at a time; a newer fall replaces the older one.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from wicare.core.errors import DebugDisabledError
from wicare.core.events import (
    AlertEvent,
    AlertRecord,
    AlertSeverity,
    AlertSnapshot,
    ConnectionState,
    FallSignal,
    SystemState,
)
from wicare.core.notifiers.base import BaseNotifier

logger = logging.getLogger(__name__)


class AlertStateMachine:
    """
    Offline / safe / fall state with a single active AlertEvent.

    Transitions are serialized by a lock so that a disconnect racing a fall
    signal always resolves to offline.
    """

    def __init__(
        self,
        debug_enabled: bool = False,
        notifiers: list[BaseNotifier] | None = None,
        history_size: int = 50,
    ):
        self._debug_enabled = debug_enabled
        self._notifiers = notifiers or []

        self._state = SystemState.OFFLINE
        self._connection = ConnectionState.DISCONNECTED
        self._alert: AlertEvent | None = None
        self._history: deque[AlertRecord] = deque(maxlen=history_size)
        self._escalations = 0

        self._lock = threading.RLock()
        self._listeners: list[Callable[[AlertSnapshot], None]] = []
        self._escalation_listeners: list[Callable[[AlertEvent], None]] = []

    # ========================================================================
    # Read Accessors
    # ========================================================================

    @property
    def state(self) -> SystemState:
        return self._state

    @property
    def alert(self) -> AlertEvent | None:
        return self._alert

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection

    @property
    def debug_enabled(self) -> bool:
        return self._debug_enabled

    @property
    def escalation_count(self) -> int:
        return self._escalations

    def snapshot(self) -> AlertSnapshot:
        with self._lock:
            return AlertSnapshot(
                state=self._state,
                alert=self._alert,
                connection_state=self._connection,
                timestamp=time.time(),
            )

    def history(self, limit: int = 50) -> list[AlertRecord]:
        """Closed alerts, most recent last."""
        with self._lock:
            return list(self._history)[-limit:]

    def add_listener(self, listener: Callable[[AlertSnapshot], None]) -> None:
        """Called with a snapshot after every state or alert change."""
        self._listeners.append(listener)

    def add_escalation_listener(self, listener: Callable[[AlertEvent], None]) -> None:
        """Called with the alert whenever a caregiver escalates."""
        self._escalation_listeners.append(listener)

    # ========================================================================
    # Transitions
    # ========================================================================

    def on_connection_change(
        self,
        state: ConnectionState,
        signal: FallSignal | None = None,
    ) -> SystemState:
        """
        Apply a connectivity change, then an optional same-cycle fall signal.

        Anything but connected reads offline and discards the alert, so a
        reconnect always lands on safe unless a signal arrives with it.
        """
        with self._lock:
            before = (self._state, self._alert)
            self._connection = ConnectionState(state)

            if self._connection is ConnectionState.DISCONNECTED:
                self._close_alert("connection_lost")
                self._state = SystemState.OFFLINE
            elif self._connection is ConnectionState.CHECKING:
                self._close_alert("connection_check")
                self._state = SystemState.OFFLINE
            else:
                self._state = SystemState.FALL if self._alert else SystemState.SAFE
                if signal is not None:
                    self._raise_alert(signal)

            changed = (self._state, self._alert) != before

        if changed:
            self._notify()
        return self._state

    def on_fall_detected(self, signal: FallSignal) -> bool:
        """
        Detector reported a fall.

        Ignored unless connected. Returns True if an alert was raised.
        """
        with self._lock:
            if self._connection is not ConnectionState.CONNECTED:
                logger.info(
                    f"Ignoring fall signal while {self._connection.value}"
                )
                return False
            if self._state not in (SystemState.SAFE, SystemState.FALL):
                return False

            self._raise_alert(signal)

        self._notify()
        return True

    def acknowledge(self) -> bool:
        """Caregiver marked the alert as a false alarm (fall -> safe)."""
        with self._lock:
            if self._state is not SystemState.FALL:
                return False

            self._close_alert("acknowledged")
            self._state = SystemState.SAFE

        logger.info("Fall alert acknowledged")
        self._notify()
        return True

    async def escalate(self) -> bool:
        """
        Caregiver confirmed the fall and asked for help.

        Sends the active alert to every enabled notifier. State is not
        changed; acknowledge() must still be called to clear the fall.
        Returns False when there is no active alert or every enabled
        notifier failed.
        """
        with self._lock:
            alert = self._alert if self._state is SystemState.FALL else None
            if alert is None:
                return False
            self._escalations += 1

        logger.warning(f"Fall alert {alert.id} escalated ({alert.severity.value})")

        for listener in list(self._escalation_listeners):
            listener(alert)

        enabled = [n for n in self._notifiers if n.enabled]
        if not enabled:
            return True

        delivered = False
        for notifier in enabled:
            try:
                if await notifier.notify(alert):
                    delivered = True
            except Exception as e:
                logger.error(f"Notifier {notifier.name} failed: {e}")

        return delivered

    # ========================================================================
    # Debug Overrides
    # ========================================================================

    def force_safe(self) -> bool:
        """Debug: clear any alert. Offline still wins."""
        self._require_debug()

        with self._lock:
            if self._connection is not ConnectionState.CONNECTED:
                return False
            before = (self._state, self._alert)
            self._close_alert("forced_safe")
            self._state = SystemState.SAFE
            changed = (self._state, self._alert) != before

        logger.warning("Debug override: forced safe")
        if changed:
            self._notify()
        return True

    def force_fall(
        self,
        severity: AlertSeverity = AlertSeverity.HIGH,
        location: str | None = None,
    ) -> bool:
        """Debug: raise an alert without the detector. Offline still wins."""
        self._require_debug()

        logger.warning("Debug override: forced fall")
        return self.on_fall_detected(FallSignal(severity=AlertSeverity(severity), location=location))

    def _require_debug(self) -> None:
        if not self._debug_enabled:
            raise DebugDisabledError("Debug overrides are disabled")

    # ========================================================================
    # Internals (caller holds the lock)
    # ========================================================================

    def _raise_alert(self, signal: FallSignal) -> None:
        self._close_alert("superseded")
        self._alert = AlertEvent.from_signal(signal)
        self._state = SystemState.FALL
        logger.warning(
            f"Fall detected: severity={self._alert.severity.value}"
            + (f" location={self._alert.location}" if self._alert.location else "")
        )

    def _close_alert(self, reason: str) -> None:
        if self._alert is None:
            return
        self._history.append(AlertRecord(alert=self._alert, reason=reason, closed_at=time.time()))
        logger.debug(f"Alert {self._alert.id} closed: {reason}")
        self._alert = None

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)
