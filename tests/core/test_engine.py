"""
Tests for the alert state machine.

Covers:
- Offline / safe / fall transitions
- Connectivity precedence over detector signals
- Acknowledge and escalate caregiver actions
- Debug overrides
- Alert history and listeners
"""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from wicare.core.engine import AlertStateMachine
from wicare.core.errors import DebugDisabledError
from wicare.core.events import AlertSeverity, ConnectionState, FallSignal, SystemState


def make_notifier(name="push", enabled=True, result=True, side_effect=None):
    notifier = MagicMock()
    notifier.name = name
    notifier.enabled = enabled
    notifier.notify = AsyncMock(return_value=result, side_effect=side_effect)
    return notifier


@pytest.fixture
def machine():
    return AlertStateMachine()


@pytest.fixture
def connected(machine):
    machine.on_connection_change(ConnectionState.CONNECTED)
    return machine


@pytest.fixture
def falling(connected, fall_signal):
    connected.on_fall_detected(fall_signal)
    return connected


# =============================================================================
# Transition Tests
# =============================================================================


class TestTransitions:
    """Tests for state transitions."""

    def test_initial_state(self, machine):
        """Machine starts offline with no alert."""
        assert machine.state is SystemState.OFFLINE
        assert machine.alert is None
        assert machine.connection_state is ConnectionState.DISCONNECTED

    def test_connected_is_safe(self, machine):
        """Connecting without a signal is safe."""
        assert machine.on_connection_change(ConnectionState.CONNECTED) is SystemState.SAFE

    def test_fall_raises_alert(self, connected, fall_signal):
        """A fall while safe raises an alert."""
        assert connected.on_fall_detected(fall_signal) is True

        assert connected.state is SystemState.FALL
        assert connected.alert.severity is AlertSeverity.HIGH
        assert connected.alert.location == "bathroom"

    @pytest.mark.parametrize("state", [ConnectionState.DISCONNECTED, ConnectionState.CHECKING])
    def test_fall_ignored_while_not_connected(self, machine, fall_signal, state):
        """Detector output is ignored unless connected."""
        machine.on_connection_change(state)

        assert machine.on_fall_detected(fall_signal) is False
        assert machine.state is SystemState.OFFLINE
        assert machine.alert is None

    def test_newer_fall_supersedes(self, falling):
        """Only one alert is active; a new fall replaces it."""
        first = falling.alert
        falling.on_fall_detected(FallSignal(severity=AlertSeverity.LOW))

        assert falling.alert.id != first.id
        assert falling.alert.severity is AlertSeverity.LOW
        assert falling.history()[-1].reason == "superseded"
        assert falling.history()[-1].alert.id == first.id

    def test_disconnect_discards_alert(self, falling):
        """Losing the device goes offline and drops the alert."""
        alert = falling.alert

        assert falling.on_connection_change(ConnectionState.DISCONNECTED) is SystemState.OFFLINE

        assert falling.alert is None
        assert falling.history()[-1].alert.id == alert.id
        assert falling.history()[-1].reason == "connection_lost"

    def test_reconnect_after_disconnect_is_safe(self, falling):
        """A discarded alert does not come back."""
        falling.on_connection_change(ConnectionState.DISCONNECTED)
        assert falling.on_connection_change(ConnectionState.CONNECTED) is SystemState.SAFE

    def test_checking_discards_alert(self, falling):
        """A re-probe goes offline and drops the alert."""
        alert = falling.alert

        assert falling.on_connection_change(ConnectionState.CHECKING) is SystemState.OFFLINE

        assert falling.alert is None
        assert falling.history()[-1].alert.id == alert.id
        assert falling.history()[-1].reason == "connection_check"

    def test_checking_then_connected_is_safe(self, falling):
        """A successful re-probe lands on safe."""
        falling.on_connection_change(ConnectionState.CHECKING)

        assert falling.on_connection_change(ConnectionState.CONNECTED) is SystemState.SAFE
        assert falling.alert is None

    def test_repeated_connected_keeps_fall(self, falling):
        """A connected notification while connected leaves the alert alone."""
        alert = falling.alert

        assert falling.on_connection_change(ConnectionState.CONNECTED) is SystemState.FALL
        assert falling.alert is alert

    def test_same_cycle_signal_wins_on_connect(self, machine, fall_signal):
        """A fall arriving with the connect goes straight to fall."""
        state = machine.on_connection_change(ConnectionState.CONNECTED, fall_signal)

        assert state is SystemState.FALL
        assert machine.alert is not None

    def test_disconnect_beats_same_cycle_signal(self, connected, fall_signal):
        """Offline wins over a signal in the same cycle."""
        state = connected.on_connection_change(ConnectionState.DISCONNECTED, fall_signal)

        assert state is SystemState.OFFLINE
        assert connected.alert is None

    def test_concurrent_disconnect_ends_offline(self, connected):
        """Falls racing a disconnect never leave an alert behind."""
        barrier = threading.Barrier(5)

        def detector():
            barrier.wait()
            for _ in range(200):
                connected.on_fall_detected(FallSignal())

        threads = [threading.Thread(target=detector) for _ in range(4)]
        for t in threads:
            t.start()
        barrier.wait()
        connected.on_connection_change(ConnectionState.DISCONNECTED)
        for t in threads:
            t.join()

        assert connected.state is SystemState.OFFLINE
        assert connected.alert is None


# =============================================================================
# Caregiver Action Tests
# =============================================================================


class TestAcknowledge:
    """Tests for acknowledge()."""

    def test_acknowledge_clears_fall(self, falling):
        """False alarm returns to safe."""
        assert falling.acknowledge() is True

        assert falling.state is SystemState.SAFE
        assert falling.alert is None
        assert falling.history()[-1].reason == "acknowledged"

    def test_acknowledge_without_fall(self, connected):
        """Nothing to acknowledge while safe."""
        assert connected.acknowledge() is False
        assert connected.state is SystemState.SAFE

    def test_acknowledge_while_offline(self, falling):
        """Nothing is left to acknowledge once a re-probe starts."""
        falling.on_connection_change(ConnectionState.CHECKING)
        assert falling.acknowledge() is False


class TestEscalate:
    """Tests for escalate()."""

    @pytest.mark.asyncio
    async def test_escalate_without_alert(self, connected):
        """Escalating with no alert does nothing."""
        assert await connected.escalate() is False
        assert connected.escalation_count == 0

    @pytest.mark.asyncio
    async def test_escalate_keeps_fall(self, falling):
        """Escalation does not clear the alert."""
        listener = MagicMock()
        falling.add_escalation_listener(listener)

        assert await falling.escalate() is True

        assert falling.state is SystemState.FALL
        assert falling.escalation_count == 1
        listener.assert_called_once_with(falling.alert)

    @pytest.mark.asyncio
    async def test_escalate_notifies_enabled_notifiers(self, fall_signal):
        """Enabled notifiers receive the alert; disabled ones are skipped."""
        enabled = make_notifier("push")
        disabled = make_notifier("other", enabled=False)
        machine = AlertStateMachine(notifiers=[enabled, disabled])
        machine.on_connection_change(ConnectionState.CONNECTED, fall_signal)

        assert await machine.escalate() is True

        enabled.notify.assert_awaited_once_with(machine.alert)
        disabled.notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_escalate_reports_delivery_failure(self, fall_signal):
        """False when every enabled notifier fails."""
        failing = make_notifier(result=False)
        raising = make_notifier("broken", side_effect=RuntimeError("down"))
        machine = AlertStateMachine(notifiers=[failing, raising])
        machine.on_connection_change(ConnectionState.CONNECTED, fall_signal)

        assert await machine.escalate() is False
        assert machine.state is SystemState.FALL

    @pytest.mark.asyncio
    async def test_disconnect_during_escalation(self, fall_signal):
        """A disconnect while escalating still discards the alert."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_notify(alert):
            started.set()
            await release.wait()
            return True

        notifier = make_notifier()
        notifier.notify = AsyncMock(side_effect=slow_notify)
        machine = AlertStateMachine(notifiers=[notifier])
        machine.on_connection_change(ConnectionState.CONNECTED, fall_signal)

        task = asyncio.create_task(machine.escalate())
        await started.wait()

        machine.on_connection_change(ConnectionState.DISCONNECTED)
        assert machine.state is SystemState.OFFLINE
        assert machine.alert is None

        release.set()
        await task
        assert machine.state is SystemState.OFFLINE


# =============================================================================
# Debug Override Tests
# =============================================================================


class TestDebugOverrides:
    """Tests for force_safe / force_fall."""

    def test_disabled_by_default(self, connected):
        """Overrides raise unless debug is enabled."""
        with pytest.raises(DebugDisabledError):
            connected.force_fall()

        with pytest.raises(DebugDisabledError):
            connected.force_safe()

    def test_force_fall(self):
        """Forced fall raises an alert with the given severity."""
        machine = AlertStateMachine(debug_enabled=True)
        machine.on_connection_change(ConnectionState.CONNECTED)

        assert machine.force_fall(severity="medium", location="hall") is True

        assert machine.state is SystemState.FALL
        assert machine.alert.severity is AlertSeverity.MEDIUM

    def test_force_safe(self, fall_signal):
        """Forced safe clears the alert."""
        machine = AlertStateMachine(debug_enabled=True)
        machine.on_connection_change(ConnectionState.CONNECTED, fall_signal)

        assert machine.force_safe() is True

        assert machine.state is SystemState.SAFE
        assert machine.history()[-1].reason == "forced_safe"

    def test_overrides_cannot_beat_offline(self):
        """Offline still wins over debug overrides."""
        machine = AlertStateMachine(debug_enabled=True)

        assert machine.force_fall() is False
        assert machine.force_safe() is False
        assert machine.state is SystemState.OFFLINE


# =============================================================================
# History & Listener Tests
# =============================================================================


class TestHistoryAndListeners:
    """Tests for alert history and change listeners."""

    def test_listener_receives_snapshots(self, machine, fall_signal):
        """Every transition publishes a snapshot."""
        snapshots = []
        machine.add_listener(snapshots.append)

        machine.on_connection_change(ConnectionState.CONNECTED)
        machine.on_fall_detected(fall_signal)
        machine.acknowledge()

        assert [s.state for s in snapshots] == [
            SystemState.SAFE,
            SystemState.FALL,
            SystemState.SAFE,
        ]
        assert snapshots[1].alert is not None

    def test_no_snapshot_without_change(self, connected):
        """Repeated identical updates are not published."""
        listener = MagicMock()
        connected.add_listener(listener)

        connected.on_connection_change(ConnectionState.CONNECTED)

        listener.assert_not_called()

    def test_history_is_bounded(self, fall_signal):
        """Oldest records are dropped beyond history_size."""
        machine = AlertStateMachine(history_size=3)
        machine.on_connection_change(ConnectionState.CONNECTED)

        for _ in range(5):
            machine.on_fall_detected(fall_signal)
            machine.acknowledge()

        assert len(machine.history()) == 3
        assert len(machine.history(limit=2)) == 2

    def test_snapshot_serializes(self, falling):
        """Snapshot is plain data for the dashboard."""
        data = falling.snapshot().to_dict()
        assert data["state"] == "fall"
        assert data["connection_state"] == "connected"
        assert data["alert"]["headline"] == "Severe fall alert"
