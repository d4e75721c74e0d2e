"""
Tests for the core data model.

Covers:
- Sample wire decoding and JSON encoding
- AlertEvent creation, headlines and serialization
- Alert snapshots and history records
- CalibrationRun copies
- Error taxonomy
"""

from __future__ import annotations

import math
import time

import pytest

from wicare.core.errors import (
    ConfigValidationError,
    ConnectivityError,
    DebugDisabledError,
    PreconditionError,
    TransportDegradation,
    WiCareError,
)
from wicare.core.events import (
    SEVERITY_HEADLINES,
    AlertEvent,
    AlertRecord,
    AlertSeverity,
    AlertSnapshot,
    CalibrationRun,
    CalibrationStatus,
    ConnectionState,
    FallSignal,
    Sample,
    SystemState,
)


# =============================================================================
# Sample Tests
# =============================================================================


class TestSample:
    """Tests for Sample decoding."""

    def test_from_dict(self):
        """Value and timestamp are read from the record."""
        sample = Sample.from_dict({"value": 3.5, "timestamp": 1700000000.0})
        assert sample.value == 3.5
        assert sample.timestamp == 1700000000.0

    def test_integer_value_becomes_float(self):
        """Integer values are accepted."""
        sample = Sample.from_dict({"value": 7, "timestamp": 1.0})
        assert sample.value == 7.0
        assert isinstance(sample.value, float)

    def test_missing_timestamp_uses_receive_time(self):
        """Receive time fills in a missing timestamp."""
        sample = Sample.from_dict({"value": 1.0}, received_at=42.0)
        assert sample.timestamp == 42.0

    def test_missing_timestamp_defaults_to_now(self):
        """Without a receive time the wall clock is used."""
        before = time.time()
        sample = Sample.from_dict({"value": 1.0})
        assert before <= sample.timestamp <= time.time()

    def test_missing_value_raises(self):
        """A record without a value is malformed."""
        with pytest.raises(ValueError):
            Sample.from_dict({"timestamp": 1.0})

    def test_non_dict_raises(self):
        """Only JSON objects are samples."""
        with pytest.raises(ValueError):
            Sample.from_dict([1.0, 2.0])

    def test_non_numeric_value_raises(self):
        """Strings that are not numbers are rejected."""
        with pytest.raises(ValueError):
            Sample.from_dict({"value": "high"})

    def test_bool_value_raises(self):
        """Booleans are not readings."""
        with pytest.raises(ValueError):
            Sample.from_dict({"value": True})

    @pytest.mark.parametrize("stamp", [[1], {}, "soon", True, float("inf"), float("nan")])
    def test_bad_timestamp_raises_value_error(self, stamp):
        """Unusable timestamps are rejected as ValueError, whatever their type."""
        with pytest.raises(ValueError):
            Sample.from_dict({"value": 1.0, "timestamp": stamp})

    def test_nan_passes_through(self):
        """Non-finite readings are valid data."""
        sample = Sample.from_dict({"value": float("nan"), "timestamp": 1.0})
        assert math.isnan(sample.value)

    def test_to_dict_nulls_non_finite(self):
        """JSON output replaces NaN and infinity with null."""
        assert Sample(value=float("inf"), timestamp=1.0).to_dict() == {"value": None, "timestamp": 1.0}
        assert Sample(value=2.0, timestamp=1.0).to_dict() == {"value": 2.0, "timestamp": 1.0}

    def test_sample_is_frozen(self):
        """Samples are immutable."""
        sample = Sample(value=1.0, timestamp=1.0)
        with pytest.raises(Exception):
            sample.value = 2.0


# =============================================================================
# Alert Tests
# =============================================================================


class TestAlertEvent:
    """Tests for AlertEvent."""

    def test_create_assigns_unique_ids(self):
        """Every alert gets its own id."""
        first = AlertEvent.create(AlertSeverity.HIGH)
        second = AlertEvent.create(AlertSeverity.HIGH)
        assert first.id != second.id
        assert len(first.id) == 12

    def test_create_accepts_severity_string(self):
        """Severity can be passed by value."""
        alert = AlertEvent.create("medium")
        assert alert.severity is AlertSeverity.MEDIUM

    def test_from_signal(self):
        """Alert copies severity, location and time from the signal."""
        signal = FallSignal(severity=AlertSeverity.LOW, location="kitchen", timestamp=100.0)
        alert = AlertEvent.from_signal(signal)

        assert alert.severity is AlertSeverity.LOW
        assert alert.location == "kitchen"
        assert alert.timestamp == 100.0

    @pytest.mark.parametrize("severity", list(AlertSeverity))
    def test_headline_per_severity(self, severity):
        """Each severity has caregiver-facing copy."""
        alert = AlertEvent.create(severity)
        assert alert.headline == SEVERITY_HEADLINES[severity]

    def test_to_dict(self):
        """Serialized alert includes the headline."""
        alert = AlertEvent(id="abc", severity=AlertSeverity.HIGH, timestamp=5.0, location=None)
        assert alert.to_dict() == {
            "id": "abc",
            "severity": "high",
            "timestamp": 5.0,
            "location": None,
            "headline": "Severe fall alert",
        }

    def test_fall_signal_defaults(self):
        """A bare signal is a high severity fall happening now."""
        signal = FallSignal()
        assert signal.severity is AlertSeverity.HIGH
        assert signal.location is None
        assert signal.timestamp > 0


class TestAlertSnapshot:
    """Tests for snapshot and record serialization."""

    def test_snapshot_without_alert(self):
        """Snapshot serializes enum values."""
        snapshot = AlertSnapshot(
            state=SystemState.SAFE,
            alert=None,
            connection_state=ConnectionState.CONNECTED,
            timestamp=1.0,
        )
        assert snapshot.to_dict() == {
            "state": "safe",
            "alert": None,
            "connection_state": "connected",
            "timestamp": 1.0,
        }

    def test_snapshot_with_alert(self):
        """Active alert is embedded."""
        alert = AlertEvent.create(AlertSeverity.MEDIUM, location="hall")
        snapshot = AlertSnapshot(SystemState.FALL, alert, ConnectionState.CONNECTED, 1.0)
        assert snapshot.to_dict()["alert"]["location"] == "hall"

    def test_record_to_dict(self):
        """Closed alert records the reason."""
        alert = AlertEvent.create(AlertSeverity.HIGH)
        record = AlertRecord(alert=alert, reason="acknowledged", closed_at=2.0)
        data = record.to_dict()

        assert data["id"] == alert.id
        assert data["reason"] == "acknowledged"
        assert data["closed_at"] == 2.0


# =============================================================================
# Calibration Run Tests
# =============================================================================


class TestCalibrationRun:
    """Tests for CalibrationRun."""

    def test_defaults(self):
        """New run is idle at zero."""
        run = CalibrationRun()
        assert run.status is CalibrationStatus.IDLE
        assert run.progress == 0

    def test_copy_is_independent(self):
        """Copies do not share state with the original."""
        run = CalibrationRun(status=CalibrationStatus.RUNNING, progress=30)
        copy = run.copy()
        copy.progress = 90

        assert run.progress == 30

    def test_to_dict(self):
        """Status is serialized by value."""
        data = CalibrationRun(status=CalibrationStatus.FAILED, progress=40, message="lost").to_dict()
        assert data["status"] == "failed"
        assert data["progress"] == 40
        assert data["message"] == "lost"


# =============================================================================
# Error Tests
# =============================================================================


class TestErrors:
    """Tests for the error taxonomy."""

    def test_hierarchy(self):
        """All errors share a base class."""
        for cls in (ConfigValidationError, ConnectivityError, PreconditionError, TransportDegradation):
            assert issubclass(cls, WiCareError)

    def test_config_validation_is_value_error(self):
        """Invalid config can be caught as ValueError."""
        assert issubclass(ConfigValidationError, ValueError)

    def test_debug_disabled_is_precondition(self):
        """Debug misuse is a precondition failure."""
        assert issubclass(DebugDisabledError, PreconditionError)

    def test_transport_degradation_reason(self):
        """Degradation keeps the underlying reason."""
        error = TransportDegradation("refused")
        assert error.reason == "refused"
        assert str(error) == "Streaming unavailable, using polling: refused"
