"""
Data model for the WiCare core.

Samples flow from the transport into the SampleBuffer and the detector;
detector output (FallSignal) drives the AlertStateMachine, which publishes
AlertSnapshot values to the dashboard.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    """Device reachability as seen by the ConnectivityManager."""

    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SystemState(str, Enum):
    """Externally visible state of the monitored person/device."""

    OFFLINE = "offline"
    SAFE = "safe"
    FALL = "fall"


class AlertSeverity(str, Enum):
    """Fall severity. Affects presentation only, never transitions."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CalibrationStatus(str, Enum):
    """Lifecycle of a calibration run."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


# Caregiver-facing copy per severity
SEVERITY_HEADLINES: dict[AlertSeverity, str] = {
    AlertSeverity.HIGH: "Severe fall alert",
    AlertSeverity.MEDIUM: "Fall alert",
    AlertSeverity.LOW: "Minor fall alert",
}


@dataclass(frozen=True)
class Sample:
    """A single timestamped scalar reading from the device."""

    value: float
    timestamp: float

    @classmethod
    def from_dict(cls, data: dict[str, Any], received_at: float | None = None) -> Sample:
        """
        Decode one wire record.

        Accepts {"value": <number>, "timestamp": <seconds>}; the timestamp is
        optional and defaults to the receive time. NaN and infinities are
        passed through as valid data.

        Raises:
            ValueError: If the record has no numeric value or a bad timestamp
        """
        if not isinstance(data, dict) or "value" not in data:
            raise ValueError(f"Sample record has no value: {data!r}")

        raw = data["value"]
        if isinstance(raw, bool):
            raise ValueError(f"Sample value must be numeric, got {raw!r}")

        try:
            value = float(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Sample value must be numeric, got {raw!r}") from e

        stamp = data.get("timestamp")
        if stamp is None:
            stamp = received_at if received_at is not None else time.time()
        if isinstance(stamp, bool):
            raise ValueError(f"Sample timestamp must be numeric, got {stamp!r}")

        try:
            timestamp = float(stamp)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Sample timestamp must be numeric, got {stamp!r}") from e
        if not math.isfinite(timestamp):
            raise ValueError(f"Sample timestamp must be finite, got {stamp!r}")

        return cls(value=value, timestamp=timestamp)

    def to_dict(self) -> dict[str, Any]:
        # JSON has no NaN/Infinity
        value: float | None = self.value if math.isfinite(self.value) else None
        return {"value": value, "timestamp": self.timestamp}


@dataclass(frozen=True)
class FallSignal:
    """Output of an external fall detector."""

    severity: AlertSeverity = AlertSeverity.HIGH
    location: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AlertEvent:
    """An active fall alert awaiting caregiver action."""

    id: str
    severity: AlertSeverity
    timestamp: float
    location: str | None = None

    @classmethod
    def create(
        cls,
        severity: AlertSeverity,
        location: str | None = None,
        timestamp: float | None = None,
    ) -> AlertEvent:
        """Create a new alert with a unique id."""
        return cls(
            id=uuid.uuid4().hex[:12],
            severity=AlertSeverity(severity),
            timestamp=timestamp if timestamp is not None else time.time(),
            location=location,
        )

    @classmethod
    def from_signal(cls, signal: FallSignal) -> AlertEvent:
        return cls.create(
            severity=signal.severity,
            location=signal.location,
            timestamp=signal.timestamp,
        )

    @property
    def headline(self) -> str:
        return SEVERITY_HEADLINES[self.severity]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "location": self.location,
            "headline": self.headline,
        }


@dataclass(frozen=True)
class AlertRecord:
    """An alert that is no longer active, and why."""

    alert: AlertEvent
    reason: str
    closed_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.alert.to_dict(),
            "reason": self.reason,
            "closed_at": self.closed_at,
        }


@dataclass(frozen=True)
class AlertSnapshot:
    """State published by the AlertStateMachine after every transition."""

    state: SystemState
    alert: AlertEvent | None
    connection_state: ConnectionState
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "alert": self.alert.to_dict() if self.alert else None,
            "connection_state": self.connection_state.value,
            "timestamp": self.timestamp,
        }


@dataclass
class CalibrationRun:
    """Progress of a single calibration routine."""

    status: CalibrationStatus = CalibrationStatus.IDLE
    progress: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    message: str = ""

    def copy(self) -> CalibrationRun:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": self.progress,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "message": self.message,
        }
