"""Core modules for WiCare."""

from wicare.core.buffer import SampleBuffer, WaveformStats
from wicare.core.events import (
    AlertEvent,
    AlertSeverity,
    CalibrationRun,
    CalibrationStatus,
    ConnectionState,
    FallSignal,
    Sample,
    SystemState,
)

__all__ = [
    "SampleBuffer",
    "WaveformStats",
    "AlertEvent",
    "AlertSeverity",
    "CalibrationRun",
    "CalibrationStatus",
    "ConnectionState",
    "FallSignal",
    "Sample",
    "SystemState",
]
