"""
Fall detector interface for WiCare.

The classification itself lives outside this package. A detector is fed
every sample the transport delivers and pushes back a FallSignal when it
decides a fall happened.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from wicare.core.events import AlertSeverity, FallSignal, Sample


class BaseFallDetector(ABC):
    """
    Abstract base class for fall detectors.

    update() is called from the transport task for every sample and must
    not block.
    """

    def __init__(self, name: str):
        self._name = name
        self._samples_seen = 0
        self._falls_reported = 0

    @property
    def name(self) -> str:
        return self._name

    def update(self, sample: Sample) -> FallSignal | None:
        """Feed one sample; returns a FallSignal when a fall is detected."""
        self._samples_seen += 1
        signal = self._process(sample)
        if signal is not None:
            self._falls_reported += 1
        return signal

    def reset(self) -> None:
        """Drop any internal window (called when the device disconnects)."""
        pass

    def get_state(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "samples_seen": self._samples_seen,
            "falls_reported": self._falls_reported,
            **self._get_detector_specific_state(),
        }

    @abstractmethod
    def _process(self, sample: Sample) -> FallSignal | None:
        pass

    def _get_detector_specific_state(self) -> dict[str, Any]:
        return {}


class MockFallDetector(BaseFallDetector):
    """
    Mock detector for testing and development.

    Never detects anything by itself; inject_fall() makes it report a fall
    on the next sample it sees.
    """

    def __init__(self, name: str = "mock"):
        super().__init__(name)
        self._pending: tuple[AlertSeverity, str | None] | None = None

    def inject_fall(
        self,
        severity: AlertSeverity = AlertSeverity.HIGH,
        location: str | None = None,
    ) -> None:
        """
        Inject a fall into the next sample.

        Args:
            severity: Severity to report
            location: Optional room or area name
        """
        self._pending = (AlertSeverity(severity), location)

    def reset(self) -> None:
        self._pending = None

    def _process(self, sample: Sample) -> FallSignal | None:
        if self._pending is None:
            return None

        severity, location = self._pending
        self._pending = None
        return FallSignal(severity=severity, location=location, timestamp=sample.timestamp)

    def _get_detector_specific_state(self) -> dict[str, Any]:
        return {"fall_pending": self._pending is not None}
