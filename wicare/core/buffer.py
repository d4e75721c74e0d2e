"""
Sliding window over incoming telemetry samples.

The transport task is the only writer; readers take a snapshot. Statistics
for the waveform view are computed from snapshots on demand and never stored.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from wicare.core.events import Sample


class SampleBuffer:
    """Fixed-capacity FIFO of the most recent samples."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError(f"Capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._samples: deque[Sample] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def latest(self) -> Sample | None:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def push(self, sample: Sample) -> None:
        """Append a sample, evicting the oldest once full."""
        with self._lock:
            self._samples.append(sample)

    def snapshot(self) -> list[Sample]:
        """Ordered copy of the current window, oldest first."""
        with self._lock:
            return list(self._samples)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)


@dataclass(frozen=True)
class WaveformStats:
    """Summary of a window, as shown next to the live waveform."""

    current: float = 0.0
    mean: float = 0.0
    max_abs: float = 0.0
    count: int = 0

    @classmethod
    def from_samples(cls, samples: Iterable[Sample]) -> WaveformStats:
        values = np.fromiter((s.value for s in samples), dtype=float)
        if values.size == 0:
            return cls()

        return cls(
            current=float(values[-1]),
            mean=float(np.mean(values)),
            max_abs=float(np.max(np.abs(values))),
            count=int(values.size),
        )

    def to_dict(self) -> dict[str, float | int | None]:
        # Non-finite stats are reported as null for JSON consumers
        def finite(v: float) -> float | None:
            return v if np.isfinite(v) else None

        return {
            "current": finite(self.current),
            "mean": finite(self.mean),
            "max_abs": finite(self.max_abs),
            "count": self.count,
        }
