"""Pytest configuration and fixtures."""

import asyncio
import time

import pytest

from wicare.core.config import Config, SettingsStore
from wicare.core.events import AlertSeverity, FallSignal, Sample
from wicare.detectors.base import MockFallDetector
from wicare.transport.mock import MockTransport


@pytest.fixture
def default_config():
    """Default configuration for testing."""
    return Config.default()


@pytest.fixture
def fast_config():
    """Configuration with short intervals so transport tests finish quickly."""
    return Config.from_dict({
        "connectivity": {
            "probe_timeout_seconds": 0.5,
            "poll_interval_seconds": 0.01,
            "max_poll_failures": 3,
        },
        "calibration": {"steps": 10, "duration_seconds": 0.1},
        "dashboard": {"websocket_update_interval_ms": 50},
    })


@pytest.fixture
def mock_transport():
    """Reachable mock device streaming at 200 Hz."""
    return MockTransport(rate_hz=200.0, seed=42)


@pytest.fixture
def mock_detector():
    """Detector that only reports injected falls."""
    return MockFallDetector()


@pytest.fixture
def settings_store(tmp_path):
    """Device settings stored in a temporary directory."""
    return SettingsStore(tmp_path / "device.yaml")


@pytest.fixture
def sample():
    """A single telemetry sample."""
    return Sample(value=12.5, timestamp=time.time())


@pytest.fixture
def fall_signal():
    """High severity fall in the bathroom."""
    return FallSignal(severity=AlertSeverity.HIGH, location="bathroom")


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""

    async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until
