"""
Mock device transport for testing and development.

Synthesizes the CSI waveform the dashboard shows (a 50-unit sine with
uniform noise) and lets tests toggle reachability, stream availability and
polling failures without hardware.
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from typing import Any

from wicare.core.errors import ConnectivityError
from wicare.core.events import Sample
from wicare.transport.base import BaseTransport, SampleSource


def synthetic_value(now: float, rng: random.Random) -> float:
    """One point of the demo waveform at wall-clock time `now`."""
    return math.sin(now * 1000 / 200) * 50 + rng.random() * 30 - 15


class MockSampleSource(SampleSource):
    """Synthetic stream at a fixed rate until closed or dropped."""

    def __init__(self, transport: MockTransport, rate_hz: float):
        self._transport = transport
        self._interval = 1.0 / rate_hz
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __anext__(self) -> Sample:
        if self._closed:
            raise StopAsyncIteration

        await asyncio.sleep(self._interval)

        if self._closed:
            raise StopAsyncIteration
        if not self._transport.reachable:
            self._closed = True
            raise ConnectivityError("Mock stream dropped")

        return self._transport.next_sample()

    async def aclose(self) -> None:
        self._closed = True


class MockTransport(BaseTransport):
    """In-process stand-in for the sensor appliance."""

    def __init__(
        self,
        rate_hz: float = 20.0,
        reachable: bool = True,
        streaming_available: bool = True,
        probe_latency: float = 0.0,
        seed: int | None = None,
    ):
        self.rate_hz = rate_hz
        self.reachable = reachable
        self.streaming_available = streaming_available
        self.probe_latency = probe_latency
        self.fail_polls = False

        self.health_checks = 0
        self.polls = 0
        self.stream_opens = 0
        self.commands: list[tuple[str, dict[str, Any]]] = []

        self._rng = random.Random(seed)
        self._streams: list[MockSampleSource] = []
        self._closed = False

    @property
    def name(self) -> str:
        return "mock"

    @property
    def open_streams(self) -> list[MockSampleSource]:
        return [s for s in self._streams if not s.closed]

    def next_sample(self) -> Sample:
        now = time.time()
        return Sample(value=synthetic_value(now, self._rng), timestamp=now)

    async def health_check(self, host: str, port: int) -> bool:
        self.health_checks += 1
        if self.probe_latency:
            await asyncio.sleep(self.probe_latency)
        return self.reachable

    async def open_stream(self, host: str, port: int) -> SampleSource:
        self.stream_opens += 1
        if not self.reachable or not self.streaming_available:
            raise ConnectivityError("Mock stream unavailable")

        source = MockSampleSource(self, self.rate_hz)
        self._streams.append(source)
        return source

    async def poll_once(self, host: str, port: int) -> Sample:
        self.polls += 1
        if not self.reachable or self.fail_polls:
            raise ConnectivityError("Mock poll failed")
        return self.next_sample()

    async def send_command(
        self, host: str, port: int, name: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        if not self.reachable:
            raise ConnectivityError(f"Mock command '{name}' failed")
        self.commands.append((name, dict(payload)))
        return {"status": "ok"}

    async def drop_streams(self) -> None:
        """End every open stream as if the device closed them."""
        for source in self.open_streams:
            await source.aclose()

    async def close(self) -> None:
        await self.drop_streams()
        self._closed = True
