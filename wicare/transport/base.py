"""
Transport interface for talking to the sensor appliance.

Two access patterns sit behind one contract: a persistent push-based stream
(open_stream) and request/response polling (poll_once). The
ConnectivityManager picks between them; implementations only move bytes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from wicare.core.events import Sample


class SampleSource(ABC):
    """
    Push-based stream of samples.

    Iteration ends (StopAsyncIteration) when the device closes the stream
    and raises ConnectivityError when the channel breaks.
    """

    def __aiter__(self) -> SampleSource:
        return self

    @abstractmethod
    async def __anext__(self) -> Sample:
        pass

    @abstractmethod
    async def aclose(self) -> None:
        """Close the channel. Safe to call more than once."""
        pass


class BaseTransport(ABC):
    """Abstract base class for device transports."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def health_check(self, host: str, port: int) -> bool:
        """
        Reachability probe.

        Returns:
            True only if the device answered with a well-formed healthy
            response. Callers bound the call with their own timeout.
        """
        pass

    @abstractmethod
    async def open_stream(self, host: str, port: int) -> SampleSource:
        """
        Open the persistent streaming channel.

        Raises:
            ConnectivityError: If the channel cannot be opened
        """
        pass

    @abstractmethod
    async def poll_once(self, host: str, port: int) -> Sample:
        """
        Fetch the current sample.

        Raises:
            ConnectivityError: On any transport or decoding failure
        """
        pass

    @abstractmethod
    async def send_command(
        self, host: str, port: int, name: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Send a request/response command to the device.

        Raises:
            ConnectivityError: If the device rejects or never answers
        """
        pass

    async def close(self) -> None:
        """Release transport resources (optional cleanup)."""
        pass
