"""
HTTP transport for the sensor appliance.

Endpoints on the device:
- GET  /health      -> {"status": "ok"}
- GET  /csi         -> {"value": <float>, "timestamp": <seconds>}
- GET  /stream      -> newline-delimited JSON, one sample per line
- POST /api/<name>  -> command, JSON body in and out
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from wicare.core.errors import ConnectivityError
from wicare.core.events import Sample
from wicare.transport.base import BaseTransport, SampleSource

logger = logging.getLogger(__name__)


class HttpSampleSource(SampleSource):
    """Sample stream read line by line from a streaming HTTP response."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._lines = response.aiter_lines()
        self._closed = False
        self.skipped_lines = 0

    async def __anext__(self) -> Sample:
        if self._closed:
            raise StopAsyncIteration

        while True:
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            except httpx.HTTPError as e:
                await self.aclose()
                raise ConnectivityError(f"Stream interrupted: {e}") from e

            line = line.strip()
            if not line:
                continue

            try:
                return Sample.from_dict(json.loads(line))
            except ValueError as e:
                # json.JSONDecodeError is a ValueError too
                self.skipped_lines += 1
                logger.debug(f"Skipping malformed stream line: {e}")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class HttpTransport(BaseTransport):
    """
    Transport over plain HTTP using httpx.

    The health probe and polling use short request/response calls; the
    stream is a long-lived chunked response.
    """

    def __init__(
        self,
        timeout: float = 4.0,
        stream_read_timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._timeout = timeout
        self._stream_read_timeout = stream_read_timeout
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "http"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    @staticmethod
    def _url(host: str, port: int, path: str) -> str:
        return f"http://{host}:{port}{path}"

    async def health_check(self, host: str, port: int) -> bool:
        client = self._get_client()

        try:
            response = await client.get(self._url(host, port, "/health"))
        except httpx.HTTPError as e:
            logger.debug(f"Health probe to {host}:{port} failed: {e}")
            return False

        if response.status_code != 200:
            logger.debug(f"Health probe to {host}:{port} returned {response.status_code}")
            return False

        try:
            body = response.json()
        except ValueError:
            logger.debug(f"Health probe to {host}:{port} returned malformed body")
            return False

        return isinstance(body, dict) and body.get("status") == "ok"

    async def open_stream(self, host: str, port: int) -> SampleSource:
        client = self._get_client()
        request = client.build_request(
            "GET",
            self._url(host, port, "/stream"),
            timeout=httpx.Timeout(self._timeout, read=self._stream_read_timeout),
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Could not open stream: {e}") from e

        if response.status_code != 200:
            await response.aclose()
            raise ConnectivityError(f"Stream endpoint returned {response.status_code}")

        logger.info(f"Stream opened to {host}:{port}")
        return HttpSampleSource(response)

    async def poll_once(self, host: str, port: int) -> Sample:
        client = self._get_client()

        try:
            response = await client.get(self._url(host, port, "/csi"))
            response.raise_for_status()
            return Sample.from_dict(response.json())
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Poll failed: {e}") from e
        except ValueError as e:
            raise ConnectivityError(f"Malformed sample: {e}") from e

    async def send_command(
        self, host: str, port: int, name: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        client = self._get_client()

        try:
            response = await client.post(self._url(host, port, f"/api/{name}"), json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Command '{name}' failed: {e}") from e

        if not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as e:
            raise ConnectivityError(f"Command '{name}' returned malformed body") from e

        return body if isinstance(body, dict) else {"result": body}

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
