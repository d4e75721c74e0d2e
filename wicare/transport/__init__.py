"""Device transports."""

from wicare.transport.base import BaseTransport, SampleSource
from wicare.transport.http import HttpTransport
from wicare.transport.mock import MockTransport

__all__ = ["BaseTransport", "SampleSource", "HttpTransport", "MockTransport"]
