"""
Error taxonomy for the WiCare core.

Only ConfigValidationError and PreconditionError are ever raised to callers
of public operations. Connectivity failures are converted into
ConnectionState transitions by the ConnectivityManager, and
TransportDegradation is logged and recovered from locally.
"""

from __future__ import annotations


class WiCareError(Exception):
    """Base class for all WiCare errors."""


class ConfigValidationError(WiCareError, ValueError):
    """Invalid device configuration (host, port or transport mode)."""


class ConnectivityError(WiCareError):
    """Probe, transport or device command failure."""


class PreconditionError(WiCareError):
    """Operation requested in a state that does not allow it."""


class DebugDisabledError(PreconditionError):
    """Debug override used without the debug capability enabled."""


class TransportDegradation(WiCareError):
    """Streaming channel unavailable; telemetry continues over polling."""

    def __init__(self, reason: str):
        super().__init__(f"Streaming unavailable, using polling: {reason}")
        self.reason = reason
