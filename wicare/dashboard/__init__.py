"""Dashboard API for WiCare."""

from wicare.dashboard.server import DashboardServer

__all__ = ["DashboardServer"]
