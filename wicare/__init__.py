"""
WiCare - Fall-detection monitoring core.

Device connectivity, telemetry windowing, calibration and the fall alert
lifecycle behind the WiCare caregiver dashboard.
"""

__version__ = "0.1.0"
__author__ = "WiCare Contributors"
