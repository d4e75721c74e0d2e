"""Fall detector interface and mock implementation."""

from wicare.detectors.base import BaseFallDetector, MockFallDetector

__all__ = ["BaseFallDetector", "MockFallDetector"]
