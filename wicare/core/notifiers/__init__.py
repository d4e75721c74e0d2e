"""Escalation notifiers for WiCare."""

from wicare.core.notifiers.base import BaseNotifier
from wicare.core.notifiers.push import PushNotifier

__all__ = ["BaseNotifier", "PushNotifier"]
