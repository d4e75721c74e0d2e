"""
Base notifier interface for WiCare.

Notifiers carry a caregiver's escalation of a fall alert to the outside
world (emergency contacts, push services).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from wicare.core.events import AlertEvent


class BaseNotifier(ABC):
    """
    Abstract base class for all notifiers.

    notify() reports failure by returning False; it never raises.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique notifier identifier."""
        pass

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether this notifier is enabled."""
        pass

    @abstractmethod
    async def notify(self, alert: AlertEvent) -> bool:
        """
        Escalate an alert.

        Args:
            alert: The fall alert being escalated

        Returns:
            True if the notification was delivered
        """
        pass

    @abstractmethod
    async def test(self) -> bool:
        """
        Send a test notification.

        Returns:
            True if test was successful
        """
        pass

    async def start(self) -> None:
        """Start the notifier (optional setup)."""
        pass

    async def stop(self) -> None:
        """Stop the notifier (optional cleanup)."""
        pass
