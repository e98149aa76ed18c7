"""Exceptions raised by the subscription services."""

from typing import Optional


class SubscriptionError(Exception):
    """Base class for subscription domain errors."""


class NotFoundError(SubscriptionError):
    """Unknown user, subscription or payment."""


class InvalidPlanError(SubscriptionError, ValueError):
    """Plan type outside the catalog."""


class SubscriptionStateError(SubscriptionError):
    """A status transition was attempted from the wrong state (e.g. activating twice)."""


class PaymentProviderError(SubscriptionError):
    """The payment provider could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AccessDeniedError(SubscriptionError):
    """The user's trial or paid period is over; carries the access decision."""

    def __init__(self, decision):
        super().__init__(f"Access denied ({decision.mode.value})")
        self.decision = decision
