"""Exceptions raised while reconciling webhook events."""


class PaymentsError(Exception):
    """Base class for reconciliation errors."""


class MalformedEventError(PaymentsError):
    """Verified body is not a usable event envelope (answered with 400)."""


class ProviderUnavailable(PaymentsError):
    """Stripe could not be reached or answered with an error.

    The request fails with 500 so that Stripe redelivers the event.
    """
