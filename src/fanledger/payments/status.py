"""Mapping of Stripe subscription states onto the ledger's status vocabulary."""

from dataclasses import dataclass
from datetime import datetime, timezone

from fanledger.db.models import SubscriptionStatus

# Stripe subscription status -> ledger status
STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "paused": SubscriptionStatus.PAST_DUE,
}

# Unknown states need attention and never grant access
FALLBACK_STATUS = SubscriptionStatus.PAST_DUE


@dataclass(frozen=True)
class BillingState:
    """Ledger status plus the access flag derived from it."""

    status: SubscriptionStatus
    is_active: bool


def map_status(provider_status: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status to the ledger status."""
    key = (provider_status or "").strip().lower()
    return STATUS_MAP.get(key, FALLBACK_STATUS)


def resolve_billing_state(
    provider_status: str | None,
    cancel_at_period_end: bool,
    current_period_end: datetime | None,
    now: datetime | None = None,
) -> BillingState:
    """Compute the stored status and the access flag for a subscription.

    A subscription set to cancel at period end is stored as canceled, but
    keeps access until the paid period runs out, as long as the provider
    still considers it live (active/trialing) or already canceled.

    Args:
        provider_status: Stripe subscription status
        cancel_at_period_end: Stripe cancel_at_period_end flag
        current_period_end: End of the paid period, if known
        now: Reference time (defaults to current UTC time)

    Returns:
        BillingState with status and is_active
    """
    mapped = map_status(provider_status)

    if not cancel_at_period_end:
        return BillingState(status=mapped, is_active=mapped is SubscriptionStatus.ACTIVE)

    now = now or datetime.now(timezone.utc)
    in_paid_period = current_period_end is None or current_period_end > now
    grants_access = mapped in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED)

    return BillingState(
        status=SubscriptionStatus.CANCELED,
        is_active=grants_access and in_paid_period,
    )
