"""Lightweight table-name constants and column-name enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    SUBSCRIPTIONS = "subscriptions"
    PROFILES = "profiles"
    ENTITLEMENTS = "entitlements"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column name enums
class SubscriptionStatus(str, Enum):
    """Ledger subscription status (CHECK-constrained in the schema)."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class OnboardingStatus(str, Enum):
    """Connected-account onboarding status stored on the creator profile."""

    NOT_STARTED = "not_started"
    PENDING = "pending"
    COMPLETE = "complete"


class EntitlementKey(str, Enum):
    """Derived access grants."""

    PAYOUTS_ENABLED = "payouts_enabled"


class EntitlementStatus(str, Enum):
    """Entitlement grant status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
