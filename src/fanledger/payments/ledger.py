"""Idempotent writes to the subscription ledger and creator payout fields.

Every write is a single statement that resolves conflicts inside the store
(``INSERT ... ON CONFLICT`` or a row-locked ``UPDATE``), so concurrent or
duplicate deliveries for the same (fan, creator) pair serialize on the
unique index instead of racing a read-then-write. Rows are written from the
whole provider snapshot, never from deltas: applying an event again leaves
the row as it was, and ``updated_at`` only moves when a field changes.
"""

import logging
from dataclasses import astuple, dataclass
from datetime import datetime

import asyncpg

from fanledger.db.models import (
    EntitlementKey,
    EntitlementStatus,
    OnboardingStatus,
    SubscriptionStatus,
    Table,
)
from fanledger.payments.events import AccountSnapshot, Correlation, SubscriptionSnapshot
from fanledger.payments.status import resolve_billing_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerRow:
    """Billing fields of one (fan, creator) subscription row.

    Field order matches the column order of the upsert statement.
    """

    fan_id: str
    creator_id: str
    plan_id: str | None
    status: SubscriptionStatus
    is_active: bool
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    ended_at: datetime | None
    provider_customer_id: str | None
    provider_subscription_id: str

    def as_params(self) -> tuple:
        params = astuple(self)
        # status is stored as its text value
        return params[:3] + (self.status.value,) + params[4:]


@dataclass(frozen=True)
class CancelResult:
    """Outcome of a cancellation keyed by provider subscription id."""

    matched: int
    changed: int


@dataclass(frozen=True)
class AccountSyncResult:
    """Outcome of reconciling a connected account onto its creator profile."""

    user_id: str
    previous_status: str | None
    onboarding_status: OnboardingStatus

    @property
    def became_enabled(self) -> bool:
        return (
            self.onboarding_status is OnboardingStatus.COMPLETE
            and self.previous_status != OnboardingStatus.COMPLETE.value
        )

    @property
    def lost_enabled(self) -> bool:
        return (
            self.onboarding_status is not OnboardingStatus.COMPLETE
            and self.previous_status == OnboardingStatus.COMPLETE.value
        )


_UPSERT_SUBSCRIPTION_SQL = f"""
    INSERT INTO {Table.SUBSCRIPTIONS} AS s (
        fan_id, creator_id, plan_id, status, is_active,
        current_period_start, current_period_end, cancel_at_period_end,
        canceled_at, ended_at, provider_customer_id, provider_subscription_id
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
    ON CONFLICT (fan_id, creator_id) DO UPDATE SET
        plan_id = COALESCE(EXCLUDED.plan_id, s.plan_id),
        status = EXCLUDED.status,
        is_active = EXCLUDED.is_active,
        current_period_start = EXCLUDED.current_period_start,
        current_period_end = EXCLUDED.current_period_end,
        cancel_at_period_end = EXCLUDED.cancel_at_period_end,
        canceled_at = EXCLUDED.canceled_at,
        ended_at = EXCLUDED.ended_at,
        provider_customer_id = COALESCE(EXCLUDED.provider_customer_id, s.provider_customer_id),
        provider_subscription_id = EXCLUDED.provider_subscription_id,
        updated_at = now()
    WHERE (
        s.provider_subscription_id IS NULL
        OR (
            s.provider_subscription_id = EXCLUDED.provider_subscription_id
            AND (s.ended_at IS NULL OR EXCLUDED.ended_at IS NOT NULL)
        )
        OR (
            s.provider_subscription_id <> EXCLUDED.provider_subscription_id
            AND ($13::boolean OR s.ended_at IS NOT NULL)
        )
    )
    AND (
        COALESCE(EXCLUDED.plan_id, s.plan_id), EXCLUDED.status, EXCLUDED.is_active,
        EXCLUDED.current_period_start, EXCLUDED.current_period_end,
        EXCLUDED.cancel_at_period_end, EXCLUDED.canceled_at, EXCLUDED.ended_at,
        COALESCE(EXCLUDED.provider_customer_id, s.provider_customer_id),
        EXCLUDED.provider_subscription_id
    ) IS DISTINCT FROM (
        s.plan_id, s.status, s.is_active,
        s.current_period_start, s.current_period_end,
        s.cancel_at_period_end, s.canceled_at, s.ended_at,
        s.provider_customer_id, s.provider_subscription_id
    )
    RETURNING s.id
"""

_CANCEL_SUBSCRIPTION_SQL = f"""
    WITH target AS (
        SELECT id FROM {Table.SUBSCRIPTIONS}
        WHERE provider_subscription_id = $1
        FOR UPDATE
    ),
    changed AS (
        UPDATE {Table.SUBSCRIPTIONS} AS s SET
            status = '{SubscriptionStatus.CANCELED.value}',
            is_active = FALSE,
            cancel_at_period_end = FALSE,
            canceled_at = COALESCE(s.canceled_at, $2, now()),
            ended_at = COALESCE(s.ended_at, $3, now()),
            updated_at = now()
        FROM target
        WHERE s.id = target.id
          AND (s.status, s.is_active, s.cancel_at_period_end, s.ended_at IS NULL)
              IS DISTINCT FROM ('{SubscriptionStatus.CANCELED.value}', FALSE, FALSE, FALSE)
        RETURNING s.id
    )
    SELECT
        (SELECT count(*) FROM target) AS matched,
        (SELECT count(*) FROM changed) AS changed
"""

_SYNC_ACCOUNT_SQL = f"""
    WITH prev AS (
        SELECT user_id, stripe_onboarding_status
        FROM {Table.PROFILES}
        WHERE stripe_connect_account_id = $1
        FOR UPDATE
    )
    UPDATE {Table.PROFILES} AS p SET
        charges_enabled = $2,
        payouts_enabled = $3,
        stripe_onboarding_status = $4,
        updated_at = now()
    FROM prev
    WHERE p.user_id = prev.user_id
    RETURNING p.user_id, prev.stripe_onboarding_status AS previous_status
"""

_SET_ENTITLEMENT_SQL = f"""
    INSERT INTO {Table.ENTITLEMENTS} (user_id, key, status)
    VALUES ($1, $2, $3)
    ON CONFLICT (user_id, key) DO UPDATE SET
        status = EXCLUDED.status,
        updated_at = now()
    WHERE {Table.ENTITLEMENTS}.status IS DISTINCT FROM EXCLUDED.status
"""


def build_ledger_row(
    snapshot: SubscriptionSnapshot,
    correlation: Correlation,
    now: datetime | None = None,
) -> LedgerRow:
    """Derive the ledger row for a subscription snapshot."""
    state = resolve_billing_state(
        snapshot.status,
        snapshot.cancel_at_period_end,
        snapshot.current_period_end,
        now=now,
    )
    return LedgerRow(
        fan_id=correlation.fan_id,
        creator_id=correlation.creator_id,
        plan_id=correlation.plan_id,
        status=state.status,
        is_active=state.is_active,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        canceled_at=snapshot.canceled_at,
        ended_at=snapshot.ended_at,
        provider_customer_id=snapshot.customer_id,
        provider_subscription_id=snapshot.subscription_id,
    )


def onboarding_status_for(account: AccountSnapshot) -> OnboardingStatus:
    """Onboarding is complete only when charges and payouts are both enabled."""
    if account.fully_enabled:
        return OnboardingStatus.COMPLETE
    return OnboardingStatus.PENDING


async def upsert_subscription(
    pool: asyncpg.Pool,
    row: LedgerRow,
    allow_resubscribe: bool = False,
) -> bool:
    """Insert or merge a ledger row keyed by (fan_id, creator_id).

    An existing row is only moved to a different provider subscription when
    ``allow_resubscribe`` is set (a new checkout or subscription) or when its
    stored subscription has already ended. A row whose subscription ended is
    not revived by late events for that same subscription.

    Args:
        pool: Ledger store pool
        row: Billing fields to store
        allow_resubscribe: Whether this event may replace the stored
            provider subscription id

    Returns:
        True if the row was inserted or changed, False if it was left
        untouched (identical state, or a superseded subscription)

    Raises:
        asyncpg.PostgresError: On database errors
    """
    async with pool.acquire() as conn:
        written = await conn.fetchrow(
            _UPSERT_SUBSCRIPTION_SQL,
            *row.as_params(),
            allow_resubscribe,
        )

    if written is None:
        logger.info(
            f"Ledger row fan={row.fan_id} creator={row.creator_id} unchanged "
            f"by {row.provider_subscription_id} (duplicate or superseded)"
        )
        return False

    logger.info(
        f"Ledger row fan={row.fan_id} creator={row.creator_id}: "
        f"status={row.status.value}, is_active={row.is_active}, "
        f"subscription={row.provider_subscription_id}"
    )
    return True


async def cancel_subscription(
    pool: asyncpg.Pool,
    provider_subscription_id: str,
    canceled_at: datetime | None = None,
    ended_at: datetime | None = None,
) -> CancelResult:
    """Mark the row holding a provider subscription as canceled without access.

    Timestamps already on the row are kept, so repeated deliveries leave it
    unchanged.

    Raises:
        asyncpg.PostgresError: On database errors
    """
    async with pool.acquire() as conn:
        record = await conn.fetchrow(
            _CANCEL_SUBSCRIPTION_SQL,
            provider_subscription_id,
            canceled_at,
            ended_at,
        )

    result = CancelResult(matched=record["matched"], changed=record["changed"])
    logger.info(
        f"Cancel {provider_subscription_id}: matched={result.matched}, "
        f"changed={result.changed}"
    )
    return result


async def sync_account(
    pool: asyncpg.Pool,
    account: AccountSnapshot,
) -> AccountSyncResult | None:
    """Copy connected-account capabilities onto the owning creator profile.

    Returns:
        AccountSyncResult, or None if no profile owns the account

    Raises:
        asyncpg.PostgresError: On database errors
    """
    onboarding_status = onboarding_status_for(account)

    async with pool.acquire() as conn:
        record = await conn.fetchrow(
            _SYNC_ACCOUNT_SQL,
            account.account_id,
            account.charges_enabled,
            account.payouts_enabled,
            onboarding_status.value,
        )

    if record is None:
        return None

    result = AccountSyncResult(
        user_id=record["user_id"],
        previous_status=record["previous_status"],
        onboarding_status=onboarding_status,
    )
    logger.info(
        f"Account {account.account_id} -> profile {result.user_id}: "
        f"charges={account.charges_enabled}, payouts={account.payouts_enabled}, "
        f"onboarding {result.previous_status} -> {onboarding_status.value}"
    )
    return result


async def set_entitlement(
    pool: asyncpg.Pool,
    user_id: str,
    key: EntitlementKey,
    status: EntitlementStatus,
) -> None:
    """Upsert a derived entitlement grant keyed by (user_id, key).

    Raises:
        asyncpg.PostgresError: On database errors
    """
    async with pool.acquire() as conn:
        await conn.execute(_SET_ENTITLEMENT_SQL, user_id, key.value, status.value)


async def reconcile_subscription(
    pool: asyncpg.Pool,
    snapshot: SubscriptionSnapshot,
    correlation: Correlation,
    allow_resubscribe: bool = False,
    now: datetime | None = None,
) -> bool:
    """Write the ledger row for a subscription snapshot."""
    row = build_ledger_row(snapshot, correlation, now=now)
    return await upsert_subscription(pool, row, allow_resubscribe=allow_resubscribe)


async def reconcile_cancellation(
    pool: asyncpg.Pool,
    snapshot: SubscriptionSnapshot,
) -> None:
    """Cancel the ledger row of a deleted subscription.

    If no row holds the subscription yet (deletion delivered before the
    creation event) and the subscription carries its correlation metadata,
    the canceled state is written under the (fan, creator) key instead.
    """
    result = await cancel_subscription(
        pool,
        snapshot.subscription_id,
        canceled_at=snapshot.canceled_at,
        ended_at=snapshot.ended_at,
    )
    if result.matched:
        return

    correlation = snapshot.correlation
    if correlation is None:
        logger.warning(
            f"Deleted subscription {snapshot.subscription_id} has no ledger row "
            f"and no fan/creator metadata - skipping"
        )
        return

    row = LedgerRow(
        fan_id=correlation.fan_id,
        creator_id=correlation.creator_id,
        plan_id=correlation.plan_id,
        status=SubscriptionStatus.CANCELED,
        is_active=False,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=False,
        canceled_at=snapshot.canceled_at or snapshot.ended_at,
        ended_at=snapshot.ended_at or snapshot.canceled_at,
        provider_customer_id=snapshot.customer_id,
        provider_subscription_id=snapshot.subscription_id,
    )
    await upsert_subscription(pool, row)


async def reconcile_account(
    pool: asyncpg.Pool,
    account: AccountSnapshot,
) -> AccountSyncResult | None:
    """Sync a connected account and record the payout entitlement transition.

    The profile update is the primary write and propagates errors. The
    entitlement write only happens on a transition into or out of fully
    enabled, and its failure is logged without failing the reconciliation.
    """
    result = await sync_account(pool, account)
    if result is None:
        logger.warning(
            f"account.updated: no profile owns account {account.account_id} - skipping"
        )
        return None

    if result.became_enabled:
        status = EntitlementStatus.ACTIVE
    elif result.lost_enabled:
        status = EntitlementStatus.INACTIVE
    else:
        return result

    try:
        await set_entitlement(pool, result.user_id, EntitlementKey.PAYOUTS_ENABLED, status)
        logger.info(
            f"Entitlement {EntitlementKey.PAYOUTS_ENABLED.value}={status.value} "
            f"for {result.user_id}"
        )
    except Exception as e:
        logger.error(
            f"Failed to record {EntitlementKey.PAYOUTS_ENABLED.value} entitlement "
            f"for {result.user_id}: {e}"
        )

    return result
