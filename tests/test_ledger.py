"""Unit tests for the ledger upsert engine (store mocked)."""

from datetime import datetime, timedelta, timezone

import pytest

from fanledger.db.models import OnboardingStatus, SubscriptionStatus
from fanledger.payments.events import AccountSnapshot, Correlation, SubscriptionSnapshot
from fanledger.payments.ledger import (
    AccountSyncResult,
    LedgerRow,
    build_ledger_row,
    cancel_subscription,
    onboarding_status_for,
    reconcile_account,
    reconcile_cancellation,
    reconcile_subscription,
    sync_account,
    upsert_subscription,
)

NOW = datetime(2025, 1, 15, tzinfo=timezone.utc)
PERIOD_START = datetime(2025, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 2, 1, tzinfo=timezone.utc)


def _snapshot(**overrides) -> SubscriptionSnapshot:
    fields = dict(
        subscription_id="sub_1",
        customer_id="cus_1",
        status="active",
        cancel_at_period_end=False,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        canceled_at=None,
        ended_at=None,
        metadata={"fan_id": "F1", "creator_id": "C1", "plan_id": "P1"},
    )
    fields.update(overrides)
    return SubscriptionSnapshot(**fields)


CORRELATION = Correlation(fan_id="F1", creator_id="C1", plan_id="P1")


class TestBuildLedgerRow:
    def test_active_subscription(self):
        row = build_ledger_row(_snapshot(), CORRELATION, now=NOW)

        assert row == LedgerRow(
            fan_id="F1",
            creator_id="C1",
            plan_id="P1",
            status=SubscriptionStatus.ACTIVE,
            is_active=True,
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
            cancel_at_period_end=False,
            canceled_at=None,
            ended_at=None,
            provider_customer_id="cus_1",
            provider_subscription_id="sub_1",
        )

    def test_grace_period_row(self):
        row = build_ledger_row(_snapshot(cancel_at_period_end=True), CORRELATION, now=NOW)

        assert row.status is SubscriptionStatus.CANCELED
        assert row.is_active is True
        assert row.cancel_at_period_end is True

    def test_params_store_status_text(self):
        row = build_ledger_row(_snapshot(status="unpaid"), CORRELATION, now=NOW)
        params = row.as_params()

        assert len(params) == 12
        assert params[3] == "past_due"
        assert type(params[3]) is str
        assert params[:3] == ("F1", "C1", "P1")
        assert params[-1] == "sub_1"


class TestUpsertSubscription:
    @pytest.mark.asyncio
    async def test_single_statement_upsert_on_pair_key(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"id": 1}
        row = build_ledger_row(_snapshot(), CORRELATION, now=NOW)

        written = await upsert_subscription(mock_pool, row, allow_resubscribe=True)

        assert written is True
        mock_conn.fetchrow.assert_called_once()
        sql, *params = mock_conn.fetchrow.call_args[0]
        assert "ON CONFLICT (fan_id, creator_id) DO UPDATE" in sql
        assert "IS DISTINCT FROM" in sql
        assert tuple(params[:12]) == row.as_params()
        assert params[12] is True
        mock_conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_untouched_row_reported(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = None
        row = build_ledger_row(_snapshot(), CORRELATION, now=NOW)

        assert await upsert_subscription(mock_pool, row) is False
        assert mock_conn.fetchrow.call_args[0][-1] is False

    @pytest.mark.asyncio
    async def test_replay_sends_identical_write(self, mock_pool, mock_conn):
        """Replaying the same snapshot produces the same statement and values."""
        mock_conn.fetchrow.side_effect = [{"id": 1}, None, None]
        snapshot = _snapshot()

        results = [
            await reconcile_subscription(mock_pool, snapshot, CORRELATION, now=NOW)
            for _ in range(3)
        ]

        assert results == [True, False, False]
        calls = [c.args for c in mock_conn.fetchrow.call_args_list]
        assert calls[0] == calls[1] == calls[2]


class TestCancelSubscription:
    @pytest.mark.asyncio
    async def test_cancel_keyed_by_provider_subscription(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"matched": 1, "changed": 1}
        ended = datetime(2025, 1, 20, tzinfo=timezone.utc)

        result = await cancel_subscription(mock_pool, "sub_1", canceled_at=ended, ended_at=ended)

        assert result.matched == 1
        assert result.changed == 1
        sql, *params = mock_conn.fetchrow.call_args[0]
        assert "WHERE provider_subscription_id = $1" in sql
        assert "status = 'canceled'" in sql
        assert "is_active = FALSE" in sql
        assert "DELETE" not in sql.upper()
        assert params == ["sub_1", ended, ended]

    @pytest.mark.asyncio
    async def test_reconcile_cancellation_existing_row(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"matched": 1, "changed": 0}

        await reconcile_cancellation(mock_pool, _snapshot(status="canceled"))

        mock_conn.fetchrow.assert_called_once()

    @pytest.mark.asyncio
    async def test_reconcile_cancellation_before_creation_uses_pair_key(self, mock_pool, mock_conn):
        """A deletion seen before any row exists writes a canceled, ended row."""
        ended = datetime(2025, 1, 20, tzinfo=timezone.utc)
        mock_conn.fetchrow.side_effect = [{"matched": 0, "changed": 0}, {"id": 7}]

        await reconcile_cancellation(
            mock_pool, _snapshot(status="canceled", canceled_at=ended, ended_at=ended)
        )

        assert mock_conn.fetchrow.call_count == 2
        sql, *params = mock_conn.fetchrow.call_args_list[1].args
        assert "ON CONFLICT (fan_id, creator_id)" in sql
        assert params[0:2] == ["F1", "C1"]
        assert params[3] == "canceled"
        assert params[4] is False
        assert params[9] == ended
        assert params[11] == "sub_1"
        assert params[12] is False

    @pytest.mark.asyncio
    async def test_reconcile_cancellation_without_row_or_metadata(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"matched": 0, "changed": 0}

        await reconcile_cancellation(mock_pool, _snapshot(metadata={}))

        mock_conn.fetchrow.assert_called_once()


class TestAccountSync:
    def test_onboarding_status(self):
        assert onboarding_status_for(AccountSnapshot("acct_1", True, True, True)) is OnboardingStatus.COMPLETE
        assert onboarding_status_for(AccountSnapshot("acct_1", True, False, True)) is OnboardingStatus.PENDING
        assert onboarding_status_for(AccountSnapshot("acct_1", False, True, True)) is OnboardingStatus.PENDING

    @pytest.mark.asyncio
    async def test_sync_account_updates_profile(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"user_id": "C2", "previous_status": "not_started"}

        result = await sync_account(mock_pool, AccountSnapshot("acct_1", True, False, True))

        assert result == AccountSyncResult(
            user_id="C2",
            previous_status="not_started",
            onboarding_status=OnboardingStatus.PENDING,
        )
        sql, *params = mock_conn.fetchrow.call_args[0]
        assert "WHERE stripe_connect_account_id = $1" in sql
        assert "FOR UPDATE" in sql
        assert params == ["acct_1", True, False, "pending"]

    @pytest.mark.asyncio
    async def test_sync_account_unknown_account(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = None

        assert await sync_account(mock_pool, AccountSnapshot("acct_x", True, True, True)) is None

    @pytest.mark.asyncio
    async def test_entitlement_granted_on_transition_to_enabled(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"user_id": "C2", "previous_status": "pending"}

        result = await reconcile_account(mock_pool, AccountSnapshot("acct_1", True, True, True))

        assert result.became_enabled is True
        mock_conn.execute.assert_called_once()
        sql, *params = mock_conn.execute.call_args[0]
        assert "ON CONFLICT (user_id, key)" in sql
        assert params == ["C2", "payouts_enabled", "active"]

    @pytest.mark.asyncio
    async def test_no_entitlement_write_when_already_enabled(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"user_id": "C2", "previous_status": "complete"}

        result = await reconcile_account(mock_pool, AccountSnapshot("acct_1", True, True, True))

        assert result.became_enabled is False
        mock_conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_entitlement_write_while_pending(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"user_id": "C2", "previous_status": "not_started"}

        await reconcile_account(mock_pool, AccountSnapshot("acct_1", True, False, True))

        mock_conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_entitlement_marked_inactive_when_payouts_disabled(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"user_id": "C2", "previous_status": "complete"}

        result = await reconcile_account(mock_pool, AccountSnapshot("acct_1", True, False, True))

        assert result.lost_enabled is True
        params = mock_conn.execute.call_args[0][1:]
        assert params == ("C2", "payouts_enabled", "inactive")

    @pytest.mark.asyncio
    async def test_entitlement_failure_does_not_fail_sync(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"user_id": "C2", "previous_status": "pending"}
        mock_conn.execute.side_effect = ConnectionError("store went away")

        result = await reconcile_account(mock_pool, AccountSnapshot("acct_1", True, True, True))

        assert result.onboarding_status is OnboardingStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_profile_write_failure_propagates(self, mock_pool, mock_conn):
        mock_conn.fetchrow.side_effect = ConnectionError("store went away")

        with pytest.raises(ConnectionError):
            await reconcile_account(mock_pool, AccountSnapshot("acct_1", True, True, True))


def test_grace_period_expires_relative_to_now():
    later = PERIOD_END + timedelta(days=1)

    row = build_ledger_row(_snapshot(cancel_at_period_end=True), CORRELATION, now=later)

    assert row.is_active is False
