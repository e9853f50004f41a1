"""
Tests for EntitlementService.

Covers the funding order, atomic consumption under concurrency, refunds,
billing period rollover and fail-closed behavior.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from fakes import InMemoryValuationStore

from app.exceptions import AccountNotFoundError, EntitlementDenied
from app.models.api import EntitlementSource
from app.models.domain import EntitlementReceipt
from app.services.entitlement import (
    REASON_LIMIT_REACHED,
    REASON_STORAGE_UNAVAILABLE,
    AccountLockRegistry,
    EntitlementService,
    add_one_month,
    decide_entitlement,
    next_period,
)

# ============================================================================
# Pure Rule
# ============================================================================


class TestDecideEntitlement:
    """Tests for decide_entitlement."""

    def test_unlimited_ignores_usage(self) -> None:
        """Test unlimited plan allows regardless of counter."""
        assert decide_entitlement(-1, 10_000, 0) == EntitlementSource.UNLIMITED

    def test_allowance_before_credits(self) -> None:
        """Test remaining allowance is used before credits."""
        assert decide_entitlement(3, 2, 5) == EntitlementSource.ALLOWANCE

    def test_credits_after_allowance(self) -> None:
        """Test credits fund the request once the allowance is used."""
        assert decide_entitlement(1, 1, 1) == EntitlementSource.CREDIT

    def test_denied_when_exhausted(self) -> None:
        """Test denial when allowance used and no credits left."""
        assert decide_entitlement(1, 1, 0) is None

    def test_zero_allowance_uses_credits(self) -> None:
        """Test zero allowance plan falls through to credits."""
        assert decide_entitlement(0, 0, 2) == EntitlementSource.CREDIT
        assert decide_entitlement(0, 0, 0) is None


class TestBillingPeriod:
    """Tests for period arithmetic."""

    def test_add_one_month_clamps_short_months(self) -> None:
        """Test Jan 31 advances to the last day of February."""
        moment = datetime(2025, 1, 31, 12, 0, tzinfo=UTC)
        assert add_one_month(moment) == datetime(2025, 2, 28, 12, 0, tzinfo=UTC)

    def test_add_one_month_wraps_year(self) -> None:
        """Test December advances to January of the next year."""
        moment = datetime(2025, 12, 15, tzinfo=UTC)
        assert add_one_month(moment) == datetime(2026, 1, 15, tzinfo=UTC)

    def test_next_period_skips_missed_months(self) -> None:
        """Test several elapsed periods advance to the one containing now."""
        period_end = datetime(2025, 1, 10, tzinfo=UTC)
        now = datetime(2025, 4, 20, tzinfo=UTC)

        start, end = next_period(period_end, now)

        assert start == datetime(2025, 4, 10, tzinfo=UTC)
        assert end == datetime(2025, 5, 10, tzinfo=UTC)
        assert start <= now < end


# ============================================================================
# Evaluate (read-only)
# ============================================================================


class TestEvaluate:
    """Tests for EntitlementService.evaluate."""

    async def test_allowed_with_allowance(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test allowed decision carries the usage snapshot."""
        account_id = store.add_account(allowance=3, used=1)

        decision = await entitlement.evaluate(account_id)

        assert decision.allowed is True
        assert decision.source == EntitlementSource.ALLOWANCE
        assert decision.usage is not None
        assert decision.usage.usage_used == 1

    async def test_evaluate_does_not_consume(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test evaluate leaves counters untouched."""
        account_id = store.add_account(allowance=1, used=0)

        await entitlement.evaluate(account_id)
        await entitlement.evaluate(account_id)

        assert store.accounts[account_id].usage_used == 0

    async def test_denied_with_guidance(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test denial names the limit and offers an upgrade path."""
        account_id = store.add_account(allowance=1, used=1)

        decision = await entitlement.evaluate(account_id)

        assert decision.allowed is False
        assert decision.reason == REASON_LIMIT_REACHED
        assert decision.guidance is not None
        assert "Upgrade" in decision.guidance

    async def test_fails_closed_when_storage_unavailable(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test storage failure yields a denial rather than an error."""
        account_id = store.add_account(allowance=-1)
        store.failing.add("get_account_usage")

        decision = await entitlement.evaluate(account_id)

        assert decision.allowed is False
        assert decision.reason == REASON_STORAGE_UNAVAILABLE
        assert decision.usage is None

    async def test_unknown_account(self, entitlement: EntitlementService) -> None:
        """Test missing account raises AccountNotFoundError."""
        with pytest.raises(AccountNotFoundError):
            await entitlement.evaluate(uuid4())

    async def test_rolls_expired_period(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test an ended period resets the counter before deciding."""
        account_id = store.add_account(
            allowance=1, used=1, period_end=store.now - timedelta(days=2)
        )

        decision = await entitlement.evaluate(account_id)

        assert decision.allowed is True
        assert decision.source == EntitlementSource.ALLOWANCE
        assert store.accounts[account_id].usage_used == 0
        assert store.accounts[account_id].period_end > store.now


# ============================================================================
# Consume
# ============================================================================


class TestConsume:
    """Tests for EntitlementService.consume."""

    async def test_unlimited_never_touches_counters(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test unlimited consumption records nothing."""
        account_id = store.add_account(allowance=-1, used=0)

        receipt = await entitlement.consume(account_id)

        assert receipt.source == EntitlementSource.UNLIMITED
        assert store.accounts[account_id].usage_used == 0

    async def test_allowance_increments_counter(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test allowance consumption increments the period counter."""
        account_id = store.add_account(allowance=2, used=0)

        receipt = await entitlement.consume(account_id)

        assert receipt.source == EntitlementSource.ALLOWANCE
        assert store.accounts[account_id].usage_used == 1

    async def test_credit_uses_oldest_grant(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test credits are taken from the oldest grant first."""
        account_id = store.add_account(allowance=1, used=1)
        newer = store.add_grant(account_id, 5, age_days=1)
        older = store.add_grant(account_id, 5, age_days=10)

        receipt = await entitlement.consume(account_id)

        assert receipt.source == EntitlementSource.CREDIT
        assert receipt.credit_grant_id == older
        remaining = {g.grant_id: g.credits_remaining for g in store.grants}
        assert remaining[older] == 4
        assert remaining[newer] == 5

    async def test_denied_raises(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test exhausted account raises EntitlementDenied without changes."""
        account_id = store.add_account(allowance=1, used=1)

        with pytest.raises(EntitlementDenied) as exc_info:
            await entitlement.consume(account_id)

        assert exc_info.value.reason == REASON_LIMIT_REACHED
        assert store.accounts[account_id].usage_used == 1

    async def test_concurrent_last_allowance_unit(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test two simultaneous consumers of the last unit: exactly one wins."""
        account_id = store.add_account(allowance=1, used=0)

        outcomes = await asyncio.gather(
            entitlement.consume(account_id),
            entitlement.consume(account_id),
            return_exceptions=True,
        )

        receipts = [o for o in outcomes if isinstance(o, EntitlementReceipt)]
        denials = [o for o in outcomes if isinstance(o, EntitlementDenied)]
        assert len(receipts) == 1
        assert len(denials) == 1
        assert store.accounts[account_id].usage_used == 1

    async def test_concurrent_last_credit(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test two simultaneous consumers of the last credit: exactly one wins."""
        account_id = store.add_account(allowance=0, used=0)
        store.add_grant(account_id, 1)

        outcomes = await asyncio.gather(
            entitlement.consume(account_id),
            entitlement.consume(account_id),
            return_exceptions=True,
        )

        assert sum(isinstance(o, EntitlementReceipt) for o in outcomes) == 1
        assert sum(isinstance(o, EntitlementDenied) for o in outcomes) == 1
        assert store.credits_of(account_id) == 0

    async def test_concurrent_consumers_without_shared_lock(
        self, store: InMemoryValuationStore
    ) -> None:
        """Test the conditional update alone prevents a double spend across services."""
        account_id = store.add_account(allowance=1, used=0)
        first = EntitlementService(store, locks=AccountLockRegistry(), clock=lambda: store.now)
        second = EntitlementService(store, locks=AccountLockRegistry(), clock=lambda: store.now)

        outcomes = await asyncio.gather(
            first.consume(account_id), second.consume(account_id), return_exceptions=True
        )

        assert sum(isinstance(o, EntitlementReceipt) for o in outcomes) == 1
        assert store.accounts[account_id].usage_used == 1


# ============================================================================
# Refund & Grants
# ============================================================================


class TestRefund:
    """Tests for EntitlementService.refund."""

    async def test_refund_allowance(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test allowance refund decrements the counter."""
        account_id = store.add_account(allowance=1, used=0)
        receipt = await entitlement.consume(account_id)

        assert await entitlement.refund(receipt) is True
        assert store.accounts[account_id].usage_used == 0

    async def test_refund_credit_returns_to_same_grant(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test credit refund restores the grant it came from."""
        account_id = store.add_account(allowance=0)
        grant_id = store.add_grant(account_id, 2)
        receipt = await entitlement.consume(account_id)

        assert await entitlement.refund(receipt) is True
        grant = next(g for g in store.grants if g.grant_id == grant_id)
        assert grant.credits_remaining == 2

    async def test_refund_unlimited_is_noop(self, entitlement: EntitlementService) -> None:
        """Test unlimited and anonymous receipts have nothing to refund."""
        assert await entitlement.refund(EntitlementReceipt(uuid4(), EntitlementSource.UNLIMITED)) is False
        assert await entitlement.refund(EntitlementReceipt(None, EntitlementSource.ANONYMOUS)) is False


class TestGrantCredits:
    """Tests for EntitlementService.grant_credits."""

    async def test_grant_adds_credits(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test a grant is recorded and spendable."""
        account_id = store.add_account(allowance=1, used=1)

        grant = await entitlement.grant_credits(account_id, 10, "order-123")

        assert grant.credits_remaining == 10
        assert grant.external_reference == "order-123"
        usage = await entitlement.get_usage(account_id)
        assert usage.credits_remaining == 10

    async def test_grant_rejects_non_positive(
        self, store: InMemoryValuationStore, entitlement: EntitlementService
    ) -> None:
        """Test zero credits is rejected."""
        account_id = store.add_account()
        with pytest.raises(ValueError):
            await entitlement.grant_credits(account_id, 0)

    async def test_grant_unknown_account(self, entitlement: EntitlementService) -> None:
        """Test grants need an existing account."""
        with pytest.raises(AccountNotFoundError):
            await entitlement.grant_credits(uuid4(), 5)


class TestAccountLockRegistry:
    """Tests for AccountLockRegistry."""

    def test_same_account_same_lock(self) -> None:
        """Test one lock per account while it is referenced."""
        registry = AccountLockRegistry()
        account_id = uuid4()
        lock = registry.lock_for(account_id)
        assert registry.lock_for(account_id) is lock

    def test_different_accounts_independent(self) -> None:
        """Test accounts don't share locks."""
        registry = AccountLockRegistry()
        assert registry.lock_for(uuid4()) is not registry.lock_for(uuid4())
