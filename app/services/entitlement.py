"""
Entitlement Service - Decides whether an account may start a valuation request.

Order of funding: unlimited plan, then the billing-period allowance, then
purchased credits (oldest grant first). Consumption is serialized per account
in-process and is a conditional UPDATE in the database, so two concurrent
submissions can never both take the last unit.
"""

import asyncio
import weakref
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from structlog import get_logger

from app.db.store import ValuationStore
from app.exceptions import AccountNotFoundError, EntitlementDenied, StorageError
from app.models.api import EntitlementSource
from app.models.domain import (
    UNLIMITED_ALLOWANCE,
    AccountUsage,
    CreditGrantData,
    EntitlementDecision,
    EntitlementReceipt,
)
from app.observability import metrics

logger = get_logger(__name__)

REASON_LIMIT_REACHED = "limit_reached"
REASON_STORAGE_UNAVAILABLE = "storage_unavailable"

LIMIT_GUIDANCE = (
    "You have used all appraisals included in your plan for this period. "
    "Upgrade your plan or buy extra credits to continue."
)
STORAGE_GUIDANCE = "We couldn't verify your plan right now. Please try again in a moment."


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def decide_entitlement(
    usage_allowance: int, usage_used: int, credits_remaining: int
) -> EntitlementSource | None:
    """
    Pure entitlement rule.

    Returns the source that would fund one more request, or None if denied.
    """
    if usage_allowance == UNLIMITED_ALLOWANCE:
        return EntitlementSource.UNLIMITED
    if usage_used < usage_allowance:
        return EntitlementSource.ALLOWANCE
    if credits_remaining > 0:
        return EntitlementSource.CREDIT
    return None


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of shorter months."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    for day in (moment.day, 30, 29, 28):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot advance {moment} by one month")


def next_period(period_end: datetime, now: datetime) -> tuple[datetime, datetime]:
    """Advance a billing period in whole months until it contains now."""
    start = period_end
    end = add_one_month(start)
    while end <= now:
        start, end = end, add_one_month(end)
    return start, end


class AccountLockRegistry:
    """One asyncio.Lock per account, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, account_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock


_default_locks = AccountLockRegistry()


class EntitlementService:
    """Entitlement checks, atomic consumption and refunds."""

    def __init__(
        self,
        store: ValuationStore,
        locks: AccountLockRegistry | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.locks = locks or _default_locks
        self.clock = clock

    async def evaluate(self, account_id: UUID) -> EntitlementDecision:
        """
        Read-only check used when the submission form is opened.

        Fails closed: if usage can't be read the decision is a denial.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        try:
            usage = await self._current_usage(account_id)
        except StorageError as exc:
            logger.warning(
                "entitlement_check_storage_unavailable",
                account_id=str(account_id),
                error=str(exc),
            )
            metrics.record_entitlement_decision(None, REASON_STORAGE_UNAVAILABLE)
            return EntitlementDecision(
                allowed=False,
                source=None,
                reason=REASON_STORAGE_UNAVAILABLE,
                guidance=STORAGE_GUIDANCE,
            )

        source = decide_entitlement(
            usage.usage_allowance, usage.usage_used, usage.credits_remaining
        )
        if source is None:
            metrics.record_entitlement_decision(None, REASON_LIMIT_REACHED)
            return EntitlementDecision(
                allowed=False,
                source=None,
                reason=REASON_LIMIT_REACHED,
                guidance=LIMIT_GUIDANCE,
                usage=usage,
            )

        metrics.record_entitlement_decision(source, None)
        return EntitlementDecision(allowed=True, source=source, usage=usage)

    async def consume(self, account_id: UUID) -> EntitlementReceipt:
        """
        Check and consume one unit atomically.

        Raises:
            EntitlementDenied: No allowance or credits left
            AccountNotFoundError: Account doesn't exist
            StorageError: Usage couldn't be read or written (nothing granted)
        """
        async with self.locks.lock_for(account_id):
            usage = await self._current_usage(account_id)

            if usage.is_unlimited:
                receipt = EntitlementReceipt(account_id, EntitlementSource.UNLIMITED)
            elif await self.store.consume_allowance(account_id):
                receipt = EntitlementReceipt(account_id, EntitlementSource.ALLOWANCE)
            else:
                grant_id = await self.store.consume_credit(account_id)
                if grant_id is None:
                    logger.info(
                        "entitlement_denied",
                        account_id=str(account_id),
                        plan_name=usage.plan_name,
                        usage_used=usage.usage_used,
                        usage_allowance=usage.usage_allowance,
                    )
                    metrics.record_entitlement_decision(None, REASON_LIMIT_REACHED)
                    raise EntitlementDenied(account_id, REASON_LIMIT_REACHED, LIMIT_GUIDANCE)
                receipt = EntitlementReceipt(
                    account_id, EntitlementSource.CREDIT, credit_grant_id=grant_id
                )

        logger.info(
            "entitlement_consumed",
            account_id=str(account_id),
            source=receipt.source.value,
            credit_grant_id=str(receipt.credit_grant_id) if receipt.credit_grant_id else None,
        )
        metrics.record_entitlement_decision(receipt.source, None)
        return receipt

    async def refund(self, receipt: EntitlementReceipt) -> bool:
        """Give back a consumed unit. Returns False when there was nothing to refund."""
        if not receipt.refundable or receipt.account_id is None:
            return False

        if receipt.source == EntitlementSource.CREDIT and receipt.credit_grant_id:
            refunded = await self.store.refund_credit(receipt.credit_grant_id)
        else:
            refunded = await self.store.refund_allowance(receipt.account_id)

        logger.info(
            "entitlement_refunded",
            account_id=str(receipt.account_id),
            source=receipt.source.value,
            refunded=refunded,
        )
        return refunded

    async def grant_credits(
        self, account_id: UUID, credits: int, external_reference: str | None = None
    ) -> CreditGrantData:
        """
        Record purchased credits.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        if credits <= 0:
            raise ValueError(f"Credit grant must be positive: {credits}")
        if await self.store.get_account_usage(account_id) is None:
            raise AccountNotFoundError(account_id)

        grant = await self.store.add_credit_grant(account_id, credits, external_reference)
        logger.info(
            "credits_granted",
            account_id=str(account_id),
            grant_id=str(grant.grant_id),
            credits=credits,
        )
        return grant

    async def get_usage(self, account_id: UUID) -> AccountUsage:
        """Usage snapshot with the billing period rolled forward if needed."""
        return await self._current_usage(account_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _current_usage(self, account_id: UUID) -> AccountUsage:
        usage = await self.store.get_account_usage(account_id)
        if usage is None:
            raise AccountNotFoundError(account_id)

        now = self.clock()
        if now >= usage.period_end:
            start, end = next_period(usage.period_end, now)
            if await self.store.roll_period(account_id, now, start, end):
                logger.info(
                    "billing_period_rolled",
                    account_id=str(account_id),
                    period_start=start.isoformat(),
                    period_end=end.isoformat(),
                )
            usage = await self.store.get_account_usage(account_id)
            if usage is None:
                raise AccountNotFoundError(account_id)
        return usage
