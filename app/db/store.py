"""
Valuation Store Protocol - Persistence contract used by the services.

The PostgreSQL implementation lives in app.db.repository; tests substitute
an in-memory implementation of the same contract.
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from app.models.api import FailureKind, ValuationResult, ValuationStatus
from app.models.domain import (
    AccountUsage,
    CreditGrantData,
    HistoryDraft,
    HistoryEntryData,
    ImageUpload,
    PricingTierData,
    ValuationImageData,
    ValuationRequestData,
)


class ValuationStore(Protocol):
    """
    Create/read/update access to accounts, credits and valuation records.

    Every consume/refund method is a single conditional update so two
    concurrent callers can never both take the last unit.
    """

    # Accounts & entitlement -------------------------------------------------

    async def get_account_usage(self, account_id: UUID) -> AccountUsage | None:
        """Current usage counters plus total spendable credits, or None."""
        ...

    async def roll_period(
        self, account_id: UUID, now: datetime, period_start: datetime, period_end: datetime
    ) -> bool:
        """Reset the usage counter if the stored period ended before now."""
        ...

    async def consume_allowance(self, account_id: UUID) -> bool:
        """Increment usage iff the account is finite and below its allowance."""
        ...

    async def consume_credit(self, account_id: UUID) -> UUID | None:
        """Decrement the oldest spendable grant; returns its id or None if none left."""
        ...

    async def refund_allowance(self, account_id: UUID) -> bool:
        """Give back one period usage unit."""
        ...

    async def refund_credit(self, grant_id: UUID) -> bool:
        """Give back one credit to the grant it was taken from."""
        ...

    async def add_credit_grant(
        self, account_id: UUID, credits: int, external_reference: str | None
    ) -> CreditGrantData:
        """Record a purchased grant."""
        ...

    # Valuation requests -----------------------------------------------------

    async def create_request(
        self, account_id: UUID | None, category: str, description: str
    ) -> ValuationRequestData:
        """Insert a request in the pending state."""
        ...

    async def transition(
        self,
        request_id: UUID,
        current: ValuationStatus,
        target: ValuationStatus,
        *,
        entitlement_source: str | None = None,
        failure_kind: FailureKind | None = None,
        failure_reason: str | None = None,
        result: ValuationResult | None = None,
        history: HistoryDraft | None = None,
    ) -> ValuationRequestData:
        """
        Compare-and-set the status.

        ``history`` is written in the same transaction, and only when the
        status actually changed.

        Raises:
            InvalidTransitionError: no lifecycle edge from current to target, or
                the status was not ``current`` any more
            RequestNotFoundError: request doesn't exist
        """
        ...

    async def add_images(
        self, request_id: UUID, uploads: list[tuple[ImageUpload, str]]
    ) -> list[ValuationImageData]:
        """Insert image rows for blobs that are already stored."""
        ...

    async def get_request(self, request_id: UUID) -> ValuationRequestData | None:
        """Request with its images, ordered by display order."""
        ...

    async def list_requests(self, account_id: UUID, limit: int) -> list[ValuationRequestData]:
        """Most recent requests of an account."""
        ...

    async def list_history(self, request_id: UUID) -> list[HistoryEntryData]:
        """History entries, oldest first."""
        ...

    async def find_stale_analyzing(self, cutoff: datetime) -> list[ValuationRequestData]:
        """Requests stuck in analyzing with no update since cutoff."""
        ...

    async def list_pricing_tiers(self) -> list[PricingTierData]:
        """Active pricing tiers in display order."""
        ...
