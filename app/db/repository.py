"""
SQLAlchemy Valuation Store - PostgreSQL implementation of ValuationStore.

Counters and credits are only ever changed with conditional UPDATEs; status
changes are compare-and-set on the current status.
"""

import functools
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from structlog import get_logger

from app.db.models import (
    Account,
    CreditGrant,
    PricingTier,
    ValuationHistoryEntry,
    ValuationImage,
    ValuationRequest,
    utc_now,
)
from app.exceptions import (
    InvalidTransitionError,
    RequestNotFoundError,
    StorageError,
)
from app.models.api import AnalysisType, FailureKind, ValuationResult, ValuationStatus
from app.models.domain import (
    UNLIMITED_ALLOWANCE,
    AccountUsage,
    CreditGrantData,
    HistoryDraft,
    HistoryEntryData,
    ImageUpload,
    PricingTierData,
    ValuationImageData,
    ValuationRequestData,
    can_transition,
)

logger = get_logger(__name__)

T = TypeVar("T")

CREDIT_PICK_ATTEMPTS = 3


def _translate_db_errors(
    method: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Roll back and surface driver/ORM failures as StorageError."""

    @functools.wraps(method)
    async def wrapper(self: "SqlAlchemyValuationStore", *args: Any, **kwargs: Any) -> T:
        try:
            return await method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("database_operation_failed", operation=method.__name__, error=str(exc))
            raise StorageError(f"{method.__name__} failed") from exc

    return wrapper


class SqlAlchemyValuationStore:
    """ValuationStore backed by an AsyncSession. Commits after every write."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session."""
        self.session = session

    # ========================================================================
    # Accounts & Entitlement
    # ========================================================================

    @_translate_db_errors
    async def get_account_usage(self, account_id: UUID) -> AccountUsage | None:
        account = await self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            return None

        stmt = select(func.coalesce(func.sum(CreditGrant.credits_remaining), 0)).where(
            CreditGrant.account_id == account_id
        )
        credits = (await self.session.execute(stmt)).scalar_one()

        return AccountUsage(
            account_id=account.id,
            plan_name=account.plan_name,
            usage_allowance=account.usage_allowance,
            usage_used=account.usage_used,
            period_start=account.period_start,
            period_end=account.period_end,
            credits_remaining=int(credits),
        )

    @_translate_db_errors
    async def roll_period(
        self, account_id: UUID, now: datetime, period_start: datetime, period_end: datetime
    ) -> bool:
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.period_end <= now)
            .values(usage_used=0, period_start=period_start, period_end=period_end)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    @_translate_db_errors
    async def consume_allowance(self, account_id: UUID) -> bool:
        stmt = (
            update(Account)
            .where(
                Account.id == account_id,
                Account.usage_allowance != UNLIMITED_ALLOWANCE,
                Account.usage_used < Account.usage_allowance,
            )
            .values(usage_used=Account.usage_used + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    @_translate_db_errors
    async def consume_credit(self, account_id: UUID) -> UUID | None:
        # Oldest grant first. A concurrent consumer waits on the row lock and
        # re-checks the grant; when that grant ran dry while it waited, the
        # locked pick comes back empty and is retried against a fresh snapshot.
        spendable = (CreditGrant.account_id == account_id, CreditGrant.credits_remaining > 0)
        candidate = (
            select(CreditGrant.id)
            .where(*spendable)
            .order_by(CreditGrant.created_at, CreditGrant.id)
            .limit(1)
            .with_for_update()
        )
        for _ in range(CREDIT_PICK_ATTEMPTS):
            grant_id = (await self.session.execute(candidate)).scalar_one_or_none()
            if grant_id is not None:
                break
            remaining = select(func.count()).select_from(CreditGrant).where(*spendable)
            if not (await self.session.execute(remaining)).scalar_one_or_none():
                break
            await self.session.rollback()
        if grant_id is None:
            await self.session.rollback()
            return None

        stmt = (
            update(CreditGrant)
            .where(CreditGrant.id == grant_id, CreditGrant.credits_remaining > 0)
            .values(credits_remaining=CreditGrant.credits_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return grant_id if result.rowcount == 1 else None

    @_translate_db_errors
    async def refund_allowance(self, account_id: UUID) -> bool:
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.usage_used > 0)
            .values(usage_used=Account.usage_used - 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    @_translate_db_errors
    async def refund_credit(self, grant_id: UUID) -> bool:
        stmt = (
            update(CreditGrant)
            .where(
                CreditGrant.id == grant_id,
                CreditGrant.credits_remaining < CreditGrant.credits_purchased,
            )
            .values(credits_remaining=CreditGrant.credits_remaining + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    @_translate_db_errors
    async def add_credit_grant(
        self, account_id: UUID, credits: int, external_reference: str | None
    ) -> CreditGrantData:
        grant = CreditGrant(
            account_id=account_id,
            credits_purchased=credits,
            credits_remaining=credits,
            external_reference=external_reference,
        )
        self.session.add(grant)
        await self.session.flush()
        await self.session.commit()

        return CreditGrantData(
            grant_id=grant.id,
            account_id=grant.account_id,
            credits_purchased=grant.credits_purchased,
            credits_remaining=grant.credits_remaining,
            external_reference=grant.external_reference,
            created_at=grant.created_at,
        )

    # ========================================================================
    # Valuation Requests
    # ========================================================================

    @_translate_db_errors
    async def create_request(
        self, account_id: UUID | None, category: str, description: str
    ) -> ValuationRequestData:
        row = ValuationRequest(
            account_id=account_id,
            category=category,
            item_description=description,
            status=ValuationStatus.PENDING.value,
        )
        self.session.add(row)
        await self.session.flush()
        await self.session.commit()

        verified = await self._load_request(row.id)
        if verified is None:
            raise StorageError(f"Request {row.id} not found after insert")
        return self._request_to_domain(verified)

    @_translate_db_errors
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
        if not can_transition(current, target):
            raise InvalidTransitionError(request_id, current.value, target.value)

        now = utc_now()
        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if entitlement_source is not None:
            values["entitlement_source"] = entitlement_source
        if failure_kind is not None:
            values["failure_kind"] = failure_kind.value
            values["failure_reason"] = failure_reason
        if result is not None:
            values.update(_result_columns(result))
        if target == ValuationStatus.COMPLETED:
            values["completed_at"] = now

        stmt = (
            update(ValuationRequest)
            .where(ValuationRequest.id == request_id, ValuationRequest.status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        outcome = await self.session.execute(stmt)
        if history is not None and outcome.rowcount == 1:
            self.session.add(
                ValuationHistoryEntry(
                    request_id=request_id,
                    analysis_type=history.analysis_type.value,
                    analysis_data=history.analysis_data,
                    performed_by=history.performed_by,
                    notes=history.notes,
                )
            )
            await self.session.flush()
        await self.session.commit()

        row = await self._load_request(request_id)
        if row is None:
            raise RequestNotFoundError(request_id)
        if outcome.rowcount != 1:
            raise InvalidTransitionError(request_id, row.status, target.value)
        return self._request_to_domain(row)

    @_translate_db_errors
    async def add_images(
        self, request_id: UUID, uploads: list[tuple[ImageUpload, str]]
    ) -> list[ValuationImageData]:
        rows = [
            ValuationImage(
                request_id=request_id,
                storage_path=path,
                file_name=upload.filename,
                file_size=len(upload.data),
                mime_type=upload.media_type,
                display_order=upload.display_order,
                is_primary=upload.display_order == 0,
            )
            for upload, path in uploads
        ]
        self.session.add_all(rows)
        await self.session.flush()
        await self.session.commit()
        return [self._image_to_domain(row) for row in sorted(rows, key=lambda r: r.display_order)]

    @_translate_db_errors
    async def get_request(self, request_id: UUID) -> ValuationRequestData | None:
        row = await self._load_request(request_id)
        return self._request_to_domain(row) if row else None

    @_translate_db_errors
    async def list_requests(self, account_id: UUID, limit: int) -> list[ValuationRequestData]:
        stmt = (
            select(ValuationRequest)
            .options(selectinload(ValuationRequest.images))
            .where(ValuationRequest.account_id == account_id)
            .order_by(ValuationRequest.created_at.desc())
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._request_to_domain(row) for row in rows]

    @_translate_db_errors
    async def list_history(self, request_id: UUID) -> list[HistoryEntryData]:
        stmt = (
            select(ValuationHistoryEntry)
            .where(ValuationHistoryEntry.request_id == request_id)
            .order_by(ValuationHistoryEntry.created_at)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._history_to_domain(row) for row in rows]

    @_translate_db_errors
    async def find_stale_analyzing(self, cutoff: datetime) -> list[ValuationRequestData]:
        stmt = (
            select(ValuationRequest)
            .options(selectinload(ValuationRequest.images))
            .where(
                ValuationRequest.status == ValuationStatus.ANALYZING.value,
                ValuationRequest.updated_at < cutoff,
            )
            .order_by(ValuationRequest.updated_at)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._request_to_domain(row) for row in rows]

    @_translate_db_errors
    async def list_pricing_tiers(self) -> list[PricingTierData]:
        stmt = (
            select(PricingTier)
            .where(PricingTier.is_active.is_(True))
            .order_by(PricingTier.sort_order)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [
            PricingTierData(
                name=row.name,
                display_name=row.display_name,
                description=row.description,
                price_monthly_minor=row.price_monthly_minor,
                price_yearly_minor=row.price_yearly_minor,
                appraisals_per_month=row.appraisals_per_month,
                features=tuple(row.features or ()),
                sort_order=row.sort_order,
            )
            for row in rows
        ]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load_request(self, request_id: UUID) -> ValuationRequest | None:
        stmt = (
            select(ValuationRequest)
            .options(selectinload(ValuationRequest.images))
            .where(ValuationRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    def _request_to_domain(self, row: ValuationRequest) -> ValuationRequestData:
        """Convert ORM request to domain model."""
        return ValuationRequestData(
            request_id=row.id,
            account_id=row.account_id,
            category=row.category,
            description=row.item_description,
            status=ValuationStatus(row.status),
            entitlement_source=row.entitlement_source,
            failure_kind=FailureKind(row.failure_kind) if row.failure_kind else None,
            failure_reason=row.failure_reason,
            result=ValuationResult.model_validate(row.ai_analysis) if row.ai_analysis else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
            images=tuple(self._image_to_domain(image) for image in row.images),
        )

    def _image_to_domain(self, row: ValuationImage) -> ValuationImageData:
        return ValuationImageData(
            image_id=row.id,
            request_id=row.request_id,
            storage_path=row.storage_path,
            file_name=row.file_name,
            file_size=row.file_size,
            mime_type=row.mime_type,
            display_order=row.display_order,
            is_primary=row.is_primary,
            created_at=row.created_at,
        )

    def _history_to_domain(self, row: ValuationHistoryEntry) -> HistoryEntryData:
        return HistoryEntryData(
            entry_id=row.id,
            request_id=row.request_id,
            analysis_type=AnalysisType(row.analysis_type),
            analysis_data=row.analysis_data,
            performed_by=row.performed_by,
            notes=row.notes,
            created_at=row.created_at,
        )


def _result_columns(result: ValuationResult) -> dict[str, Any]:
    """Flatten a result into valuation_requests columns."""
    return {
        "ai_analysis": result.model_dump(mode="json"),
        "item_identification": result.item_identification,
        "estimated_value_low": result.estimated_value_low,
        "estimated_value_high": result.estimated_value_high,
        "currency": result.currency,
        "confidence_score": result.confidence_score,
        "condition_rating": result.condition_rating,
        "condition_assessment": result.condition_assessment,
        "valuation_methodology": result.valuation_methodology,
        "market_type": result.market_type,
        "market_context": result.market_context,
        "recommendations": result.recommendations,
        "requires_expert_review": result.requires_expert_review,
        "limitations": result.limitations,
        "sources": result.sources,
    }
