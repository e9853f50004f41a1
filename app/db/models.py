"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PricingTier(Base):
    """
    ORM model for pricing_tiers table.

    Subscription plans and their monthly appraisal allowance.
    """

    __tablename__ = "pricing_tiers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price_monthly_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_yearly_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    appraisals_per_month: Mapped[int] = mapped_column(Integer, nullable=False)
    features: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("appraisals_per_month >= -1", name="ck_tier_allowance_valid"),
    )


class Account(Base):
    """
    ORM model for accounts table.

    The id matches the identity provider's user id (JWT ``sub``).
    Usage counters for the current billing period live on the row so the
    check-and-consume can be a single conditional UPDATE.
    """

    __tablename__ = "accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False, default="free")
    usage_allowance: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Billing period usage
    usage_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    credit_grants: Mapped[list["CreditGrant"]] = relationship(back_populates="account")

    __table_args__ = (
        CheckConstraint("usage_allowance >= -1", name="ck_usage_allowance_valid"),
        CheckConstraint("usage_used >= 0", name="ck_usage_used_non_negative"),
        Index("idx_accounts_email", "email", postgresql_where=(email.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(id={self.id}, plan={self.plan_name}, "
            f"used={self.usage_used}/{self.usage_allowance})>"
        )


class CreditGrant(Base):
    """
    ORM model for credit_grants table.

    Purchased, non-expiring extra-request credits. credits_remaining only
    decreases through consumption (or is restored by a refund).
    """

    __tablename__ = "credit_grants"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    credits_purchased: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    account: Mapped[Account] = relationship(back_populates="credit_grants")

    __table_args__ = (
        CheckConstraint("credits_purchased > 0", name="ck_credits_purchased_positive"),
        CheckConstraint("credits_remaining >= 0", name="ck_credits_remaining_non_negative"),
        CheckConstraint(
            "credits_remaining <= credits_purchased", name="ck_credits_remaining_bounded"
        ),
        Index(
            "idx_credit_grants_spendable",
            "account_id",
            "created_at",
            postgresql_where=(credits_remaining > 0),
        ),
        UniqueConstraint("external_reference", name="uq_credit_grant_reference"),
    )


class ValuationRequest(Base):
    """
    ORM model for valuation_requests table.

    One submitted item and, once completed, its structured result.
    Retained as history; never deleted in normal operation.
    """

    __tablename__ = "valuation_requests"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )

    category: Mapped[str] = mapped_column(String(100), nullable=False)
    item_description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # What was consumed ("allowance", "credit:<grant id>", "unlimited", "anonymous")
    entitlement_source: Mapped[str | None] = mapped_column(String(64), nullable=True)

    failure_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Structured result
    ai_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    item_identification: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_value_low: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    estimated_value_high: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    confidence_score: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    condition_rating: Mapped[str | None] = mapped_column(String(20), nullable=True)
    condition_assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    valuation_methodology: Mapped[str | None] = mapped_column(Text, nullable=True)
    market_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    market_context: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommendations: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    requires_expert_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    limitations: Mapped[str | None] = mapped_column(Text, nullable=True)
    sources: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    images: Mapped[list["ValuationImage"]] = relationship(
        back_populates="request",
        order_by="ValuationImage.display_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'analyzing', 'completed', 'failed', 'expert_review')",
            name="ck_valuation_status",
        ),
        CheckConstraint(
            "estimated_value_low IS NULL OR estimated_value_high IS NULL "
            "OR estimated_value_low <= estimated_value_high",
            name="ck_value_range_ordered",
        ),
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 100)",
            name="ck_confidence_range",
        ),
        Index("idx_valuation_requests_account", "account_id", "created_at"),
        Index(
            "idx_valuation_requests_analyzing",
            "updated_at",
            postgresql_where=(status == "analyzing"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ValuationRequest(id={self.id}, status={self.status})>"


class ValuationImage(Base):
    """
    ORM model for valuation_images table.

    Immutable after insert. Written only once the blob upload confirmed.
    """

    __tablename__ = "valuation_images"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("valuation_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    storage_path: Mapped[str] = mapped_column(String(512), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    request: Mapped[ValuationRequest] = relationship(back_populates="images")

    __table_args__ = (
        CheckConstraint("display_order >= 0", name="ck_display_order_non_negative"),
        CheckConstraint("file_size > 0", name="ck_file_size_positive"),
        CheckConstraint(
            "is_primary = (display_order = 0)", name="ck_primary_is_first_image"
        ),
        UniqueConstraint("request_id", "display_order", name="uq_image_display_order"),
    )


class ValuationHistoryEntry(Base):
    """
    ORM model for valuation_history table.

    Append-only audit of every analysis performed against a request.
    """

    __tablename__ = "valuation_history"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("valuation_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    analysis_type: Mapped[str] = mapped_column(String(20), nullable=False)
    analysis_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "analysis_type IN ('ai_initial', 'ai_revision', 'expert_review')",
            name="ck_history_analysis_type",
        ),
    )
