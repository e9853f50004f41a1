"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from app.models.api import (
    AnalysisType,
    EntitlementSource,
    FailureKind,
    ValuationResult,
    ValuationStatus,
)

UNLIMITED_ALLOWANCE = -1

# Lifecycle graph. Terminal states have no outgoing edges except the
# human escalation from completed.
ALLOWED_TRANSITIONS: dict[ValuationStatus, frozenset[ValuationStatus]] = {
    ValuationStatus.PENDING: frozenset({ValuationStatus.ANALYZING, ValuationStatus.FAILED}),
    ValuationStatus.ANALYZING: frozenset({ValuationStatus.COMPLETED, ValuationStatus.FAILED}),
    ValuationStatus.COMPLETED: frozenset({ValuationStatus.EXPERT_REVIEW}),
    ValuationStatus.FAILED: frozenset(),
    ValuationStatus.EXPERT_REVIEW: frozenset(),
}


def can_transition(current: ValuationStatus, target: ValuationStatus) -> bool:
    """Whether the lifecycle graph has an edge from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class AccountUsage:
    """Snapshot of everything the entitlement evaluator reads for one account."""

    account_id: UUID
    plan_name: str
    usage_allowance: int
    usage_used: int
    period_start: datetime
    period_end: datetime
    credits_remaining: int

    def __post_init__(self) -> None:
        """Validate usage constraints."""
        if self.usage_allowance < UNLIMITED_ALLOWANCE:
            raise ValueError(f"Invalid usage allowance: {self.usage_allowance}")
        if self.usage_used < 0:
            raise ValueError(f"Usage counter cannot be negative: {self.usage_used}")
        if self.credits_remaining < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits_remaining}")

    @property
    def is_unlimited(self) -> bool:
        return self.usage_allowance == UNLIMITED_ALLOWANCE

    @property
    def usage_percentage(self) -> float:
        """Share of the monthly allowance used, capped at 100."""
        if self.is_unlimited or self.usage_allowance == 0:
            return 0.0 if self.is_unlimited else 100.0
        return min(self.usage_used / self.usage_allowance * 100, 100.0)


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of an entitlement check."""

    allowed: bool
    source: EntitlementSource | None
    reason: str | None = None
    guidance: str | None = None
    usage: AccountUsage | None = None


@dataclass(frozen=True)
class EntitlementReceipt:
    """Proof of one consumed entitlement unit, used for refunds."""

    account_id: UUID | None
    source: EntitlementSource
    credit_grant_id: UUID | None = None

    @property
    def refundable(self) -> bool:
        return self.source in (EntitlementSource.ALLOWANCE, EntitlementSource.CREDIT)

    def to_tag(self) -> str:
        """Compact form persisted on the request row."""
        if self.source == EntitlementSource.CREDIT and self.credit_grant_id:
            return f"credit:{self.credit_grant_id}"
        return self.source.value

    @classmethod
    def from_tag(cls, account_id: UUID | None, tag: str) -> "EntitlementReceipt":
        """Rebuild a receipt from the persisted tag."""
        if tag.startswith("credit:"):
            return cls(
                account_id=account_id,
                source=EntitlementSource.CREDIT,
                credit_grant_id=UUID(tag.split(":", 1)[1]),
            )
        return cls(account_id=account_id, source=EntitlementSource(tag))


@dataclass(frozen=True)
class ImageUpload:
    """Decoded image ready for storage; display order fixed at enqueue time."""

    data: bytes
    media_type: str
    filename: str
    display_order: int

    def __post_init__(self) -> None:
        """Validate image constraints."""
        if not self.data:
            raise ValueError("Image data cannot be empty")
        if self.display_order < 0:
            raise ValueError(f"Display order cannot be negative: {self.display_order}")
        if not self.media_type.startswith("image/"):
            raise ValueError(f"Not an image media type: {self.media_type}")

    @property
    def extension(self) -> str:
        """Storage extension derived from the media type; the client filename is never used."""
        subtype = self.media_type.split("/", 1)[1].split(";", 1)[0].split("+", 1)[0]
        cleaned = "".join(ch for ch in subtype.lower() if ch.isascii() and ch.isalnum())
        return {"jpeg": "jpg", "": "bin"}.get(cleaned, cleaned)


@dataclass(frozen=True)
class InlineImage:
    """Image attached to an analysis call as base64 data."""

    media_type: str
    data_base64: str


@dataclass(frozen=True)
class ValuationImageData:
    """Immutable stored image."""

    image_id: UUID
    request_id: UUID
    storage_path: str
    file_name: str
    file_size: int
    mime_type: str
    display_order: int
    is_primary: bool
    created_at: datetime


@dataclass(frozen=True)
class HistoryEntryData:
    """Immutable valuation history entry."""

    entry_id: UUID
    request_id: UUID
    analysis_type: AnalysisType
    analysis_data: dict[str, Any]
    performed_by: str
    notes: str | None
    created_at: datetime


@dataclass(frozen=True)
class HistoryDraft:
    """History entry to write in the same transaction as a status change."""

    analysis_type: AnalysisType
    analysis_data: dict[str, Any]
    performed_by: str
    notes: str | None = None


@dataclass(frozen=True)
class ValuationRequestData:
    """Immutable valuation request snapshot."""

    request_id: UUID
    account_id: UUID | None
    category: str
    description: str
    status: ValuationStatus
    entitlement_source: str | None
    failure_kind: FailureKind | None
    failure_reason: str | None
    result: ValuationResult | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    images: tuple[ValuationImageData, ...] = field(default_factory=tuple)

    @property
    def primary_image(self) -> ValuationImageData | None:
        for image in self.images:
            if image.is_primary:
                return image
        return None


@dataclass(frozen=True)
class CreditGrantData:
    """Immutable credit grant snapshot."""

    grant_id: UUID
    account_id: UUID
    credits_purchased: int
    credits_remaining: int
    external_reference: str | None
    created_at: datetime


@dataclass(frozen=True)
class PricingTierData:
    """Immutable pricing tier."""

    name: str
    display_name: str
    description: str
    price_monthly_minor: int
    price_yearly_minor: int
    appraisals_per_month: int
    features: tuple[str, ...]
    sort_order: int
