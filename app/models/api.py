"""
API Models - Pydantic models for request/response validation.

All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ValuationStatus(str, Enum):
    """Valuation request lifecycle status."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPERT_REVIEW = "expert_review"


class ConditionRating(str, Enum):
    """Five-point condition scale the provider is asked to use."""

    EXCELLENT = "Excellent"
    VERY_GOOD = "Very Good"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"


class MarketType(str, Enum):
    """Market a valuation applies to."""

    AUCTION = "Auction"
    RETAIL = "Retail"
    INSURANCE = "Insurance"
    PRIVATE_SALE = "Private Sale"


class AnalysisType(str, Enum):
    """Kind of analysis recorded in the valuation history."""

    AI_INITIAL = "ai_initial"
    AI_REVISION = "ai_revision"
    EXPERT_REVIEW = "expert_review"


class EntitlementSource(str, Enum):
    """What a granted valuation request is paid from."""

    UNLIMITED = "unlimited"
    ALLOWANCE = "allowance"
    CREDIT = "credit"
    ANONYMOUS = "anonymous"


class FailureKind(str, Enum):
    """Why a valuation request ended in the failed state."""

    LIMIT_REACHED = "limit_reached"
    ACCOUNT_NOT_FOUND = "account_not_found"
    TRANSPORT_ERROR = "transport_error"
    PARSE_ERROR = "parse_error"
    STORAGE_ERROR = "storage_error"
    TIMEOUT = "timeout"


# ============================================================================
# Valuation Result
# ============================================================================


class ValuationResult(BaseModel):
    """
    Structured valuation result.

    Parsed from the provider's reply (camelCase keys) and returned to clients
    with snake_case keys.
    """

    item_identification: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("itemIdentification", "item_identification"),
    )
    estimated_value_low: float = Field(
        ..., validation_alias=AliasChoices("estimatedValueLow", "estimated_value_low")
    )
    estimated_value_high: float = Field(
        ..., validation_alias=AliasChoices("estimatedValueHigh", "estimated_value_high")
    )
    currency: str = "USD"
    confidence_score: float = Field(
        ..., validation_alias=AliasChoices("confidenceScore", "confidence_score")
    )
    condition_rating: str | None = Field(
        None, validation_alias=AliasChoices("conditionRating", "condition_rating")
    )
    condition_assessment: str | None = Field(
        None, validation_alias=AliasChoices("conditionAssessment", "condition_assessment")
    )
    valuation_methodology: str | None = Field(
        None, validation_alias=AliasChoices("valuationMethodology", "valuation_methodology")
    )
    market_type: str | None = Field(
        None, validation_alias=AliasChoices("marketType", "market_type")
    )
    market_context: str | None = Field(
        None, validation_alias=AliasChoices("marketContext", "market_context")
    )
    recommendations: list[str] = Field(default_factory=list)
    requires_expert_review: bool = Field(
        False, validation_alias=AliasChoices("requiresExpertReview", "requires_expert_review")
    )
    limitations: str | None = None
    sources: list[str] = Field(default_factory=list)

    @field_validator("currency", mode="before")
    @classmethod
    def validate_currency(cls, v: object) -> str:
        """Normalise currency to an uppercase code; missing means USD."""
        if not isinstance(v, str) or not v.strip():
            return "USD"
        return v.strip().upper()[:3]

    @field_validator("recommendations", "sources", mode="before")
    @classmethod
    def validate_string_list(cls, v: object) -> object:
        """Treat null as an empty list."""
        return [] if v is None else v


# ============================================================================
# Submission Models
# ============================================================================


class ImagePayload(BaseModel):
    """One inline image: base64 data or a data URL."""

    data: str = Field(..., min_length=1, description="Base64 data or data:image/...;base64, URL")
    media_type: str | None = Field(None, max_length=100)
    filename: str | None = Field(None, max_length=255)


class AppraiseRequest(BaseModel):
    """POST /v1/appraise request body."""

    category: str = Field("", max_length=100)
    description: str = Field("", max_length=20000)
    images: list[ImagePayload] = Field(default_factory=list)


class AppraiseResponse(BaseModel):
    """POST /v1/appraise response."""

    success: bool
    request_id: UUID
    status: ValuationStatus
    data: ValuationResult | None = None


class ErrorResponse(BaseModel):
    """Error body for every failed request."""

    error: str
    detail: str
    guidance: str | None = None


# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementResponse(BaseModel):
    """GET /v1/entitlement response."""

    allowed: bool
    source: EntitlementSource | None = None
    reason: str | None = None
    guidance: str | None = None
    plan_name: str | None = None
    usage_used: int | None = None
    usage_allowance: int | None = None  # -1 = unlimited
    usage_percentage: float | None = None
    credits_remaining: int | None = None
    period_end: str | None = None  # ISO 8601 timestamp


# ============================================================================
# Valuation Request Models
# ============================================================================


class ValuationImageResponse(BaseModel):
    """Stored image with its public URL."""

    image_id: UUID
    url: str
    file_name: str
    file_size: int
    mime_type: str
    display_order: int
    is_primary: bool


class HistoryEntryResponse(BaseModel):
    """One valuation history entry."""

    entry_id: UUID
    analysis_type: AnalysisType
    performed_by: str
    notes: str | None = None
    created_at: str


class ValuationRequestResponse(BaseModel):
    """Valuation request detail."""

    request_id: UUID
    account_id: UUID | None = None
    category: str
    description: str
    status: ValuationStatus
    failure_kind: FailureKind | None = None
    failure_reason: str | None = None
    result: ValuationResult | None = None
    images: list[ValuationImageResponse] = Field(default_factory=list)
    history: list[HistoryEntryResponse] = Field(default_factory=list)
    created_at: str
    updated_at: str
    completed_at: str | None = None


class ValuationSummary(BaseModel):
    """Dashboard list item."""

    request_id: UUID
    category: str
    status: ValuationStatus
    item_identification: str | None = None
    estimated_value_low: float | None = None
    estimated_value_high: float | None = None
    currency: str = "USD"
    primary_image_url: str | None = None
    created_at: str


class ValuationListResponse(BaseModel):
    """GET /v1/valuations response."""

    valuations: list[ValuationSummary]
    total: int


class ExpertReviewRequest(BaseModel):
    """POST /v1/valuations/{id}/expert-review request body."""

    reviewer: str = Field(..., min_length=1, max_length=255)
    notes: str | None = Field(None, max_length=5000)


# ============================================================================
# Admin Models
# ============================================================================


class GrantCreditsRequest(BaseModel):
    """POST /v1/admin/credits request body."""

    account_id: UUID
    credits: int = Field(..., gt=0, le=10000)
    external_reference: str | None = Field(None, max_length=255)


class CreditGrantResponse(BaseModel):
    """Credit grant after creation."""

    grant_id: UUID
    account_id: UUID
    credits_purchased: int
    credits_remaining: int
    total_credits: int
    created_at: str


class SweepResponse(BaseModel):
    """POST /v1/admin/valuations/sweep response."""

    swept: int
    refunded: int


# ============================================================================
# Mini Tool Models
# ============================================================================


class ToolValuationRequest(BaseModel):
    """POST /v1/tools/valuation request body."""

    text: str | None = Field(None, max_length=20000)
    images: list[str] = Field(default_factory=list)

    @field_validator("images", mode="before")
    @classmethod
    def validate_images(cls, v: object) -> object:
        return [] if v is None else v


class ToolValuationResponse(BaseModel):
    """Quick estimate from the stateless calculator."""

    valuation: float
    confidence: int
    message: str
    explanations: list[str]


class PriceComparisonRequest(BaseModel):
    """POST /v1/tools/price-comparison request body."""

    item_name: str = Field(..., min_length=1, max_length=255)
    category: str = Field(..., min_length=1, max_length=100)


class PriceRange(BaseModel):
    low: float
    high: float


class MarketDataPoint(BaseModel):
    date: str  # YYYY-MM
    price: float
    sales: int


class ComparableSale(BaseModel):
    name: str
    price: float
    date: str  # YYYY-MM-DD
    condition: str


class PriceComparisonResponse(BaseModel):
    """Market comparison for a named item."""

    item_name: str
    category: str
    average_price: float
    price_range: PriceRange
    recent_sales: int
    market_trend: str  # up | down | stable
    trend_percentage: float
    historical_data: list[MarketDataPoint]
    similar_items: list[ComparableSale]


class AuthenticationCheckRequest(BaseModel):
    """POST /v1/tools/authentication-check request body."""

    item_name: str = Field(..., min_length=1, max_length=255)
    category: str = Field(..., min_length=1, max_length=100)
    serial_number: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=5000)
    purchase_location: str | None = Field(None, max_length=255)


class AuthenticationFinding(BaseModel):
    type: str  # positive | negative | warning
    title: str
    description: str


class AuthenticationCheckResponse(BaseModel):
    """Authenticity assessment."""

    is_authentic: bool
    confidence_score: int
    category: str
    findings: list[AuthenticationFinding]
    recommendations: list[str]
    needs_expert_review: bool


# ============================================================================
# Catalog Models
# ============================================================================


class CategoryResponse(BaseModel):
    """Item category in the catalog."""

    slug: str
    name: str
    description: str


class PricingTierResponse(BaseModel):
    """Active pricing tier."""

    name: str
    display_name: str
    description: str
    price_monthly_minor: int
    price_yearly_minor: int
    appraisals_per_month: int  # -1 = unlimited
    features: list[str]


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
