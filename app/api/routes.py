"""
API Routes - FastAPI endpoints for valuation requests.

Domain errors propagate to the AppraisalError handler registered in
app.main; routes only translate between API models and services.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    get_blob_storage,
    get_entitlement_service,
    get_optional_account_id,
    get_store,
    get_valuation_service,
    require_account_id,
)
from app.config import Settings, get_settings
from app.db.session import get_db
from app.db.store import ValuationStore
from app.exceptions import ValidationError
from app.models.api import (
    AppraiseRequest,
    AppraiseResponse,
    CategoryResponse,
    EntitlementResponse,
    HealthResponse,
    HistoryEntryResponse,
    PricingTierResponse,
    ValuationImageResponse,
    ValuationListResponse,
    ValuationRequestResponse,
    ValuationSummary,
)
from app.models.domain import HistoryEntryData, ValuationRequestData
from app.services.blob_storage import BlobStorage
from app.services.catalog import CATEGORIES
from app.services.entitlement import EntitlementService
from app.services.valuation import ValuationService
from app.services.valuation_client import decode_image

router = APIRouter()


# ============================================================================
# Valuation Requests
# ============================================================================


@router.post("/v1/appraise", response_model=AppraiseResponse)
async def appraise(
    request: AppraiseRequest,
    account_id: UUID | None = Depends(get_optional_account_id),
    service: ValuationService = Depends(get_valuation_service),
    settings: Settings = Depends(get_settings),
) -> AppraiseResponse:
    """
    Submit an item for valuation and run it to completion.

    Auth: optional Bearer token (anonymous only when enabled)

    Consumes one entitlement unit unless the input is rejected up front.
    """
    if len(request.description) > settings.max_description_length:
        raise ValidationError(
            f"Description must be at most {settings.max_description_length} characters",
            "description",
        )
    if len(request.images) > settings.max_images_per_request:
        raise ValidationError(
            f"At most {settings.max_images_per_request} images are allowed", "images"
        )

    uploads = [
        decode_image(
            image.data,
            display_order=index,
            media_type=image.media_type,
            filename=image.filename,
            max_bytes=settings.max_image_bytes,
        )
        for index, image in enumerate(request.images)
    ]

    completed = await service.submit(account_id, request.category, request.description, uploads)
    return AppraiseResponse(
        success=True,
        request_id=completed.request_id,
        status=completed.status,
        data=completed.result,
    )


@router.get("/v1/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    account_id: UUID = Depends(require_account_id),
    entitlement: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """
    Check whether the caller may submit another request.

    Auth: Bearer token

    Read-only; nothing is consumed.
    """
    decision = await entitlement.evaluate(account_id)
    usage = decision.usage
    return EntitlementResponse(
        allowed=decision.allowed,
        source=decision.source,
        reason=decision.reason,
        guidance=decision.guidance,
        plan_name=usage.plan_name if usage else None,
        usage_used=usage.usage_used if usage else None,
        usage_allowance=usage.usage_allowance if usage else None,
        usage_percentage=usage.usage_percentage if usage else None,
        credits_remaining=usage.credits_remaining if usage else None,
        period_end=usage.period_end.isoformat() if usage else None,
    )


@router.get("/v1/valuations", response_model=ValuationListResponse)
async def list_valuations(
    limit: int = Query(10, ge=1, le=100),
    account_id: UUID = Depends(require_account_id),
    service: ValuationService = Depends(get_valuation_service),
    blobs: BlobStorage = Depends(get_blob_storage),
) -> ValuationListResponse:
    """
    Recent valuation requests for the dashboard, newest first.

    Auth: Bearer token
    """
    requests = await service.list_requests(account_id, limit)
    summaries = [to_summary(request, blobs) for request in requests]
    return ValuationListResponse(valuations=summaries, total=len(summaries))


@router.get("/v1/valuations/{request_id}", response_model=ValuationRequestResponse)
async def get_valuation(
    request_id: UUID,
    account_id: UUID = Depends(require_account_id),
    service: ValuationService = Depends(get_valuation_service),
    blobs: BlobStorage = Depends(get_blob_storage),
) -> ValuationRequestResponse:
    """
    Valuation request detail with image URLs and analysis history.

    Auth: Bearer token (owner only; other accounts get 404)
    """
    request = await service.get_request(request_id, account_id=account_id)
    history = await service.list_history(request_id)
    return to_detail(request, history, blobs)


# ============================================================================
# Catalog
# ============================================================================


@router.get("/v1/categories", response_model=list[CategoryResponse])
async def list_categories() -> list[CategoryResponse]:
    """Item categories offered on the submission form."""
    return [
        CategoryResponse(slug=c.slug, name=c.name, description=c.description) for c in CATEGORIES
    ]


@router.get("/v1/pricing/tiers", response_model=list[PricingTierResponse])
async def list_pricing_tiers(
    store: ValuationStore = Depends(get_store),
) -> list[PricingTierResponse]:
    """Active pricing tiers, cheapest first."""
    tiers = await store.list_pricing_tiers()
    return [
        PricingTierResponse(
            name=tier.name,
            display_name=tier.display_name,
            description=tier.description,
            price_monthly_minor=tier.price_monthly_minor,
            price_yearly_minor=tier.price_yearly_minor,
            appraisals_per_month=tier.appraisals_per_month,
            features=list(tier.features),
        )
        for tier in tiers
    ]


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )


# ============================================================================
# Response Conversion
# ============================================================================


def to_summary(request: ValuationRequestData, blobs: BlobStorage) -> ValuationSummary:
    result = request.result
    primary = request.primary_image
    return ValuationSummary(
        request_id=request.request_id,
        category=request.category,
        status=request.status,
        item_identification=result.item_identification if result else None,
        estimated_value_low=result.estimated_value_low if result else None,
        estimated_value_high=result.estimated_value_high if result else None,
        currency=result.currency if result else "USD",
        primary_image_url=blobs.public_url(primary.storage_path) if primary else None,
        created_at=request.created_at.isoformat(),
    )


def to_detail(
    request: ValuationRequestData,
    history: list[HistoryEntryData],
    blobs: BlobStorage,
) -> ValuationRequestResponse:
    return ValuationRequestResponse(
        request_id=request.request_id,
        account_id=request.account_id,
        category=request.category,
        description=request.description,
        status=request.status,
        failure_kind=request.failure_kind,
        failure_reason=request.failure_reason,
        result=request.result,
        images=[
            ValuationImageResponse(
                image_id=image.image_id,
                url=blobs.public_url(image.storage_path),
                file_name=image.file_name,
                file_size=image.file_size,
                mime_type=image.mime_type,
                display_order=image.display_order,
                is_primary=image.is_primary,
            )
            for image in request.images
        ],
        history=[
            HistoryEntryResponse(
                entry_id=entry.entry_id,
                analysis_type=entry.analysis_type,
                performed_by=entry.performed_by,
                notes=entry.notes,
                created_at=entry.created_at.isoformat(),
            )
            for entry in history
        ],
        created_at=request.created_at.isoformat(),
        updated_at=request.updated_at.isoformat(),
        completed_at=request.completed_at.isoformat() if request.completed_at else None,
    )
