"""
Admin API routes - Operator actions.

Protected by the X-API-Key header (ADMIN_API_KEY).
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from structlog import get_logger

from app.api.dependencies import (
    get_blob_storage,
    get_entitlement_service,
    get_valuation_service,
    require_admin_key,
)
from app.api.routes import to_detail
from app.models.api import (
    CreditGrantResponse,
    ExpertReviewRequest,
    GrantCreditsRequest,
    SweepResponse,
    ValuationRequestResponse,
)
from app.services.blob_storage import BlobStorage
from app.services.entitlement import EntitlementService
from app.services.valuation import ValuationService

logger = get_logger(__name__)
router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.post(
    "/v1/admin/credits",
    response_model=CreditGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_credits(
    request: GrantCreditsRequest,
    entitlement: EntitlementService = Depends(get_entitlement_service),
) -> CreditGrantResponse:
    """
    Record purchased credits for an account.

    Credits don't expire and are spent oldest grant first once the plan
    allowance for the period is used up.
    """
    grant = await entitlement.grant_credits(
        request.account_id, request.credits, request.external_reference
    )
    usage = await entitlement.get_usage(request.account_id)
    logger.info(
        "admin_credits_granted",
        account_id=str(request.account_id),
        credits=request.credits,
        total_credits=usage.credits_remaining,
    )
    return CreditGrantResponse(
        grant_id=grant.grant_id,
        account_id=grant.account_id,
        credits_purchased=grant.credits_purchased,
        credits_remaining=grant.credits_remaining,
        total_credits=usage.credits_remaining,
        created_at=grant.created_at.isoformat(),
    )


@router.post("/v1/admin/valuations/sweep", response_model=SweepResponse)
async def sweep_stale_valuations(
    service: ValuationService = Depends(get_valuation_service),
) -> SweepResponse:
    """Fail requests stuck in analyzing now instead of waiting for the background sweep."""
    swept, refunded = await service.sweep_stale()
    return SweepResponse(swept=swept, refunded=refunded)


@router.post(
    "/v1/valuations/{request_id}/expert-review",
    response_model=ValuationRequestResponse,
)
async def escalate_to_expert_review(
    request_id: UUID,
    request: ExpertReviewRequest,
    service: ValuationService = Depends(get_valuation_service),
    blobs: BlobStorage = Depends(get_blob_storage),
) -> ValuationRequestResponse:
    """
    Hand a completed, flagged valuation to a human reviewer.

    409 unless the request is completed and flagged for expert review.
    """
    reviewed = await service.escalate_to_expert_review(request_id, request.reviewer, request.notes)
    history = await service.list_history(request_id)
    return to_detail(reviewed, history, blobs)
