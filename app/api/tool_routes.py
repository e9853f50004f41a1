"""
Tool API routes - Public mini tools.

No authentication and no entitlement: these never reach the analysis
provider or the database.
"""

from fastapi import APIRouter
from structlog import get_logger

from app.models.api import (
    AuthenticationCheckRequest,
    AuthenticationCheckResponse,
    PriceComparisonRequest,
    PriceComparisonResponse,
    ToolValuationRequest,
    ToolValuationResponse,
)
from app.services.tools import check_authenticity, compare_prices, quick_valuation

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/tools", tags=["tools"])


@router.post("/valuation", response_model=ToolValuationResponse)
async def tool_valuation(request: ToolValuationRequest) -> ToolValuationResponse:
    """Quick estimate from description length and photo count."""
    result = quick_valuation(request.text, len(request.images))
    logger.info(
        "tool_valuation",
        text_length=len(request.text or ""),
        image_count=len(request.images),
        valuation=result.valuation,
        confidence=result.confidence,
    )
    return result


@router.post("/price-comparison", response_model=PriceComparisonResponse)
async def tool_price_comparison(request: PriceComparisonRequest) -> PriceComparisonResponse:
    """Recent market prices for comparable items."""
    return compare_prices(request)


@router.post("/authentication-check", response_model=AuthenticationCheckResponse)
async def tool_authentication_check(
    request: AuthenticationCheckRequest,
) -> AuthenticationCheckResponse:
    """Authenticity indicators for an item."""
    return check_authenticity(request)
