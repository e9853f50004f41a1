"""
Mini Tools - Stateless calculators behind the public tool pages.

None of these touch entitlement, storage or the analysis provider. The quick
valuation is a length/image-count heuristic; price comparison and the
authentication check return fixed sample data.
"""

from app.exceptions import ValidationError
from app.models.api import (
    AuthenticationCheckRequest,
    AuthenticationCheckResponse,
    AuthenticationFinding,
    ComparableSale,
    MarketDataPoint,
    PriceComparisonRequest,
    PriceComparisonResponse,
    PriceRange,
    ToolValuationResponse,
)

MAX_TOOL_CONFIDENCE = 95

ACCURACY_MESSAGE = (
    "The more information and images the AI receives, the more accurate the "
    "valuation becomes. For best results, describe the item carefully and upload "
    "clear images from different angles."
)


def quick_valuation(text: str | None, image_count: int) -> ToolValuationResponse:
    """
    Heuristic estimate from description length and photo count.

    Text adds 50 plus 0.1 per character and 20 confidence; each image adds
    100 and 15 confidence. Confidence is capped at 95.

    Raises:
        ValidationError: neither text nor images supplied
    """
    if not text and image_count <= 0:
        raise ValidationError("Please provide text or images for valuation.")

    valuation = 0.0
    confidence = 0
    explanations: list[str] = []

    if text:
        valuation += 50 + len(text) * 0.1
        confidence += 20
        explanations.append("Text provided contributed to the valuation.")

    if image_count > 0:
        valuation += image_count * 100
        confidence += image_count * 15
        explanations.append(
            f"{image_count} image(s) provided significantly contributed to the valuation."
        )

    confidence = min(confidence, MAX_TOOL_CONFIDENCE)

    if confidence < 30:
        explanations.append(
            "The confidence in this valuation is low. "
            "Providing more details and images will improve accuracy."
        )
    elif confidence < 60:
        explanations.append(
            "The confidence in this valuation is moderate. "
            "More details and/or images could improve it."
        )
    else:
        explanations.append(
            "The confidence in this valuation is good. The information provided was helpful."
        )

    return ToolValuationResponse(
        valuation=valuation,
        confidence=confidence,
        message=ACCURACY_MESSAGE,
        explanations=explanations,
    )


def compare_prices(request: PriceComparisonRequest) -> PriceComparisonResponse:
    """Sample market comparison echoing the requested item and category."""
    return PriceComparisonResponse(
        item_name=request.item_name.strip(),
        category=request.category.strip(),
        average_price=3250,
        price_range=PriceRange(low=2100, high=4800),
        recent_sales=23,
        market_trend="up",
        trend_percentage=12.5,
        historical_data=[
            MarketDataPoint(date="2024-07", price=2800, sales=18),
            MarketDataPoint(date="2024-08", price=2950, sales=21),
            MarketDataPoint(date="2024-09", price=3100, sales=19),
            MarketDataPoint(date="2024-10", price=3250, sales=23),
        ],
        similar_items=[
            ComparableSale(name="Similar Item 1", price=3100, date="2024-10-15", condition="Excellent"),
            ComparableSale(name="Similar Item 2", price=3400, date="2024-10-10", condition="Very Good"),
            ComparableSale(name="Similar Item 3", price=2950, date="2024-10-05", condition="Good"),
            ComparableSale(name="Similar Item 4", price=3650, date="2024-09-28", condition="Mint"),
        ],
    )


def check_authenticity(request: AuthenticationCheckRequest) -> AuthenticationCheckResponse:
    """Sample authenticity assessment for the requested category."""
    return AuthenticationCheckResponse(
        is_authentic=True,
        confidence_score=87,
        category=request.category.strip(),
        findings=[
            AuthenticationFinding(
                type="positive",
                title="Serial Number Verified",
                description=(
                    "Serial number matches manufacturer records and format is correct "
                    "for the production year."
                ),
            ),
            AuthenticationFinding(
                type="positive",
                title="Material Analysis",
                description=(
                    "Materials and construction quality are consistent with authentic items."
                ),
            ),
            AuthenticationFinding(
                type="warning",
                title="Minor Wear Patterns",
                description=(
                    "Some wear patterns differ slightly from typical aging. "
                    "This could be due to storage conditions."
                ),
            ),
            AuthenticationFinding(
                type="positive",
                title="Marking & Stamps",
                description=(
                    "All markings, stamps, and engravings appear genuine and properly positioned."
                ),
            ),
        ],
        recommendations=[
            "Consider obtaining a certificate of authenticity from an authorized dealer",
            "Document all markings and serial numbers for insurance purposes",
            "Store in proper conditions to maintain value",
            "Get periodic re-evaluations as market values change",
        ],
        needs_expert_review=False,
    )
