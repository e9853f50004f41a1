"""
Valuation Client - Turns an item description and photos into a structured result.

Builds the appraisal instruction, attaches images inline, calls the analysis
provider (retrying transient transport failures only) and defensively parses
the first JSON object out of the free-form reply.
"""

import asyncio
import base64
import binascii
import json
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from structlog import get_logger

from app.exceptions import ParseError, TransportError, ValidationError
from app.models.api import ConditionRating, MarketType, ValuationResult
from app.models.domain import ImageUpload, InlineImage
from app.observability import metrics
from app.services.analysis_provider import AnalysisProvider
from app.services.catalog import category_display_name

logger = get_logger(__name__)

SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
DEFAULT_MEDIA_TYPE = "image/png"

_CONDITION_BY_NAME = {rating.value.lower(): rating for rating in ConditionRating}
_MARKET_BY_NAME = {market.value.lower(): market for market in MarketType}

_CONDITION_CHOICES = "|".join(rating.value for rating in ConditionRating)
_MARKET_CHOICES = "|".join(market.value for market in MarketType)


def validate_submission(category: str, description: str) -> None:
    """
    Reject empty input before anything is created or consumed.

    Raises:
        ValidationError: category or description missing
    """
    if not category or not category.strip():
        raise ValidationError("Description and category are required", field="category")
    if not description or not description.strip():
        raise ValidationError("Description and category are required", field="description")


def build_prompt(category: str, description: str) -> str:
    """Natural-language appraisal instruction for one item."""
    category_name = category_display_name(category)
    return f"""You are an expert appraiser with extensive knowledge of {category_name}, collectibles, art, jewelry, and other valuable items. Provide an accurate valuation based on the provided images and description.

**Item Information:**
- Category: {category_name}
- Description: {description}

**Your Analysis Must Include:**

1. **Item Identification**: State what the item is, including maker or brand if identifiable from the images.
2. **Estimated Value Range**: A realistic market value range with low and high estimates in USD. Be conservative.
3. **Condition Assessment**: Rate the condition as one of {_CONDITION_CHOICES} and explain how it affects value.
4. **Valuation Methodology**: The factors used to determine value (rarity, demand, condition, provenance, brand, materials, craftsmanship).
5. **Market Context**: Which market the valuation applies to ({_MARKET_CHOICES}) and current conditions for this type of item.
6. **Sources and Comparables**: General market knowledge or typical price ranges for similar items. Be honest about what photos alone can show.
7. **Recommendations**: 3-5 specific recommendations for the owner (authentication, care, selling venues, insurance).
8. **Confidence Score**: Your confidence in this valuation from 0 to 100, considering image quality and available information.
9. **Expert Review**: Whether an in-person professional appraisal is advised.
10. **Limitations**: The limitations of this photo-based assessment.

**Response Format:**
Reply with exactly one JSON object with this structure and no other JSON:
{{
  "itemIdentification": "Full item name with brand/maker",
  "estimatedValueLow": number (USD),
  "estimatedValueHigh": number (USD),
  "currency": "USD",
  "conditionAssessment": "Detailed condition description",
  "conditionRating": "{_CONDITION_CHOICES}",
  "valuationMethodology": "How the value was determined",
  "marketContext": "Market analysis and context",
  "marketType": "{_MARKET_CHOICES}",
  "recommendations": ["recommendation 1", "recommendation 2", "recommendation 3"],
  "confidenceScore": number (0-100),
  "requiresExpertReview": boolean,
  "limitations": "Limitations of this assessment",
  "sources": ["source 1", "source 2"]
}}

Be professional, thorough, and honest. If you cannot provide a confident valuation, say so and recommend expert review."""


def sniff_media_type(data: bytes) -> str | None:
    """Media type from magic bytes, or None if unrecognised."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def detect_media_type(data: bytes, declared: str | None = None) -> str:
    """Declared type if supported, else sniffed, else PNG."""
    if declared:
        declared = declared.split(";", 1)[0].strip().lower()
        if declared == "image/jpg":
            declared = "image/jpeg"
        if declared in SUPPORTED_MEDIA_TYPES:
            return declared
    return sniff_media_type(data) or DEFAULT_MEDIA_TYPE


def decode_image(
    payload: str,
    display_order: int,
    media_type: str | None = None,
    filename: str | None = None,
    max_bytes: int | None = None,
) -> ImageUpload:
    """
    Decode a base64 string or ``data:`` URL into an ImageUpload.

    Raises:
        ValidationError: payload is not valid base64 or exceeds max_bytes
    """
    declared = media_type
    encoded = payload.strip()
    if encoded.startswith("data:"):
        header, _, encoded = encoded.partition(",")
        declared = declared or header[5:].split(";", 1)[0]

    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Image {display_order + 1} is not valid base64", "images") from exc

    if not data:
        raise ValidationError(f"Image {display_order + 1} is empty", "images")
    if max_bytes is not None and len(data) > max_bytes:
        raise ValidationError(
            f"Image {display_order + 1} exceeds the {max_bytes // (1024 * 1024)} MB limit",
            "images",
        )

    detected = detect_media_type(data, declared)
    name = filename or f"image-{display_order}.{detected.split('/', 1)[1].replace('jpeg', 'jpg')}"
    return ImageUpload(data=data, media_type=detected, filename=name, display_order=display_order)


def extract_json_object(text: str) -> dict[str, Any]:
    """
    First top-level JSON object embedded in free-form text.

    Raises:
        ParseError: no decodable object found
    """
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        index = text.find("{", index + 1)
    raise ParseError("reply contains no JSON object")


def _append_note(text: str | None, note: str) -> str:
    return f"{text.rstrip()} {note}" if text else note


def normalize_result(raw: dict[str, Any]) -> ValuationResult:
    """
    Validate a decoded object and clamp it into the result invariants.

    Inverted ranges are swapped and flagged for expert review; unknown
    condition ratings become Fair with a note.

    Raises:
        ParseError: required fields missing, non-numeric, non-finite or negative
    """
    try:
        result = ValuationResult.model_validate(raw)
    except PydanticValidationError as exc:
        missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ParseError(f"invalid or missing fields: {missing}") from exc

    if not result.item_identification.strip():
        raise ParseError("item identification is empty")

    numbers = (result.estimated_value_low, result.estimated_value_high, result.confidence_score)
    if not all(math.isfinite(n) for n in numbers):
        raise ParseError("numeric fields must be finite")
    if result.estimated_value_low < 0 or result.estimated_value_high < 0:
        raise ParseError("value range cannot be negative")

    updates: dict[str, Any] = {
        "item_identification": result.item_identification.strip(),
        "confidence_score": min(max(result.confidence_score, 0.0), 100.0),
        "recommendations": [r.strip() for r in result.recommendations if r and r.strip()],
        "sources": [s.strip() for s in result.sources if s and s.strip()],
    }

    if result.estimated_value_low > result.estimated_value_high:
        updates["estimated_value_low"] = result.estimated_value_high
        updates["estimated_value_high"] = result.estimated_value_low
        updates["requires_expert_review"] = True
        updates["limitations"] = _append_note(
            result.limitations,
            "The estimated range was returned inverted and has been reordered; "
            "treat this valuation with caution.",
        )

    rating = _CONDITION_BY_NAME.get((result.condition_rating or "").strip().lower())
    if rating is None:
        updates["condition_rating"] = ConditionRating.FAIR.value
        updates["condition_assessment"] = _append_note(
            result.condition_assessment,
            f"(Condition rating {result.condition_rating!r} was not recognised "
            "and has been recorded as Fair.)",
        )
    else:
        updates["condition_rating"] = rating.value

    market = _MARKET_BY_NAME.get((result.market_type or "").strip().lower())
    updates["market_type"] = market.value if market else None

    return result.model_copy(update=updates)


def parse_reply(text: str) -> ValuationResult:
    """
    Parse a provider reply into a ValuationResult.

    Raises:
        ParseError: no object, undecodable, or invalid fields
    """
    return normalize_result(extract_json_object(text))


def to_inline_image(upload: ImageUpload) -> InlineImage:
    return InlineImage(
        media_type=upload.media_type,
        data_base64=base64.b64encode(upload.data).decode("ascii"),
    )


class ValuationClient:
    """Boundary adapter between the lifecycle and the analysis provider."""

    def __init__(
        self,
        provider: AnalysisProvider,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def model_version(self) -> str:
        return self.provider.model_version

    async def analyze(
        self, category: str, description: str, images: list[ImageUpload]
    ) -> ValuationResult:
        """
        Run one valuation.

        Raises:
            ValidationError: empty category or description (no provider call made)
            TransportError: provider unreachable after bounded retries
            ParseError: reply could not be decoded into a result
        """
        validate_submission(category, description)
        instruction = build_prompt(category.strip(), description.strip())
        inline = [to_inline_image(image) for image in sorted(images, key=lambda i: i.display_order)]

        reply = await self._call_with_retry(instruction, inline)

        try:
            result = parse_reply(reply)
        except ParseError as exc:
            metrics.record_provider_failure("parse_error")
            logger.warning(
                "valuation_reply_unparseable",
                error=exc.message,
                reply_preview=reply[:200],
            )
            raise
        return result

    async def _call_with_retry(self, instruction: str, images: list[InlineImage]) -> str:
        attempt = 0
        while True:
            start = time.perf_counter()
            try:
                reply = await self.provider.analyze(instruction, images)
            except TransportError as exc:
                metrics.record_provider_call(time.perf_counter() - start, success=False)
                metrics.record_provider_failure("transport_error")
                if not exc.retryable or attempt >= self.max_retries:
                    logger.error(
                        "analysis_provider_failed",
                        error=exc.message,
                        attempts=attempt + 1,
                        retryable=exc.retryable,
                    )
                    raise
                delay = self.backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    "analysis_provider_retry",
                    error=exc.message,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)
                continue

            metrics.record_provider_call(time.perf_counter() - start, success=True)
            return reply
