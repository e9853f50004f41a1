"""
Valuation Service - Drives a valuation request through its lifecycle.

    pending --(entitlement denied / storage failure)--> failed
    pending --(entitlement consumed, images stored)--> analyzing
    analyzing --(result parsed)--> completed --(human escalation)--> expert_review
    analyzing --(transport / parse failure, sweep timeout)--> failed

Every status change is a compare-and-set in the store, so a request can never
skip a state or be completed after the sweeper failed it.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from structlog import get_logger

from app.db.store import ValuationStore
from app.exceptions import (
    AccountNotFoundError,
    EntitlementDenied,
    InvalidTransitionError,
    ParseError,
    RequestNotFoundError,
    StorageError,
    TransportError,
    ValidationError,
)
from app.models.api import AnalysisType, EntitlementSource, FailureKind, ValuationStatus
from app.models.domain import (
    EntitlementReceipt,
    HistoryDraft,
    HistoryEntryData,
    ImageUpload,
    ValuationImageData,
    ValuationRequestData,
)
from app.observability import log_context, metrics, trace_operation
from app.services.blob_storage import BlobStorage
from app.services.entitlement import EntitlementService
from app.services.valuation_client import ValuationClient, validate_submission

logger = get_logger(__name__)

SIGN_IN_GUIDANCE = "Sign in or create an account to request a valuation."


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def image_storage_path(request_id: UUID, upload: ImageUpload, timestamp_ms: int) -> str:
    """``{request_id}/{timestamp_ms}-{display_order}.{ext}``"""
    return f"{request_id}/{timestamp_ms}-{upload.display_order}.{upload.extension}"


class ValuationService:
    """Valuation request lifecycle."""

    def __init__(
        self,
        store: ValuationStore,
        entitlement: EntitlementService,
        client: ValuationClient,
        blobs: BlobStorage,
        allow_anonymous: bool = False,
        max_images: int = 5,
        analyzing_timeout: timedelta = timedelta(minutes=15),
        refund_on_sweep: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.entitlement = entitlement
        self.client = client
        self.blobs = blobs
        self.allow_anonymous = allow_anonymous
        self.max_images = max_images
        self.analyzing_timeout = analyzing_timeout
        self.refund_on_sweep = refund_on_sweep
        self.clock = clock

    async def submit(
        self,
        account_id: UUID | None,
        category: str,
        description: str,
        images: list[ImageUpload],
    ) -> ValuationRequestData:
        """
        Create a request and run it to a terminal state.

        Raises:
            ValidationError: bad input (nothing created, nothing consumed)
            EntitlementDenied: limit reached (request marked failed, no upload)
            StorageError: image upload or record write failed (unit refunded)
            TransportError: provider unavailable (request marked failed, unit refunded)
            ParseError: provider reply unusable (request marked failed)
            InvalidTransitionError: request was swept to failed before the result landed
        """
        validate_submission(category, description)
        self._validate_images(images)
        category = category.strip()
        description = description.strip()

        if account_id is None and not self.allow_anonymous:
            raise EntitlementDenied(None, "sign_in_required", SIGN_IN_GUIDANCE)

        request = await self.store.create_request(account_id, category, description)
        metrics.record_transition(None, ValuationStatus.PENDING)

        with log_context(request_id=str(request.request_id)):
            logger.info(
                "valuation_request_created",
                account_id=str(account_id) if account_id else None,
                category=category,
                image_count=len(images),
            )

            receipt = await self._consume_entitlement(request.request_id, account_id)

            try:
                await self._store_images(request.request_id, images)
            except StorageError as exc:
                await self.entitlement.refund(receipt)
                await self._fail(
                    request.request_id, ValuationStatus.PENDING, FailureKind.STORAGE_ERROR, exc
                )
                raise

            try:
                await self._transition(
                    request.request_id,
                    ValuationStatus.PENDING,
                    ValuationStatus.ANALYZING,
                    entitlement_source=receipt.to_tag(),
                )
            except StorageError as exc:
                await self.entitlement.refund(receipt)
                await self._fail(
                    request.request_id, ValuationStatus.PENDING, FailureKind.STORAGE_ERROR, exc
                )
                raise

            try:
                with trace_operation(
                    "valuation_analysis",
                    request_id=str(request.request_id),
                    image_count=len(images),
                    model=self.client.model_version,
                ) as span:
                    result = await self.client.analyze(category, description, images)
                    span.set_attribute("confidence_score", result.confidence_score)
            except TransportError as exc:
                await self.entitlement.refund(receipt)
                await self._fail(
                    request.request_id,
                    ValuationStatus.ANALYZING,
                    FailureKind.TRANSPORT_ERROR,
                    exc,
                )
                raise
            except ParseError as exc:
                await self._fail(
                    request.request_id, ValuationStatus.ANALYZING, FailureKind.PARSE_ERROR, exc
                )
                raise

            history = HistoryDraft(
                AnalysisType.AI_INITIAL,
                result.model_dump(mode="json"),
                performed_by=self.client.model_version,
                notes="Flagged for expert review" if result.requires_expert_review else None,
            )
            try:
                completed = await self._transition(
                    request.request_id,
                    ValuationStatus.ANALYZING,
                    ValuationStatus.COMPLETED,
                    result=result,
                    history=history,
                )
            except StorageError as exc:
                await self.entitlement.refund(receipt)
                await self._fail(
                    request.request_id, ValuationStatus.ANALYZING, FailureKind.STORAGE_ERROR, exc
                )
                raise
            except InvalidTransitionError as exc:
                # Swept while the provider was answering; the result is dropped.
                logger.warning("valuation_completion_lost_race", current_status=exc.current)
                raise
            logger.info(
                "valuation_completed",
                value_low=result.estimated_value_low,
                value_high=result.estimated_value_high,
                confidence_score=result.confidence_score,
                requires_expert_review=result.requires_expert_review,
            )
            return completed

    async def escalate_to_expert_review(
        self, request_id: UUID, reviewer: str, notes: str | None = None
    ) -> ValuationRequestData:
        """
        Hand a flagged completed request to a human reviewer.

        Raises:
            RequestNotFoundError: request doesn't exist
            InvalidTransitionError: not completed or not flagged for review
        """
        request = await self.store.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        if (
            request.status != ValuationStatus.COMPLETED
            or request.result is None
            or not request.result.requires_expert_review
        ):
            raise InvalidTransitionError(
                request_id, request.status.value, ValuationStatus.EXPERT_REVIEW.value
            )

        return await self._transition(
            request_id,
            ValuationStatus.COMPLETED,
            ValuationStatus.EXPERT_REVIEW,
            history=HistoryDraft(
                AnalysisType.EXPERT_REVIEW,
                request.result.model_dump(mode="json"),
                performed_by=reviewer,
                notes=notes,
            ),
        )

    async def sweep_stale(self) -> tuple[int, int]:
        """
        Fail requests stuck in analyzing past the timeout.

        Returns:
            (swept, refunded) counts
        """
        cutoff = self.clock() - self.analyzing_timeout
        stale = await self.store.find_stale_analyzing(cutoff)
        swept = refunded = 0

        for request in stale:
            minutes = int(self.analyzing_timeout.total_seconds() // 60)
            try:
                await self.store.transition(
                    request.request_id,
                    ValuationStatus.ANALYZING,
                    ValuationStatus.FAILED,
                    failure_kind=FailureKind.TIMEOUT,
                    failure_reason=f"timeout: no analysis result within {minutes} minutes",
                )
            except InvalidTransitionError:
                # Finished between the query and the update.
                continue
            swept += 1
            metrics.record_transition(ValuationStatus.ANALYZING, ValuationStatus.FAILED)

            if self.refund_on_sweep and request.entitlement_source:
                receipt = EntitlementReceipt.from_tag(
                    request.account_id, request.entitlement_source
                )
                if await self.entitlement.refund(receipt):
                    refunded += 1

        if swept:
            logger.info("stale_valuations_swept", swept=swept, refunded=refunded)
        metrics.record_sweep(swept, refunded)
        return swept, refunded

    async def get_request(
        self, request_id: UUID, account_id: UUID | None = None
    ) -> ValuationRequestData:
        """
        Request detail, optionally restricted to its owner.

        Raises:
            RequestNotFoundError: missing or owned by another account
        """
        request = await self.store.get_request(request_id)
        if request is None or (account_id is not None and request.account_id != account_id):
            raise RequestNotFoundError(request_id)
        return request

    async def list_requests(self, account_id: UUID, limit: int = 10) -> list[ValuationRequestData]:
        return await self.store.list_requests(account_id, limit)

    async def list_history(self, request_id: UUID) -> list[HistoryEntryData]:
        return await self.store.list_history(request_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _validate_images(self, images: list[ImageUpload]) -> None:
        if len(images) > self.max_images:
            raise ValidationError(f"At most {self.max_images} images are allowed", "images")
        orders = sorted(image.display_order for image in images)
        if orders != list(range(len(images))):
            raise ValidationError("Image display order must be contiguous from 0", "images")

    async def _consume_entitlement(
        self, request_id: UUID, account_id: UUID | None
    ) -> EntitlementReceipt:
        if account_id is None:
            return EntitlementReceipt(None, EntitlementSource.ANONYMOUS)

        try:
            return await self.entitlement.consume(account_id)
        except EntitlementDenied as exc:
            await self._fail(request_id, ValuationStatus.PENDING, FailureKind.LIMIT_REACHED, exc)
            raise
        except AccountNotFoundError as exc:
            await self._fail(
                request_id, ValuationStatus.PENDING, FailureKind.ACCOUNT_NOT_FOUND, exc
            )
            raise
        except StorageError as exc:
            await self._fail(request_id, ValuationStatus.PENDING, FailureKind.STORAGE_ERROR, exc)
            raise

    async def _store_images(
        self, request_id: UUID, images: list[ImageUpload]
    ) -> list[ValuationImageData]:
        """Upload concurrently; write rows only after every blob is confirmed."""
        if not images:
            return []

        timestamp_ms = int(self.clock().timestamp() * 1000)
        ordered = sorted(images, key=lambda image: image.display_order)
        paths = [image_storage_path(request_id, image, timestamp_ms) for image in ordered]

        start = time.perf_counter()
        outcomes = await asyncio.gather(
            *(
                self.blobs.upload(image.data, path, image.media_type)
                for image, path in zip(ordered, paths)
            ),
            return_exceptions=True,
        )
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        uploaded = [outcome for outcome in outcomes if isinstance(outcome, str)]
        metrics.record_image_uploads(len(uploaded), len(failures), time.perf_counter() - start)

        if failures:
            await self._delete_blobs(uploaded)
            first = failures[0]
            if isinstance(first, StorageError):
                raise first
            raise StorageError(f"Image upload failed: {first}") from first

        try:
            return await self.store.add_images(request_id, list(zip(ordered, paths)))
        except StorageError:
            await self._delete_blobs(uploaded)
            raise

    async def _delete_blobs(self, paths: list[str]) -> None:
        for path in paths:
            try:
                await self.blobs.delete(path)
            except StorageError as exc:
                logger.warning("orphan_blob_cleanup_failed", path=path, error=str(exc))

    async def _transition(
        self,
        request_id: UUID,
        current: ValuationStatus,
        target: ValuationStatus,
        **changes: object,
    ) -> ValuationRequestData:
        updated = await self.store.transition(request_id, current, target, **changes)
        metrics.record_transition(current, target)
        logger.info(
            "valuation_status_changed",
            from_status=current.value,
            to_status=target.value,
        )
        return updated

    async def _fail(
        self,
        request_id: UUID,
        current: ValuationStatus,
        kind: FailureKind,
        error: Exception,
    ) -> None:
        """Mark failed; the caller re-raises the original error either way."""
        reason = f"{kind.value}: {error}"
        try:
            await self._transition(
                request_id,
                current,
                ValuationStatus.FAILED,
                failure_kind=kind,
                failure_reason=reason,
            )
        except (InvalidTransitionError, StorageError) as exc:
            logger.error(
                "valuation_fail_transition_failed",
                failure_kind=kind.value,
                error=str(exc),
                exc_info=True,
            )
