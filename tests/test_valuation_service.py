"""
Tests for ValuationService.

Covers the full submission lifecycle, refunds on infrastructure failures,
image persistence, the stale request sweep and expert review escalation.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from fakes import (
    FakeBlobStorage,
    PNG_BYTES,
    InMemoryValuationStore,
    ScriptedProvider,
    make_upload,
    no_sleep,
    valuation_reply,
)

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
from app.models.domain import ImageUpload
from app.services.entitlement import AccountLockRegistry, EntitlementService
from app.services.valuation import ValuationService, image_storage_path
from app.services.valuation_client import ValuationClient

SEIKO = "Seiko dive watch, 1978, some scratches"
WATCHES = "vintage-watches"


def two_images() -> list[ImageUpload]:
    return [make_upload(0), make_upload(1)]


def build_service(
    store: InMemoryValuationStore,
    provider: ScriptedProvider,
    blobs: FakeBlobStorage | None = None,
    **kwargs: object,
) -> ValuationService:
    entitlement = EntitlementService(store, locks=AccountLockRegistry(), clock=lambda: store.now)
    client = ValuationClient(provider, max_retries=2, sleep=no_sleep)
    return ValuationService(
        store,
        entitlement,
        client,
        blobs or FakeBlobStorage(),
        clock=lambda: store.now,
        **kwargs,  # type: ignore[arg-type]
    )


# ============================================================================
# Acceptance Scenarios
# ============================================================================


class TestSubmissionScenarios:
    """End-to-end submissions against in-memory collaborators."""

    async def test_unlimited_plan_completes(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test an unlimited account reaches completed with a usable range."""
        account_id = store.add_account(allowance=-1)

        request = await valuation_service.submit(account_id, WATCHES, SEIKO, two_images())

        assert request.status == ValuationStatus.COMPLETED
        assert request.result is not None
        assert request.result.item_identification.strip()
        assert request.result.estimated_value_low < request.result.estimated_value_high
        assert request.completed_at is not None
        assert request.entitlement_source == EntitlementSource.UNLIMITED.value

    async def test_exhausted_plan_denied_before_upload(
        self,
        store: InMemoryValuationStore,
        blobs: FakeBlobStorage,
        valuation_service: ValuationService,
    ) -> None:
        """Test a used-up allowance with no credits is denied before any upload."""
        account_id = store.add_account(allowance=1, used=1)

        with pytest.raises(EntitlementDenied):
            await valuation_service.submit(account_id, WATCHES, SEIKO, two_images())

        assert blobs.upload_calls == 0
        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.LIMIT_REACHED
        assert request.images == ()

    async def test_transport_timeout_fails_request(self, store: InMemoryValuationStore) -> None:
        """Test a provider timeout fails the request with no result written."""
        provider = ScriptedProvider(TransportError("Analysis provider timed out"))
        service = build_service(store, provider)
        account_id = store.add_account(allowance=1, used=0)

        with pytest.raises(TransportError):
            await service.submit(account_id, WATCHES, SEIKO, two_images())

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.TRANSPORT_ERROR
        assert request.failure_reason is not None
        assert request.failure_reason.startswith("transport_error")
        assert request.result is None
        assert store.history == []

    async def test_transport_failure_refunds_allowance(
        self, store: InMemoryValuationStore
    ) -> None:
        """Test the consumed unit is given back after a transport failure."""
        service = build_service(store, ScriptedProvider(TransportError("connection reset")))
        account_id = store.add_account(allowance=1, used=0)

        with pytest.raises(TransportError):
            await service.submit(account_id, WATCHES, SEIKO, [])

        assert store.accounts[account_id].usage_used == 0

    async def test_parse_failure_keeps_consumption(self, store: InMemoryValuationStore) -> None:
        """Test an unparseable reply fails the request without a refund."""
        service = build_service(store, ScriptedProvider("I am unable to value this item."))
        account_id = store.add_account(allowance=2, used=0)

        with pytest.raises(ParseError):
            await service.submit(account_id, WATCHES, SEIKO, [])

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.PARSE_ERROR
        assert request.result is None
        assert store.accounts[account_id].usage_used == 1

    async def test_missing_confidence_never_completes(
        self, store: InMemoryValuationStore
    ) -> None:
        """Test a reply missing a required field ends in failed."""
        reply = valuation_reply().replace('"confidenceScore": 72, ', "")
        service = build_service(store, ScriptedProvider(reply))
        account_id = store.add_account(allowance=-1)

        with pytest.raises(ParseError):
            await service.submit(account_id, WATCHES, SEIKO, [])

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED

    async def test_credit_funded_request(self, store: InMemoryValuationStore) -> None:
        """Test credits fund the request once the allowance is gone."""
        service = build_service(store, ScriptedProvider(valuation_reply()))
        account_id = store.add_account(allowance=1, used=1)
        grant_id = store.add_grant(account_id, 3)

        request = await service.submit(account_id, WATCHES, SEIKO, [])

        assert request.entitlement_source == f"credit:{grant_id}"
        assert store.credits_of(account_id) == 2

    async def test_unknown_account_fails_request(self, store: InMemoryValuationStore) -> None:
        """Test a token for an account with no record fails as account_not_found."""
        service = build_service(store, ScriptedProvider(valuation_reply()))

        with pytest.raises(AccountNotFoundError):
            await service.submit(uuid4(), WATCHES, SEIKO, [])

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.ACCOUNT_NOT_FOUND
        assert request.failure_reason is not None
        assert request.failure_reason.startswith("account_not_found")


# ============================================================================
# Validation & Anonymous Access
# ============================================================================


class TestSubmissionValidation:
    """Tests for input rejected before anything is created."""

    @pytest.mark.parametrize(("category", "description"), [("", SEIKO), (WATCHES, "   ")])
    async def test_blank_input_creates_nothing(
        self,
        store: InMemoryValuationStore,
        valuation_service: ValuationService,
        category: str,
        description: str,
    ) -> None:
        """Test blank input is rejected without a record or consumption."""
        account_id = store.add_account(allowance=1)

        with pytest.raises(ValidationError):
            await valuation_service.submit(account_id, category, description, [])

        assert store.requests == {}
        assert store.accounts[account_id].usage_used == 0

    async def test_too_many_images(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test more than the image limit is rejected."""
        account_id = store.add_account(allowance=1)
        images = [make_upload(i) for i in range(6)]

        with pytest.raises(ValidationError):
            await valuation_service.submit(account_id, WATCHES, SEIKO, images)

        assert store.requests == {}

    async def test_gap_in_display_order(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test display orders must be contiguous from zero."""
        account_id = store.add_account(allowance=1)

        with pytest.raises(ValidationError):
            await valuation_service.submit(
                account_id, WATCHES, SEIKO, [make_upload(0), make_upload(2)]
            )

    async def test_anonymous_rejected_by_default(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test anonymous submissions need sign in unless enabled."""
        with pytest.raises(EntitlementDenied) as exc_info:
            await valuation_service.submit(None, WATCHES, SEIKO, [])

        assert exc_info.value.reason == "sign_in_required"
        assert store.requests == {}

    async def test_anonymous_allowed_when_enabled(self, store: InMemoryValuationStore) -> None:
        """Test anonymous submissions complete when enabled."""
        service = build_service(store, ScriptedProvider(valuation_reply()), allow_anonymous=True)

        request = await service.submit(None, WATCHES, SEIKO, [make_upload(0)])

        assert request.status == ValuationStatus.COMPLETED
        assert request.account_id is None
        assert request.entitlement_source == EntitlementSource.ANONYMOUS.value


# ============================================================================
# Images
# ============================================================================


class TestImagePersistence:
    """Tests for image upload and row creation."""

    @pytest.mark.parametrize("count", [0, 1, 2, 3, 4, 5])
    async def test_rows_match_uploads(
        self,
        store: InMemoryValuationStore,
        blobs: FakeBlobStorage,
        valuation_service: ValuationService,
        count: int,
    ) -> None:
        """Test N images produce N rows ordered 0..N-1 with only order 0 primary."""
        account_id = store.add_account(allowance=-1)
        images = [make_upload(i) for i in reversed(range(count))]

        request = await valuation_service.submit(account_id, WATCHES, SEIKO, images)

        stored = store.images_of(request.request_id)
        assert len(stored) == count
        assert [image.display_order for image in stored] == list(range(count))
        assert sum(image.is_primary for image in stored) == (1 if count else 0)
        if count:
            assert request.primary_image is not None
            assert request.primary_image.display_order == 0
        assert len(blobs.objects) == count

    async def test_storage_path_layout(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test blobs are stored under the request id."""
        account_id = store.add_account(allowance=-1)

        request = await valuation_service.submit(account_id, WATCHES, SEIKO, two_images())

        timestamp_ms = int(store.now.timestamp() * 1000)
        paths = [image.storage_path for image in request.images]
        assert paths == [
            f"{request.request_id}/{timestamp_ms}-0.png",
            f"{request.request_id}/{timestamp_ms}-1.png",
        ]

    def test_image_storage_path(self) -> None:
        """Test the storage path format."""
        request_id = uuid4()
        path = image_storage_path(request_id, make_upload(3), 1700000000000)
        assert path == f"{request_id}/1700000000000-3.png"

    async def test_client_filename_never_reaches_path(
        self, store: InMemoryValuationStore, blobs: FakeBlobStorage
    ) -> None:
        """Test path segments in the client filename can't escape the request folder."""
        service = build_service(store, ScriptedProvider(valuation_reply()), blobs=blobs)
        account_id = store.add_account(allowance=-1)
        upload = ImageUpload(PNG_BYTES, "image/png", "x.png/../../other-request/evil", 0)

        request = await service.submit(account_id, WATCHES, SEIKO, [upload])

        (path,) = blobs.objects
        timestamp_ms = int(store.now.timestamp() * 1000)
        assert path == f"{request.request_id}/{timestamp_ms}-0.png"
        assert request.images[0].file_name == "x.png/../../other-request/evil"

    async def test_partial_upload_failure_cleans_up(self, store: InMemoryValuationStore) -> None:
        """Test a failed upload leaves no rows, deletes stored blobs and refunds."""
        blobs = FakeBlobStorage(fail_paths_containing="-1.")
        service = build_service(store, ScriptedProvider(valuation_reply()), blobs=blobs)
        account_id = store.add_account(allowance=1, used=0)

        with pytest.raises(StorageError):
            await service.submit(account_id, WATCHES, SEIKO, [make_upload(i) for i in range(3)])

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.STORAGE_ERROR
        assert request.images == ()
        assert blobs.objects == {}
        assert len(blobs.deleted) == 2
        assert store.accounts[account_id].usage_used == 0

    async def test_row_write_failure_deletes_blobs(self, store: InMemoryValuationStore) -> None:
        """Test blobs are removed when image rows can't be written."""
        blobs = FakeBlobStorage()
        service = build_service(store, ScriptedProvider(valuation_reply()), blobs=blobs)
        account_id = store.add_account(allowance=1, used=0)
        store.failing.add("add_images")

        with pytest.raises(StorageError):
            await service.submit(account_id, WATCHES, SEIKO, two_images())

        assert blobs.objects == {}
        assert store.accounts[account_id].usage_used == 0


# ============================================================================
# Status Write Failures
# ============================================================================


class SweptDuringAnalysis(ScriptedProvider):
    """Provider whose request is timed out by the sweeper before it answers."""

    def __init__(self, store: InMemoryValuationStore) -> None:
        super().__init__(valuation_reply())
        self.store = store

    async def analyze(self, instruction: str, images: list) -> str:
        (request,) = self.store.requests.values()
        await self.store.transition(
            request.request_id,
            ValuationStatus.ANALYZING,
            ValuationStatus.FAILED,
            failure_kind=FailureKind.TIMEOUT,
            failure_reason="timeout: no analysis result within 15 minutes",
        )
        return await super().analyze(instruction, images)


class TestStatusWriteFailures:
    """Tests for store failures and races around status changes."""

    async def test_analyzing_write_failure_refunds(self, store: InMemoryValuationStore) -> None:
        """Test a failed move to analyzing ends in failed with the unit given back."""
        provider = ScriptedProvider(valuation_reply())
        service = build_service(store, provider)
        account_id = store.add_account(allowance=1, used=0)
        store.failing_transitions.add((ValuationStatus.PENDING, ValuationStatus.ANALYZING))

        with pytest.raises(StorageError):
            await service.submit(account_id, WATCHES, SEIKO, [])

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.STORAGE_ERROR
        assert store.accounts[account_id].usage_used == 0
        assert provider.calls == []

    async def test_completion_write_failure_refunds(self, store: InMemoryValuationStore) -> None:
        """Test a result that can't be saved fails the request and refunds."""
        service = build_service(store, ScriptedProvider(valuation_reply()))
        account_id = store.add_account(allowance=1, used=0)
        store.failing_transitions.add((ValuationStatus.ANALYZING, ValuationStatus.COMPLETED))

        with pytest.raises(StorageError):
            await service.submit(account_id, WATCHES, SEIKO, [])

        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.STORAGE_ERROR
        assert request.result is None
        assert store.accounts[account_id].usage_used == 0
        assert store.history == []

    async def test_swept_during_analysis_writes_no_history(
        self, store: InMemoryValuationStore
    ) -> None:
        """Test a result arriving after the sweep leaves no success record."""
        service = build_service(store, SweptDuringAnalysis(store))
        account_id = store.add_account(allowance=-1)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.submit(account_id, WATCHES, SEIKO, [])

        assert exc_info.value.current == ValuationStatus.FAILED.value
        (request,) = store.requests.values()
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.TIMEOUT
        assert request.result is None
        assert store.history == []

    async def test_edge_outside_lifecycle_rejected(self, store: InMemoryValuationStore) -> None:
        """Test pending can't jump straight to completed even when the status matches."""
        request = await store.create_request(None, WATCHES, SEIKO)

        with pytest.raises(InvalidTransitionError):
            await store.transition(
                request.request_id, ValuationStatus.PENDING, ValuationStatus.COMPLETED
            )

        assert store.requests[request.request_id].status == ValuationStatus.PENDING
        assert store.transitions == []


# ============================================================================
# History & Concurrency
# ============================================================================


class TestHistoryAndConcurrency:
    """Tests for history entries and concurrent submissions."""

    async def test_initial_history_entry(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test completion appends one AI history entry."""
        account_id = store.add_account(allowance=-1)

        request = await valuation_service.submit(account_id, WATCHES, SEIKO, [])

        history = await valuation_service.list_history(request.request_id)
        assert len(history) == 1
        assert history[0].analysis_type == AnalysisType.AI_INITIAL
        assert history[0].performed_by == "test-model"
        assert history[0].analysis_data["item_identification"]

    async def test_lifecycle_passes_through_analyzing(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test a completed request went pending -> analyzing -> completed."""
        account_id = store.add_account(allowance=-1)

        request = await valuation_service.submit(account_id, WATCHES, SEIKO, [])

        steps = [(c, t) for rid, c, t in store.transitions if rid == request.request_id]
        assert steps == [
            (ValuationStatus.PENDING, ValuationStatus.ANALYZING),
            (ValuationStatus.ANALYZING, ValuationStatus.COMPLETED),
        ]

    async def test_concurrent_submissions_last_unit(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test two simultaneous submissions for the last unit: one completes, one is denied."""
        account_id = store.add_account(allowance=1, used=0)

        outcomes = await asyncio.gather(
            valuation_service.submit(account_id, WATCHES, SEIKO, []),
            valuation_service.submit(account_id, WATCHES, SEIKO, []),
            return_exceptions=True,
        )

        denied = [o for o in outcomes if isinstance(o, EntitlementDenied)]
        assert len(denied) == 1
        statuses = sorted(r.status.value for r in store.requests.values())
        assert statuses == ["completed", "failed"]
        assert store.accounts[account_id].usage_used == 1


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    """Tests for request lookups."""

    async def test_owner_only(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test other accounts can't see a request."""
        owner = store.add_account(allowance=-1)
        request = await valuation_service.submit(owner, WATCHES, SEIKO, [])

        found = await valuation_service.get_request(request.request_id, account_id=owner)
        assert found.request_id == request.request_id

        with pytest.raises(RequestNotFoundError):
            await valuation_service.get_request(request.request_id, account_id=uuid4())

    async def test_missing_request(self, valuation_service: ValuationService) -> None:
        """Test unknown ids raise RequestNotFoundError."""
        with pytest.raises(RequestNotFoundError):
            await valuation_service.get_request(uuid4())

    async def test_list_requests(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test listing is limited to the account."""
        mine = store.add_account(allowance=-1)
        theirs = store.add_account(allowance=-1)
        await valuation_service.submit(mine, WATCHES, SEIKO, [])
        await valuation_service.submit(mine, WATCHES, SEIKO, [])
        await valuation_service.submit(theirs, WATCHES, SEIKO, [])

        assert len(await valuation_service.list_requests(mine, limit=10)) == 2
        assert len(await valuation_service.list_requests(mine, limit=1)) == 1


# ============================================================================
# Stale Sweep
# ============================================================================


async def _stuck_request(store: InMemoryValuationStore, account_id, source: str = "allowance"):
    request = await store.create_request(account_id, WATCHES, SEIKO)
    return await store.transition(
        request.request_id,
        ValuationStatus.PENDING,
        ValuationStatus.ANALYZING,
        entitlement_source=source,
    )


class TestSweepStale:
    """Tests for ValuationService.sweep_stale."""

    async def test_fails_and_refunds_stuck_request(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test requests stuck past the timeout are failed and refunded."""
        account_id = store.add_account(allowance=1, used=1)
        stuck = await _stuck_request(store, account_id)
        store.now += timedelta(minutes=20)

        swept, refunded = await valuation_service.sweep_stale()

        assert (swept, refunded) == (1, 1)
        request = store.requests[stuck.request_id]
        assert request.status == ValuationStatus.FAILED
        assert request.failure_kind == FailureKind.TIMEOUT
        assert request.failure_reason == "timeout: no analysis result within 15 minutes"
        assert store.accounts[account_id].usage_used == 0

    async def test_recent_requests_untouched(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test requests inside the timeout are left alone."""
        account_id = store.add_account(allowance=1, used=1)
        stuck = await _stuck_request(store, account_id)
        store.now += timedelta(minutes=5)

        assert await valuation_service.sweep_stale() == (0, 0)
        assert store.requests[stuck.request_id].status == ValuationStatus.ANALYZING

    async def test_no_refund_when_disabled(self, store: InMemoryValuationStore) -> None:
        """Test the refund can be switched off."""
        service = build_service(store, ScriptedProvider(valuation_reply()), refund_on_sweep=False)
        account_id = store.add_account(allowance=1, used=1)
        await _stuck_request(store, account_id)
        store.now += timedelta(minutes=20)

        assert await service.sweep_stale() == (1, 0)
        assert store.accounts[account_id].usage_used == 1

    async def test_credit_refund_uses_tag(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test credit-funded requests refund the original grant."""
        account_id = store.add_account(allowance=0)
        grant_id = store.add_grant(account_id, 2)
        store.grants[0].credits_remaining = 1
        await _stuck_request(store, account_id, source=f"credit:{grant_id}")
        store.now += timedelta(minutes=20)

        assert await valuation_service.sweep_stale() == (1, 1)
        assert store.credits_of(account_id) == 2

    async def test_skips_request_finished_meanwhile(
        self,
        store: InMemoryValuationStore,
        valuation_service: ValuationService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a request completed after the scan is not failed."""
        account_id = store.add_account(allowance=1, used=1)
        snapshot = await _stuck_request(store, account_id)
        await store.transition(
            snapshot.request_id, ValuationStatus.ANALYZING, ValuationStatus.COMPLETED
        )

        async def stale(cutoff):
            return [snapshot]

        monkeypatch.setattr(store, "find_stale_analyzing", stale)

        assert await valuation_service.sweep_stale() == (0, 0)
        assert store.requests[snapshot.request_id].status == ValuationStatus.COMPLETED
        assert store.accounts[account_id].usage_used == 1


# ============================================================================
# Expert Review
# ============================================================================


class TestExpertReview:
    """Tests for ValuationService.escalate_to_expert_review."""

    async def test_flagged_request_escalates(self, store: InMemoryValuationStore) -> None:
        """Test a flagged completed request moves to expert_review."""
        service = build_service(store, ScriptedProvider(valuation_reply(requiresExpertReview=True)))
        account_id = store.add_account(allowance=-1)
        completed = await service.submit(account_id, WATCHES, SEIKO, [])

        reviewed = await service.escalate_to_expert_review(
            completed.request_id, "jane@appraisers.test", "Claimed for in-person review"
        )

        assert reviewed.status == ValuationStatus.EXPERT_REVIEW
        history = await service.list_history(completed.request_id)
        assert [entry.analysis_type for entry in history] == [
            AnalysisType.AI_INITIAL,
            AnalysisType.EXPERT_REVIEW,
        ]
        assert history[0].notes == "Flagged for expert review"
        assert history[1].performed_by == "jane@appraisers.test"

    async def test_unflagged_request_rejected(
        self, store: InMemoryValuationStore, valuation_service: ValuationService
    ) -> None:
        """Test requests not flagged for review can't be escalated."""
        account_id = store.add_account(allowance=-1)
        completed = await valuation_service.submit(account_id, WATCHES, SEIKO, [])

        with pytest.raises(InvalidTransitionError):
            await valuation_service.escalate_to_expert_review(completed.request_id, "jane")

    async def test_failed_request_rejected(self, store: InMemoryValuationStore) -> None:
        """Test failed requests can't be escalated."""
        service = build_service(store, ScriptedProvider("no json"))
        account_id = store.add_account(allowance=-1)
        with pytest.raises(ParseError):
            await service.submit(account_id, WATCHES, SEIKO, [])
        (request,) = store.requests.values()

        with pytest.raises(InvalidTransitionError):
            await service.escalate_to_expert_review(request.request_id, "jane")

    async def test_unknown_request(self, valuation_service: ValuationService) -> None:
        """Test unknown ids raise RequestNotFoundError."""
        with pytest.raises(RequestNotFoundError):
            await valuation_service.escalate_to_expert_review(uuid4(), "jane")
