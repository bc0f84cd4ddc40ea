"""
Tests for the approval workflow and its two configurations.
"""

import uuid
from decimal import Decimal

import pytest

from fees.events import EventType
from fees.exceptions import (
    DuplicateRequestError,
    FeesNotFoundError,
    FeesValidationError,
    InvalidTransitionError,
)
from fees.models import AppliedPenalty, AuditRecord, GradeChangeRequest, WaiverRequest
from fees.services import LedgerService, grade_change_workflow, waiver_workflow
from fees.state_machines import ApprovalStatus, RequesterType
from fees.tests.factories import (
    AppliedPenaltyFactory,
    GradeChangeRequestFactory,
    WaiverRequestFactory,
)

pytestmark = pytest.mark.django_db

applied_grades = []


def recording_applier(target_id, proposed_score, request):
    applied_grades.append((target_id, proposed_score, request.id))


def failing_applier(target_id, proposed_score, request):
    raise RuntimeError("grading service unavailable")


@pytest.fixture
def penalty(institution_id, student_id):
    return AppliedPenaltyFactory(
        invoice__institution_id=institution_id,
        invoice__student_id=student_id,
        amount_cents=50_00,
    )


class TestWaiverRequest:
    """Tests for opening waiver requests."""

    def test_opens_pending_request(self, penalty, institution_id):
        parent_id = uuid.uuid4()

        request = waiver_workflow.request(
            target_id=penalty.id,
            institution_id=institution_id,
            requested_by=parent_id,
            reason="Paid at the bank on the due date",
        )

        assert request.status == ApprovalStatus.PENDING
        assert request.applied_penalty_id == penalty.id
        assert request.requester_type == RequesterType.PARENT

        audit = AuditRecord.objects.get(action="waiver.requested")
        assert audit.actor_id == parent_id
        assert audit.metadata["target_id"] == str(penalty.id)

    def test_second_pending_request_rejected(self, penalty, institution_id):
        waiver_workflow.request(penalty.id, institution_id, uuid.uuid4(), "first")

        with pytest.raises(DuplicateRequestError) as exc_info:
            waiver_workflow.request(penalty.id, institution_id, uuid.uuid4(), "second")

        assert exc_info.value.details == {"target_id": str(penalty.id)}
        assert WaiverRequest.objects.count() == 1

    def test_new_request_allowed_after_rejection(self, penalty, institution_id, actor_id):
        first = waiver_workflow.request(penalty.id, institution_id, uuid.uuid4(), "first")
        waiver_workflow.reject(first.id, reviewer_id=actor_id)

        second = waiver_workflow.request(penalty.id, institution_id, uuid.uuid4(), "with a bank slip")

        assert second.status == ApprovalStatus.PENDING

    def test_missing_penalty(self, institution_id):
        with pytest.raises(FeesNotFoundError) as exc_info:
            waiver_workflow.request(uuid.uuid4(), institution_id, uuid.uuid4(), "x")

        assert exc_info.value.error_code == "PENALTY_NOT_FOUND"

    def test_already_waived_penalty(self, institution_id):
        waived = AppliedPenaltyFactory(invoice__institution_id=institution_id, waived=True)

        with pytest.raises(InvalidTransitionError):
            waiver_workflow.request(waived.id, institution_id, uuid.uuid4(), "x")

    def test_penalty_of_another_institution_refused(self, penalty):
        other_institution = uuid.uuid4()

        with pytest.raises(FeesValidationError) as exc_info:
            waiver_workflow.request(penalty.id, other_institution, uuid.uuid4(), "x")

        assert exc_info.value.details["institution_id"] == str(other_institution)
        assert not WaiverRequest.objects.exists()
        assert not AuditRecord.objects.exists()


class TestWaiverResolution:
    """Tests for approving and rejecting waivers."""

    def test_approve_waives_penalty_and_lowers_balance(
        self, penalty, institution_id, student_id, actor_id, captured_events, django_capture_on_commit_callbacks
    ):
        request = WaiverRequestFactory(applied_penalty=penalty)
        before = LedgerService.student_balance(institution_id, student_id).balance_cents

        with django_capture_on_commit_callbacks(execute=True):
            approved = waiver_workflow.approve(request.id, reviewer_id=actor_id, notes="Bank slip verified")

        assert approved.status == ApprovalStatus.APPROVED
        assert approved.reviewed_by == actor_id
        assert approved.reviewed_at is not None
        assert approved.review_notes == "Bank slip verified"

        waived = AppliedPenalty.objects.get(pk=penalty.pk)
        assert waived.waived is True
        assert waived.waived_by == actor_id
        assert waived.waiver_reason == request.reason
        assert LedgerService.student_balance(institution_id, student_id).balance_cents == before - 50_00

        audit = AuditRecord.objects.get(action="waiver.approved")
        assert audit.metadata["from_status"] == ApprovalStatus.PENDING
        assert audit.metadata["notes"] == "Bank slip verified"

        assert [e.type for e in captured_events] == [EventType.WAIVER_APPROVED]
        payload = captured_events[0].payload
        assert payload["penalty_id"] == str(penalty.id)
        assert payload["amount_cents"] == 50_00
        assert payload["reviewed_by"] == str(actor_id)

    def test_reject_leaves_penalty(
        self, penalty, actor_id, captured_events, django_capture_on_commit_callbacks
    ):
        request = WaiverRequestFactory(applied_penalty=penalty)

        with django_capture_on_commit_callbacks(execute=True):
            rejected = waiver_workflow.reject(request.id, reviewer_id=actor_id, notes="No evidence")

        assert rejected.status == ApprovalStatus.REJECTED
        assert AppliedPenalty.objects.get(pk=penalty.pk).waived is False
        assert [e.type for e in captured_events] == [EventType.WAIVER_REJECTED]

    @pytest.mark.parametrize("first", ["approve", "reject"])
    @pytest.mark.parametrize("second", ["approve", "reject"])
    def test_resolved_requests_are_terminal(self, penalty, actor_id, first, second):
        request = WaiverRequestFactory(applied_penalty=penalty)
        getattr(waiver_workflow, first)(request.id, reviewer_id=actor_id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            getattr(waiver_workflow, second)(request.id, reviewer_id=actor_id)

        assert exc_info.value.details["transition"] == second

    def test_approve_rolls_back_when_penalty_already_waived(
        self, penalty, actor_id, captured_events, django_capture_on_commit_callbacks
    ):
        """Should leave the request pending when the side effect fails."""
        request = WaiverRequestFactory(applied_penalty=penalty)
        penalty.waive(actor_id=uuid.uuid4(), reason="Waived by hand")

        with django_capture_on_commit_callbacks(execute=True):
            with pytest.raises(InvalidTransitionError):
                waiver_workflow.approve(request.id, reviewer_id=actor_id)

        assert WaiverRequest.objects.get(pk=request.pk).status == ApprovalStatus.PENDING
        assert not AuditRecord.objects.filter(action="waiver.approved").exists()
        assert captured_events == []

    def test_unknown_request(self, actor_id):
        with pytest.raises(FeesNotFoundError) as exc_info:
            waiver_workflow.approve(uuid.uuid4(), reviewer_id=actor_id)

        assert exc_info.value.error_code == "REQUEST_NOT_FOUND"

    def test_get_pending(self, institution_id, actor_id):
        older = WaiverRequestFactory(applied_penalty__invoice__institution_id=institution_id)
        newer = WaiverRequestFactory(applied_penalty__invoice__institution_id=institution_id)
        resolved = WaiverRequestFactory(applied_penalty__invoice__institution_id=institution_id)
        waiver_workflow.reject(resolved.id, reviewer_id=actor_id)
        WaiverRequestFactory()

        pending = list(waiver_workflow.get_pending(institution_id))

        assert [r.id for r in pending] == [older.id, newer.id]
        assert waiver_workflow.get_pending().count() == 3


class TestGradeChange:
    """Tests for the grade change workflow."""

    @pytest.fixture(autouse=True)
    def _recording_applier(self, settings):
        applied_grades.clear()
        settings.FEES_GRADE_CHANGE_APPLIER = "fees.tests.test_approval_workflow.recording_applier"

    def test_request_stores_scores(self, institution_id):
        score_id = uuid.uuid4()

        request = grade_change_workflow.request(
            target_id=score_id,
            institution_id=institution_id,
            requested_by=uuid.uuid4(),
            reason="Marking error on question 4",
            requester_type=RequesterType.STAFF,
            current_score=Decimal("62.50"),
            proposed_score=Decimal("68.00"),
        )

        stored = GradeChangeRequest.objects.get(pk=request.pk)
        assert stored.target_id == score_id
        assert stored.proposed_score == Decimal("68.00")
        assert stored.requester_type == RequesterType.STAFF

    def test_duplicate_pending_for_same_score(self, institution_id):
        existing = GradeChangeRequestFactory(institution_id=institution_id)

        with pytest.raises(DuplicateRequestError):
            grade_change_workflow.request(
                existing.target_id, institution_id, uuid.uuid4(), "again", proposed_score=Decimal("70")
            )

    def test_approve_runs_applier(self, actor_id, captured_events, django_capture_on_commit_callbacks):
        request = GradeChangeRequestFactory()

        with django_capture_on_commit_callbacks(execute=True):
            grade_change_workflow.approve(request.id, reviewer_id=actor_id)

        assert applied_grades == [(request.target_id, Decimal("68.00"), request.id)]
        assert [e.type for e in captured_events] == [EventType.GRADE_CHANGE_APPROVED]
        assert captured_events[0].payload["proposed_score"] == "68.00"
        assert captured_events[0].payload["current_score"] == "62.50"

    def test_reject_does_not_run_applier(self, actor_id):
        request = GradeChangeRequestFactory()

        grade_change_workflow.reject(request.id, reviewer_id=actor_id, notes="Score stands")

        assert applied_grades == []
        assert GradeChangeRequest.objects.get(pk=request.pk).status == ApprovalStatus.REJECTED

    def test_failing_applier_rolls_back_approval(self, settings, actor_id):
        settings.FEES_GRADE_CHANGE_APPLIER = "fees.tests.test_approval_workflow.failing_applier"
        request = GradeChangeRequestFactory()

        with pytest.raises(RuntimeError, match="grading service unavailable"):
            grade_change_workflow.approve(request.id, reviewer_id=actor_id)

        assert GradeChangeRequest.objects.get(pk=request.pk).status == ApprovalStatus.PENDING
        assert not AuditRecord.objects.filter(action="grade_change.approved").exists()

    def test_default_applier_logs(self, settings, actor_id, mocker):
        settings.FEES_GRADE_CHANGE_APPLIER = "fees.adapters.grades.log_grade_change"
        request = GradeChangeRequestFactory()
        mock_logger = mocker.patch("fees.adapters.grades.logger")

        grade_change_workflow.approve(request.id, reviewer_id=actor_id)

        message = mock_logger.info.call_args[0][0]
        assert message == f"Grade change approved for {request.target_id}"
        assert mock_logger.info.call_args[1]["extra"]["proposed_score"] == "68.00"
