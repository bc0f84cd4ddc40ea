"""
Generic two-party approval workflow.

ApprovalWorkflow captures the contract shared by every approval request
type once:

- at most one pending request per target (DuplicateRequestError otherwise)
- pending -> approved | rejected, both terminal (InvalidTransitionError
  when resolving a resolved request)
- approval runs the status write and the injected on_approve side effect in
  one transaction: both commit or neither does
- every transition writes an audit record; resolutions publish a domain event

Two workflows are configured at the bottom of this module:

- waiver_workflow: approving marks the AppliedPenalty waived
- grade_change_workflow: approving hands the corrected score to the
  applier configured in FEES_GRADE_CHANGE_APPLIER

Usage:
    from fees.services import waiver_workflow

    request = waiver_workflow.request(
        target_id=penalty.id,
        institution_id=penalty.institution_id,
        requested_by=parent_id,
        reason="Paid at the bank on the due date",
    )
    waiver_workflow.approve(request.id, reviewer_id=bursar_id, notes="Bank slip verified")
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Generic, TypeVar

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils.module_loading import import_string

from django_fsm import TransitionNotAllowed

from fees.events import EventType, publish, record_audit
from fees.exceptions import (
    DuplicateRequestError,
    FeesNotFoundError,
    FeesValidationError,
    InvalidTransitionError,
)
from fees.models import AppliedPenalty, ApprovalRequest, GradeChangeRequest, WaiverRequest
from fees.state_machines import ApprovalStatus, RequesterType

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

    from django.db.models import QuerySet

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=ApprovalRequest)


class ApprovalWorkflow(Generic[R]):
    """
    Two-party approval state machine parameterized over its target.

    Args:
        name: Short name used in audit actions and logs (e.g., "waiver")
        request_model: Concrete ApprovalRequest subclass
        target_field: Attribute on the request holding the target id
            (e.g., "applied_penalty_id")
        on_approve: Side effect run with the approved request inside the
            approving transaction; raising rolls the approval back
        check_target: Optional validation of (target_id, institution_id)
            before a request is opened; raise to refuse the request
        approved_event/rejected_event: Domain event types to publish
        event_payload: Builds the event payload from a resolved request
    """

    def __init__(
        self,
        name: str,
        request_model: type[R],
        target_field: str,
        on_approve: Callable[[R], None],
        approved_event: str,
        rejected_event: str,
        check_target: Callable[[uuid.UUID, uuid.UUID], None] | None = None,
        event_payload: Callable[[R], dict[str, Any]] | None = None,
    ) -> None:
        self.name = name
        self.request_model = request_model
        self.target_field = target_field
        self.on_approve = on_approve
        self.approved_event = approved_event
        self.rejected_event = rejected_event
        self.check_target = check_target
        self.event_payload = event_payload

    def __repr__(self) -> str:
        return f"ApprovalWorkflow({self.name}, {self.request_model.__name__})"

    @property
    def entity_type(self) -> str:
        return f"{self.name}_request"

    # ==========================================================================
    # Operations
    # ==========================================================================

    def request(
        self,
        target_id: uuid.UUID,
        institution_id: uuid.UUID,
        requested_by: uuid.UUID,
        reason: str,
        requester_type: str = RequesterType.PARENT,
        **fields: Any,
    ) -> R:
        """
        Open a pending request against target_id.

        Extra keyword fields are stored on the request (e.g., proposed_score).

        Raises:
            DuplicateRequestError: If a pending request already targets target_id
        """
        if self.check_target is not None:
            self.check_target(target_id, institution_id)

        with transaction.atomic():
            pending = self.request_model.objects.filter(
                **{self.target_field: target_id, "status": ApprovalStatus.PENDING}
            )
            if pending.exists():
                raise self._duplicate(target_id)

            try:
                with transaction.atomic():
                    request = self.request_model.objects.create(
                        institution_id=institution_id,
                        requested_by=requested_by,
                        requester_type=requester_type,
                        reason=reason,
                        **{self.target_field: target_id},
                        **fields,
                    )
            except IntegrityError:
                raise self._duplicate(target_id) from None

            record_audit(
                f"{self.name}.requested",
                self.entity_type,
                request.id,
                institution_id=institution_id,
                actor_id=requested_by,
                metadata={
                    "target_id": target_id,
                    "requester_type": requester_type,
                    "reason": reason,
                    "to_status": ApprovalStatus.PENDING,
                },
            )

        logger.info(
            f"Opened {self.name} request {request.id}",
            extra={"request_id": str(request.id), "target_id": str(target_id)},
        )
        return request

    def approve(self, request_id: uuid.UUID, reviewer_id: uuid.UUID, notes: str = "") -> R:
        """
        Approve a pending request and run the on-approve side effect.

        Raises:
            FeesNotFoundError: If the request does not exist
            InvalidTransitionError: If the request is already resolved
        """
        with transaction.atomic():
            request = self._lock(request_id)
            self._transition(request, "approve", reviewer_id, notes)
            request.save()
            self.on_approve(request)
            self._record_resolution(request, reviewer_id, notes)
            publish(self.approved_event, request.institution_id, self._payload(request))

        logger.info(
            f"Approved {self.name} request {request.id}",
            extra={"request_id": str(request.id), "reviewer_id": str(reviewer_id)},
        )
        return request

    def reject(self, request_id: uuid.UUID, reviewer_id: uuid.UUID, notes: str = "") -> R:
        """
        Reject a pending request; the target is untouched.

        Raises:
            FeesNotFoundError: If the request does not exist
            InvalidTransitionError: If the request is already resolved
        """
        with transaction.atomic():
            request = self._lock(request_id)
            self._transition(request, "reject", reviewer_id, notes)
            request.save()
            self._record_resolution(request, reviewer_id, notes)
            publish(self.rejected_event, request.institution_id, self._payload(request))

        logger.info(
            f"Rejected {self.name} request {request.id}",
            extra={"request_id": str(request.id), "reviewer_id": str(reviewer_id)},
        )
        return request

    def get_pending(self, institution_id: uuid.UUID | None = None) -> QuerySet[R]:
        """Pending requests, oldest first."""
        pending = self.request_model.objects.filter(status=ApprovalStatus.PENDING)
        if institution_id is not None:
            pending = pending.filter(institution_id=institution_id)
        return pending.order_by("created_at")

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _lock(self, request_id: uuid.UUID) -> R:
        try:
            return self.request_model.objects.select_for_update().get(pk=request_id)
        except self.request_model.DoesNotExist:
            raise FeesNotFoundError(
                f"{self.request_model.__name__} {request_id} not found",
                error_code="REQUEST_NOT_FOUND",
                details={"request_id": str(request_id)},
            ) from None

    def _transition(self, request: R, transition_name: str, reviewer_id: uuid.UUID, notes: str) -> None:
        try:
            getattr(request, transition_name)(reviewer_id, notes)
        except TransitionNotAllowed:
            raise InvalidTransitionError(
                f"Cannot {transition_name} {self.name} request in '{request.status}' state",
                details={
                    "request_id": str(request.id),
                    "current_state": request.status,
                    "transition": transition_name,
                },
            ) from None

    def _duplicate(self, target_id: uuid.UUID) -> DuplicateRequestError:
        return DuplicateRequestError(
            f"A pending {self.name} request already exists for {target_id}",
            details={"target_id": str(target_id)},
        )

    def _record_resolution(self, request: R, reviewer_id: uuid.UUID, notes: str) -> None:
        record_audit(
            f"{self.name}.{request.status}",
            self.entity_type,
            request.id,
            institution_id=request.institution_id,
            actor_id=reviewer_id,
            metadata={
                "target_id": getattr(request, self.target_field),
                "from_status": ApprovalStatus.PENDING,
                "to_status": request.status,
                "notes": notes,
            },
        )

    def _payload(self, request: R) -> dict[str, Any]:
        payload = {
            "request_id": request.id,
            "target_id": getattr(request, self.target_field),
            "status": request.status,
            "reviewed_by": request.reviewed_by,
        }
        if self.event_payload is not None:
            payload.update(self.event_payload(request))
        return payload


# =============================================================================
# Penalty Waivers
# =============================================================================


def _check_penalty_waivable(penalty_id: uuid.UUID, institution_id: uuid.UUID) -> None:
    penalty = AppliedPenalty.objects.filter(pk=penalty_id).only("id", "institution_id", "waived").first()
    if penalty is None:
        raise FeesNotFoundError(
            f"Applied penalty {penalty_id} not found",
            error_code="PENALTY_NOT_FOUND",
            details={"penalty_id": str(penalty_id)},
        )
    if penalty.institution_id != uuid.UUID(str(institution_id)):
        raise FeesValidationError(
            "Penalty belongs to another institution",
            details={"penalty_id": str(penalty_id), "institution_id": str(institution_id)},
        )
    if penalty.waived:
        raise InvalidTransitionError(
            "Penalty has already been waived",
            details={"penalty_id": str(penalty_id), "transition": "waive"},
        )


def _waive_penalty(request: WaiverRequest) -> None:
    penalty = AppliedPenalty.objects.select_for_update().get(pk=request.applied_penalty_id)
    if penalty.waived:
        raise InvalidTransitionError(
            "Penalty has already been waived",
            details={"penalty_id": str(penalty.id), "transition": "waive"},
        )
    penalty.waive(actor_id=request.reviewed_by, reason=request.reason)


def _waiver_payload(request: WaiverRequest) -> dict[str, Any]:
    penalty = request.applied_penalty
    return {
        "penalty_id": penalty.id,
        "invoice_id": penalty.invoice_id,
        "student_id": penalty.student_id,
        "amount_cents": penalty.amount_cents,
    }


waiver_workflow: ApprovalWorkflow[WaiverRequest] = ApprovalWorkflow(
    name="waiver",
    request_model=WaiverRequest,
    target_field="applied_penalty_id",
    on_approve=_waive_penalty,
    approved_event=EventType.WAIVER_APPROVED,
    rejected_event=EventType.WAIVER_REJECTED,
    check_target=_check_penalty_waivable,
    event_payload=_waiver_payload,
)


# =============================================================================
# Grade Changes
# =============================================================================


def _apply_grade_change(request: GradeChangeRequest) -> None:
    applier = import_string(settings.FEES_GRADE_CHANGE_APPLIER)
    applier(request.target_id, request.proposed_score, request)


def _grade_change_payload(request: GradeChangeRequest) -> dict[str, Any]:
    return {
        "current_score": request.current_score,
        "proposed_score": request.proposed_score,
    }


grade_change_workflow: ApprovalWorkflow[GradeChangeRequest] = ApprovalWorkflow(
    name="grade_change",
    request_model=GradeChangeRequest,
    target_field="target_id",
    on_approve=_apply_grade_change,
    approved_event=EventType.GRADE_CHANGE_APPROVED,
    rejected_event=EventType.GRADE_CHANGE_REJECTED,
    event_payload=_grade_change_payload,
)
