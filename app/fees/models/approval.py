"""
Two-party approval request models.

ApprovalRequest is the abstract state machine shared by every request type:
a requester opens it, a reviewer approves or rejects it, and both outcomes
are terminal. Concrete request types add their target and payload.

- WaiverRequest: asks for an AppliedPenalty to be waived
- GradeChangeRequest: asks for a recorded score to be corrected

The generic workflow driving these lives in
fees.services.approval_workflow.ApprovalWorkflow.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from fees.state_machines import ApprovalStatus, RequesterType


class ApprovalRequest(UUIDPrimaryKeyMixin, BaseModel):
    """
    Abstract two-party approval request.

    State Flow:
        PENDING -> APPROVED
        PENDING -> REJECTED

    Both targets are terminal; django-fsm raises TransitionNotAllowed when
    resolving an already-resolved request.
    """

    institution_id = models.UUIDField(db_index=True)

    requested_by = models.UUIDField(help_text="Actor who opened the request")

    requester_type = models.CharField(
        max_length=10,
        choices=RequesterType.choices,
        default=RequesterType.PARENT,
    )

    reason = models.TextField()

    status = FSMField(
        default=ApprovalStatus.PENDING,
        choices=ApprovalStatus.choices,
        db_index=True,
        protected=True,
    )

    reviewed_by = models.UUIDField(null=True, blank=True)
    reviewed_at = models.DateTimeField(null=True, blank=True)
    review_notes = models.TextField(blank=True, default="")

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def _stamp_review(self, reviewer_id, notes: str) -> None:
        self.reviewed_by = reviewer_id
        self.reviewed_at = timezone.now()
        self.review_notes = notes or ""

    @transition(
        field="status",
        source=ApprovalStatus.PENDING,
        target=ApprovalStatus.APPROVED,
    )
    def approve(self, reviewer_id, notes: str = ""):
        """
        Approve the request.

        Transition: PENDING -> APPROVED
        """
        self._stamp_review(reviewer_id, notes)

    @transition(
        field="status",
        source=ApprovalStatus.PENDING,
        target=ApprovalStatus.REJECTED,
    )
    def reject(self, reviewer_id, notes: str = ""):
        """
        Reject the request.

        Transition: PENDING -> REJECTED
        """
        self._stamp_review(reviewer_id, notes)


class WaiverRequest(ApprovalRequest):
    """Request to waive a single applied penalty."""

    applied_penalty = models.ForeignKey(
        "fees.AppliedPenalty",
        on_delete=models.PROTECT,
        related_name="waiver_requests",
    )

    class Meta(ApprovalRequest.Meta):
        verbose_name = "Waiver Request"
        verbose_name_plural = "Waiver Requests"
        constraints = [
            models.UniqueConstraint(
                fields=["applied_penalty"],
                condition=models.Q(status=ApprovalStatus.PENDING),
                name="waiver_request_one_pending_per_penalty",
            ),
        ]

    def __str__(self) -> str:
        return f"WaiverRequest({self.applied_penalty_id}, {self.status})"


class GradeChangeRequest(ApprovalRequest):
    """
    Request to correct a recorded score.

    target_id is an opaque reference to the score record owned by the
    grading service; the approved score is handed to the configured
    applier (FEES_GRADE_CHANGE_APPLIER).
    """

    target_id = models.UUIDField(db_index=True)

    current_score = models.DecimalField(
        max_digits=7,
        decimal_places=2,
        null=True,
        blank=True,
    )

    proposed_score = models.DecimalField(max_digits=7, decimal_places=2)

    class Meta(ApprovalRequest.Meta):
        verbose_name = "Grade Change Request"
        verbose_name_plural = "Grade Change Requests"
        constraints = [
            models.UniqueConstraint(
                fields=["target_id"],
                condition=models.Q(status=ApprovalStatus.PENDING),
                name="grade_change_one_pending_per_target",
            ),
        ]

    def __str__(self) -> str:
        return f"GradeChangeRequest({self.target_id}, {self.current_score} -> {self.proposed_score}, {self.status})"
