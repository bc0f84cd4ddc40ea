"""
Grade change appliers.

An applier receives an approved grade change and writes the corrected score
to the grading service that owns the score record. The applier used is set
in FEES_GRADE_CHANGE_APPLIER; it runs inside the approving transaction, so
raising rolls the approval back.

Signature:
    def applier(target_id: uuid.UUID, proposed_score: Decimal, request: GradeChangeRequest) -> None
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from fees.models import GradeChangeRequest

logger = logging.getLogger(__name__)


def log_grade_change(target_id: uuid.UUID, proposed_score: Decimal, request: GradeChangeRequest) -> None:
    """Default applier: record the approved score in the log only."""
    logger.info(
        f"Grade change approved for {target_id}",
        extra={
            "target_id": str(target_id),
            "request_id": str(request.id),
            "current_score": str(request.current_score) if request.current_score is not None else None,
            "proposed_score": str(proposed_score),
        },
    )
