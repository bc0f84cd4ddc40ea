"""
Celery tasks for the fees app.

This module provides async tasks for:
- The daily late-payment penalty sweep (scheduled via celery-beat)

Usage:
    from fees.tasks import apply_late_payment_penalties

    # All institutions with active auto-apply rules
    apply_late_payment_penalties.delay()

    # One institution
    apply_late_payment_penalties.delay(str(institution_id))
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import asdict
from uuid import UUID

from celery import shared_task
from django.conf import settings

from core.services import ServiceResult

from fees.exceptions import LockAcquisitionError
from fees.locks import DistributedLock
from fees.models import PenaltyRule
from fees.services import PenaltyEngine

logger = logging.getLogger(__name__)


# =============================================================================
# Penalty Sweep
# =============================================================================


@shared_task(acks_late=True)
def apply_late_payment_penalties(institution_id: str | None = None, today: str | None = None) -> dict:
    """
    Run the penalty sweep, one institution at a time.

    Each institution is swept under a non-blocking distributed lock, so an
    institution whose previous sweep is still running is skipped rather
    than swept twice. Re-running on the same day is safe: the engine
    charges each invoice at most once per day.

    Args:
        institution_id: Restrict the sweep to one institution
        today: ISO date to sweep as (defaults to the local date)

    Returns:
        Dict with per-institution results keyed by institution id
    """
    sweep_date = datetime.date.fromisoformat(today) if today else None

    if institution_id:
        institution_ids = [UUID(str(institution_id))]
    else:
        institution_ids = list(
            PenaltyRule.objects.filter(is_active=True, auto_apply=True)
            .values_list("institution_id", flat=True)
            .distinct()
            .order_by("institution_id")
        )

    logger.info(
        f"Starting penalty sweep for {len(institution_ids)} institutions",
        extra={"institution_count": len(institution_ids)},
    )

    results = {}
    for inst_id in institution_ids:
        lock = DistributedLock(
            f"penalty_sweep:{inst_id}",
            ttl=settings.FEES_PENALTY_SWEEP_LOCK_TTL,
            blocking=False,
        )
        try:
            with lock:
                sweep = PenaltyEngine.sweep(institution_id=inst_id, today=sweep_date)
        except LockAcquisitionError as e:
            skipped = PenaltyEngine.handle_exception(
                e,
                context=f"Penalty sweep already running for institution {inst_id}",
                log_level=logging.INFO,
            )
            results[str(inst_id)] = skipped.to_response()
            continue
        except Exception as e:
            # Isolated per institution, as invoices are within a sweep
            failed = PenaltyEngine.handle_exception(e, context=f"Penalty sweep failed for institution {inst_id}")
            results[str(inst_id)] = failed.to_response()
            continue

        results[str(inst_id)] = ServiceResult.success(asdict(sweep)).to_response()

    logger.info(
        "Penalty sweep finished",
        extra={"institution_count": len(institution_ids)},
    )
    return {"institutions": results}


__all__ = [
    "apply_late_payment_penalties",
]
