"""
Domain events and audit records for fees state transitions.

Two outputs leave every audited transition:

- An AuditRecord row, written in the caller's transaction
- A DomainEvent, published on the domain_event signal only after that
  transaction commits

Usage:
    from fees.events import EventType, publish, record_audit

    with transaction.atomic():
        penalty = AppliedPenalty.objects.create(...)
        record_audit(
            "penalty.applied", "applied_penalty", penalty.id,
            institution_id=penalty.institution_id,
            metadata={"amount_cents": penalty.amount_cents},
        )
        publish(EventType.PENALTY_APPLIED, penalty.institution_id, {"penalty_id": str(penalty.id)})
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from fees.models import AuditRecord
from fees.signals import domain_event

if TYPE_CHECKING:
    import uuid
    from typing import Any

logger = logging.getLogger(__name__)


class EventType:
    """Domain event types emitted for external notifiers."""

    PENALTY_APPLIED = "penalty.applied"
    WAIVER_APPROVED = "waiver.approved"
    WAIVER_REJECTED = "waiver.rejected"
    GRADE_CHANGE_APPROVED = "grade_change.approved"
    GRADE_CHANGE_REJECTED = "grade_change.rejected"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"


@dataclass(frozen=True)
class DomainEvent:
    type: str
    institution_id: uuid.UUID
    payload: dict[str, Any] = field(default_factory=dict)


def _jsonable(data: dict[str, Any] | None) -> dict[str, Any]:
    """Round-trip through DjangoJSONEncoder so UUIDs, dates and Decimals store cleanly."""
    if not data:
        return {}
    return json.loads(json.dumps(data, cls=DjangoJSONEncoder))


def record_audit(
    action: str,
    entity_type: str,
    entity_id: uuid.UUID,
    institution_id: uuid.UUID,
    actor_id: uuid.UUID | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditRecord:
    """
    Write an audit record for a state transition.

    Call inside the transaction performing the transition.
    """
    return AuditRecord.objects.create(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        institution_id=institution_id,
        actor_id=actor_id,
        metadata=_jsonable(metadata),
    )


def publish(event_type: str, institution_id: uuid.UUID, payload: dict[str, Any] | None = None) -> None:
    """
    Publish a domain event once the current transaction commits.

    Nothing is sent when the transaction rolls back. Receiver failures are
    logged and never propagate to the caller.
    """
    event = DomainEvent(type=event_type, institution_id=institution_id, payload=_jsonable(payload))
    transaction.on_commit(lambda: _dispatch(event))


def _dispatch(event: DomainEvent) -> None:
    responses = domain_event.send_robust(sender=DomainEvent, event=event)
    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.error(
                f"Domain event receiver failed for {event.type}: {response}",
                extra={
                    "event_type": event.type,
                    "institution_id": str(event.institution_id),
                    "receiver": getattr(receiver, "__qualname__", repr(receiver)),
                },
            )
