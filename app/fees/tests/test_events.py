"""
Tests for audit records and domain event publication.
"""

import datetime
import uuid
from decimal import Decimal

import pytest
from django.db import transaction

from fees.events import DomainEvent, EventType, _dispatch, publish, record_audit
from fees.models import AuditRecord
from fees.signals import domain_event

pytestmark = pytest.mark.django_db


class TestRecordAudit:
    """Tests for record_audit."""

    def test_stores_jsonable_metadata(self, institution_id, actor_id):
        entity_id = uuid.uuid4()

        audit = record_audit(
            "penalty.applied",
            "applied_penalty",
            entity_id,
            institution_id=institution_id,
            actor_id=actor_id,
            metadata={
                "invoice_id": entity_id,
                "applied_date": datetime.date(2024, 2, 9),
                "rate": Decimal("2.50"),
            },
        )

        stored = AuditRecord.objects.get(pk=audit.pk)
        assert stored.metadata == {
            "invoice_id": str(entity_id),
            "applied_date": "2024-02-09",
            "rate": "2.50",
        }
        assert stored.actor_id == actor_id
        assert stored.entity_type == "applied_penalty"

    def test_system_actor_and_empty_metadata(self, institution_id):
        audit = record_audit("period.locked", "financial_period", uuid.uuid4(), institution_id=institution_id)

        assert audit.actor_id is None
        assert audit.metadata == {}

    def test_rolls_back_with_caller(self, institution_id):
        with pytest.raises(RuntimeError):
            with transaction.atomic():
                record_audit("invoice.posted", "invoice", uuid.uuid4(), institution_id=institution_id)
                raise RuntimeError("operation failed")

        assert not AuditRecord.objects.exists()


class TestPublish:
    """Tests for publish and _dispatch."""

    def test_sent_only_after_commit(self, institution_id, captured_events, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            publish(EventType.PAYMENT_COMPLETED, institution_id, {"intent_id": uuid.uuid4()})

        assert captured_events == []
        assert len(callbacks) == 1

        callbacks[0]()

        assert len(captured_events) == 1
        assert captured_events[0].type == EventType.PAYMENT_COMPLETED
        assert isinstance(captured_events[0].payload["intent_id"], str)

    def test_not_sent_on_rollback(self, institution_id, captured_events, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            with pytest.raises(RuntimeError):
                with transaction.atomic():
                    publish(EventType.PENALTY_APPLIED, institution_id, {})
                    raise RuntimeError("rolled back")

        assert captured_events == []

    def test_failing_receiver_is_logged_not_raised(self, institution_id, captured_events, mocker):
        def broken_receiver(sender, event, **kwargs):
            raise ValueError("SMS gateway down")

        domain_event.connect(broken_receiver, weak=False)
        mock_logger = mocker.patch("fees.events.logger")
        try:
            _dispatch(DomainEvent(type=EventType.WAIVER_APPROVED, institution_id=institution_id))
        finally:
            domain_event.disconnect(broken_receiver)

        assert len(captured_events) == 1
        mock_logger.error.assert_called_once()
        assert "SMS gateway down" in mock_logger.error.call_args[0][0]
        assert mock_logger.error.call_args[1]["extra"]["event_type"] == EventType.WAIVER_APPROVED
