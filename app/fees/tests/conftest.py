"""
Pytest fixtures for fees tests.

Fixtures provide ids for one institution and one student plus objects in
the states most tests start from.

Usage:
    def test_payment_allocates(posted_invoice, institution_id, student_id):
        payment = LedgerService.record_payment(...)
        assert LedgerService.invoice_outstanding_cents(posted_invoice.id) == 0
"""

import datetime
import uuid
from decimal import Decimal

import pytest

from fees.state_machines import InvoiceStatus, PenaltyType
from fees.tests.factories import (
    FinancialPeriodFactory,
    InvoiceFactory,
    PaymentIntentFactory,
    PenaltyRuleFactory,
)


# =============================================================================
# Identity Fixtures
# =============================================================================


@pytest.fixture
def institution_id():
    return uuid.uuid4()


@pytest.fixture
def student_id():
    return uuid.uuid4()


@pytest.fixture
def actor_id():
    """Staff member performing an operation."""
    return uuid.uuid4()


# =============================================================================
# Period Fixtures
# =============================================================================


@pytest.fixture
def january_period(db, institution_id):
    """Open period covering January 2024."""
    return FinancialPeriodFactory(
        institution_id=institution_id,
        name="January 2024",
        start_date=datetime.date(2024, 1, 1),
        end_date=datetime.date(2024, 1, 31),
    )


@pytest.fixture
def locked_january(db, institution_id, actor_id):
    """Locked period covering January 2024."""
    return FinancialPeriodFactory(
        institution_id=institution_id,
        name="January 2024",
        start_date=datetime.date(2024, 1, 1),
        end_date=datetime.date(2024, 1, 31),
        is_locked=True,
        locked_by=actor_id,
        lock_reason="Month closed",
    )


# =============================================================================
# Invoice Fixtures
# =============================================================================


@pytest.fixture
def draft_invoice(db, institution_id, student_id):
    """Draft invoice of 1000.00 due 2024-02-01."""
    return InvoiceFactory(institution_id=institution_id, student_id=student_id)


@pytest.fixture
def posted_invoice(db, institution_id, student_id):
    """Posted invoice of 1000.00 due 2024-02-01."""
    return InvoiceFactory(
        institution_id=institution_id,
        student_id=student_id,
        status=InvoiceStatus.POSTED,
    )


# =============================================================================
# Penalty Fixtures
# =============================================================================


@pytest.fixture
def flat_rule(db, institution_id):
    """Flat 50.00 per day after 7 grace days."""
    return PenaltyRuleFactory(institution_id=institution_id)


@pytest.fixture
def percentage_rule(db, institution_id):
    """2% of outstanding per day after 7 grace days."""
    return PenaltyRuleFactory(
        institution_id=institution_id,
        name="2% daily",
        penalty_type=PenaltyType.PER_DAY_PERCENTAGE,
        rate=Decimal("2"),
    )


# =============================================================================
# Payment Intent Fixtures
# =============================================================================


@pytest.fixture
def pending_intent(db, institution_id, student_id):
    return PaymentIntentFactory(institution_id=institution_id, student_id=student_id)


@pytest.fixture
def callback_secret(settings):
    settings.MOBILE_MONEY_CALLBACK_SECRET = "test-callback-secret"
    return settings.MOBILE_MONEY_CALLBACK_SECRET


# =============================================================================
# Event Capture
# =============================================================================


@pytest.fixture
def captured_events():
    """
    Collect DomainEvents sent on the domain_event signal.

    Events are only sent after commit; combine with
    django_capture_on_commit_callbacks(execute=True).
    """
    from fees.signals import domain_event

    events = []

    def _receiver(sender, event, **kwargs):
        events.append(event)

    domain_event.connect(_receiver, weak=False)
    yield events
    domain_event.disconnect(_receiver)


# =============================================================================
# Redis
# =============================================================================


@pytest.fixture
def mock_redis(mocker):
    """
    Mock Redis client for distributed lock tests.

    Returns a MagicMock configured for basic lock operations.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    mocker.patch(
        "fees.locks.get_redis_connection",
        return_value=mock_client,
    )
    return mock_client
