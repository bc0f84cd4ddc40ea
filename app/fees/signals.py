"""
Django signals for the fees app.

domain_event is the outbound hook for external notifiers (SMS, email,
in-app). It is sent by fees.events.publish after the ledger transaction
commits, with send_robust, so a failing receiver can never roll back or
block a ledger write.

Receiver signature:
    def receiver(sender, event, **kwargs) -> None

    where event is a fees.events.DomainEvent {type, institution_id, payload}.

Related files:
    - events.py: publish() and audit record helpers
    - apps.py: Signal registration
"""

from __future__ import annotations

import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)


domain_event = Signal()


@receiver(domain_event)
def log_domain_event(sender, event, **kwargs):
    """Log every published domain event."""
    logger.info(
        f"Domain event {event.type}",
        extra={
            "event_type": event.type,
            "institution_id": str(event.institution_id),
            "payload": event.payload,
        },
    )


def register_signals():
    """
    Register all fees signals.

    Called from apps.py when app is ready. Receivers above are connected
    by their decorators on import.
    """
    logger.debug("Fees signals registered")
