"""
Client-side status polling for payment intents.

StatusPoller is the consumer half of the payment confirmation flow: it
watches an intent through the read-only status query until the intent
reaches a terminal state, the deadline passes, or the poller is cancelled.

Stopping (by timeout or cancel) only stops observation. It never cancels or
otherwise writes the intent; the payment may still complete and a later
poll will see it.

Configuration (via settings):
- PAYMENT_STATUS_POLL_INTERVAL_SECONDS: Delay between polls (default: 3)
- PAYMENT_STATUS_POLL_TIMEOUT_SECONDS: Deadline for one run (default: 180)

Usage:
    from fees.polling import StatusPoller

    poller = StatusPoller(intent.id)
    result = poller.run(on_update=lambda status: print(status.status))

    # From another thread (e.g., the user closed the dialog)
    poller.cancel()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models

from fees.services.payment_confirmation import IntentStatus, PaymentConfirmationService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class PollStopReason(models.TextChoices):
    TERMINAL = "terminal", "Terminal State Reached"
    TIMEOUT = "timeout", "Deadline Passed"
    CANCELLED = "cancelled", "Cancelled"


@dataclass(frozen=True)
class PollResult:
    """
    Outcome of one poll run.

    Attributes:
        reason: Why polling stopped
        status: Last status observed (None if cancelled before the first poll)
        polls: Number of status reads made
    """

    reason: str
    status: IntentStatus | None
    polls: int


class StatusPoller:
    """
    Cooperative, cancellable poll loop with a bounded deadline.

    Args:
        intent_id: PaymentIntent to watch
        interval: Seconds between polls
        timeout: Seconds until the run gives up
        fetch: Status reader (defaults to PaymentConfirmationService.get_status)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        intent_id: uuid.UUID,
        interval: float | None = None,
        timeout: float | None = None,
        fetch: Callable[[uuid.UUID], IntentStatus] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.intent_id = intent_id
        self.interval = interval if interval is not None else settings.PAYMENT_STATUS_POLL_INTERVAL_SECONDS
        self.timeout = timeout if timeout is not None else settings.PAYMENT_STATUS_POLL_TIMEOUT_SECONDS
        self.fetch = fetch or PaymentConfirmationService.get_status
        self.clock = clock
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop polling at the next opportunity. Safe to call from any thread."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, on_update: Callable[[IntentStatus], None] | None = None) -> PollResult:
        """
        Poll until terminal, deadline or cancellation.

        on_update is called whenever the observed status changes.
        """
        deadline = self.clock() + self.timeout
        last: IntentStatus | None = None
        polls = 0

        while not self._cancelled.is_set():
            status = self.fetch(self.intent_id)
            polls += 1

            if on_update is not None and status != last:
                on_update(status)
            last = status

            if status.is_terminal:
                return self._stop(PollStopReason.TERMINAL, last, polls)

            remaining = deadline - self.clock()
            if remaining <= 0:
                return self._stop(PollStopReason.TIMEOUT, last, polls)

            # Event.wait doubles as an interruptible sleep
            if self._cancelled.wait(min(self.interval, remaining)):
                break

        return self._stop(PollStopReason.CANCELLED, last, polls)

    def _stop(self, reason: str, status: IntentStatus | None, polls: int) -> PollResult:
        logger.debug(
            f"Stopped polling intent {self.intent_id}: {reason}",
            extra={
                "intent_id": str(self.intent_id),
                "reason": reason,
                "status": status.status if status else None,
                "polls": polls,
            },
        )
        return PollResult(reason=reason, status=status, polls=polls)
