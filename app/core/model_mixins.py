"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    MetadataMixin: Flexible JSON metadata storage

Usage:
    from core.models import BaseModel
    from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

    class PaymentIntent(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
        phone = models.CharField(max_length=20)

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models

if TYPE_CHECKING:
    from typing import Any


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Ledger rows are referenced from provider callbacks, audit records and
    client URLs, so ids must not reveal record counts or ordering.

    Fields:
        id: UUIDField as primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class MetadataMixin(models.Model):
    """
    Flexible JSON metadata storage.

    Fields:
        metadata: JSONField for arbitrary key-value data

    Usage:
        intent.set_meta("checkout_request_id", "ws_CO_123")
        intent.metadata["checkout_request_id"]
    """

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Flexible key-value metadata storage",
    )

    class Meta:
        abstract = True

    def set_meta(self, key: str, value: Any, save: bool = True) -> None:
        """
        Set metadata value and optionally save.

        Args:
            key: Metadata key
            value: Value to store (must be JSON-serializable)
            save: Whether to save the model (default True)
        """
        self.metadata[key] = value
        if save:
            self.save(update_fields=["metadata", "updated_at"])
