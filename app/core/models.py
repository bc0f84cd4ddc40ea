"""
Core base model providing common functionality for all domain models.

Base Classes:
    BaseModel: Abstract model with timestamps (created_at, updated_at)
    VersionedModel: Abstract model with an optimistic-locking version counter

For mixins (UUIDPrimaryKeyMixin, MetadataMixin), see core.model_mixins.

Usage:
    from core.models import BaseModel, VersionedModel
    from core.model_mixins import UUIDPrimaryKeyMixin

    class Invoice(UUIDPrimaryKeyMixin, VersionedModel):
        total_cents = models.PositiveBigIntegerField()

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are in core.model_mixins
"""

from __future__ import annotations

from django.db import models
from django.db.models import F


class BaseModel(models.Model):
    """
    Abstract base model providing common fields for all models.

    Fields:
        created_at: Automatically set when the object is first created
        updated_at: Automatically updated whenever the object is saved

    Note:
        This is an abstract model (Meta.abstract = True) so it doesn't
        create a database table. Fields are added to inheriting models.
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,  # Index for efficient time-based queries
        help_text="Timestamp when this record was created",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when this record was last modified",
    )

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self) -> str:
        """Default string representation using primary key."""
        return f"{self.__class__.__name__}(id={self.pk})"


class VersionedModel(BaseModel):
    """
    Abstract base model with a version counter for optimistic locking.

    The version is incremented atomically with F() on every update, so a
    writer that read version N can detect that another writer got there
    first (see fees.locks.check_version).

    Fields:
        version: Incremented on each save after the initial insert
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        On update (not force_insert), atomically increments the version
        field to detect concurrent modifications.
        """
        is_update = (
            not self._state.adding
            and self.pk
            and not kwargs.get("force_insert", False)
        )
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None and "version" not in update_fields:
                kwargs["update_fields"] = [*update_fields, "version"]
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
