"""
Append-only audit trail for fees state transitions.

Rows are written by fees.events.record_audit inside the same transaction
as the change they describe, so a rolled-back operation leaves no audit row.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin


class AuditRecord(UUIDPrimaryKeyMixin, models.Model):
    """
    One audited action on a fees entity.

    Fields:
        action: Machine-readable action name (e.g., "period.locked")
        entity_type/entity_id: What the action touched
        institution_id: Owning institution
        actor_id: Who performed it, null for system actions
        metadata: Action-specific context, e.g. {from_status, to_status, reason}
    """

    action = models.CharField(max_length=64, db_index=True)
    entity_type = models.CharField(max_length=64)
    entity_id = models.UUIDField(db_index=True)
    institution_id = models.UUIDField(db_index=True)
    actor_id = models.UUIDField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Audit Record"
        verbose_name_plural = "Audit Records"
        indexes = [
            models.Index(fields=["entity_type", "entity_id"], name="fees_audit_entity_idx"),
        ]

    def __str__(self) -> str:
        return f"AuditRecord({self.action}, {self.entity_type}:{self.entity_id})"
