"""Append-only audit log."""

from __future__ import annotations

from django.conf import settings  # type: ignore
from django.core.serializers.json import DjangoJSONEncoder  # type: ignore
from django.db import models  # type: ignore

from shared.domain.exceptions import DomainError


class AuditLogQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise DomainError("Audit log entries are append-only.", code="audit_immutable")

    def delete(self):
        raise DomainError("Audit log entries are append-only.", code="audit_immutable")

    def for_entity(self, entity_type: str, entity_id) -> "AuditLogQuerySet":
        return self.filter(entity_type=entity_type, entity_id=str(entity_id))


class AuditLog(models.Model):
    """One mutating call: who did what to which entity, before and after."""

    action = models.CharField(max_length=64, db_index=True)
    entity_type = models.CharField(max_length=50)
    entity_id = models.CharField(max_length=64)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_entries",
    )
    old_data = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)
    new_data = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)
    timestamp = models.DateTimeField(auto_now_add=True)

    objects = AuditLogQuerySet.as_manager()

    class Meta:
        indexes = [
            models.Index(fields=["entity_type", "entity_id"]),
            models.Index(fields=["action", "timestamp"]),
        ]
        ordering = ["timestamp", "id"]

    def __str__(self) -> str:
        return f"{self.action} {self.entity_type}:{self.entity_id} by {self.actor_id}"

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise DomainError("Audit log entries are append-only.", code="audit_immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise DomainError("Audit log entries are append-only.", code="audit_immutable")
