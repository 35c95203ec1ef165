"""Audit log writer."""

from __future__ import annotations

import json
import logging
from typing import Any

from django.core.serializers.json import DjangoJSONEncoder  # type: ignore

from .models import AuditLog

logger = logging.getLogger(__name__)


def _normalise(data: Any) -> Any:
    # Store exactly what a reload would return (Decimal -> str, UUID -> str, ...).
    if data is None:
        return None
    return json.loads(json.dumps(data, cls=DjangoJSONEncoder, sort_keys=True))


def record_audit(
    action: str,
    entity,
    actor=None,
    *,
    old_data: dict | None = None,
    new_data: dict | None = None,
    entity_type: str | None = None,
) -> AuditLog:
    """
    Append an audit entry for ``entity``.

    Must be called inside the transaction of the mutation it describes so a
    rollback discards the entry with it.
    """

    entry = AuditLog.objects.create(
        action=action,
        entity_type=entity_type or entity.__class__.__name__.lower(),
        entity_id=str(entity.pk),
        actor=actor if getattr(actor, "pk", None) else None,
        old_data=_normalise(old_data),
        new_data=_normalise(new_data),
    )
    logger.info(f"Audit: {action} {entry.entity_type}:{entry.entity_id} actor={entry.actor_id}")
    return entry
