"""Row locking helpers shared by the allocation and transition services."""

from __future__ import annotations

from django.core.exceptions import ValidationError as DjangoValidationError  # type: ignore
from django.db import transaction  # type: ignore
from django.db.utils import NotSupportedError  # type: ignore

from shared.domain.exceptions import NotFoundError


def lock_queryset_if_possible(queryset):
    """Apply select_for_update when inside transaction.atomic()."""

    if not transaction.get_connection().in_atomic_block:
        return queryset

    try:
        return queryset.select_for_update()
    except NotSupportedError:
        return queryset


def get_locked(model, pk, *, label: str | None = None):
    """Fetch one row under SELECT ... FOR UPDATE or raise NotFoundError."""

    try:
        return lock_queryset_if_possible(model.objects.filter(pk=pk)).get()
    except (model.DoesNotExist, DjangoValidationError, ValueError, TypeError):
        raise NotFoundError(
            f"{label or model._meta.verbose_name.capitalize()} {pk} does not exist.",
            code="not_found",
        )
