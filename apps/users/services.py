"""Actor resolution and role checks for mutating operations."""

from __future__ import annotations

import logging

from shared.domain.exceptions import NotAuthenticatedError, PermissionDeniedError

from .models import CustomUser

logger = logging.getLogger(__name__)

Role = CustomUser.RoleChoices


def require_actor(actor, minimum_role: str | None = None) -> CustomUser:
    """
    Return the acting user or raise.

    ``None`` and anonymous users raise NotAuthenticatedError; an
    authenticated user below ``minimum_role`` raises PermissionDeniedError.
    """

    if actor is None or not getattr(actor, "is_authenticated", False):
        raise NotAuthenticatedError("Sign in to perform this action.")

    if not getattr(actor, "is_active", True):
        raise NotAuthenticatedError("This account is deactivated.")

    if minimum_role and not actor.has_role_at_least(minimum_role):
        logger.warning(
            "Actor %s (role=%s) denied, %s required", actor.pk, actor.role, minimum_role
        )
        raise PermissionDeniedError(
            f"This action requires the '{Role(minimum_role).label}' role or higher."
        )
    return actor


def require_staff(actor) -> CustomUser:
    return require_actor(actor, Role.STAFF)


def require_manager(actor) -> CustomUser:
    return require_actor(actor, Role.MANAGER)
