"""Celery tasks for the fleet domain."""

from __future__ import annotations

from celery import shared_task  # type: ignore

from .services import expire_stale_holds


@shared_task(name="fleet.expire_reservation_holds")
def expire_reservation_holds() -> dict[str, int]:
    """
    Mark lapsed checkout holds expired.

    Optional housekeeping; availability already ignores expired holds.

    Returns:
        dict: {"expired": number of holds marked expired}
    """
    return {"expired": expire_stale_holds()}
