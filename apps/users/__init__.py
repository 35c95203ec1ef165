"""Users app package.

Actors of the rental core: customers who book and staff who run the
counter, handover and return desks. ``apps.users.models.CustomUser`` is
the AUTH_USER_MODEL; ``apps.users.services`` resolves and authorises the
actor passed into every mutating operation.
"""
