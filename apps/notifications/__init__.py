"""Notifications app package.

Fire-and-forget customer emails for booking milestones. Handlers are
subscribed to committed domain events and hand the actual delivery to a
Celery task, so a mail failure can never touch the booking transaction.
"""
