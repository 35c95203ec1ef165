"""Bookings app package.

The Booking aggregate and its state machines: booking status, the ops
handover checklist and the return workflow. Use cases are exposed as
typed commands dispatched through ``shared.application.message_bus``.
"""
