"""Finances app package.

Security deposit holds: the external card authorization a booking is
secured with, kept in step with the booking ledger by
``apps.finances.services.DepositHoldOrchestrator``.
"""
