"""Pricing app package.

Pure price computation (``apps.pricing.domain.engine``), upgrade fee
arithmetic and the immutable PricingSnapshot a booking is locked to.
"""
