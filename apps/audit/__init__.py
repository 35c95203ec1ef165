"""Audit app package.

Append-only trail of every mutating call in the rental core.
"""
