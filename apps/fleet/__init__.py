"""Fleet app package.

Locations, rentable vehicle categories, the physical units behind them
and the short-lived checkout holds that reserve inventory before a
booking exists. All unit allocation goes through ``apps.fleet.services``.
"""
