"""
Relief Allocation Engine — Monitoring package.

Modules:
    health — Per-job scheduler health: last run, duration, outcome, staleness.
"""
