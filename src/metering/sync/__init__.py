"""Incremental usage sync for Emporia channels.

Modules:
    watermarks — Per-channel last-synced instants, seeded from the sink
    planner    — Adaptive window planner (drains one channel's backlog)
    scheduler  — Polling loop over every channel of a customer
"""
