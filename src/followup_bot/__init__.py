"""
Follow-up Bot - automated outbound follow-up messaging for a sales pipeline.

This package provides the contact engagement scheduler: per-contact funnel
state, stepped follow-ups, appointment reminders, deferred start messages and
a single rate-limited send lane in front of one messaging channel session.
"""

__version__ = "1.0.0"
