"""Orchestration layer for the segment engine.

Holds the pass-level building blocks shared by the executor, the API and
the notification consumer: job snapshots, the progress broadcaster, and
the observer pattern for per-segment events.
"""
