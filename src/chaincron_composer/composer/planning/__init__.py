"""Execution planning.

Turns a validated graph into ordered stages of concurrently runnable nodes and
aggregates per-node cost and risk estimates over those stages.
"""

__all__: list[str] = []
