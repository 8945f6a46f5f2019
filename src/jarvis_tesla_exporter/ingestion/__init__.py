"""Ingestion layer.

Turns upstream telemetry models into immutable metric snapshots.
"""

__all__: list[str] = []
