"""API route modules."""
from __future__ import annotations

from . import geocoding, health, properties, tasks, uploads

__all__ = [
    "geocoding",
    "health",
    "properties",
    "tasks",
    "uploads",
]
