"""Domain layer for upload handling.

Keeps the rules for accepting, splitting and reprocessing uploads out of
the API and CLI. Both surfaces go through these services.
"""
from __future__ import annotations

from .uploads import SplitResult, UploadService

__all__ = [
    "UploadService",
    "SplitResult",
]
