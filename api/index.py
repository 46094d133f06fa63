"""
Serverless function entrypoint for the FastAPI app.

The platform's Python runtime looks for an ``app`` variable holding an ASGI
application. Run it with TASK_DISPATCH_MODE=http so each geocoding batch and
upload runs in its own invocation.
"""
from __future__ import annotations

import os
import sys

# The working directory is the project root; packages live under src/
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
src_path = os.path.join(project_root, "src")

if src_path not in sys.path:
    sys.path.insert(0, src_path)

from api.app import app

__all__ = ["app"]
