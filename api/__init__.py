"""API Package.

FastAPI server exposing the draw matching engine.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
