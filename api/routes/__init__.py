"""API Routes Package."""

from api.routes import health, matching

__all__ = [
    "health",
    "matching",
]
