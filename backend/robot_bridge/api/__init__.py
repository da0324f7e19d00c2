"""HTTP API routes for the robot bridge backend."""

from .routes import router

__all__ = ["router"]
