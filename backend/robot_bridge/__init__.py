"""Robot bridge backend exposing CLI and FastAPI service helpers."""

from .server import app  # noqa: F401
from .services.bridge_service import BridgeService  # noqa: F401

__all__ = ["BridgeService", "app"]
