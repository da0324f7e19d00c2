"""Dependency helpers for wiring BridgeService into FastAPI."""
from __future__ import annotations

from typing import Optional

from .bridge_service import BridgeService

_service: Optional[BridgeService] = None


def get_service() -> BridgeService:
    """Return the app's bridge, building it on first use."""

    global _service
    if _service is None:
        _service = BridgeService()
    return _service


async def startup_service() -> None:
    await get_service().start()


async def shutdown_service() -> None:
    global _service
    svc, _service = _service, None
    if svc is not None:
        await svc.stop()


__all__ = [
    "get_service",
    "shutdown_service",
    "startup_service",
]
