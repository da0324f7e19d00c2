"""ASGI entrypoint wiring the robot bridge components together."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router
from .services.bridge_service import BridgeService
from .services.dependencies import get_service, shutdown_service, startup_service


@asynccontextmanager
async def _lifespan(_: FastAPI):
    await startup_service()
    try:
        yield
    finally:
        await shutdown_service()


app = FastAPI(title="CT300 Robot Bridge", version="0.1.0", lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


def run(host: str = "0.0.0.0", port: int = 8000) -> None:  # pragma: no cover - manual execution helper
    """Launch the FastAPI app using uvicorn."""

    import uvicorn  # type: ignore

    uvicorn.run("backend.robot_bridge.server:app", host=host, port=port, reload=False)


__all__ = [
    "BridgeService",
    "app",
    "run",
    "get_service",
]


if __name__ == "__main__":  # pragma: no cover - manual execution path
    run()
