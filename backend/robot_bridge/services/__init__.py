"""Service layer for the robot bridge backend."""

from .bridge_service import BridgeService
from .config import BridgeSettings, load_settings
from .dependencies import get_service, shutdown_service, startup_service

__all__ = [
	"BridgeService",
	"BridgeSettings",
	"get_service",
	"load_settings",
	"shutdown_service",
	"startup_service",
]
