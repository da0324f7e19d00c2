"""Transport adapters: BLE GATT, Bluetooth serial, WebSocket and HTTP."""

from .base import BaseTransport
from .ble_link import BleTransport
from .http_link import HttpTransport
from .spp_link import SppTransport
from .ws_link import WebSocketTransport

__all__ = [
	"BaseTransport",
	"BleTransport",
	"HttpTransport",
	"SppTransport",
	"WebSocketTransport",
]
