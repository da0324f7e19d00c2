"""Wire-level constants and the command model for the CSJBot CT300 firmware.

Two JSON command forms exist:

* the raw form ``{"cmd": "start", "sensors": [...]}`` written to the BLE
  command characteristic and, newline-terminated, to the SPP link;
* the bridge-wrapped form ``{"action": "calibration", "params": {...},
  "timestamp": ms}`` used over WebSocket and the generic HTTP command
  endpoint.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Tuple

TRANSPORT_BLE = "ble"
TRANSPORT_SPP = "spp"
TRANSPORT_WEBSOCKET = "websocket"
TRANSPORT_HTTP = "http"

TRANSPORT_PRIORITY: Tuple[str, ...] = (
    TRANSPORT_BLE,
    TRANSPORT_SPP,
    TRANSPORT_WEBSOCKET,
    TRANSPORT_HTTP,
)

TRANSPORT_LABELS = {
    TRANSPORT_BLE: "Bluetooth LE",
    TRANSPORT_SPP: "Bluetooth serial",
    TRANSPORT_WEBSOCKET: "WebSocket",
    TRANSPORT_HTTP: "HTTP",
}

# GATT profile exposed by the calibration firmware.
CALIBRATION_SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
COMMAND_CHAR_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"
STATE_CHAR_UUID = "0000fff2-0000-1000-8000-00805f9b34fb"
PROGRESS_CHAR_UUID = "0000fff3-0000-1000-8000-00805f9b34fb"
DATA_CHAR_UUID = "0000fff4-0000-1000-8000-00805f9b34fb"
ERROR_CHAR_UUID = "0000fff5-0000-1000-8000-00805f9b34fb"

BLE_NAME_PREFIXES: Tuple[str, ...] = ("CSJBot", "Ken", "CT300", "AlphaBot")
SPP_NAME_KEYWORDS: Tuple[str, ...] = ("csjbot", "ken", "ct300", "alpha", "robot")

ALL_SENSORS: Tuple[str, ...] = (
    "imu",
    "magnetometer",
    "odometer",
    "lidar",
    "camera",
    "battery",
    "temperature",
)

# A frame is a calibration record when it nests a sensor block
# (``{"imu": {...}}``) or carries one of the flat firmware fields
# (``imuBiasX``, ``magScaleZ``...). Anything else is telemetry noise.
CALIBRATION_RECORD_KEYS: Tuple[str, ...] = ALL_SENSORS
CALIBRATION_RECORD_PREFIXES: Tuple[str, ...] = (
    "calibrationCount",
    "imuBias",
    "imuScale",
    "magOffset",
    "magScale",
    "pulsesPerMeter",
    "lidarOffset",
    "lidarAngleOffset",
    "cameraFocalLength",
    "cameraPrincipalPoint",
    "cameraDistortion",
    "batteryVoltage",
    "tempOffset",
)

ERROR_STATE_NAME = "ERROR"

ACTION_START = "start"
ACTION_STOP = "stop"
ACTION_RESET = "reset"
ACTION_GET_DATA = "get_data"
ACTION_GET_STATE = "get_state"
ACTION_EXPORT = "export"
ACTION_IMPORT = "import"

DEFAULT_DOMAIN = "calibration"


class CalibrationState(IntEnum):
    """Lifecycle states reported by the calibration firmware."""

    IDLE = 0
    IMU_INIT = 1
    IMU_RUNNING = 2
    MAG_INIT = 3
    MAG_RUNNING = 4
    ODOM_INIT = 5
    ODOM_RUNNING = 6
    LIDAR_INIT = 7
    LIDAR_RUNNING = 8
    CAMERA_INIT = 9
    CAMERA_RUNNING = 10
    BATTERY_INIT = 11
    BATTERY_RUNNING = 12
    TEMP_INIT = 13
    TEMP_RUNNING = 14
    VALIDATE = 15
    COMPLETE = 16
    ERROR = 17


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Command:
    """Domain-level instruction sent to the robot."""

    action: str
    params: Mapping[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    domain: str = DEFAULT_DOMAIN

    def to_frame(self) -> Dict[str, Any]:
        """Return the raw ``{"cmd": ...}`` form."""

        frame: Dict[str, Any] = {"cmd": self.action}
        for key, value in self.params.items():
            if key != "cmd":
                frame[key] = value
        return frame

    def to_bridge_frame(self) -> Dict[str, Any]:
        """Return the bridge-wrapped form used over WebSocket and HTTP."""

        return {
            "action": self.domain,
            "params": self.to_frame(),
            "timestamp": self.timestamp,
        }

    def encode(self, *, newline: bool = False, wrapped: bool = False) -> bytes:
        frame = self.to_bridge_frame() if wrapped else self.to_frame()
        text = json.dumps(frame, separators=(",", ":"))
        if newline:
            text += "\n"
        return text.encode("utf-8")


def normalise_transport(value: Optional[str]) -> Optional[str]:
    """Map user supplied transport names onto the canonical identifiers."""

    if value is None:
        return None
    candidate = value.strip().lower()
    aliases = {
        "ble": TRANSPORT_BLE,
        "gatt": TRANSPORT_BLE,
        "spp": TRANSPORT_SPP,
        "serial": TRANSPORT_SPP,
        "bluetooth": TRANSPORT_SPP,
        "ws": TRANSPORT_WEBSOCKET,
        "websocket": TRANSPORT_WEBSOCKET,
        "http": TRANSPORT_HTTP,
        "rest": TRANSPORT_HTTP,
    }
    return aliases.get(candidate)


__all__ = [
    "ACTION_EXPORT",
    "ACTION_GET_DATA",
    "ACTION_GET_STATE",
    "ACTION_IMPORT",
    "ACTION_RESET",
    "ACTION_START",
    "ACTION_STOP",
    "ALL_SENSORS",
    "BLE_NAME_PREFIXES",
    "CALIBRATION_RECORD_KEYS",
    "CALIBRATION_RECORD_PREFIXES",
    "CALIBRATION_SERVICE_UUID",
    "COMMAND_CHAR_UUID",
    "CalibrationState",
    "Command",
    "DATA_CHAR_UUID",
    "DEFAULT_DOMAIN",
    "ERROR_CHAR_UUID",
    "ERROR_STATE_NAME",
    "PROGRESS_CHAR_UUID",
    "SPP_NAME_KEYWORDS",
    "STATE_CHAR_UUID",
    "TRANSPORT_BLE",
    "TRANSPORT_HTTP",
    "TRANSPORT_LABELS",
    "TRANSPORT_PRIORITY",
    "TRANSPORT_SPP",
    "TRANSPORT_WEBSOCKET",
    "normalise_transport",
    "now_ms",
]
