"""Bluetooth LE GATT transport built on bleak."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from bleak import BleakClient, BleakScanner  # type: ignore
from bleak.exc import BleakError  # type: ignore

from ..correlator import (
    DEFAULT_DATA_DELAY,
    DEFAULT_STATE_DELAY,
    FrameSample,
    ReadAfterWriteCorrelator,
    sample_from_bytes,
)
from ..errors import BridgeError, TransportError, TransportTimeoutError, TransportUnavailableError
from ..protocol import (
    ACTION_EXPORT,
    ACTION_GET_DATA,
    ACTION_GET_STATE,
    BLE_NAME_PREFIXES,
    CALIBRATION_SERVICE_UUID,
    COMMAND_CHAR_UUID,
    DATA_CHAR_UUID,
    ERROR_CHAR_UUID,
    PROGRESS_CHAR_UUID,
    STATE_CHAR_UUID,
    TRANSPORT_BLE,
    Command,
)
from .base import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_WRITE_TIMEOUT = 5.0
LEGACY_CHUNK_SIZE = 20  # bytes, default ATT MTU minus header

_REQUIRED_CHARACTERISTICS = {
    "command": COMMAND_CHAR_UUID,
    "state": STATE_CHAR_UUID,
    "progress": PROGRESS_CHAR_UUID,
    "data": DATA_CHAR_UUID,
}


def matches_robot(device: Any, advertisement: Any) -> bool:
    """Scanner filter: known name prefix or advertised calibration service."""

    name = getattr(device, "name", None) or getattr(advertisement, "local_name", None) or ""
    if any(name.startswith(prefix) for prefix in BLE_NAME_PREFIXES):
        return True
    uuids = getattr(advertisement, "service_uuids", None) or []
    return CALIBRATION_SERVICE_UUID in (uuid.lower() for uuid in uuids)


async def find_robot(address: Optional[str] = None, timeout: float = DEFAULT_SCAN_TIMEOUT) -> Any:
    """Scan for the robot.

    Raises:
        TransportUnavailableError: the host has no usable Bluetooth adapter.
        TransportError: scanning worked but no robot advertised.
    """

    try:
        if address:
            device = await BleakScanner.find_device_by_address(address, timeout=timeout)
        else:
            device = await BleakScanner.find_device_by_filter(matches_robot, timeout=timeout)
    except (BleakError, OSError) as exc:
        raise TransportUnavailableError(f"Bluetooth LE unavailable: {exc}") from exc
    if device is None:
        target = address or "/".join(BLE_NAME_PREFIXES)
        raise TransportError(f"No robot ({target}) advertising over Bluetooth LE")
    return device


class BleTransport(BaseTransport):
    """GATT session: command writes plus state/progress/error notifications."""

    kind = TRANSPORT_BLE

    def __init__(
        self,
        address: Optional[str] = None,
        *,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        data_delay: float = DEFAULT_DATA_DELAY,
        state_delay: float = DEFAULT_STATE_DELAY,
    ) -> None:
        super().__init__()
        self._address = address
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout
        self._write_timeout = write_timeout
        self._client: Optional[Any] = None
        self._device_name: Optional[str] = None
        self._characteristics: Dict[str, Any] = {}
        self._correlator = ReadAfterWriteCorrelator(
            self.send_command,
            data_delay=data_delay,
            state_delay=state_delay,
        )

    @property
    def endpoint(self) -> Optional[str]:
        return self._device_name or self._address

    @property
    def has_error_channel(self) -> bool:
        return "error" in self._characteristics

    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._connected:
            return
        device = await find_robot(self._address, self._scan_timeout)
        self._closing = False
        client = BleakClient(
            device,
            disconnected_callback=self._handle_disconnect,
            timeout=self._connect_timeout,
        )
        try:
            await asyncio.wait_for(client.connect(), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._release(client)
            raise TransportTimeoutError(f"GATT connect timed out after {self._connect_timeout:g} s") from exc
        except (BleakError, OSError) as exc:
            self._log_failure("GATT connect failed: %s", exc)
            await self._release(client)
            raise TransportError(f"GATT connect failed: {exc}") from exc

        try:
            await self._subscribe(client)
        except (BridgeError, BleakError, OSError) as exc:
            await self._release(client)
            if isinstance(exc, BridgeError):
                raise
            raise TransportError(f"GATT setup failed: {exc}") from exc

        self._client = client
        self._device_name = getattr(device, "name", None) or getattr(device, "address", None)
        self._connected = True
        self._consecutive_failures = 0
        self._touch()
        logger.info("BLE transport connected to %s", self._device_name)

    async def _subscribe(self, client: Any) -> None:
        service = client.services.get_service(CALIBRATION_SERVICE_UUID)
        if service is None:
            raise TransportError("Calibration GATT service not found on device")

        characteristics: Dict[str, Any] = {}
        for role, uuid in _REQUIRED_CHARACTERISTICS.items():
            char = service.get_characteristic(uuid)
            if char is None:
                raise TransportError(f"Calibration characteristic {role} ({uuid}) missing")
            characteristics[role] = char

        await client.start_notify(characteristics["state"], self._handle_notification)
        await client.start_notify(characteristics["progress"], self._handle_notification)

        error_char = service.get_characteristic(ERROR_CHAR_UUID)
        if error_char is None:
            logger.info("Error characteristic not available (optional)")
        else:
            try:
                await client.start_notify(error_char, self._handle_error_notification)
            except BleakError as exc:
                logger.info("Error characteristic not available (optional): %s", exc)
            else:
                characteristics["error"] = error_char
        self._characteristics = characteristics

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        client = self._client
        self._client = None
        self._characteristics = {}
        if client is not None:
            await self._release(client)

    @staticmethod
    async def _release(client: Any) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            logger.debug("GATT disconnect failed: %s", exc)

    async def send_command(self, command: Command) -> None:
        client = self._client
        char = self._characteristics.get("command")
        if client is None or char is None or not self._connected:
            raise TransportError("BLE transport is not connected")

        payload = command.encode()
        properties = set(getattr(char, "properties", None) or ())
        try:
            if "write" in properties or "write-without-response" not in properties:
                await asyncio.wait_for(
                    client.write_gatt_char(char, payload, response=True),
                    timeout=self._write_timeout,
                )
            else:
                size = getattr(char, "max_write_without_response_size", None) or LEGACY_CHUNK_SIZE
                for offset in range(0, len(payload), size):
                    await asyncio.wait_for(
                        client.write_gatt_char(char, payload[offset : offset + size], response=False),
                        timeout=self._write_timeout,
                    )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError("BLE write timed out") from exc
        except (BleakError, OSError) as exc:
            raise TransportError(f"BLE write failed: {exc}") from exc
        self._touch()

    async def read_data(self) -> Dict[str, Any]:
        return await self._correlator.request(ACTION_GET_DATA, self._reader("data"))

    async def read_state(self) -> Dict[str, Any]:
        return await self._correlator.request(ACTION_GET_STATE, self._reader("state"))

    async def export_data(self) -> Dict[str, Any]:
        return await self._correlator.request(ACTION_EXPORT, self._reader("data"))

    def _reader(self, role: str):
        async def _read() -> Optional[FrameSample]:
            client = self._client
            char = self._characteristics.get(role)
            if client is None or char is None:
                raise TransportError("BLE transport is not connected")
            try:
                raw = await asyncio.wait_for(client.read_gatt_char(char), timeout=self._write_timeout)
            except asyncio.TimeoutError as exc:
                raise TransportTimeoutError(f"BLE read of {role} timed out") from exc
            except (BleakError, OSError) as exc:
                raise TransportError(f"BLE read of {role} failed: {exc}") from exc
            self._touch()
            return sample_from_bytes(bytes(raw) if raw else None)

        return _read

    # ------------------------------------------------------------------
    def _handle_notification(self, _characteristic: Any, data: bytearray) -> None:
        self._emit_payload(bytes(data))

    def _handle_error_notification(self, _characteristic: Any, data: bytearray) -> None:
        text = bytes(data).decode("utf-8", errors="replace").strip()
        if text:
            self._emit_payload({"error": text})

    def _handle_disconnect(self, _client: Any) -> None:
        self._client = None
        self._characteristics = {}
        self._mark_lost("GATT server disconnected")


async def probe_ble(address: Optional[str] = None, timeout: float = DEFAULT_SCAN_TIMEOUT) -> str:
    """Liveness probe: robot found and its calibration service resolved."""

    device = await find_robot(address, timeout)
    try:
        async with BleakClient(device, timeout=timeout) as client:
            if client.services.get_service(CALIBRATION_SERVICE_UUID) is None:
                raise TransportError("device found but calibration service missing")
    except (BleakError, OSError) as exc:
        raise TransportError(f"GATT connect failed: {exc}") from exc
    return getattr(device, "name", None) or getattr(device, "address", "") or "ble"


__all__ = [
    "BleTransport",
    "LEGACY_CHUNK_SIZE",
    "find_robot",
    "matches_robot",
    "probe_ble",
]
