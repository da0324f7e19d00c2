"""Classic Bluetooth serial (SPP) transport.

Paired robots show up as serial ports (``/dev/rfcomm*`` on Linux,
``/dev/cu.*-SerialPort`` on macOS, "Standard Serial over Bluetooth link"
COM ports on Windows). Frames are newline-terminated JSON; inbound data
is polled with a read-until-newline primitive.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import serial  # type: ignore
from serial.tools import list_ports  # type: ignore

from ..correlator import (
    DEFAULT_DATA_DELAY,
    DEFAULT_STATE_DELAY,
    FrameCache,
    ReadAfterWriteCorrelator,
)
from ..errors import TransportError, TransportTimeoutError, TransportUnavailableError
from ..normalizer import decode_payload
from ..protocol import (
    ACTION_EXPORT,
    ACTION_GET_DATA,
    ACTION_GET_STATE,
    SPP_NAME_KEYWORDS,
    TRANSPORT_SPP,
    Command,
)
from .base import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
DEFAULT_WRITE_TIMEOUT = 2.0
DEFAULT_READ_TIMEOUT = 0.05
POLL_INTERVAL = 0.1  # after a successful read
POLL_BACKOFF = 0.5  # after a failed read
MAX_READ_FAILURES = 5

_BLUETOOTH_HINTS = ("bluetooth", "rfcomm", "serialport", "bthenum", "spp")


@dataclass(frozen=True)
class PairedDevice:
    port: str
    name: str


def list_paired_devices() -> List[PairedDevice]:
    """Return serial ports that belong to paired Bluetooth devices."""

    devices: List[PairedDevice] = []
    for info in list_ports.comports():
        fields = [info.device, info.name, info.description, info.hwid]
        text = " ".join(str(value) for value in fields if value).lower()
        if not any(hint in text for hint in _BLUETOOTH_HINTS):
            continue
        description = info.description if info.description and info.description != "n/a" else None
        devices.append(PairedDevice(port=info.device, name=description or info.name or info.device))
    return devices


def select_device(
    devices: Sequence[PairedDevice],
    preferred: Optional[str] = None,
) -> Optional[PairedDevice]:
    """Pick the robot among paired devices.

    Preference order: case-insensitive substring match on ``preferred``,
    then known robot name keywords, then the first device.
    """

    if not devices:
        return None
    if preferred and preferred.strip():
        needle = preferred.strip().lower()
        for device in devices:
            if needle in device.name.lower() or needle in device.port.lower():
                return device
    for device in devices:
        haystack = f"{device.name} {device.port}".lower()
        if any(keyword in haystack for keyword in SPP_NAME_KEYWORDS):
            return device
    return devices[0]


class SppTransport(BaseTransport):
    """Newline-delimited JSON over a Bluetooth serial port."""

    kind = TRANSPORT_SPP

    def __init__(
        self,
        port: Optional[str] = None,
        *,
        preferred_name: Optional[str] = None,
        baudrate: int = DEFAULT_BAUDRATE,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        poll_backoff: float = POLL_BACKOFF,
        max_read_failures: int = MAX_READ_FAILURES,
        data_delay: float = DEFAULT_DATA_DELAY,
        state_delay: float = DEFAULT_STATE_DELAY,
        device_lister: Callable[[], List[PairedDevice]] = list_paired_devices,
    ) -> None:
        super().__init__()
        self._requested_port = port
        self._preferred_name = preferred_name
        self._baudrate = baudrate
        self._write_timeout = write_timeout
        self._read_timeout = read_timeout
        self._poll_interval = poll_interval
        self._poll_backoff = poll_backoff
        self._max_read_failures = max(1, max_read_failures)
        self._device_lister = device_lister
        self._serial: Optional[Any] = None
        self._device: Optional[PairedDevice] = None
        self._buffer = b""
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._frames = FrameCache()
        self._correlator = ReadAfterWriteCorrelator(
            self.send_command,
            data_delay=data_delay,
            state_delay=state_delay,
        )

    @property
    def endpoint(self) -> Optional[str]:
        if self._device is not None:
            return self._device.port
        return self._requested_port

    @property
    def device(self) -> Optional[PairedDevice]:
        return self._device

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ------------------------------------------------------------------
    async def _resolve_device(self) -> PairedDevice:
        if self._requested_port:
            return PairedDevice(port=self._requested_port, name=self._requested_port)
        try:
            devices = await asyncio.to_thread(self._device_lister)
        except OSError as exc:
            raise TransportUnavailableError(f"Bluetooth serial enumeration failed: {exc}") from exc
        device = select_device(devices, self._preferred_name)
        if device is None:
            raise TransportUnavailableError("No paired Bluetooth serial device found")
        return device

    async def connect(self) -> None:
        if self._connected:
            return
        device = await self._resolve_device()
        self._closing = False
        try:
            handle = await asyncio.to_thread(
                serial.serial_for_url,
                device.port,
                baudrate=self._baudrate,
                timeout=self._read_timeout,
                write_timeout=self._write_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            self._log_failure("Could not open %s: %s", device.port, exc)
            raise TransportError(f"could not open port {device.port}: {exc}") from exc

        self._serial = handle
        self._device = device
        self._buffer = b""
        self._frames.clear()
        self._connected = True
        self._consecutive_failures = 0
        self._touch()
        self._poll_task = asyncio.create_task(self._poll_loop(handle))
        logger.info("SPP transport connected to %s (%s)", device.name, device.port)

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        await self._cancel_task(self._poll_task)
        self._poll_task = None
        handle = self._serial
        self._serial = None
        if handle is not None:
            try:
                await asyncio.to_thread(handle.close)
            except (serial.SerialException, OSError) as exc:
                logger.debug("Serial close failed: %s", exc)

    async def send_command(self, command: Command) -> None:
        handle = self._serial
        if handle is None or not self._connected:
            raise TransportError("SPP transport is not connected")
        frame = command.encode(newline=True)
        try:
            await asyncio.to_thread(self._write, handle, frame)
        except serial.SerialTimeoutException as exc:
            raise TransportTimeoutError(f"SPP write timed out after {self._write_timeout:g} s") from exc
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"SPP write failed: {exc}") from exc
        self._touch()

    @staticmethod
    def _write(handle: Any, frame: bytes) -> None:
        handle.write(frame)
        handle.flush()

    async def read_data(self) -> Dict[str, Any]:
        return await self._correlator.request(ACTION_GET_DATA, self._latest("data"))

    async def read_state(self) -> Dict[str, Any]:
        return await self._correlator.request(ACTION_GET_STATE, self._latest("state"))

    async def export_data(self) -> Dict[str, Any]:
        return await self._correlator.request(ACTION_EXPORT, self._latest("data"))

    def _latest(self, shape: str):
        async def _read():
            return self._frames.latest(shape)

        return _read

    # ------------------------------------------------------------------
    async def _poll_loop(self, handle: Any) -> None:
        failures = 0
        while True:
            try:
                chunk = await asyncio.to_thread(handle.read_until, b"\n")
            except (serial.SerialException, OSError) as exc:
                failures += 1
                logger.debug("SPP read failure %d/%d: %s", failures, self._max_read_failures, exc)
                if failures >= self._max_read_failures:
                    self._mark_lost(f"{failures} consecutive read failures ({exc})")
                    return
                await asyncio.sleep(self._poll_backoff)
                continue
            failures = 0
            if chunk:
                self._consume(bytes(chunk))
            await asyncio.sleep(self._poll_interval)

    def _consume(self, chunk: bytes) -> None:
        self._buffer += chunk
        while b"\n" in self._buffer:
            line, _, self._buffer = self._buffer.partition(b"\n")
            line = line.strip()
            if not line:
                continue
            payload = decode_payload(line)
            if payload is not None:
                self._frames.record(payload)
            self._emit_payload(line)


__all__ = [
    "POLL_BACKOFF",
    "POLL_INTERVAL",
    "PairedDevice",
    "SppTransport",
    "list_paired_devices",
    "select_device",
]
