from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace
from typing import Any, Callable, List

import pytest
import serial

from backend.robot_bridge.errors import (
    ReadError,
    TransportError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from backend.robot_bridge.protocol import Command
from backend.robot_bridge.transports import spp_link
from backend.robot_bridge.transports.spp_link import (
    PairedDevice,
    SppTransport,
    list_paired_devices,
    select_device,
)


class _FakeSerial:
    def __init__(self) -> None:
        self.written: List[bytes] = []
        self.lines: List[bytes] = []
        self.replies: dict = {}
        self.closed = False
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)
        for marker, reply in self.replies.items():
            if marker in data:
                self.lines.append(reply)
        return len(data)

    def flush(self) -> None:
        return None

    def read_until(self, terminator: bytes = b"\n") -> bytes:
        if self.read_error is not None:
            raise self.read_error
        if self.lines:
            return self.lines.pop(0)
        time.sleep(0.005)
        return b""

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_serial(monkeypatch: pytest.MonkeyPatch) -> _FakeSerial:
    handle = _FakeSerial()
    opened: List[tuple] = []

    def _serial_for_url(url: str, **kwargs: Any) -> _FakeSerial:
        opened.append((url, kwargs))
        return handle

    monkeypatch.setattr(spp_link.serial, "serial_for_url", _serial_for_url)
    handle.opened = opened  # type: ignore[attr-defined]
    return handle


def _robot_lister() -> List[PairedDevice]:
    return [
        PairedDevice(port="/dev/rfcomm0", name="JBL Flip"),
        PairedDevice(port="/dev/rfcomm1", name="CSJBot-CT300"),
    ]


def _transport(**kwargs: Any) -> SppTransport:
    kwargs.setdefault("device_lister", _robot_lister)
    kwargs.setdefault("poll_interval", 0.0)
    kwargs.setdefault("poll_backoff", 0.0)
    return SppTransport(**kwargs)


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_select_device_prefers_configured_name() -> None:
    devices = _robot_lister()
    assert select_device(devices, "flip").port == "/dev/rfcomm0"
    assert select_device(devices).port == "/dev/rfcomm1"
    assert select_device([PairedDevice("COM7", "Headset")]).port == "COM7"
    assert select_device([]) is None


def test_list_paired_devices_filters_bluetooth_ports(monkeypatch: pytest.MonkeyPatch) -> None:
    ports = [
        SimpleNamespace(device="/dev/ttyUSB0", name="ttyUSB0", description="CP2102 USB to UART", hwid="USB VID:PID=10C4"),
        SimpleNamespace(device="/dev/rfcomm0", name="rfcomm0", description="n/a", hwid="n/a"),
        SimpleNamespace(
            device="COM5",
            name="COM5",
            description="Standard Serial over Bluetooth link (COM5)",
            hwid="BTHENUM\\{00001101}",
        ),
    ]
    monkeypatch.setattr(spp_link.list_ports, "comports", lambda: ports)

    devices = list_paired_devices()

    assert [device.port for device in devices] == ["/dev/rfcomm0", "COM5"]
    assert devices[0].name == "rfcomm0"
    assert devices[1].name.startswith("Standard Serial over Bluetooth")


@pytest.mark.asyncio
async def test_no_paired_device_is_unavailable() -> None:
    transport = _transport(device_lister=lambda: [])
    with pytest.raises(TransportUnavailableError):
        await transport.connect()


@pytest.mark.asyncio
async def test_enumeration_failure_is_unavailable() -> None:
    def _broken() -> List[PairedDevice]:
        raise OSError("Bluetooth stack not running")

    with pytest.raises(TransportUnavailableError, match="enumeration failed"):
        await _transport(device_lister=_broken).connect()


@pytest.mark.asyncio
async def test_connect_opens_selected_port_and_writes_frames(fake_serial) -> None:
    transport = _transport()
    await transport.connect()

    await transport.send_command(Command("stop"))

    assert fake_serial.opened[0][0] == "/dev/rfcomm1"
    assert fake_serial.opened[0][1]["baudrate"] == 115200
    assert fake_serial.written == [b'{"cmd":"stop"}\n']
    assert transport.endpoint == "/dev/rfcomm1"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_explicit_port_skips_enumeration(fake_serial) -> None:
    def _fail() -> List[PairedDevice]:
        raise AssertionError("should not enumerate")

    transport = _transport(port="/dev/cu.CSJBot-SerialPort", device_lister=_fail)
    await transport.connect()
    assert fake_serial.opened[0][0] == "/dev/cu.CSJBot-SerialPort"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_inbound_lines_are_emitted(fake_serial) -> None:
    transport = _transport()
    received: List[Any] = []
    transport.bind(lambda payload, kind: received.append((kind, payload)))
    await transport.connect()

    fake_serial.lines.append(b'{"state": 3, "stateName": "MAG_INIT"}\r\n')
    await _until(lambda: bool(received))

    assert received == [("spp", b'{"state": 3, "stateName": "MAG_INIT"}')]
    await transport.disconnect()


def test_partial_lines_are_buffered() -> None:
    transport = _transport()
    received: List[Any] = []
    transport.bind(lambda payload, kind: received.append(payload))

    transport._consume(b'{"progress": 5, ')
    assert received == []
    transport._consume(b'"currentSensor": "imu"}\n{"error": "x"}\n')

    assert received == [b'{"progress": 5, "currentSensor": "imu"}', b'{"error": "x"}']


@pytest.mark.asyncio
async def test_read_data_uses_reply_frame(fake_serial) -> None:
    fake_serial.replies[b'"get_data"'] = b'{"odometer": {"scale": 1.02}}\n'
    transport = _transport(data_delay=0.2)
    await transport.connect()

    assert await transport.read_data() == {"odometer": {"scale": 1.02}}
    await transport.disconnect()


@pytest.mark.asyncio
async def test_read_without_reply_raises(fake_serial) -> None:
    transport = _transport(state_delay=0.01)
    await transport.connect()

    with pytest.raises(ReadError):
        await transport.read_state()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_write_errors_are_categorised(fake_serial) -> None:
    transport = _transport()
    await transport.connect()

    fake_serial.write_error = serial.SerialTimeoutException("Write timeout")
    with pytest.raises(TransportTimeoutError):
        await transport.send_command(Command("reset"))

    fake_serial.write_error = serial.SerialException("device reports readiness to read but returned no data")
    with pytest.raises(TransportError):
        await transport.send_command(Command("reset"))
    await transport.disconnect()


@pytest.mark.asyncio
async def test_repeated_read_failures_mark_link_lost(fake_serial) -> None:
    transport = _transport(max_read_failures=3)
    lost: List[str] = []
    transport.bind(lambda payload, kind: None, lost.append)
    await transport.connect()

    fake_serial.read_error = serial.SerialException("port vanished")
    await _until(lambda: bool(lost))

    assert lost == ["spp"]
    assert not transport.polling
    await transport.disconnect()


@pytest.mark.asyncio
async def test_disconnect_stops_polling_and_closes_port(fake_serial) -> None:
    transport = _transport()
    await transport.connect()
    assert transport.polling

    await transport.disconnect()
    await transport.disconnect()

    assert not transport.polling
    assert fake_serial.closed
    assert not transport.is_connected
