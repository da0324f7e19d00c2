from __future__ import annotations

import asyncio
import json
import queue
from typing import Any, Callable, List

import pytest
import websocket

from backend.robot_bridge.errors import ReadError, TransportError, TransportUnavailableError
from backend.robot_bridge.protocol import Command
from backend.robot_bridge.transports import ws_link
from backend.robot_bridge.transports.ws_link import WebSocketTransport


class _FakeSocket:
    def __init__(self) -> None:
        self.sent: List[str] = []
        self.inbox: "queue.Queue[str]" = queue.Queue()
        self.closed = False
        self.broken = False
        self.connected = True
        self.timeout: Any = None
        self.replies: dict = {}

    def settimeout(self, value: float) -> None:
        self.timeout = value

    def send(self, data: str) -> None:
        self.sent.append(data)
        action = json.loads(data)["params"]["cmd"]
        if action in self.replies:
            self.inbox.put(json.dumps(self.replies[action]))

    def recv(self) -> str:
        if self.broken:
            raise websocket.WebSocketConnectionClosedException("Connection to remote host was lost.")
        try:
            return self.inbox.get(timeout=0.02)
        except queue.Empty:
            raise websocket.WebSocketTimeoutException("timed out") from None

    def close(self) -> None:
        self.closed = True
        self.connected = False


@pytest.fixture
def fake_socket(monkeypatch: pytest.MonkeyPatch):
    sock = _FakeSocket()
    calls: List[tuple] = []

    def _create_connection(url: str, timeout: float | None = None):
        calls.append((url, timeout))
        return sock

    monkeypatch.setattr(ws_link.websocket, "create_connection", _create_connection)
    sock.calls = calls  # type: ignore[attr-defined]
    return sock


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_connect_and_send_bridge_frame(fake_socket) -> None:
    transport = WebSocketTransport("ws://192.168.99.101:8080/ws", timeout=3.0, recv_timeout=0.5)
    await transport.connect()

    await transport.send_command(Command("start", {"sensors": ["imu"]}, timestamp=1700))

    assert fake_socket.calls == [("ws://192.168.99.101:8080/ws", 3.0)]
    assert fake_socket.timeout == 0.5
    assert json.loads(fake_socket.sent[0]) == {
        "action": "calibration",
        "params": {"cmd": "start", "sensors": ["imu"]},
        "timestamp": 1700,
    }
    await transport.disconnect()


@pytest.mark.asyncio
async def test_inbound_frames_reach_payload_sink(fake_socket) -> None:
    transport = WebSocketTransport("ws://robot/ws")
    received: List[Any] = []
    transport.bind(lambda payload, kind: received.append((kind, payload)))
    await transport.connect()

    fake_socket.inbox.put('{"progress": 30, "currentSensor": "magnetometer"}')
    await _until(lambda: bool(received))

    assert received[0] == ("websocket", '{"progress": 30, "currentSensor": "magnetometer"}')
    assert transport.last_activity is not None
    await transport.disconnect()


@pytest.mark.asyncio
async def test_read_data_correlates_reply_after_request(fake_socket) -> None:
    fake_socket.replies["get_data"] = {"imu": {"bias": [0.5, 0.5, 0.5]}}
    transport = WebSocketTransport("ws://robot/ws", data_delay=0.2)
    await transport.connect()

    data = await transport.read_data()

    assert data == {"imu": {"bias": [0.5, 0.5, 0.5]}}
    await transport.disconnect()


@pytest.mark.asyncio
async def test_read_state_rejects_stale_frame(fake_socket) -> None:
    transport = WebSocketTransport("ws://robot/ws", state_delay=0.05)
    received: List[Any] = []
    transport.bind(lambda payload, kind: received.append(payload))
    await transport.connect()

    fake_socket.inbox.put('{"state": 1, "stateName": "IMU_INIT"}')
    await _until(lambda: bool(received))

    with pytest.raises(ReadError, match="response is stale"):
        await transport.read_state()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_read_without_any_reply(fake_socket) -> None:
    transport = WebSocketTransport("ws://robot/ws", data_delay=0.01)
    await transport.connect()

    with pytest.raises(ReadError, match="no response from robot"):
        await transport.read_data()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_closed_socket_marks_link_lost(fake_socket) -> None:
    transport = WebSocketTransport("ws://robot/ws")
    lost: List[str] = []
    transport.bind(lambda payload, kind: None, lost.append)
    await transport.connect()

    fake_socket.broken = True
    await _until(lambda: bool(lost))

    assert lost == ["websocket"]
    assert not transport.is_connected
    assert not transport.reader_running
    await transport.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_quiet_and_idempotent(fake_socket) -> None:
    transport = WebSocketTransport("ws://robot/ws")
    lost: List[str] = []
    transport.bind(lambda payload, kind: None, lost.append)
    await transport.connect()

    await transport.disconnect()
    await transport.disconnect()

    assert fake_socket.closed
    assert lost == []
    assert not transport.reader_running
    with pytest.raises(TransportError):
        await transport.send_command(Command("stop"))


@pytest.mark.asyncio
async def test_connect_failure_is_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _refuse(url: str, timeout: float | None = None):
        raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr(ws_link.websocket, "create_connection", _refuse)
    transport = WebSocketTransport("ws://robot/ws")

    with pytest.raises(TransportError, match="Connection refused"):
        await transport.connect()
    assert not transport.is_connected


@pytest.mark.asyncio
async def test_connect_without_endpoint_is_unavailable() -> None:
    with pytest.raises(TransportUnavailableError):
        await WebSocketTransport().connect()


@pytest.mark.asyncio
async def test_position_frame_in_read_window_is_not_calibration_data(fake_socket) -> None:
    fake_socket.replies["get_data"] = {"x": 1.5, "y": 2.0, "theta": 0.1}
    transport = WebSocketTransport("ws://robot/ws", data_delay=0.1)
    await transport.connect()

    with pytest.raises(ReadError, match="no response from robot"):
        await transport.read_data()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_export_correlates_calibration_record(fake_socket) -> None:
    fake_socket.replies["export"] = {"imu": {"bias": [0.5, 0.5, 0.5]}, "calibrationCount": 2}
    transport = WebSocketTransport("ws://robot/ws", data_delay=0.2)
    await transport.connect()

    record = await transport.export_data()

    assert record == {"imu": {"bias": [0.5, 0.5, 0.5]}, "calibrationCount": 2}
    assert json.loads(fake_socket.sent[-1])["params"] == {"cmd": "export"}
    await transport.disconnect()
