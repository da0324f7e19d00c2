"""Pytest fixtures shared across robot bridge tests."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from backend.robot_bridge.protocol import Command
from backend.robot_bridge.transports.base import BaseTransport


@pytest.fixture(autouse=True)
def bridge_env_sandbox(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in (
        "ROBOT_BRIDGE_TRANSPORTS",
        "ROBOT_BRIDGE_HOSTS",
        "ROBOT_BRIDGE_HTTP_PORTS",
        "ROBOT_BRIDGE_WS_PORTS",
        "ROBOT_BRIDGE_WS_PATH",
        "ROBOT_BRIDGE_HTTP_ENDPOINT",
        "ROBOT_BRIDGE_WS_ENDPOINT",
        "ROBOT_BRIDGE_SPP_PORT",
        "ROBOT_BRIDGE_SPP_NAME",
        "ROBOT_BRIDGE_BLE_ADDRESS",
        "ROBOT_BRIDGE_PROBE_TIMEOUT",
        "ROBOT_BRIDGE_COMMAND_TIMEOUT",
        "ROBOT_BRIDGE_DATA_READ_DELAY",
        "ROBOT_BRIDGE_STATE_READ_DELAY",
    ):
        monkeypatch.delenv(name, raising=False)

    monkeypatch.setenv("ROBOT_BRIDGE_CACHE_PATH", str(tmp_path / "last_endpoint.json"))


class FakeTransport(BaseTransport):
    """In-memory transport with scriptable failures."""

    def __init__(
        self,
        kind: str,
        *,
        connect_error: Optional[Exception] = None,
        send_error: Optional[Exception] = None,
        read_error: Optional[Exception] = None,
        data: Optional[Dict[str, Any]] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__()
        self.kind = kind
        self.connect_error = connect_error
        self.send_error = send_error
        self.read_error = read_error
        self.data = data if data is not None else {"imu": {"bias": [0.01, -0.02, 0.0]}}
        self.state = state if state is not None else {"state": 0, "stateName": "IDLE"}
        self.sent: List[Command] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.data_reads = 0
        self.exports = 0
        self.url: Optional[str] = None

    @property
    def endpoint(self) -> Optional[str]:
        return self.url

    def set_endpoint(self, url: Optional[str]) -> None:
        self.url = url

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self._closing = False
        self._connected = True

    async def send_command(self, command: Command) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(command)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._closing = True
        self._connected = False

    async def read_data(self) -> Dict[str, Any]:
        self.data_reads += 1
        if self.read_error is not None:
            raise self.read_error
        return dict(self.data)

    async def read_state(self) -> Dict[str, Any]:
        if self.read_error is not None:
            raise self.read_error
        return dict(self.state)

    async def export_data(self) -> Dict[str, Any]:
        self.exports += 1
        if self.read_error is not None:
            raise self.read_error
        return dict(self.data)

    def push(self, payload: Any) -> None:
        self._emit_payload(payload)

    def drop(self, reason: str = "link dropped") -> None:
        self._mark_lost(reason)


@pytest.fixture
def fake_transport():
    """Factory fixture building :class:`FakeTransport` instances."""

    return FakeTransport
