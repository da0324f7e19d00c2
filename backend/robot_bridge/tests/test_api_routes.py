"""Integration tests for FastAPI routes using dependency overrides."""
from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from backend.robot_bridge import app
from backend.robot_bridge.errors import (
    DomainError,
    EndpointNotFoundError,
    ReadError,
    RobotNotFoundError,
    TotalFailureError,
)
from backend.robot_bridge.services import dependencies


class _StubService:
    def __init__(self) -> None:
        self.commands: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.prober = type("_Prober", (), {"last_error": None})()

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def describe(self) -> Dict[str, Any]:
        return {
            "active": "http",
            "available": ["websocket", "http"],
            "connected": True,
            "transports": [
                {"id": "websocket", "label": "WebSocket", "available": True, "connected": False},
                {"id": "http", "label": "HTTP", "available": True, "connected": True, "endpoint": "http://robot"},
            ],
            "last_error": None,
        }

    def get_channel_state(self) -> Dict[str, Any]:
        return {"active": "http", "available": ["http"], "connected": True}

    async def connect(self) -> str:
        self._maybe_fail()
        return "http"

    async def disconnect(self) -> None:
        self.commands.append(("disconnect", None))

    async def send_command(self, action: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._maybe_fail()
        self.commands.append((action, params))
        return {"action": action, "channel": "http", "ok": True}

    async def start_calibration(self, sensors: Optional[List[str]] = None) -> Dict[str, Any]:
        self._maybe_fail()
        if sensors and "sonar" in sensors:
            raise ValueError("Unknown sensors: sonar")
        return {"action": "start", "channel": "http", "ok": True, "sensors": sensors or ["imu"]}

    async def stop_calibration(self) -> Dict[str, Any]:
        return {"action": "stop", "channel": "http", "ok": True}

    async def reset_calibration(self) -> Dict[str, Any]:
        return {"action": "reset", "channel": "http", "ok": True}

    async def get_calibration_data(self) -> Dict[str, Any]:
        self._maybe_fail()
        return {"imu": {"bias": [0, 0, 0]}}

    async def get_state(self) -> Dict[str, Any]:
        return {"state": 16, "stateName": "COMPLETE"}

    async def export_calibration(self) -> Dict[str, Any]:
        self._maybe_fail()
        return {"imu": {"bias": [0.1, 0.2, 0.3]}, "calibrationCount": 4}

    async def import_calibration(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail()
        self.commands.append(("import", data))
        return {"action": "import", "channel": "http", "ok": True}

    async def get_robot_status(self) -> Dict[str, Any]:
        self._maybe_fail()
        return {"battery": 87, "mode": "idle"}

    async def get_sensor(self, sensor: str) -> Dict[str, Any]:
        if sensor == "sonar":
            raise ValueError("Unknown sensor 'sonar'")
        self._maybe_fail()
        return {"sensor": sensor, "value": 12.5}

    async def start(self) -> None:
        self.commands.append(("start-service", None))

    async def stop(self) -> None:
        self.commands.append(("stop-service", None))

    async def scan(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        return [
            {
                "candidate": {"kind": "http", "host": "192.168.99.101", "port": 80, "scheme": "http", "path": "/api/ping"},
                "url": "http://192.168.99.101/api/ping",
                "ok": True,
                "latency_ms": 12.5,
                "status": 200,
                "detail": "{}",
                "timestamp": 0.0,
            }
        ]

    def get_recent_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        return [{"type": "progress", "progress": 40, "current_sensor": "imu", "timestamp": 0.0}][:limit]

    def get_probe_log(self, limit: int = 200) -> List[Dict[str, Any]]:
        return []

    def get_command_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return [{"action": "start", "channel": "http", "ok": True}]

    async def register_client(self) -> asyncio.Queue[Dict[str, Any]]:  # pragma: no cover - WS only
        return asyncio.Queue()

    async def unregister_client(self, queue: asyncio.Queue[Dict[str, Any]]) -> None:  # pragma: no cover
        return None


@pytest.fixture
def stub_service() -> _StubService:
    return _StubService()


@pytest_asyncio.fixture
async def client(stub_service: _StubService) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[dependencies.get_service] = lambda: stub_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_status_lists_transports(client: AsyncClient) -> None:
    response = await client.get("/api/status")
    assert response.status_code == 200
    body = response.json()
    assert body["active"] == "http"
    assert [entry["id"] for entry in body["transports"]] == ["websocket", "http"]
    assert body["transports"][1]["endpoint"] == "http://robot"


@pytest.mark.asyncio
async def test_command_route(client: AsyncClient, stub_service: _StubService) -> None:
    response = await client.post("/api/command", json={"action": "forward", "params": {"distance": 0.5}})
    assert response.status_code == 200
    assert response.json()["channel"] == "http"
    assert stub_service.commands == [("forward", {"distance": 0.5})]


@pytest.mark.asyncio
async def test_total_failure_maps_to_503(client: AsyncClient, stub_service: _StubService) -> None:
    stub_service.fail_with = TotalFailureError("stop", {"ble": "unavailable (no adapter)", "http": "timed out"})
    response = await client.post("/api/command", json={"action": "stop"})
    assert response.status_code == 503
    assert response.json()["detail"].startswith("All transports failed for stop")


@pytest.mark.asyncio
async def test_robot_not_found_on_connect(client: AsyncClient, stub_service: _StubService) -> None:
    stub_service.fail_with = RobotNotFoundError("Robot not found.")
    response = await client.post("/api/connect")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_read_error_maps_to_504(client: AsyncClient, stub_service: _StubService) -> None:
    stub_service.fail_with = ReadError("could not read calibration data: no response from robot")
    response = await client.get("/api/calibration/data")
    assert response.status_code == 504
    assert "no response from robot" in response.json()["detail"]


@pytest.mark.asyncio
async def test_unknown_sensor_maps_to_400(client: AsyncClient) -> None:
    response = await client.post("/api/calibration/start", json={"sensors": ["sonar"]})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_calibration_reads(client: AsyncClient) -> None:
    data = await client.get("/api/calibration/data")
    state = await client.get("/api/calibration/state")
    assert data.json() == {"channel": "http", "data": {"imu": {"bias": [0, 0, 0]}}}
    assert state.json()["data"]["stateName"] == "COMPLETE"


@pytest.mark.asyncio
async def test_probe_and_diagnostics(client: AsyncClient) -> None:
    probe = await client.get("/api/probe", params={"timeout": 1.5})
    diagnostics = await client.get("/api/diagnostics")
    events = await client.get("/api/events", params={"limit": 5})

    assert probe.status_code == 200
    assert probe.json()["results"][0]["url"] == "http://192.168.99.101/api/ping"
    assert diagnostics.json()["commands"][0]["action"] == "start"
    assert events.json()["events"][0]["type"] == "progress"


@pytest.mark.asyncio
async def test_calibration_export_and_import(client: AsyncClient, stub_service: _StubService) -> None:
    exported = await client.post("/api/calibration/export")
    assert exported.status_code == 200
    record = exported.json()["data"]
    assert record["calibrationCount"] == 4

    restored = await client.post("/api/calibration/import", json={"data": record})
    assert restored.status_code == 200
    assert restored.json()["action"] == "import"
    assert stub_service.commands == [("import", record)]


@pytest.mark.asyncio
async def test_robot_status_and_sensor_reads(client: AsyncClient) -> None:
    status = await client.get("/api/robot/status")
    lidar = await client.get("/api/sensors/lidar")
    unknown = await client.get("/api/sensors/sonar")

    assert status.json() == {"channel": "http", "data": {"battery": 87, "mode": "idle"}}
    assert lidar.json()["data"] == {"sensor": "lidar", "value": 12.5}
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_robot_reported_error_maps_to_409(client: AsyncClient, stub_service: _StubService) -> None:
    stub_service.fail_with = DomainError("Calibration already running")
    response = await client.post("/api/calibration/export")
    assert response.status_code == 409
    assert response.json()["detail"] == "Calibration already running"


@pytest.mark.asyncio
async def test_missing_firmware_endpoint_maps_to_404(client: AsyncClient, stub_service: _StubService) -> None:
    stub_service.fail_with = EndpointNotFoundError("Endpoint not found (outdated firmware?): GET /api/status")
    response = await client.get("/api/robot/status")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_service_is_built_on_first_use(monkeypatch: pytest.MonkeyPatch, stub_service: _StubService) -> None:
    built: List[_StubService] = []

    def _factory() -> _StubService:
        built.append(stub_service)
        return stub_service

    monkeypatch.setattr(dependencies, "_service", None)
    monkeypatch.setattr(dependencies, "BridgeService", _factory)

    assert built == []
    await dependencies.startup_service()
    assert dependencies.get_service() is stub_service
    assert len(built) == 1

    await dependencies.shutdown_service()
    assert stub_service.commands == [("start-service", None), ("stop-service", None)]
    assert dependencies._service is None
