"""HTTP REST transport for the robot's local web API.

HTTP cannot push, so after a calibration start the adapter polls the
progress endpoint and feeds each body to the payload sink. A heartbeat
pings ``/api/ping`` and flags the session as lost after three
consecutive failures.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ..errors import (
    BridgeError,
    DomainError,
    EndpointNotFoundError,
    ProtocolError,
    RobotInternalError,
    TransportError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from ..protocol import (
    ACTION_EXPORT,
    ACTION_GET_DATA,
    ACTION_GET_STATE,
    ACTION_IMPORT,
    ACTION_RESET,
    ACTION_START,
    ACTION_STOP,
    TRANSPORT_HTTP,
    Command,
)
from .base import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0  # seconds
LONG_TIMEOUT = 15.0  # seconds, robot may be slow to wake
HEARTBEAT_INTERVAL = 5.0
HEARTBEAT_TIMEOUT = 3.0
HEARTBEAT_MAX_FAILURES = 3
PROGRESS_POLL_INTERVAL = 2.0

PING_PATH = "/api/ping"
STATUS_PATH = "/api/status"
PROGRESS_PATH = "/api/calibration/progress"
DATA_PATH = "/api/calibration/data"
STATE_PATH = "/api/calibration/state"

_CALIBRATION_POSTS = {
    ACTION_START: "/api/calibration/request",
    ACTION_STOP: "/api/calibration/stop",
    ACTION_RESET: "/api/calibration/reset",
    ACTION_EXPORT: "/api/calibration/export",
    ACTION_IMPORT: "/api/calibration/import",
}

_READS = {
    ACTION_GET_DATA: DATA_PATH,
    ACTION_GET_STATE: STATE_PATH,
}

MOVEMENT_ACTIONS = {
    "forward": "/api/movement/forward",
    "backward": "/api/movement/backward",
    "rotate": "/api/movement/rotate",
    "goto": "/api/movement/goto",
    "stop_movement": "/api/movement/stop",
}

SENSOR_KINDS = ("imu", "magnetometer", "odometer", "lidar", "battery", "temperature", "all")


def route_command(command: Command) -> Tuple[str, str, Optional[Dict[str, Any]]]:
    """Map a domain command onto ``(method, path, json_body)``."""

    action = command.action
    params = {key: value for key, value in command.params.items() if key != "cmd"}
    if action == ACTION_START:
        sensors = params.get("sensors") or ["all"]
        return "POST", _CALIBRATION_POSTS[ACTION_START], {"sensors": list(sensors)}
    if action == ACTION_IMPORT:
        body = params.get("data", params)
        return "POST", _CALIBRATION_POSTS[ACTION_IMPORT], dict(body)
    if action in _CALIBRATION_POSTS:
        return "POST", _CALIBRATION_POSTS[action], None
    if action in _READS:
        return "GET", _READS[action], None
    if action in MOVEMENT_ACTIONS:
        return "POST", MOVEMENT_ACTIONS[action], params or None
    return "POST", "/api/command", command.to_bridge_frame()


def progress_value(payload: Dict[str, Any]) -> Optional[float]:
    try:
        return float(payload.get("progress"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


class HttpTransport(BaseTransport):
    """Request/response transport with client-side progress polling."""

    kind = TRANSPORT_HTTP

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        long_timeout: float = LONG_TIMEOUT,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
        heartbeat_max_failures: int = HEARTBEAT_MAX_FAILURES,
        poll_interval: float = PROGRESS_POLL_INTERVAL,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout
        self._long_timeout = long_timeout
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_timeout = heartbeat_timeout
        self._heartbeat_max_failures = max(1, heartbeat_max_failures)
        self._poll_interval = poll_interval
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._poll_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    @property
    def endpoint(self) -> Optional[str]:
        return self._base_url

    def set_endpoint(self, base_url: Optional[str]) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._connected:
            return
        if not self._base_url:
            raise TransportUnavailableError("No HTTP endpoint discovered for the robot")

        self._closing = False
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            transport=self._http_transport,
            headers={"Accept": "application/json"},
        )
        try:
            await self._ping(self._long_timeout)
        except BridgeError:
            await self._close_client()
            raise

        self._connected = True
        self._consecutive_failures = 0
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("HTTP transport connected to %s", self._base_url)

    async def disconnect(self) -> None:
        self._closing = True
        await self._cancel_task(self._poll_task)
        await self._cancel_task(self._heartbeat_task)
        self._poll_task = None
        self._heartbeat_task = None
        await self._close_client()
        self._connected = False

    async def send_command(self, command: Command) -> None:
        method, path, body = route_command(command)
        if command.action == ACTION_STOP:
            await self._cancel_task(self._poll_task)
            self._poll_task = None

        payload = await self.request(method, path, body)
        if payload:
            self._emit_payload(payload)
        if command.action == ACTION_START:
            self.start_polling()

    async def read_data(self) -> Dict[str, Any]:
        return await self.request("GET", DATA_PATH, timeout=self._long_timeout)

    async def read_state(self) -> Dict[str, Any]:
        return await self.request("GET", STATE_PATH)

    async def read_progress(self) -> Dict[str, Any]:
        return await self.request("GET", PROGRESS_PATH)

    async def get_status(self) -> Dict[str, Any]:
        return await self.request("GET", STATUS_PATH)

    async def get_sensor(self, sensor: str) -> Dict[str, Any]:
        if sensor not in SENSOR_KINDS:
            raise ValueError(f"Unknown sensor '{sensor}'")
        return await self.request("GET", f"/api/sensors/{sensor}")

    async def export_data(self) -> Dict[str, Any]:
        return await self.request("POST", _CALIBRATION_POSTS[ACTION_EXPORT], timeout=self._long_timeout)

    # ------------------------------------------------------------------
    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Issue one request and decode its JSON object body.

        Raises:
            TransportTimeoutError: the robot did not answer in time.
            EndpointNotFoundError: HTTP 404, usually outdated firmware.
            RobotInternalError: HTTP 5xx.
            TransportError: network failure or other HTTP error status.
            ProtocolError: the body is not valid JSON.
            DomainError: the robot answered with an ``error`` field; the body
                is still handed to the payload sink.
        """

        response = await self._send(method, path, body, timeout or self._timeout)
        status = response.status_code
        if status == 404:
            raise EndpointNotFoundError(f"Endpoint not found (outdated firmware?): {method} {path}")
        if status >= 500:
            raise RobotInternalError(f"Robot internal error ({status}): {response.text.strip()}")
        if status >= 400:
            raise TransportError(f"HTTP {status}: {response.text.strip()}")

        text = response.text
        if not text.strip():
            return {}
        try:
            decoded = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Invalid JSON from {path}: {text[:80]!r}") from exc
        if not isinstance(decoded, dict):
            return {"data": decoded}
        error = decoded.get("error")
        if isinstance(error, str) and error.strip():
            self._emit_payload(decoded)
            raise DomainError(error.strip())
        return decoded

    async def _send(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        timeout: float,
    ) -> httpx.Response:
        client = self._client
        if client is None:
            raise TransportError("HTTP transport is not connected")
        try:
            response = await asyncio.wait_for(
                client.request(method, path, json=body, timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._log_failure("HTTP %s %s timed out after %.1fs", method, path, timeout)
            raise TransportTimeoutError(f"Robot did not respond within {timeout:g} s") from exc
        except httpx.HTTPError as exc:
            self._log_failure("HTTP %s %s failed: %s", method, path, exc)
            raise TransportError(f"Check WiFi connection with robot: {exc}") from exc
        self._consecutive_failures = 0
        self._touch()
        return response

    async def _ping(self, timeout: float) -> int:
        # Any status code proves the robot's web server is alive.
        response = await self._send("GET", PING_PATH, None, timeout)
        return response.status_code

    async def _close_client(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.aclose()

    # ------------------------------------------------------------------
    def start_polling(self) -> None:
        if self.polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                progress = await self.read_progress()
            except ProtocolError as exc:
                logger.debug("Ignoring undecodable progress body: %s", exc)
                continue
            except DomainError as exc:
                logger.warning("Robot reported a calibration error: %s", exc)
                return
            except BridgeError as exc:
                logger.warning("Calibration progress poll failed: %s", exc)
                self._emit_payload({"error": str(exc)})
                return

            self._emit_payload(progress)
            value = progress_value(progress)
            if value is not None and value >= 100:
                logger.info("Calibration progress complete; polling stopped")
                return

    async def _heartbeat_loop(self) -> None:
        failures = 0
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._ping(self._heartbeat_timeout)
            except BridgeError as exc:
                failures += 1
                logger.debug("HTTP heartbeat failure %d/%d: %s", failures, self._heartbeat_max_failures, exc)
                if failures >= self._heartbeat_max_failures:
                    await self._cancel_task(self._poll_task)
                    self._poll_task = None
                    self._mark_lost(f"{failures} consecutive heartbeat failures ({exc})")
                    return
                continue
            failures = 0


__all__ = [
    "HEARTBEAT_INTERVAL",
    "HEARTBEAT_MAX_FAILURES",
    "HttpTransport",
    "MOVEMENT_ACTIONS",
    "PROGRESS_POLL_INTERVAL",
    "progress_value",
    "route_command",
]
