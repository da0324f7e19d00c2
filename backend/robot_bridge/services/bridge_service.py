"""Async service wiring discovery, the channel arbitrator and API clients together."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from ..arbitrator import ChannelArbitrator
from ..errors import BridgeError, RobotNotFoundError, TotalFailureError
from ..events import ChannelChange, DomainEvent, event_to_dict
from ..prober import EndpointCandidate, EndpointProber, ProbeResult, build_candidates
from ..protocol import (
    ALL_SENSORS,
    TRANSPORT_BLE,
    TRANSPORT_HTTP,
    TRANSPORT_LABELS,
    TRANSPORT_SPP,
    TRANSPORT_WEBSOCKET,
    Command,
)
from ..transports import (
    BaseTransport,
    BleTransport,
    HttpTransport,
    SppTransport,
    WebSocketTransport,
)
from ..transports.http_link import SENSOR_KINDS
from .config import BridgeSettings, load_settings
from .endpoint_registry import load_last_endpoint, save_last_endpoint

logger = logging.getLogger("robot_bridge.service")

RECONNECT_INTERVAL = 10.0  # seconds between reconnect attempts while offline
CLIENT_QUEUE_SIZE = 100


class BridgeService:
    """High-level coordinator used by the API and the CLI."""

    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        *,
        transports: Optional[Sequence[BaseTransport]] = None,
        prober: Optional[EndpointProber] = None,
        reconnect_interval: float = RECONNECT_INTERVAL,
    ) -> None:
        self.settings = settings or load_settings()
        self._transports: List[BaseTransport] = (
            list(transports) if transports is not None else self._build_transports()
        )
        self.prober = prober or EndpointProber()
        self.arbitrator = ChannelArbitrator(self._transports, priority=self.settings.transports)
        self._reconnect_interval = reconnect_interval
        self._clients: Set[asyncio.Queue[Dict[str, Any]]] = set()
        self._stop_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task[None]] = None
        self._connect_lock = asyncio.Lock()
        self._last_error: Optional[str] = None
        self._disposers = [
            self.arbitrator.subscribe(self._handle_event),
            self.arbitrator.subscribe_channel_change(self._handle_channel_change),
        ]

    # ------------------------------------------------------------------
    def _build_transports(self) -> List[BaseTransport]:
        settings = self.settings
        factories = {
            TRANSPORT_BLE: lambda: BleTransport(
                settings.ble_address,
                data_delay=settings.data_read_delay,
                state_delay=settings.state_read_delay,
            ),
            TRANSPORT_SPP: lambda: SppTransport(
                settings.spp_port,
                preferred_name=settings.spp_name,
                data_delay=settings.data_read_delay,
                state_delay=settings.state_read_delay,
            ),
            TRANSPORT_WEBSOCKET: lambda: WebSocketTransport(
                settings.ws_endpoint,
                data_delay=settings.data_read_delay,
                state_delay=settings.state_read_delay,
            ),
            TRANSPORT_HTTP: lambda: HttpTransport(
                settings.http_endpoint,
                timeout=settings.command_timeout,
            ),
        }
        return [factories[kind]() for kind in settings.transports]

    def _network_transport(self, kind: str) -> Optional[BaseTransport]:
        if kind not in self.arbitrator.priority:
            return None
        return self.arbitrator.transport(kind)

    def _fixed_endpoint(self, kind: str) -> Optional[str]:
        if kind == TRANSPORT_HTTP:
            return self.settings.http_endpoint
        if kind == TRANSPORT_WEBSOCKET:
            return self.settings.ws_endpoint
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._watch_task and not self._watch_task.done():
            return
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._watch_task:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None
        await self.arbitrator.disconnect()

    async def _watch_loop(self) -> None:
        while not self._stop_event.is_set():
            if not self.arbitrator.is_connected:
                try:
                    await self.connect()
                except BridgeError as exc:
                    logger.debug("Reconnect attempt failed: %s", exc)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._reconnect_interval)
            except asyncio.TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Discovery and connection
    # ------------------------------------------------------------------
    def candidates(self, *, include_radio: bool = True) -> List[EndpointCandidate]:
        settings = self.settings
        candidates = build_candidates(
            settings.hosts,
            http_ports=settings.http_ports,
            ws_ports=settings.ws_ports,
            ws_path=settings.ws_path,
            include_radio=include_radio,
        )
        return [candidate for candidate in candidates if candidate.kind in self.arbitrator.priority]

    async def discover(self) -> Dict[str, ProbeResult]:
        """Locate WebSocket/HTTP endpoints that are not fixed by configuration."""

        found: Dict[str, ProbeResult] = {}
        for kind in (TRANSPORT_WEBSOCKET, TRANSPORT_HTTP):
            transport = self._network_transport(kind)
            if transport is None or self._fixed_endpoint(kind):
                continue
            candidates = [c for c in self.candidates(include_radio=False) if c.kind == kind]
            cached = load_last_endpoint(kind, self.settings.cache_path)
            if cached is not None:
                candidates = [cached] + [c for c in candidates if c != cached]
            result = await self.prober.probe(candidates, timeout=self.settings.probe_timeout)
            if result is None:
                continue
            transport.set_endpoint(result.candidate.base_url)  # type: ignore[attr-defined]
            save_last_endpoint(result.candidate, self.settings.cache_path)
            found[kind] = result
        return found

    async def connect(self) -> str:
        """Discover endpoints and bring up the highest priority transport.

        Raises:
            RobotNotFoundError: nothing answered on any transport.
        """

        async with self._connect_lock:
            if self.arbitrator.is_connected and self.arbitrator.active_channel:
                return self.arbitrator.active_channel
            await self.discover()
            try:
                channel = await self.arbitrator.connect()
            except TotalFailureError as exc:
                hint = self.prober.last_error or "Confirm the robot is powered on and reachable."
                self._last_error = f"{exc}. {hint}"
                raise RobotNotFoundError(self._last_error) from exc
            self._last_error = None
            return channel

    async def disconnect(self) -> None:
        await self.arbitrator.disconnect()

    async def scan(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        results = await self.prober.probe_all(
            self.candidates(),
            timeout=timeout or self.settings.probe_timeout,
        )
        return [result.to_dict() for result in results]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def _ensure_connected(self) -> None:
        if not self.arbitrator.is_connected:
            await self.connect()

    async def send_command(self, action: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        action = action.strip()
        if not action:
            raise ValueError("Command action must not be empty")
        await self._ensure_connected()
        channel = await self.arbitrator.send_command(Command(action, dict(params or {})))
        return {"action": action, "channel": channel, "ok": True}

    async def start_calibration(self, sensors: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        await self._ensure_connected()
        selected = list(sensors) if sensors else list(ALL_SENSORS)
        channel = await self.arbitrator.start_calibration(selected)
        return {"action": "start", "channel": channel, "ok": True, "sensors": selected}

    async def stop_calibration(self) -> Dict[str, Any]:
        await self._ensure_connected()
        channel = await self.arbitrator.stop_calibration()
        return {"action": "stop", "channel": channel, "ok": True}

    async def reset_calibration(self) -> Dict[str, Any]:
        await self._ensure_connected()
        channel = await self.arbitrator.reset_calibration()
        return {"action": "reset", "channel": channel, "ok": True}

    async def get_calibration_data(self) -> Dict[str, Any]:
        await self._ensure_connected()
        return await self.arbitrator.get_calibration_data()

    async def get_state(self) -> Dict[str, Any]:
        await self._ensure_connected()
        return await self.arbitrator.get_state()

    async def export_calibration(self) -> Dict[str, Any]:
        await self._ensure_connected()
        return await self.arbitrator.export_calibration()

    async def import_calibration(self, data: Dict[str, Any]) -> Dict[str, Any]:
        await self._ensure_connected()
        channel = await self.arbitrator.import_calibration(data)
        return {"action": "import", "channel": channel, "ok": True}

    async def get_robot_status(self) -> Dict[str, Any]:
        """Robot status report; only the HTTP API serves it."""

        await self._ensure_connected()
        _, status = await self.arbitrator.call(
            "status",
            lambda transport: transport.get_status(),  # type: ignore[attr-defined]
            kinds=(TRANSPORT_HTTP,),
        )
        return status

    async def get_sensor(self, sensor: str) -> Dict[str, Any]:
        if sensor not in SENSOR_KINDS:
            raise ValueError(f"Unknown sensor '{sensor}'")
        await self._ensure_connected()
        _, reading = await self.arbitrator.call(
            f"sensor {sensor}",
            lambda transport: transport.get_sensor(sensor),  # type: ignore[attr-defined]
            kinds=(TRANSPORT_HTTP,),
        )
        return reading

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_channel_state(self) -> Dict[str, Any]:
        state = self.arbitrator.state
        return {
            "active": state.active,
            "available": list(state.available),
            "connected": self.arbitrator.is_connected,
        }

    def describe(self) -> Dict[str, Any]:
        health = self.arbitrator.health()
        transports = []
        for kind in self.arbitrator.priority:
            entry = health[kind]
            transports.append(
                {
                    "id": kind,
                    "label": TRANSPORT_LABELS.get(kind, kind),
                    "available": entry["available"],
                    "connected": entry["connected"],
                    "healthy": entry["healthy"],
                    "failures": entry["failures"],
                    "endpoint": entry["endpoint"],
                    "last_error": entry["last_error"],
                }
            )
        info = self.get_channel_state()
        info["transports"] = transports
        info["last_error"] = self._last_error
        return info

    def get_recent_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, 1000))
        entries = []
        for timestamp, event in self.arbitrator.normalizer.events.recent(limit):
            body = event_to_dict(event)
            body["timestamp"] = timestamp
            entries.append(body)
        return entries

    def get_probe_log(self, limit: int = 200) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, 1000))
        return [result.to_dict() for result in self.prober.diagnostics[-limit:]]

    def get_command_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return [
            {
                "action": record.action,
                "channel": record.channel,
                "ok": record.ok,
                "latency_ms": round(record.latency_ms, 1),
                "error": record.error,
                "timestamp": record.timestamp,
            }
            for record in self.arbitrator.history(limit)
        ]

    # ------------------------------------------------------------------
    # Push clients
    # ------------------------------------------------------------------
    async def register_client(self) -> asyncio.Queue[Dict[str, Any]]:
        queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)
        self._clients.add(queue)
        return queue

    async def unregister_client(self, queue: asyncio.Queue[Dict[str, Any]]) -> None:
        self._clients.discard(queue)

    def _broadcast(self, payload: Dict[str, Any]) -> None:
        for queue in list(self._clients):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:  # pragma: no cover - race
                    pass
            queue.put_nowait(payload)

    def _handle_event(self, event: DomainEvent) -> None:
        self._broadcast(event_to_dict(event))

    def _handle_channel_change(self, change: ChannelChange) -> None:
        self._broadcast(
            {
                "type": "channel",
                "previous": change.previous,
                "current": change.current,
                "reason": change.reason,
            }
        )


__all__ = ["BridgeService"]
