"""Liveness probing of candidate robot endpoints.

Candidates are probed in batches grouped by transport kind and port; all
hosts of one batch run in parallel and a responder short-circuits the
remaining batches. Every attempt lands in a capped diagnostic log.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx
import websocket  # type: ignore

from .errors import BridgeError, TransportError
from .protocol import (
    TRANSPORT_BLE,
    TRANSPORT_HTTP,
    TRANSPORT_SPP,
    TRANSPORT_WEBSOCKET,
)
from .transports.ble_link import probe_ble
from .transports.spp_link import list_paired_devices, select_device

logger = logging.getLogger(__name__)

SCAN_TIMEOUT = 3.0  # seconds, diagnostics scan
PRIMARY_TIMEOUT = 15.0  # seconds, "find the robot" ping
DIAGNOSTIC_LOG_SIZE = 200
SNIPPET_LENGTH = 120

KNOWN_HOSTS: Tuple[Tuple[str, str], ...] = (
    ("router", "192.168.0.1"),
    ("tablet", "192.168.99.101"),
    ("gateway", "192.168.99.1"),
    ("slam-board", "192.168.99.2"),
    ("tablet-tenda", "192.168.0.199"),
)
HTTP_PORTS: Tuple[int, ...] = (80, 8080)
WS_PORTS: Tuple[int, ...] = (8080, 9001)
WS_PATH = "/ws"
PING_PATH = "/api/ping"
ROBOT_WIFI_NETWORKS = ("RoboKen_Controle_5G", "RoboKen_Controle")


@dataclass(frozen=True)
class EndpointCandidate:
    kind: str
    host: str = ""
    port: Optional[int] = None
    scheme: str = ""
    path: str = ""

    @property
    def url(self) -> str:
        if self.kind in (TRANSPORT_BLE, TRANSPORT_SPP):
            return f"{self.kind}://{self.host or 'auto'}"
        netloc = self.host
        if self.port is not None and not (self.scheme == "http" and self.port == 80):
            netloc = f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}{self.path}"

    @property
    def base_url(self) -> str:
        """URL without the probe path, used to configure transports."""

        if self.kind == TRANSPORT_HTTP:
            return self.url[: -len(self.path)] if self.path else self.url
        return self.url

    @property
    def batch_key(self) -> Tuple[str, Optional[int]]:
        return (self.kind, self.port)

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "host": self.host,
            "port": self.port,
            "scheme": self.scheme,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "EndpointCandidate":
        port = data.get("port")
        return cls(
            kind=str(data["kind"]),
            host=str(data.get("host") or ""),
            port=int(port) if isinstance(port, (int, str)) and str(port).isdigit() else None,
            scheme=str(data.get("scheme") or ""),
            path=str(data.get("path") or ""),
        )


@dataclass(frozen=True)
class ProbeResult:
    candidate: EndpointCandidate
    ok: bool
    latency_ms: float
    status: Optional[int] = None
    detail: str = ""
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "candidate": self.candidate.to_dict(),
            "url": self.candidate.url,
            "ok": self.ok,
            "latency_ms": round(self.latency_ms, 1),
            "status": self.status,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


# A probe function returns (status, snippet) or raises on failure.
ProbeFunction = Callable[[EndpointCandidate, float], Awaitable[Tuple[Optional[int], str]]]


def build_candidates(
    hosts: Iterable[str] = tuple(host for _, host in KNOWN_HOSTS),
    *,
    http_ports: Sequence[int] = HTTP_PORTS,
    ws_ports: Sequence[int] = WS_PORTS,
    ws_path: str = WS_PATH,
    include_radio: bool = True,
) -> List[EndpointCandidate]:
    """Cartesian product of hosts x ports x path templates, radios first."""

    host_list = [host.strip() for host in hosts if host and host.strip()]
    candidates: List[EndpointCandidate] = []
    if include_radio:
        candidates.append(EndpointCandidate(kind=TRANSPORT_BLE))
        candidates.append(EndpointCandidate(kind=TRANSPORT_SPP))
    for port in ws_ports:
        for host in host_list:
            candidates.append(
                EndpointCandidate(kind=TRANSPORT_WEBSOCKET, host=host, port=port, scheme="ws", path=ws_path)
            )
    for port in http_ports:
        for host in host_list:
            candidates.append(
                EndpointCandidate(kind=TRANSPORT_HTTP, host=host, port=port, scheme="http", path=PING_PATH)
            )
    return candidates


def group_batches(candidates: Sequence[EndpointCandidate]) -> List[List[EndpointCandidate]]:
    """Group candidates by (kind, port), keeping first-appearance order."""

    batches: Dict[Tuple[str, Optional[int]], List[EndpointCandidate]] = {}
    for candidate in candidates:
        batches.setdefault(candidate.batch_key, []).append(candidate)
    return list(batches.values())


def describe_failure(results: Sequence[ProbeResult]) -> str:
    """Actionable message for a discovery run where nothing responded."""

    tried = ", ".join(sorted({result.candidate.url for result in results})) or "no candidates"
    networks = " or ".join(ROBOT_WIFI_NETWORKS)
    return (
        "Robot not found. Confirm the device is on the robot WiFi "
        f"({networks}) or paired over Bluetooth, and that the robot is powered on. "
        f"Tried: {tried}"
    )


async def probe_http(candidate: EndpointCandidate, timeout: float) -> Tuple[Optional[int], str]:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(candidate.url, headers={"Accept": "application/json"})
    return response.status_code, response.text[:SNIPPET_LENGTH]


async def probe_websocket(candidate: EndpointCandidate, timeout: float) -> Tuple[Optional[int], str]:
    ws = await asyncio.to_thread(websocket.create_connection, candidate.url, timeout=timeout)
    status = getattr(ws, "status", None)
    await asyncio.to_thread(ws.close)
    return status, "open"


async def probe_bluetooth_le(candidate: EndpointCandidate, timeout: float) -> Tuple[Optional[int], str]:
    name = await probe_ble(candidate.host or None, timeout)
    return None, name


async def probe_serial(candidate: EndpointCandidate, timeout: float) -> Tuple[Optional[int], str]:
    devices = await asyncio.to_thread(list_paired_devices)
    device = select_device(devices, candidate.host or None)
    if device is None:
        raise TransportError("no paired Bluetooth serial device")
    return None, f"{device.name} ({device.port})"


DEFAULT_PROBES: Dict[str, ProbeFunction] = {
    TRANSPORT_HTTP: probe_http,
    TRANSPORT_WEBSOCKET: probe_websocket,
    TRANSPORT_BLE: probe_bluetooth_le,
    TRANSPORT_SPP: probe_serial,
}

# Failures expected from the probe functions above.
_PROBE_ERRORS = (
    BridgeError,
    OSError,
    httpx.HTTPError,
    websocket.WebSocketException,
    asyncio.TimeoutError,
)


class EndpointProber:
    """Probe candidate endpoints and keep a diagnostic log of every attempt."""

    def __init__(
        self,
        probes: Optional[Mapping[str, ProbeFunction]] = None,
        *,
        log_size: int = DIAGNOSTIC_LOG_SIZE,
    ) -> None:
        self._probes: Dict[str, ProbeFunction] = dict(DEFAULT_PROBES)
        if probes:
            self._probes.update(probes)
        self._log: Deque[ProbeResult] = deque(maxlen=log_size)
        self.last_error: Optional[str] = None

    @property
    def diagnostics(self) -> List[ProbeResult]:
        return list(self._log)

    def clear_diagnostics(self) -> None:
        self._log.clear()

    # ------------------------------------------------------------------
    async def probe_one(self, candidate: EndpointCandidate, timeout: float) -> ProbeResult:
        """Probe a single candidate; never raises, expiry is a failure."""

        probe = self._probes.get(candidate.kind)
        started = time.monotonic()
        status: Optional[int] = None
        if probe is None:
            ok, detail = False, f"no probe for transport {candidate.kind}"
        else:
            try:
                status, detail = await asyncio.wait_for(probe(candidate, timeout), timeout=timeout)
                ok = True
            except asyncio.TimeoutError:
                ok, detail = False, f"timed out after {timeout:g} s"
            except _PROBE_ERRORS as exc:
                ok, detail = False, str(exc) or type(exc).__name__
        result = ProbeResult(
            candidate=candidate,
            ok=ok,
            latency_ms=(time.monotonic() - started) * 1000.0,
            status=status,
            detail=(detail or "")[:SNIPPET_LENGTH],
            timestamp=time.time(),
        )
        self._log.append(result)
        logger.debug(
            "Probe %s %s in %.0f ms: %s",
            candidate.url,
            "ok" if ok else "failed",
            result.latency_ms,
            result.detail,
        )
        return result

    async def _probe_batch(self, batch: Sequence[EndpointCandidate], timeout: float) -> List[ProbeResult]:
        return list(await asyncio.gather(*(self.probe_one(candidate, timeout) for candidate in batch)))

    async def probe(
        self,
        candidates: Sequence[EndpointCandidate],
        timeout: float = PRIMARY_TIMEOUT,
    ) -> Optional[ProbeResult]:
        """First-responder mode: the fastest responder of the first live batch."""

        results: List[ProbeResult] = []
        for batch in group_batches(candidates):
            batch_results = await self._probe_batch(batch, timeout)
            results.extend(batch_results)
            responders = [result for result in batch_results if result.ok]
            if responders:
                self.last_error = None
                best = min(responders, key=lambda result: result.latency_ms)
                logger.info("Robot endpoint %s answered in %.0f ms", best.candidate.url, best.latency_ms)
                return best

        self.last_error = describe_failure(results)
        logger.warning("%s", self.last_error)
        return None

    async def probe_all(
        self,
        candidates: Sequence[EndpointCandidate],
        timeout: float = SCAN_TIMEOUT,
    ) -> List[ProbeResult]:
        """Full-scan mode: responders ranked by latency, then failures."""

        results: List[ProbeResult] = []
        for batch in group_batches(candidates):
            results.extend(await self._probe_batch(batch, timeout))

        responders = sorted((result for result in results if result.ok), key=lambda result: result.latency_ms)
        failures = [result for result in results if not result.ok]
        self.last_error = None if responders else describe_failure(results)
        return responders + failures


__all__ = [
    "DEFAULT_PROBES",
    "EndpointCandidate",
    "EndpointProber",
    "HTTP_PORTS",
    "KNOWN_HOSTS",
    "PRIMARY_TIMEOUT",
    "ProbeFunction",
    "ProbeResult",
    "ROBOT_WIFI_NETWORKS",
    "SCAN_TIMEOUT",
    "WS_PATH",
    "WS_PORTS",
    "build_candidates",
    "describe_failure",
    "group_batches",
]
