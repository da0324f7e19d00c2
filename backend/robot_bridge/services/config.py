"""Environment driven settings for the bridge service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..correlator import DEFAULT_DATA_DELAY, DEFAULT_STATE_DELAY
from ..prober import HTTP_PORTS, KNOWN_HOSTS, SCAN_TIMEOUT, WS_PATH, WS_PORTS
from ..protocol import TRANSPORT_PRIORITY, normalise_transport
from ..transports.http_link import DEFAULT_TIMEOUT

logger = logging.getLogger("robot_bridge.service")

ENV_PREFIX = "ROBOT_BRIDGE_"


@dataclass
class BridgeSettings:
    transports: Tuple[str, ...] = TRANSPORT_PRIORITY
    hosts: Tuple[str, ...] = tuple(host for _, host in KNOWN_HOSTS)
    http_ports: Tuple[int, ...] = HTTP_PORTS
    ws_ports: Tuple[int, ...] = WS_PORTS
    ws_path: str = WS_PATH
    http_endpoint: Optional[str] = None
    ws_endpoint: Optional[str] = None
    spp_port: Optional[str] = None
    spp_name: Optional[str] = None
    ble_address: Optional[str] = None
    probe_timeout: float = SCAN_TIMEOUT
    command_timeout: float = DEFAULT_TIMEOUT
    data_read_delay: float = DEFAULT_DATA_DELAY
    state_read_delay: float = DEFAULT_STATE_DELAY
    cache_path: Optional[str] = None


def _env_text(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_text(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s%s=%s; using %s", ENV_PREFIX, name, raw, default)
        return default
    if value < 0:
        logger.warning("Invalid %s%s=%s; using %s", ENV_PREFIX, name, raw, default)
        return default
    return value


def _env_list(name: str) -> Optional[List[str]]:
    raw = _env_text(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_ports(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    items = _env_list(name)
    if items is None:
        return default
    ports: List[int] = []
    for item in items:
        try:
            port = int(item)
        except ValueError:
            logger.warning("Invalid %s%s entry %s; ignoring", ENV_PREFIX, name, item)
            continue
        if 0 < port < 65536:
            ports.append(port)
        else:
            logger.warning("Invalid %s%s entry %s; ignoring", ENV_PREFIX, name, item)
    if not ports:
        logger.warning("Invalid %s%s; using %s", ENV_PREFIX, name, ",".join(map(str, default)))
        return default
    return tuple(ports)


def _env_transports() -> Tuple[str, ...]:
    items = _env_list("TRANSPORTS")
    if items is None:
        return TRANSPORT_PRIORITY
    selected: List[str] = []
    for item in items:
        kind = normalise_transport(item)
        if kind is None:
            logger.warning("Invalid %sTRANSPORTS entry %s; ignoring", ENV_PREFIX, item)
            continue
        if kind not in selected:
            selected.append(kind)
    if not selected:
        logger.warning("Invalid %sTRANSPORTS; using %s", ENV_PREFIX, ",".join(TRANSPORT_PRIORITY))
        return TRANSPORT_PRIORITY
    # Keep the fixed priority order regardless of how the list was written.
    return tuple(kind for kind in TRANSPORT_PRIORITY if kind in selected)


def load_settings() -> BridgeSettings:
    """Build settings from ``ROBOT_BRIDGE_*`` environment variables."""

    defaults = BridgeSettings()
    hosts = _env_list("HOSTS")
    ws_path = _env_text("WS_PATH") or defaults.ws_path
    if not ws_path.startswith("/"):
        ws_path = "/" + ws_path
    return BridgeSettings(
        transports=_env_transports(),
        hosts=tuple(hosts) if hosts else defaults.hosts,
        http_ports=_env_ports("HTTP_PORTS", defaults.http_ports),
        ws_ports=_env_ports("WS_PORTS", defaults.ws_ports),
        ws_path=ws_path,
        http_endpoint=_env_text("HTTP_ENDPOINT"),
        ws_endpoint=_env_text("WS_ENDPOINT"),
        spp_port=_env_text("SPP_PORT"),
        spp_name=_env_text("SPP_NAME"),
        ble_address=_env_text("BLE_ADDRESS"),
        probe_timeout=_env_float("PROBE_TIMEOUT", defaults.probe_timeout),
        command_timeout=_env_float("COMMAND_TIMEOUT", defaults.command_timeout),
        data_read_delay=_env_float("DATA_READ_DELAY", defaults.data_read_delay),
        state_read_delay=_env_float("STATE_READ_DELAY", defaults.state_read_delay),
        cache_path=_env_text("CACHE_PATH"),
    )


__all__ = ["BridgeSettings", "ENV_PREFIX", "load_settings"]
