"""WebSocket transport built on websocket-client.

The blocking client runs in worker threads through ``asyncio.to_thread``;
a reader task pulls frames with a short receive timeout so that closing
the socket ends it promptly.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websocket  # type: ignore

from ..correlator import (
    DEFAULT_DATA_DELAY,
    DEFAULT_STATE_DELAY,
    FrameCache,
    ReadAfterWriteCorrelator,
)
from ..errors import TransportError, TransportTimeoutError, TransportUnavailableError
from ..normalizer import decode_payload
from ..protocol import ACTION_EXPORT, ACTION_GET_DATA, ACTION_GET_STATE, TRANSPORT_WEBSOCKET, Command
from .base import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_RECV_TIMEOUT = 1.0
DEFAULT_PATH = "/ws"


class WebSocketTransport(BaseTransport):
    """Push transport sending bridge-wrapped JSON frames."""

    kind = TRANSPORT_WEBSOCKET

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        recv_timeout: float = DEFAULT_RECV_TIMEOUT,
        data_delay: float = DEFAULT_DATA_DELAY,
        state_delay: float = DEFAULT_STATE_DELAY,
    ) -> None:
        super().__init__()
        self._url = url.strip() if url else None
        self._timeout = timeout
        self._recv_timeout = recv_timeout
        self._socket: Optional[Any] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._frames = FrameCache()
        self._correlator = ReadAfterWriteCorrelator(
            self.send_command,
            data_delay=data_delay,
            state_delay=state_delay,
        )

    @property
    def endpoint(self) -> Optional[str]:
        return self._url

    def set_endpoint(self, url: Optional[str]) -> None:
        self._url = url.strip() if url else None

    @property
    def reader_running(self) -> bool:
        return self._reader_task is not None and not self._reader_task.done()

    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._connected:
            return
        if not self._url:
            raise TransportUnavailableError("No WebSocket endpoint discovered for the robot")

        self._closing = False
        try:
            ws = await asyncio.wait_for(
                asyncio.to_thread(websocket.create_connection, self._url, timeout=self._timeout),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"WebSocket {self._url} did not open within {self._timeout:g} s") from exc
        except (websocket.WebSocketException, OSError) as exc:
            self._log_failure("WebSocket connect failed: %s", exc)
            raise TransportError(f"WebSocket connect to {self._url} failed: {exc}") from exc

        ws.settimeout(self._recv_timeout)
        self._socket = ws
        self._frames.clear()
        self._connected = True
        self._consecutive_failures = 0
        self._touch()
        self._reader_task = asyncio.create_task(self._reader_loop(ws))
        logger.info("WebSocket transport connected to %s", self._url)

    async def disconnect(self) -> None:
        self._closing = True
        ws = self._socket
        self._socket = None
        self._connected = False
        if ws is not None:
            try:
                await asyncio.to_thread(ws.close)
            except (websocket.WebSocketException, OSError) as exc:
                logger.debug("WebSocket close failed: %s", exc)
        await self._cancel_task(self._reader_task)
        self._reader_task = None

    async def send_command(self, command: Command) -> None:
        ws = self._socket
        if ws is None or not self._connected:
            raise TransportError("WebSocket transport is not connected")
        frame = json.dumps(command.to_bridge_frame(), separators=(",", ":"))
        try:
            await asyncio.wait_for(asyncio.to_thread(ws.send, frame), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError("WebSocket send timed out") from exc
        except (websocket.WebSocketException, OSError) as exc:
            raise TransportError(f"WebSocket send failed: {exc}") from exc
        self._touch()

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
    async def _reader_loop(self, ws: Any) -> None:
        while True:
            try:
                raw = await asyncio.to_thread(ws.recv)
            except websocket.WebSocketTimeoutException:
                continue
            except (websocket.WebSocketException, OSError) as exc:
                self._mark_lost(f"socket closed: {exc}")
                return
            if raw is None or raw == "" or raw == b"":
                if not getattr(ws, "connected", True):
                    self._mark_lost("socket closed by robot")
                    return
                continue
            self._handle_frame(raw)

    def _handle_frame(self, raw: Any) -> None:
        payload = decode_payload(raw)
        if payload is not None:
            self._frames.record(payload)
        self._emit_payload(raw)


__all__ = ["DEFAULT_PATH", "WebSocketTransport"]
