"""Common contract shared by the four transport adapters."""
from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, Optional

from ..protocol import Command

logger = logging.getLogger(__name__)

PayloadSink = Callable[[Any, str], None]
DisconnectCallback = Callable[[str], None]


class BaseTransport(abc.ABC):
    """One transport session.

    Adapters own their connection handle and background tasks. Inbound
    payloads go to the bound payload sink, loss of the link to the bound
    disconnect callback; both are wired by the arbitrator.
    """

    kind: str = ""

    def __init__(self) -> None:
        self._payload_sink: Optional[PayloadSink] = None
        self._disconnect_callback: Optional[DisconnectCallback] = None
        self._connected = False
        self._closing = False
        self._last_activity: Optional[float] = None
        self._consecutive_failures = 0

    # ------------------------------------------------------------------
    def bind(
        self,
        payload_sink: Optional[PayloadSink],
        disconnect_callback: Optional[DisconnectCallback] = None,
    ) -> None:
        self._payload_sink = payload_sink
        self._disconnect_callback = disconnect_callback

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def last_activity(self) -> Optional[float]:
        return self._last_activity

    def describe(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "connected": self._connected,
            "last_activity": self._last_activity,
            "endpoint": self.endpoint,
        }

    @property
    def endpoint(self) -> Optional[str]:
        return None

    # ------------------------------------------------------------------
    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the session or raise a :class:`BridgeError` subclass."""

    @abc.abstractmethod
    async def send_command(self, command: Command) -> None:
        """Deliver ``command`` or raise a :class:`BridgeError` subclass."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Close the session; calling it twice is a no-op."""

    @abc.abstractmethod
    async def read_data(self) -> Dict[str, Any]:
        """Return the final calibration record."""

    @abc.abstractmethod
    async def read_state(self) -> Dict[str, Any]:
        """Return the current calibration state record."""

    @abc.abstractmethod
    async def export_data(self) -> Dict[str, Any]:
        """Return the stored calibration record for backup."""

    # ------------------------------------------------------------------
    def _touch(self) -> None:
        self._last_activity = time.time()

    def _emit_payload(self, payload: Any) -> None:
        self._touch()
        if self._payload_sink is not None:
            self._payload_sink(payload, self.kind)

    def _mark_lost(self, reason: str) -> None:
        """Flip the session to disconnected and notify the owner once."""

        if not self._connected:
            return
        self._connected = False
        if self._closing:
            return
        logger.warning("%s link lost: %s", self.kind, reason)
        if self._disconnect_callback is not None:
            self._disconnect_callback(self.kind)

    def _log_failure(self, message: str, *args: Any) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures == 1:
            logger.warning(message, *args)
        else:
            logger.debug(message, *args)

    @staticmethod
    async def _cancel_task(task: Optional["asyncio.Task[Any]"]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["BaseTransport", "DisconnectCallback", "PayloadSink"]
