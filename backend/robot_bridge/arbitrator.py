"""Channel arbitration and transparent failover between transports.

The arbitrator owns every transport session and is the only writer of the
channel state. Commands go to the active channel first; a failure tears
that session down, demotes the transport and retries on the next one in
priority order. Callers only see an error when every transport failed.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

from .errors import (
    BridgeError,
    DomainError,
    EndpointNotFoundError,
    ReadError,
    TotalFailureError,
    TransportUnavailableError,
)
from .events import ChannelChange, DomainEvent, ListenerRegistry
from .normalizer import EventNormalizer
from .protocol import (
    ACTION_EXPORT,
    ACTION_GET_DATA,
    ACTION_GET_STATE,
    ACTION_IMPORT,
    ACTION_RESET,
    ACTION_START,
    ACTION_STOP,
    ALL_SENSORS,
    TRANSPORT_PRIORITY,
    Command,
)
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)

HEALTH_FAILURE_THRESHOLD = 3
DEFAULT_RETRY_COOLDOWN = 30.0  # seconds a demoted transport is skipped
COMMAND_HISTORY_SIZE = 100

T = TypeVar("T")


@dataclass(frozen=True)
class ChannelState:
    active: Optional[str]
    available: Tuple[str, ...]


@dataclass(frozen=True)
class CommandRecord:
    action: str
    channel: Optional[str]
    ok: bool
    latency_ms: float
    error: Optional[str]
    timestamp: float


class ChannelArbitrator:
    """Failover bridge over an ordered set of transports."""

    def __init__(
        self,
        transports: Iterable[BaseTransport],
        *,
        priority: Sequence[str] = TRANSPORT_PRIORITY,
        normalizer: Optional[EventNormalizer] = None,
        retry_cooldown: float = DEFAULT_RETRY_COOLDOWN,
    ) -> None:
        self._transports: Dict[str, BaseTransport] = {}
        for transport in transports:
            self._transports[transport.kind] = transport
        self._priority: Tuple[str, ...] = tuple(kind for kind in priority if kind in self._transports)
        self._retry_cooldown = max(0.0, retry_cooldown)

        self.normalizer = normalizer or EventNormalizer()
        self.normalizer.set_fetcher(self.get_calibration_data)
        self._channel_changes: ListenerRegistry[ChannelChange] = ListenerRegistry("channel-change")

        self._active: Optional[str] = None
        self._available: Tuple[str, ...] = ()
        self._unavailable: Dict[str, str] = {}
        self._demoted: Dict[str, Tuple[str, float]] = {}
        self._health: Dict[str, Dict[str, Any]] = {
            kind: {
                "failures": 0,
                "last_error": None,
                "last_success": None,
                "last_failure": None,
            }
            for kind in self._priority
        }
        self._history: Deque[CommandRecord] = deque(maxlen=COMMAND_HISTORY_SIZE)
        self._failover_task: Optional[asyncio.Task[None]] = None
        self._teardown_tasks: Set[asyncio.Task[None]] = set()
        self._in_flight = 0

        for kind in self._priority:
            self._transports[kind].bind(self._handle_payload, self._handle_transport_lost)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def state(self) -> ChannelState:
        return ChannelState(active=self._active, available=self._available)

    @property
    def active_channel(self) -> Optional[str]:
        return self._active

    @property
    def priority(self) -> Tuple[str, ...]:
        return self._priority

    @property
    def is_connected(self) -> bool:
        """True when any session can reach the robot, not only the active one."""

        return any(self._transports[kind].is_connected for kind in self._priority)

    def transport(self, kind: str) -> BaseTransport:
        return self._transports[kind]

    def subscribe(self, listener: Callable[[DomainEvent], None]) -> Callable[[], None]:
        return self.normalizer.subscribe(listener)

    def subscribe_channel_change(self, listener: Callable[[ChannelChange], None]) -> Callable[[], None]:
        return self._channel_changes.subscribe(listener)

    def health(self) -> Dict[str, Dict[str, Any]]:
        snapshot: Dict[str, Dict[str, Any]] = {}
        for kind in self._priority:
            entry = dict(self._health[kind])
            entry["healthy"] = entry["failures"] < HEALTH_FAILURE_THRESHOLD
            entry["available"] = kind in self._available
            entry["connected"] = self._transports[kind].is_connected
            entry["endpoint"] = self._transports[kind].endpoint
            snapshot[kind] = entry
        return snapshot

    def history(self, limit: Optional[int] = None) -> List[CommandRecord]:
        records = list(self._history)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> str:
        """Bring up the first transport that connects, in priority order.

        Raises:
            TotalFailureError: no transport could be connected.
        """

        if self._active is not None and self._transports[self._active].is_connected:
            return self._active

        self._unavailable.clear()
        self._demoted.clear()
        failures: Dict[str, str] = {}
        for kind in self._priority:
            transport = self._transports[kind]
            try:
                await transport.connect()
            except TransportUnavailableError as exc:
                self._unavailable[kind] = str(exc)
                failures[kind] = f"unavailable ({exc})"
                logger.info("Transport %s unavailable: %s", kind, exc)
                continue
            except (BridgeError, asyncio.TimeoutError) as exc:
                self._record_failure(kind, exc)
                failures[kind] = str(exc) or type(exc).__name__
                logger.warning("Transport %s failed to connect: %s", kind, failures[kind])
                continue

            self._record_success(kind)
            self._refresh_available()
            self._set_active(kind, "connected")
            return kind

        self._refresh_available()
        raise TotalFailureError("connect", failures)

    async def disconnect(self) -> None:
        """Tear down every session; safe to call repeatedly."""

        task = self._failover_task
        self._failover_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.wait_teardown()

        for kind in self._priority:
            await self._transports[kind].disconnect()
        await self.normalizer.reset()

        self._unavailable.clear()
        self._demoted.clear()
        self._available = ()
        self._set_active(None, "disconnect")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def send_command(self, command: Command) -> str:
        """Deliver ``command`` and return the transport that carried it."""

        channel, _ = await self._dispatch(command.action, lambda transport: transport.send_command(command))
        return channel

    async def start_calibration(self, sensors: Sequence[str] = ALL_SENSORS) -> str:
        selected = list(sensors) or list(ALL_SENSORS)
        unknown = [sensor for sensor in selected if sensor not in ALL_SENSORS and sensor != "all"]
        if unknown:
            raise ValueError(f"Unknown sensors: {', '.join(unknown)}")
        return await self.send_command(Command(ACTION_START, {"sensors": selected}))

    async def stop_calibration(self) -> str:
        return await self.send_command(Command(ACTION_STOP))

    async def reset_calibration(self) -> str:
        return await self.send_command(Command(ACTION_RESET))

    async def get_calibration_data(self) -> Dict[str, Any]:
        _, data = await self._dispatch(ACTION_GET_DATA, lambda transport: transport.read_data())
        return data

    async def get_state(self) -> Dict[str, Any]:
        _, state = await self._dispatch(ACTION_GET_STATE, lambda transport: transport.read_state())
        return state

    async def export_calibration(self) -> Dict[str, Any]:
        _, data = await self._dispatch(ACTION_EXPORT, lambda transport: transport.export_data())
        return data

    async def import_calibration(self, data: Dict[str, Any]) -> str:
        if not data:
            raise ValueError("Calibration import needs a non-empty record")
        return await self.send_command(Command(ACTION_IMPORT, {"data": dict(data)}))

    async def call(
        self,
        operation: str,
        call: Callable[[BaseTransport], Awaitable[T]],
        *,
        kinds: Optional[Sequence[str]] = None,
    ) -> Tuple[str, T]:
        """Run an arbitrary transport operation with failover.

        ``kinds`` restricts the candidates to transports that implement the
        operation; such calls never move the active channel.
        """

        return await self._dispatch(operation, call, kinds)

    async def _dispatch(
        self,
        operation: str,
        call: Callable[[BaseTransport], Awaitable[T]],
        kinds: Optional[Sequence[str]] = None,
    ) -> Tuple[str, T]:
        self._in_flight += 1
        try:
            return await self._dispatch_inner(operation, call, kinds)
        finally:
            self._in_flight -= 1

    async def _dispatch_inner(
        self,
        operation: str,
        call: Callable[[BaseTransport], Awaitable[T]],
        kinds: Optional[Sequence[str]],
    ) -> Tuple[str, T]:
        started = time.monotonic()
        failures: Dict[str, str] = {}
        scope = tuple(self._priority) if kinds is None else tuple(k for k in self._priority if k in kinds)
        for kind in self._candidate_order():
            if kind not in scope:
                continue
            transport = self._transports[kind]
            try:
                if not transport.is_connected:
                    await transport.connect()
                result = await call(transport)
            except TransportUnavailableError as exc:
                self._unavailable[kind] = str(exc)
                failures[kind] = f"unavailable ({exc})"
                continue
            except (ReadError, DomainError) as exc:
                # The link works; the robot had nothing to read or refused.
                self._remember(operation, kind, False, started, str(exc))
                raise
            except (BridgeError, asyncio.TimeoutError) as exc:
                if kinds is not None and isinstance(exc, EndpointNotFoundError):
                    # Firmware without this endpoint; the session itself is fine.
                    self._remember(operation, kind, False, started, str(exc))
                    raise
                reason = str(exc) or type(exc).__name__
                failures[kind] = reason
                self._record_failure(kind, exc)
                logger.warning("%s failed on %s: %s", operation, kind, reason)
                await self._demote(kind, reason)
                continue

            self._record_success(kind)
            if kinds is None and kind != self._active:
                logger.info("Switching control transport to %s", kind)
                self._set_active(kind, f"{operation} failover" if self._active else "connected")
            self._refresh_available()
            self._remember(operation, kind, True, started, None)
            return kind, result

        for kind in scope:
            if kind in failures:
                continue
            if kind in self._unavailable:
                failures[kind] = f"unavailable ({self._unavailable[kind]})"
            elif kind in self._demoted:
                failures[kind] = f"demoted after earlier failure ({self._demoted[kind][0]})"
        ordered = {kind: failures[kind] for kind in scope if kind in failures}

        self._refresh_available()
        if self._active is not None and not self._transports[self._active].is_connected:
            self._set_active(None, f"{operation} failed on every transport")
        error = TotalFailureError(operation, ordered)
        self._remember(operation, None, False, started, str(error))
        logger.error("%s", error)
        raise error

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _eligible(self) -> List[str]:
        now = time.monotonic()
        for kind, (_, since) in list(self._demoted.items()):
            if now - since >= self._retry_cooldown:
                del self._demoted[kind]
        return [
            kind
            for kind in self._priority
            if kind not in self._unavailable and kind not in self._demoted
        ]

    def _candidate_order(self) -> List[str]:
        eligible = self._eligible()
        if self._active not in eligible:
            return eligible
        index = eligible.index(self._active)
        return eligible[index:] + eligible[:index]

    def _refresh_available(self) -> None:
        self._available = tuple(self._eligible())

    def _set_active(self, kind: Optional[str], reason: str) -> None:
        previous = self._active
        if previous == kind:
            return
        self._active = kind
        logger.info("Active channel %s -> %s (%s)", previous or "none", kind or "none", reason)
        self._channel_changes.dispatch(ChannelChange(previous=previous, current=kind, reason=reason))

    async def _demote(self, kind: str, reason: str) -> None:
        self._demoted[kind] = (reason, time.monotonic())
        await self._transports[kind].disconnect()

    def _record_success(self, kind: str) -> None:
        entry = self._health[kind]
        entry["failures"] = 0
        entry["last_error"] = None
        entry["last_success"] = time.time()

    def _record_failure(self, kind: str, error: Any) -> None:
        entry = self._health[kind]
        entry["failures"] += 1
        entry["last_error"] = str(error) or type(error).__name__
        entry["last_failure"] = time.time()

    def _remember(self, action: str, channel: Optional[str], ok: bool, started: float, error: Optional[str]) -> None:
        self._history.append(
            CommandRecord(
                action=action,
                channel=channel,
                ok=ok,
                latency_ms=(time.monotonic() - started) * 1000.0,
                error=error,
                timestamp=time.time(),
            )
        )

    def _handle_payload(self, payload: Any, source: str) -> None:
        self.normalizer.feed(payload, source=source)

    def _handle_transport_lost(self, kind: str) -> None:
        self._record_failure(kind, "link lost")
        self._demoted[kind] = ("link lost", time.monotonic())
        self._refresh_available()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if kind == self._active:
                self._set_active(None, f"{kind} lost")
            return

        failover_running = self._failover_task is not None and not self._failover_task.done()
        if kind == self._active and not self._in_flight and not failover_running:
            self._failover_task = loop.create_task(self._failover_from(kind))
            return
        # Standby loss, or an in-flight dispatch that fails over on its own.
        task = loop.create_task(self._teardown(kind))
        self._teardown_tasks.add(task)
        task.add_done_callback(self._teardown_tasks.discard)

    async def _teardown(self, kind: str) -> None:
        transport = self._transports[kind]
        if transport.is_connected:
            # Reconnected before the teardown ran.
            return
        try:
            await transport.disconnect()
        except BridgeError as exc:
            logger.warning("Teardown of lost %s session failed: %s", kind, exc)

    async def _failover_from(self, lost: str) -> None:
        await self._transports[lost].disconnect()

        candidates = [kind for kind in self._eligible() if kind != lost]
        for kind in candidates:
            if self._transports[kind].is_connected:
                logger.info("Switching control transport to %s", kind)
                self._set_active(kind, f"{lost} lost")
                return

        for kind in candidates:
            transport = self._transports[kind]
            try:
                await transport.connect()
            except TransportUnavailableError as exc:
                self._unavailable[kind] = str(exc)
                continue
            except (BridgeError, asyncio.TimeoutError) as exc:
                self._record_failure(kind, exc)
                logger.warning("Failover to %s failed: %s", kind, exc)
                continue
            self._record_success(kind)
            self._refresh_available()
            logger.info("Switching control transport to %s", kind)
            self._set_active(kind, f"{lost} lost")
            return

        self._refresh_available()
        self._set_active(None, f"{lost} lost")

    async def wait_failover(self) -> None:
        task = self._failover_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def wait_teardown(self) -> None:
        """Wait until every lost session has released its handle."""

        pending = list(self._teardown_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = [
    "ChannelArbitrator",
    "ChannelState",
    "CommandRecord",
    "DEFAULT_RETRY_COOLDOWN",
    "HEALTH_FAILURE_THRESHOLD",
]
