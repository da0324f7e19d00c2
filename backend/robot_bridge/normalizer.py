"""Transport-agnostic decoding of inbound robot payloads into domain events.

The firmware sends no message-type discriminator, so payloads are
classified by shape only. The same decoder runs for BLE notifications,
SPP frames, WebSocket messages and HTTP poll bodies; that is what keeps a
channel switch invisible to subscribers.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import BridgeError, DomainError
from .events import (
    DataEvent,
    DomainEvent,
    ErrorEvent,
    ListenerRegistry,
    ProgressEvent,
    StateEvent,
)
from .protocol import (
    CALIBRATION_RECORD_KEYS,
    CALIBRATION_RECORD_PREFIXES,
    ERROR_STATE_NAME,
    CalibrationState,
)

logger = logging.getLogger(__name__)

CALIBRATION_ERROR_MESSAGE = "Error during calibration"

DataFetcher = Callable[[], Awaitable[Mapping[str, Any]]]


def decode_payload(raw: Any) -> Optional[Dict[str, Any]]:
    """Strictly decode ``raw`` into a JSON object, or return ``None``."""

    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    if not isinstance(decoded, dict):
        return None
    return decoded


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _state_number(value: Any, name: str) -> int:
    number = _as_int(value)
    if number is not None:
        return number
    try:
        return int(CalibrationState[name.upper()])
    except KeyError:
        return -1


def is_calibration_record(
    payload: Mapping[str, Any],
    keys: Sequence[str] = CALIBRATION_RECORD_KEYS,
    prefixes: Sequence[str] = CALIBRATION_RECORD_PREFIXES,
) -> bool:
    """True for nested sensor blocks or flat calibration coefficient fields."""

    prefix_tuple = tuple(prefixes)
    for key, value in payload.items():
        if key in keys and isinstance(value, Mapping):
            return True
        if isinstance(key, str) and key.startswith(prefix_tuple):
            return True
    return False


def payload_shape(payload: Mapping[str, Any]) -> Optional[str]:
    """Return ``progress``, ``state``, ``error``, ``data`` or ``None`` for noise."""

    if not payload:
        return None
    if "progress" in payload and "currentSensor" in payload:
        return "progress"
    if "state" in payload and "stateName" in payload:
        return "state"
    if isinstance(payload.get("error"), str) and payload["error"].strip():
        return "error"
    if is_calibration_record(payload):
        return "data"
    return None


def classify_payload(payload: Mapping[str, Any], source: Optional[str] = None) -> Optional[DomainEvent]:
    """Total classification of a decoded payload.

    Telemetry such as position frames or command acks yields ``None``, as
    do malformed shapes.
    """

    shape = payload_shape(payload)
    if shape == "progress":
        progress = _as_int(payload.get("progress"))
        if progress is None:
            return None
        return ProgressEvent(
            progress=max(0, min(progress, 100)),
            current_sensor=str(payload.get("currentSensor") or ""),
            message=str(payload.get("message") or ""),
            source=source,
        )
    if shape == "state":
        name = str(payload.get("stateName") or "")
        return StateEvent(
            state=_state_number(payload.get("state"), name),
            state_name=name,
            source=source,
        )
    if shape == "error":
        return ErrorEvent(message=payload["error"].strip(), source=source)
    if shape == "data":
        return DataEvent(payload=dict(payload), source=source)
    return None


class EventNormalizer:
    """Decode payloads, dispatch typed events and auto-fetch completion data."""

    def __init__(
        self,
        events: Optional[ListenerRegistry[DomainEvent]] = None,
        fetch_data: Optional[DataFetcher] = None,
    ) -> None:
        self.events: ListenerRegistry[DomainEvent] = events or ListenerRegistry("event")
        self._fetch_data = fetch_data
        self._completion_armed = True
        self._fetch_task: Optional[asyncio.Task[None]] = None
        self.dropped = 0

    def subscribe(self, listener: Callable[[DomainEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(listener)

    def set_fetcher(self, fetch_data: Optional[DataFetcher]) -> None:
        self._fetch_data = fetch_data

    @property
    def fetch_in_flight(self) -> bool:
        return self._fetch_task is not None and not self._fetch_task.done()

    # ------------------------------------------------------------------
    def feed(self, raw: Any, source: Optional[str] = None) -> List[DomainEvent]:
        """Classify one inbound payload and dispatch the resulting events."""

        payload = decode_payload(raw)
        if payload is None:
            self.dropped += 1
            logger.debug("Dropping undecodable payload from %s: %r", source, raw)
            return []

        event = classify_payload(payload, source)
        if event is None:
            self.dropped += 1
            logger.debug("Ignoring non-calibration payload from %s: %r", source, payload)
            return []

        if isinstance(event, DataEvent) and self.fetch_in_flight:
            # Reply to our own get_data; the fetch task dispatches it.
            logger.debug("Data frame from %s absorbed by pending fetch", source)
            return []

        emitted: List[DomainEvent] = [event]
        self.events.dispatch(event)

        if isinstance(event, ProgressEvent):
            if event.progress >= 100:
                self._schedule_fetch(source)
            else:
                self._completion_armed = True
        elif isinstance(event, StateEvent) and event.state_name.upper() == ERROR_STATE_NAME:
            error = ErrorEvent(message=CALIBRATION_ERROR_MESSAGE, source=source)
            self.events.dispatch(error)
            emitted.append(error)
        return emitted

    # ------------------------------------------------------------------
    def _schedule_fetch(self, source: Optional[str]) -> None:
        if not self._completion_armed or self._fetch_data is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Progress reached 100%% outside an event loop; data fetch skipped")
            return
        self._completion_armed = False
        self._fetch_task = loop.create_task(self._fetch_and_dispatch(source))

    async def _fetch_and_dispatch(self, source: Optional[str]) -> None:
        assert self._fetch_data is not None
        try:
            payload = await self._fetch_data()
        except DomainError as exc:
            # The robot's own error body already reached subscribers.
            logger.warning("Robot refused calibration data fetch: %s", exc)
            self._completion_armed = True
            return
        except BridgeError as exc:
            logger.warning("Automatic calibration data fetch failed: %s", exc)
            self._completion_armed = True
            self.events.dispatch(ErrorEvent(message=str(exc), source=source))
            return
        if not payload:
            self._completion_armed = True
            self.events.dispatch(
                ErrorEvent(message="could not read calibration data: empty response", source=source)
            )
            return
        self.events.dispatch(DataEvent(payload=dict(payload), source=source))

    async def drain(self) -> None:
        """Wait for a pending automatic fetch to finish."""

        task = self._fetch_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                return

    async def reset(self) -> None:
        """Cancel any pending fetch and re-arm completion handling."""

        task = self._fetch_task
        self._fetch_task = None
        self._completion_armed = True
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = [
    "CALIBRATION_ERROR_MESSAGE",
    "EventNormalizer",
    "classify_payload",
    "decode_payload",
    "is_calibration_record",
    "payload_shape",
]
