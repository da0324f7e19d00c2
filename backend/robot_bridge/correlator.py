"""Fixed-delay read-after-write correlation for fire-and-forget transports.

BLE writes and SPP/WebSocket frames carry no request identifier, so a
``get_data`` is answered by sending the command, waiting a short delay
calibrated to the firmware, then reading the data characteristic or the
latest frame of the matching shape.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .errors import ReadError
from .normalizer import decode_payload, payload_shape
from .protocol import ACTION_EXPORT, ACTION_GET_DATA, ACTION_GET_STATE, Command

logger = logging.getLogger(__name__)

DEFAULT_DATA_DELAY = 0.3  # seconds
DEFAULT_STATE_DELAY = 0.2  # seconds

READ_LABELS = {
    ACTION_GET_DATA: "calibration data",
    ACTION_GET_STATE: "calibration state",
    ACTION_EXPORT: "calibration export",
}

READ_SHAPES = {
    ACTION_GET_DATA: "data",
    ACTION_GET_STATE: "state",
    ACTION_EXPORT: "data",
}

Clock = Callable[[], float]


@dataclass(frozen=True)
class FrameSample:
    payload: Mapping[str, Any]
    received_at: float


class FrameCache:
    """Latest inbound frame per payload shape, stamped with its arrival time."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._frames: Dict[str, FrameSample] = {}

    def record(self, payload: Mapping[str, Any]) -> Optional[str]:
        shape = payload_shape(payload)
        if shape is not None:
            self._frames[shape] = FrameSample(payload=dict(payload), received_at=self._clock())
        return shape

    def latest(self, shape: str) -> Optional[FrameSample]:
        return self._frames.get(shape)

    def clear(self) -> None:
        self._frames.clear()


def sample_from_bytes(raw: Optional[bytes], clock: Clock = time.monotonic) -> Optional[FrameSample]:
    """Wrap a direct characteristic read as a fresh sample."""

    if not raw:
        return None
    payload = decode_payload(raw)
    if payload is None:
        return None
    return FrameSample(payload=payload, received_at=clock())


class ReadAfterWriteCorrelator:
    """Send a read-style command, wait, then read the reply."""

    def __init__(
        self,
        send: Callable[[Command], Awaitable[None]],
        *,
        data_delay: float = DEFAULT_DATA_DELAY,
        state_delay: float = DEFAULT_STATE_DELAY,
        clock: Clock = time.monotonic,
    ) -> None:
        self._send = send
        self._delays = {
            ACTION_GET_DATA: max(0.0, data_delay),
            ACTION_GET_STATE: max(0.0, state_delay),
        }
        self._clock = clock
        self._lock = asyncio.Lock()

    def delay_for(self, action: str) -> float:
        return self._delays.get(action, self._delays[ACTION_GET_DATA])

    async def request(
        self,
        action: str,
        read: Callable[[], Awaitable[Optional[FrameSample]]],
    ) -> Dict[str, Any]:
        """Issue ``action`` and return the payload read after the delay.

        Raises:
            ReadError: if the read is empty, undecodable, older than the
                request or not shaped like the requested record.
        """

        label = READ_LABELS.get(action, action)
        # One outstanding read at a time; replies carry no request id.
        async with self._lock:
            sent_at = self._clock()
            await self._send(Command(action))
            await asyncio.sleep(self.delay_for(action))
            sample = await read()

        if sample is None or not sample.payload:
            raise ReadError(f"could not read {label}: no response from robot")
        if sample.received_at < sent_at:
            logger.debug("Discarding stale %s sample (%.3f < %.3f)", label, sample.received_at, sent_at)
            raise ReadError(f"could not read {label}: response is stale")
        expected = READ_SHAPES.get(action)
        if expected is not None and payload_shape(sample.payload) != expected:
            logger.debug("Discarding %s read with unexpected shape: %r", label, sample.payload)
            raise ReadError(f"could not read {label}: unexpected response")
        return dict(sample.payload)


__all__ = [
    "DEFAULT_DATA_DELAY",
    "DEFAULT_STATE_DELAY",
    "FrameCache",
    "FrameSample",
    "ReadAfterWriteCorrelator",
    "sample_from_bytes",
]
