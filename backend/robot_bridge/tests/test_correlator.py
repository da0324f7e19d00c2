from __future__ import annotations

import asyncio
import time
from typing import List, Optional

import pytest

from backend.robot_bridge.correlator import (
    FrameCache,
    FrameSample,
    ReadAfterWriteCorrelator,
    sample_from_bytes,
)
from backend.robot_bridge.errors import ReadError
from backend.robot_bridge.protocol import Command


@pytest.mark.asyncio
async def test_request_waits_configured_delay_before_reading() -> None:
    marks: List[float] = []

    async def _send(_command: Command) -> None:
        marks.append(time.monotonic())

    async def _read() -> Optional[FrameSample]:
        marks.append(time.monotonic())
        return FrameSample(payload={"imu": {"bias": [0, 0, 1]}}, received_at=time.monotonic())

    correlator = ReadAfterWriteCorrelator(_send, data_delay=0.05, state_delay=0.0)
    result = await correlator.request("get_data", _read)

    assert result == {"imu": {"bias": [0, 0, 1]}}
    assert marks[1] - marks[0] >= 0.045


def test_delays_are_per_action() -> None:
    async def _send(_command: Command) -> None:
        return None

    correlator = ReadAfterWriteCorrelator(_send, data_delay=0.5, state_delay=0.1)
    assert correlator.delay_for("get_data") == 0.5
    assert correlator.delay_for("get_state") == 0.1


@pytest.mark.asyncio
async def test_empty_read_raises_read_error() -> None:
    async def _send(_command: Command) -> None:
        return None

    async def _read() -> Optional[FrameSample]:
        return None

    correlator = ReadAfterWriteCorrelator(_send, data_delay=0.0)
    with pytest.raises(ReadError, match="could not read calibration data: no response from robot"):
        await correlator.request("get_data", _read)


@pytest.mark.asyncio
async def test_stale_read_raises_read_error() -> None:
    now = [100.0]

    async def _send(_command: Command) -> None:
        return None

    async def _read() -> Optional[FrameSample]:
        return FrameSample(payload={"state": 1, "stateName": "IMU_INIT"}, received_at=50.0)

    correlator = ReadAfterWriteCorrelator(_send, state_delay=0.0, clock=lambda: now[0])
    with pytest.raises(ReadError, match="calibration state: response is stale"):
        await correlator.request("get_state", _read)


@pytest.mark.asyncio
async def test_requests_are_serialised() -> None:
    order: List[str] = []

    async def _send(command: Command) -> None:
        order.append(f"send:{command.action}")

    replies = {
        "data": {"lidar": {"angleOffset": 0.5}},
        "state": {"state": 16, "stateName": "COMPLETE"},
    }

    def _reader(name: str):
        async def _read() -> Optional[FrameSample]:
            order.append(f"read:{name}")
            return FrameSample(payload=replies[name], received_at=time.monotonic())

        return _read

    correlator = ReadAfterWriteCorrelator(_send, data_delay=0.01, state_delay=0.01)
    await asyncio.gather(
        correlator.request("get_data", _reader("data")),
        correlator.request("get_state", _reader("state")),
    )

    assert order == ["send:get_data", "read:data", "send:get_state", "read:state"]


def test_frame_cache_keeps_latest_per_shape() -> None:
    ticks = iter([1.0, 2.0, 3.0])
    cache = FrameCache(clock=lambda: next(ticks))

    assert cache.record({"state": 1, "stateName": "IMU_INIT"}) == "state"
    assert cache.record({"state": 2, "stateName": "IMU_RUNNING"}) == "state"
    assert cache.record({"imu": {"bias": [0, 0, 0]}}) == "data"

    latest = cache.latest("state")
    assert latest is not None
    assert latest.payload["stateName"] == "IMU_RUNNING"
    assert latest.received_at == 2.0
    assert cache.latest("progress") is None


def test_sample_from_bytes_rejects_empty_and_invalid() -> None:
    assert sample_from_bytes(None) is None
    assert sample_from_bytes(b"") is None
    assert sample_from_bytes(b"not json") is None
    sample = sample_from_bytes(b'{"imu": 1}', clock=lambda: 7.0)
    assert sample is not None and sample.received_at == 7.0


@pytest.mark.asyncio
async def test_telemetry_reply_is_not_returned_as_data() -> None:
    async def _send(_command: Command) -> None:
        return None

    async def _read() -> Optional[FrameSample]:
        return FrameSample(payload={"x": 1.5, "y": 2.0, "theta": 0.1}, received_at=time.monotonic())

    correlator = ReadAfterWriteCorrelator(_send, data_delay=0.0)
    with pytest.raises(ReadError, match="could not read calibration data: unexpected response"):
        await correlator.request("get_data", _read)


def test_frame_cache_ignores_telemetry() -> None:
    cache = FrameCache()

    assert cache.record({"x": 1.5, "y": 2.0, "theta": 0.1}) is None
    assert cache.record({"ok": True}) is None
    assert cache.latest("data") is None
