"""FastAPI routing layer for the robot bridge backend."""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from ..errors import (
    BridgeError,
    DomainError,
    EndpointNotFoundError,
    ReadError,
    RobotNotFoundError,
    TotalFailureError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from ..models.api import (
    CalibrationImportRequest,
    CalibrationStartRequest,
    CommandRequest,
    CommandResponse,
    ConnectResponse,
    DiagnosticsResponse,
    EventsResponse,
    ProbeResponse,
    ReadResponse,
    ServiceInfo,
)
from ..protocol import TRANSPORT_HTTP
from ..services.bridge_service import BridgeService
from ..services.dependencies import get_service

router = APIRouter()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (TotalFailureError, RobotNotFoundError, TransportUnavailableError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (ReadError, TransportTimeoutError)):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, DomainError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, EndpointNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


@router.get("/api/status", response_model=ServiceInfo)
async def api_status(svc: BridgeService = Depends(get_service)) -> ServiceInfo:
    return ServiceInfo(**svc.describe())


@router.get("/api/transports", response_model=ServiceInfo)
async def api_transports(svc: BridgeService = Depends(get_service)) -> ServiceInfo:
    return ServiceInfo(**svc.describe())


@router.post("/api/connect", response_model=ConnectResponse)
async def api_connect(svc: BridgeService = Depends(get_service)) -> ConnectResponse:
    try:
        channel = await svc.connect()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return ConnectResponse(channel=channel)


@router.post("/api/disconnect", response_model=ServiceInfo)
async def api_disconnect(svc: BridgeService = Depends(get_service)) -> ServiceInfo:
    await svc.disconnect()
    return ServiceInfo(**svc.describe())


@router.post("/api/command", response_model=CommandResponse)
async def api_command(
    request: CommandRequest,
    svc: BridgeService = Depends(get_service),
) -> CommandResponse:
    try:
        result = await svc.send_command(request.action, request.params)
    except (BridgeError, ValueError) as exc:
        raise _http_error(exc) from exc
    return CommandResponse(**result)


@router.post("/api/calibration/start", response_model=CommandResponse)
async def api_calibration_start(
    request: CalibrationStartRequest,
    svc: BridgeService = Depends(get_service),
) -> CommandResponse:
    try:
        result = await svc.start_calibration(request.sensors)
    except (BridgeError, ValueError) as exc:
        raise _http_error(exc) from exc
    return CommandResponse(**result)


@router.post("/api/calibration/stop", response_model=CommandResponse)
async def api_calibration_stop(svc: BridgeService = Depends(get_service)) -> CommandResponse:
    try:
        result = await svc.stop_calibration()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return CommandResponse(**result)


@router.post("/api/calibration/reset", response_model=CommandResponse)
async def api_calibration_reset(svc: BridgeService = Depends(get_service)) -> CommandResponse:
    try:
        result = await svc.reset_calibration()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return CommandResponse(**result)


@router.get("/api/calibration/data", response_model=ReadResponse)
async def api_calibration_data(svc: BridgeService = Depends(get_service)) -> ReadResponse:
    try:
        data = await svc.get_calibration_data()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return ReadResponse(channel=svc.get_channel_state()["active"], data=data)


@router.get("/api/calibration/state", response_model=ReadResponse)
async def api_calibration_state(svc: BridgeService = Depends(get_service)) -> ReadResponse:
    try:
        data = await svc.get_state()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return ReadResponse(channel=svc.get_channel_state()["active"], data=data)


@router.post("/api/calibration/export", response_model=ReadResponse)
async def api_calibration_export(svc: BridgeService = Depends(get_service)) -> ReadResponse:
    try:
        data = await svc.export_calibration()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return ReadResponse(channel=svc.get_channel_state()["active"], data=data)


@router.post("/api/calibration/import", response_model=CommandResponse)
async def api_calibration_import(
    request: CalibrationImportRequest,
    svc: BridgeService = Depends(get_service),
) -> CommandResponse:
    try:
        result = await svc.import_calibration(request.data)
    except (BridgeError, ValueError) as exc:
        raise _http_error(exc) from exc
    return CommandResponse(**result)


@router.get("/api/robot/status", response_model=ReadResponse)
async def api_robot_status(svc: BridgeService = Depends(get_service)) -> ReadResponse:
    try:
        data = await svc.get_robot_status()
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return ReadResponse(channel=TRANSPORT_HTTP, data=data)


@router.get("/api/sensors/{sensor}", response_model=ReadResponse)
async def api_sensor(sensor: str, svc: BridgeService = Depends(get_service)) -> ReadResponse:
    try:
        data = await svc.get_sensor(sensor)
    except (BridgeError, ValueError) as exc:
        raise _http_error(exc) from exc
    return ReadResponse(channel=TRANSPORT_HTTP, data=data)


@router.get("/api/probe", response_model=ProbeResponse)
async def api_probe(
    timeout: float = Query(3.0, gt=0, le=30),
    svc: BridgeService = Depends(get_service),
) -> ProbeResponse:
    results = await svc.scan(timeout)
    return ProbeResponse(results=results, last_error=svc.prober.last_error)


@router.get("/api/events", response_model=EventsResponse)
async def api_events(
    limit: int = Query(100, ge=1, le=1000),
    svc: BridgeService = Depends(get_service),
) -> EventsResponse:
    return EventsResponse(events=svc.get_recent_events(limit))


@router.get("/api/diagnostics", response_model=DiagnosticsResponse)
async def api_diagnostics(
    limit: int = Query(200, ge=1, le=1000),
    svc: BridgeService = Depends(get_service),
) -> DiagnosticsResponse:
    return DiagnosticsResponse(
        probes=svc.get_probe_log(limit),
        commands=svc.get_command_history(limit),
    )


@router.websocket("/ws/events")
async def events_ws(
    websocket: WebSocket,
    svc: BridgeService = Depends(get_service),
) -> None:
    await websocket.accept()
    queue = await svc.register_client()
    try:
        while True:
            payload = await queue.get()
            await websocket.send_text(json.dumps(payload))
    except WebSocketDisconnect:  # pragma: no cover - network event
        pass
    finally:
        await svc.unregister_client(queue)
