"""Pydantic schemas shared across API routes."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class CommandRequest(BaseModel):
    action: str
    params: Dict[str, Any] = {}


class CommandResponse(BaseModel):
    action: str
    channel: str
    ok: bool = True
    sensors: Optional[List[str]] = None


class CalibrationStartRequest(BaseModel):
    sensors: Optional[List[str]] = None


class CalibrationImportRequest(BaseModel):
    data: Dict[str, Any]


class ReadResponse(BaseModel):
    channel: Optional[str]
    data: Dict[str, Any]


class TransportDescriptor(BaseModel):
    id: str
    label: str
    endpoint: Optional[str] = None
    available: bool = False
    connected: bool = False
    healthy: bool = True
    failures: int = 0
    last_error: Optional[str] = None


class ServiceInfo(BaseModel):
    active: Optional[str]
    available: List[str]
    connected: bool
    transports: List[TransportDescriptor]
    last_error: Optional[str] = None


class ConnectResponse(BaseModel):
    channel: str


class ProbeEntry(BaseModel):
    candidate: Dict[str, Any]
    url: str
    ok: bool
    latency_ms: float
    status: Optional[int] = None
    detail: str = ""
    timestamp: float = 0.0


class ProbeResponse(BaseModel):
    results: List[ProbeEntry]
    last_error: Optional[str] = None


class EventsResponse(BaseModel):
    events: List[Dict[str, Any]]


class DiagnosticsResponse(BaseModel):
    probes: List[ProbeEntry]
    commands: List[Dict[str, Any]]
