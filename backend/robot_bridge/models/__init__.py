"""Pydantic models shared across the robot bridge backend."""

from .api import (
	CalibrationImportRequest,
	CalibrationStartRequest,
	CommandRequest,
	CommandResponse,
	ConnectResponse,
	DiagnosticsResponse,
	EventsResponse,
	ProbeEntry,
	ProbeResponse,
	ReadResponse,
	ServiceInfo,
	TransportDescriptor,
)

__all__ = [
	"CalibrationImportRequest",
	"CalibrationStartRequest",
	"CommandRequest",
	"CommandResponse",
	"ConnectResponse",
	"DiagnosticsResponse",
	"EventsResponse",
	"ProbeEntry",
	"ProbeResponse",
	"ReadResponse",
	"ServiceInfo",
	"TransportDescriptor",
]
