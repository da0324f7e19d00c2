"""Error taxonomy shared by the transports, the arbitrator and the service layer."""
from __future__ import annotations

from typing import Dict, Mapping


class BridgeError(RuntimeError):
    """Base class for every failure raised by the robot bridge."""


class TransportUnavailableError(BridgeError):
    """Raised when a transport cannot be used on this host at all.

    Missing Bluetooth adapter, no paired serial port or no discovered
    endpoint. The arbitrator skips such transports without penalty.
    """


class TransportTimeoutError(BridgeError):
    """Raised when a transport operation exceeded its deadline."""


class TransportError(BridgeError):
    """Raised when a connection dropped or the robot rejected a write."""


class EndpointNotFoundError(TransportError):
    """HTTP 404: the firmware does not expose the requested endpoint."""


class RobotInternalError(TransportError):
    """HTTP 5xx: the robot accepted the request but failed to handle it."""


class ProtocolError(BridgeError):
    """Raised when a payload cannot be decoded."""


class DomainError(BridgeError):
    """Raised when the firmware explicitly reports an error."""


class ReadError(BridgeError):
    """Raised when a correlated read returned nothing usable."""


class RobotNotFoundError(BridgeError):
    """Raised when discovery could not reach the robot on any endpoint."""


class TotalFailureError(BridgeError):
    """Raised when every transport failed for a single operation."""

    def __init__(self, operation: str, failures: Mapping[str, str]) -> None:
        self.operation = operation
        self.failures: Dict[str, str] = dict(failures)
        if self.failures:
            details = "; ".join(f"{kind}: {reason}" for kind, reason in self.failures.items())
        else:
            details = "no transport configured"
        super().__init__(f"All transports failed for {operation}: {details}")


__all__ = [
    "BridgeError",
    "DomainError",
    "EndpointNotFoundError",
    "ProtocolError",
    "ReadError",
    "RobotInternalError",
    "RobotNotFoundError",
    "TotalFailureError",
    "TransportError",
    "TransportTimeoutError",
    "TransportUnavailableError",
]
