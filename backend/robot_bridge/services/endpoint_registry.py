"""Persistence helpers for remembering the last endpoint that answered per transport."""
from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..prober import EndpointCandidate

_CACHE_ENV_VAR = "ROBOT_BRIDGE_CACHE_PATH"
_DEFAULT_CACHE_PATH = Path.home() / ".cache" / "robot-bridge" / "last_endpoint.json"


def _resolve_path(path: Optional[os.PathLike[str] | str] = None) -> Path:
    if path is not None:
        return Path(path).expanduser().resolve()

    env_override = os.getenv(_CACHE_ENV_VAR)
    if env_override:
        return Path(env_override).expanduser().resolve()

    return _DEFAULT_CACHE_PATH


def _read(cache_path: Path) -> Dict[str, Any]:
    try:
        with cache_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(payload, dict):
        return {}
    endpoints = payload.get("endpoints")
    return endpoints if isinstance(endpoints, dict) else {}


def load_last_endpoint(
    kind: str,
    path: Optional[os.PathLike[str] | str] = None,
) -> Optional[EndpointCandidate]:
    entry = _read(_resolve_path(path)).get(kind)
    if not isinstance(entry, dict):
        return None
    try:
        candidate = EndpointCandidate.from_dict(entry)
    except (KeyError, TypeError, ValueError):
        return None
    if candidate.kind != kind:
        return None
    return candidate


def save_last_endpoint(
    candidate: EndpointCandidate,
    path: Optional[os.PathLike[str] | str] = None,
) -> None:
    cache_path = _resolve_path(path)
    endpoints = _read(cache_path)
    entry = candidate.to_dict()
    entry["updated_at"] = int(time.time())
    endpoints[candidate.kind] = entry

    try:
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        with cache_path.open("w", encoding="utf-8") as handle:
            json.dump({"endpoints": endpoints}, handle)
    except OSError:
        # Non-critical; ignore persistence failures.
        return


def clear_last_endpoint(path: Optional[os.PathLike[str] | str] = None) -> None:
    cache_path = _resolve_path(path)
    try:
        cache_path.unlink()
    except FileNotFoundError:
        return
    except OSError:
        return


__all__ = [
    "clear_last_endpoint",
    "load_last_endpoint",
    "save_last_endpoint",
]
