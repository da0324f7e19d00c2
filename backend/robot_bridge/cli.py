"""Command-line utility for talking to the CT300 robot through the bridge.

The tool exposes quick commands for probing endpoints, sending commands,
running a calibration and reading back its results. Every command builds a
short-lived ``BridgeService`` so transport selection and failover behave
exactly as they do behind the HTTP API.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer  # type: ignore

from .errors import BridgeError
from .events import DataEvent, DomainEvent, ErrorEvent, event_to_dict
from .protocol import TRANSPORT_PRIORITY, normalise_transport
from .services.bridge_service import BridgeService
from .services.config import load_settings

app = typer.Typer(add_completion=False, help="Bridge CLI for the CT300 calibration robot")

T = TypeVar("T")


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)


def _build_service(
    transports: Optional[str],
    http_endpoint: Optional[str],
    ws_endpoint: Optional[str],
) -> BridgeService:
    settings = load_settings()
    overrides: dict = {}
    if transports:
        selected = {normalise_transport(item) for item in transports.split(",")}
        selected.discard(None)
        if not selected:
            raise typer.BadParameter(f"no known transport in {transports!r}")
        overrides["transports"] = tuple(kind for kind in TRANSPORT_PRIORITY if kind in selected)
    if http_endpoint:
        overrides["http_endpoint"] = http_endpoint.strip()
    if ws_endpoint:
        overrides["ws_endpoint"] = ws_endpoint.strip()
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    return BridgeService(settings)


def _run(
    transports: Optional[str],
    http_endpoint: Optional[str],
    ws_endpoint: Optional[str],
    action: Callable[[BridgeService], Awaitable[T]],
) -> T:
    async def _session() -> T:
        svc = _build_service(transports, http_endpoint, ws_endpoint)
        try:
            return await action(svc)
        finally:
            await svc.disconnect()

    try:
        return asyncio.run(_session())
    except (BridgeError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc


TransportsOption = typer.Option(
    None, "--transports", help="Comma separated transports to use (ble,spp,websocket,http)."
)
HttpEndpointOption = typer.Option(None, "--http-endpoint", help="Fixed HTTP base URL, skips discovery.")
WsEndpointOption = typer.Option(None, "--ws-endpoint", help="Fixed WebSocket URL, skips discovery.")


@app.command()
def probe(
    timeout: float = typer.Option(3.0, help="Per-candidate probe timeout in seconds."),
    transports: Optional[str] = TransportsOption,
) -> None:
    """Probe every candidate endpoint and print the ranked results."""

    async def _scan(svc: BridgeService) -> List[dict]:
        return await svc.scan(timeout)

    results = _run(transports, None, None, _scan)
    for entry in results:
        marker = "ok " if entry["ok"] else "-- "
        colour = typer.colors.GREEN if entry["ok"] else None
        typer.secho(
            f"{marker}{entry['url']:<40} {entry['latency_ms']:>8.1f} ms  {entry['detail']}",
            fg=colour,
        )
    if not any(entry["ok"] for entry in results):
        typer.secho("No endpoint answered.", fg=typer.colors.RED)
        raise typer.Exit(code=2)


@app.command()
def status(
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Connect and print the channel state of every transport."""

    async def _status(svc: BridgeService) -> dict:
        await svc.connect()
        return svc.describe()

    typer.echo(_dump(_run(transports, http_endpoint, ws_endpoint, _status)))


@app.command()
def command(
    action: str = typer.Argument(..., help="Command name understood by the robot (e.g. 'forward')."),
    params: Optional[str] = typer.Option(None, help="JSON object with command parameters."),
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Send an arbitrary command and print the channel that carried it."""

    parsed: dict = {}
    if params:
        try:
            parsed = json.loads(params)
        except json.JSONDecodeError as exc:
            raise typer.BadParameter(f"params is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise typer.BadParameter("params must be a JSON object")

    async def _send(svc: BridgeService) -> dict:
        return await svc.send_command(action, parsed)

    typer.echo(_dump(_run(transports, http_endpoint, ws_endpoint, _send)))


@app.command()
def calibrate(
    sensors: Optional[List[str]] = typer.Argument(None, help="Sensors to calibrate (default: all)."),
    wait: bool = typer.Option(True, help="Stream events until calibration data arrives."),
    timeout: float = typer.Option(300.0, help="Maximum seconds to wait for completion."),
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Start a calibration run and optionally wait for its result."""

    async def _calibrate(svc: BridgeService) -> Optional[dict]:
        finished: asyncio.Future[DomainEvent] = asyncio.get_running_loop().create_future()

        def _on_event(event: DomainEvent) -> None:
            typer.echo(json.dumps(event_to_dict(event), sort_keys=True))
            if isinstance(event, (DataEvent, ErrorEvent)) and not finished.done():
                finished.set_result(event)

        dispose = svc.arbitrator.subscribe(_on_event)
        try:
            result = await svc.start_calibration(sensors or None)
            typer.echo(f"Calibration started over {result['channel']}")
            if not wait:
                return None
            try:
                event = await asyncio.wait_for(finished, timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ValueError(f"calibration did not finish within {timeout:g} s") from exc
        finally:
            dispose()
        if isinstance(event, ErrorEvent):
            raise ValueError(event.message)
        return dict(event.payload)

    data = _run(transports, http_endpoint, ws_endpoint, _calibrate)
    if data is not None:
        typer.echo(_dump(data))


@app.command()
def data(
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Read the stored calibration data."""

    async def _read(svc: BridgeService) -> dict:
        return await svc.get_calibration_data()

    typer.echo(_dump(_run(transports, http_endpoint, ws_endpoint, _read)))


@app.command()
def state(
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Read the current calibration state."""

    async def _read(svc: BridgeService) -> dict:
        return await svc.get_state()

    typer.echo(_dump(_run(transports, http_endpoint, ws_endpoint, _read)))


@app.command("export")
def export_calibration(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the record to this file."),
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Export the robot's stored calibration for backup."""

    async def _export(svc: BridgeService) -> dict:
        return await svc.export_calibration()

    text = _dump(_run(transports, http_endpoint, ws_endpoint, _export))
    if output is None:
        typer.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    typer.echo(f"Calibration written to {output}")


@app.command("import")
def import_calibration(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file from 'export'."),
    transports: Optional[str] = TransportsOption,
    http_endpoint: Optional[str] = HttpEndpointOption,
    ws_endpoint: Optional[str] = WsEndpointOption,
) -> None:
    """Restore a calibration record onto the robot."""

    try:
        record = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{source} is not valid JSON: {exc}") from exc
    if not isinstance(record, dict):
        raise typer.BadParameter(f"{source} must hold a JSON object")

    async def _import(svc: BridgeService) -> dict:
        return await svc.import_calibration(record)

    typer.echo(_dump(_run(transports, http_endpoint, ws_endpoint, _import)))


@app.command()
def sensor(
    name: str = typer.Argument(..., help="Sensor to read (imu, lidar, battery, ... or all)."),
    http_endpoint: Optional[str] = HttpEndpointOption,
) -> None:
    """Read a live sensor value over the robot's HTTP API."""

    async def _read(svc: BridgeService) -> dict:
        return await svc.get_sensor(name)

    typer.echo(_dump(_run("http", http_endpoint, None, _read)))


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Interface to bind."),
    port: int = typer.Option(8000, help="HTTP port."),
) -> None:
    """Run the bridge HTTP API."""

    from .server import run as run_server

    run_server(host=host, port=port)


def main(argv: Optional[list[str]] = None) -> int:
    args = argv if argv is not None else sys.argv[1:]
    try:
        code = app(prog_name="robot-bridge", args=args, standalone_mode=False)
    except typer.Exit as exc:
        return exc.exit_code
    except BridgeError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        return 2
    return code if isinstance(code, int) else 0


def run() -> None:
    """Entry point for console_scripts."""

    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - manual execution
    run()
