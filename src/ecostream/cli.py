"""Thin CLI wrapper over :class:`ecostream.Client` and the telemetry session."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from datetime import datetime

import typer

from ecostream.client import Client
from ecostream.config import Settings
from ecostream.decoder import Composite, FieldValue
from ecostream.errors import EcoflowError
from ecostream.stats import StatsTracker
from ecostream.telemetry import TelemetryConnection

app = typer.Typer(help="Read and control EcoFlow devices.", invoke_without_command=True)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Read and control EcoFlow devices."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=_LOG_FORMAT)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY."""
    if sys.stdout.isatty():
        from rich.console import Console
        from rich.syntax import Syntax

        Console().print(Syntax(json.dumps(obj, indent=2, default=str), "json"))
    else:
        typer.echo(json.dumps(obj, default=str))


def _load_settings() -> Settings:
    """Load settings or exit with an error."""
    try:
        return Settings.load()
    except FileNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None


def _client(settings: Settings, stats: StatsTracker | None = None) -> Client:
    return Client(settings.access_key, settings.secret_key, api_base=settings.api_base, stats=stats)


def _format_value(value: FieldValue) -> str:
    if isinstance(value, Composite):
        return value.text
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    return str(value)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def configure(
    access_key: str = typer.Option(..., prompt=True, help="Developer access key"),
    secret_key: str = typer.Option(
        ..., prompt=True, hide_input=True, help="Developer secret key"
    ),
    email: str = typer.Option("", prompt=True, help="Account email (for telemetry)"),
    password: str = typer.Option(
        "", prompt=True, hide_input=True, help="Account password (for telemetry)"
    ),
) -> None:
    """Save API keys and account login locally."""
    settings = Settings(access_key=access_key, secret_key=secret_key, email=email, password=password)
    settings.save()
    typer.echo("Settings saved.")


@app.command()
def devices() -> None:
    """List all devices linked to the account."""
    client = _client(_load_settings())
    try:
        all_devices = asyncio.run(client.list_devices())
    except EcoflowError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    if not all_devices:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)
    for i, dev in enumerate(all_devices):
        status = "online" if dev.online == 1 else "offline"
        typer.echo(f"  [{i}] {dev.sn} ({status})")


@app.command("get")
def get_parameters(
    sn: str = typer.Argument(..., help="Device serial number"),
    selector: str = typer.Option("data", "--selector", "-s", help="Top-level response key"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show all quota values of a device."""
    client = _client(_load_settings())
    try:
        params = asyncio.run(client.get_device_parameters(sn, selector))
    except EcoflowError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    if as_json:
        _print_json(params)
        return
    for key in sorted(params):
        typer.echo(f"  {key}: {params[key]}")


@app.command("set-watts")
def set_watts(
    sn: str = typer.Argument(..., help="Micro-inverter serial number"),
    watts: float = typer.Argument(..., help="Permanent output power in watts"),
) -> None:
    """Set the permanent output power of a micro-inverter."""
    if watts < 0:
        typer.echo(f"Value {watts} must not be negative.", err=True)
        raise typer.Exit(1)
    client = _client(_load_settings())
    try:
        result = asyncio.run(client.set_permanent_watts(sn, watts))
    except EcoflowError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Set device parameter to {watts:g} W: {result.message}")


@app.command()
def watch(
    sn: str | None = typer.Argument(None, help="Only show this device (optional)"),
) -> None:
    """Stream decoded telemetry from the broker.

    \b
    Needs the account email and password (see `ecostream configure`).
    Press Ctrl+C to stop; a per-device message summary is printed on exit.
    """
    settings = _load_settings()
    if not settings.has_login:
        typer.echo("No account login saved. Run `ecostream configure` first.", err=True)
        raise typer.Exit(1)
    stats = StatsTracker()
    with contextlib.suppress(KeyboardInterrupt):
        try:
            asyncio.run(_watch_async(settings, stats, sn))
        except EcoflowError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(1) from None
        finally:
            report = stats.report()
            if report:
                typer.echo("\n" + report.rstrip("\n"))


async def _watch_async(settings: Settings, stats: StatsTracker, only_sn: str | None) -> None:
    """Async implementation of the watch command."""
    is_tty = sys.stdout.isatty()

    async def on_record(device_sn: str, fields: dict[str, FieldValue]) -> None:
        if only_sn and device_sn != only_sn:
            return
        ts = datetime.now().strftime("%H:%M:%S")
        for key in sorted(fields):
            formatted = _format_value(fields[key])
            if is_tty:
                typer.echo(
                    f"[{ts}] {typer.style(device_sn, bold=True)} "
                    f"{typer.style(key, fg='cyan')}: {formatted}"
                )
            else:
                typer.echo(f"[{ts}] {device_sn} {key}: {formatted}")

    async def on_connection_lost(error: BaseException | None) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        message = f"[{ts}] Disconnected, reconnecting..."
        typer.echo(typer.style(message, fg="yellow") if is_tty else message)

    client = _client(settings, stats)
    connection = TelemetryConnection(
        settings.email,
        settings.password,
        on_record,
        stats=stats,
        api_base=settings.api_base,
        max_reconnect_interval=settings.max_reconnect_interval,
        on_connection_lost=on_connection_lost,
    )
    await connection.refresh_devices(client)
    typer.echo(f"Watching {len(connection.devices)} device(s)... (Ctrl+C to stop)")
    subscription = await connection.connect()
    refresher = asyncio.create_task(
        connection.run_refresh_loop(client, settings.refresh_interval)
    )
    try:
        await subscription.wait()
    finally:
        refresher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await refresher
        await subscription.stop()
