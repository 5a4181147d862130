"""Thin CLI wrapper over :class:`goveectl.Controller`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, TypeVar

import aiohttp
import typer
from rich.console import Console
from rich.syntax import Syntax

from goveectl import _constants
from goveectl.auth import login as secondary_login
from goveectl.capabilities import parse_hex_color, resolve
from goveectl.controller import Controller
from goveectl.credentials import CredentialStore
from goveectl.devices import Device, StateSnapshot
from goveectl.exceptions import GoveeError

app = typer.Typer(help="Control Govee lights.", invoke_without_command=True)

T = TypeVar("T")


@app.callback()
def main(
    ctx: typer.Context,
    api_key: str | None = typer.Option(
        None, "--api-key", envvar=_constants.API_KEY_ENV, help="Govee API key"
    ),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Log more (-vv for debug)"),
) -> None:
    """Control Govee lights."""
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"api_key": api_key}
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY and compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _styled(text: str, **style: Any) -> str:
    return typer.style(text, **style) if sys.stdout.isatty() else text


def _load_store(ctx: typer.Context) -> CredentialStore:
    """Resolve credentials or exit with an error."""
    api_key = (ctx.obj or {}).get("api_key")
    store = CredentialStore.from_env(api_key)
    if not store.api_key:
        typer.echo(
            "No API key. Run `goveectl login` or set GOVEE_API_KEY.",
            err=True,
        )
        raise typer.Exit(1)
    return store


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro*, turning API and network errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except (GoveeError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _find(controller: Controller, ref: str) -> Device:
    device = controller.find_device(ref)
    if device is None:
        typer.echo(f"Unknown device '{ref}'. Run `goveectl devices` to list them.", err=True)
        raise typer.Exit(1)
    return device


def _format_snapshot(snapshot: StateSnapshot) -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for cap in snapshot.capabilities:
        kind = resolve(cap.instance)
        if kind is None:
            rows.append((cap.instance, str(cap.value)))
        else:
            rows.append((f"{kind.name} ({kind.slug})", kind.format_value(cap.value)))
    return rows


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    ctx: typer.Context,
    email: str = typer.Option("", help="Govee account email (enables push via certificates)"),
) -> None:
    """Save the API key and, optionally, the account login."""
    api_key = (ctx.obj or {}).get("api_key") or typer.prompt("API key", hide_input=True)
    store = CredentialStore(api_key)
    if email:
        password = typer.prompt("Password", hide_input=True)
        store.set_login(email, password)
        typer.echo(f"Logging in as {email}...")
        store.set_auth(_run(secondary_login(email, password)))
    store.save(_constants.CRED_FILE)
    typer.echo(f"Credentials saved to {_constants.CRED_FILE}.")


@app.command()
def devices(ctx: typer.Context) -> None:
    """List the account's lights."""
    store = _load_store(ctx)
    found = _run(Controller(store).list_devices())
    if not found:
        typer.echo("No lights found.", err=True)
        raise typer.Exit(1)
    for i, dev in enumerate(found):
        typer.echo(f"  [{i}] {_styled(dev.name, bold=True)} ({dev.sku})")
        typer.echo(f"        ID: {dev.device_id}")


@app.command()
def state(
    ctx: typer.Context,
    device: str | None = typer.Argument(None, help="Device index, id or name"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show current state.

    \b
    Without arguments, shows every light.
    With a device, shows just that one.
    """
    store = _load_store(ctx)

    async def fetch() -> list[tuple[Device, StateSnapshot]]:
        controller = Controller(store)
        await controller.list_devices()
        targets = [_find(controller, device)] if device is not None else controller.devices
        return [(dev, await controller.get_state(dev)) for dev in targets]

    results = _run(fetch())
    if as_json:
        _print_json({dev.device_id: snap.as_dict() for dev, snap in results})
        return
    for dev, snap in results:
        typer.echo(_styled(dev.name, bold=True))
        for label, formatted in _format_snapshot(snap):
            typer.echo(f"    {_styled(label, fg='cyan')}: {formatted}")


def _power(ctx: typer.Context, ref: str, on: bool) -> None:
    store = _load_store(ctx)

    async def apply() -> Device:
        controller = Controller(store)
        await controller.list_devices()
        dev = _find(controller, ref)
        await controller.toggle_power(dev, on)
        return dev

    dev = _run(apply())
    typer.echo(f"{dev.name}: {'ON' if on else 'OFF'}")


@app.command()
def on(
    ctx: typer.Context, device: str = typer.Argument(..., help="Device index, id or name")
) -> None:
    """Turn a light on."""
    _power(ctx, device, True)


@app.command()
def off(
    ctx: typer.Context, device: str = typer.Argument(..., help="Device index, id or name")
) -> None:
    """Turn a light off."""
    _power(ctx, device, False)


@app.command()
def brightness(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="Device index, id or name"),
    pct: float = typer.Argument(..., help="Brightness in percent (clamped to 1-100)"),
) -> None:
    """Set a light's brightness."""
    store = _load_store(ctx)

    async def apply() -> tuple[Device, int | None]:
        controller = Controller(store)
        await controller.list_devices()
        dev = _find(controller, device)
        await controller.set_brightness(dev, pct)
        return dev, controller.get_brightness(dev)

    dev, value = _run(apply())
    typer.echo(f"{dev.name}: brightness {value}%")


@app.command()
def color(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="Device index, id or name"),
    value: str = typer.Argument(..., help="Color as RRGGBB"),
) -> None:
    """Set a light's color."""
    try:
        rgb = parse_hex_color(value)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    store = _load_store(ctx)

    async def apply() -> Device:
        controller = Controller(store)
        await controller.list_devices()
        dev = _find(controller, device)
        await controller.set_color(dev, rgb)
        return dev

    dev = _run(apply())
    typer.echo(f"{dev.name}: color #{value.lstrip('#').lower()}")


@app.command()
def watch(
    ctx: typer.Context,
    certified: bool = typer.Option(
        False, "--certified", help="Also use the certificate broker (needs `login --email`)"
    ),
    insecure: bool = typer.Option(
        False, "--insecure", help="Certificate broker without TLS verification"
    ),
) -> None:
    """Watch real-time state updates via MQTT.

    Press Ctrl+C to stop.
    """
    store = _load_store(ctx)
    with contextlib.suppress(KeyboardInterrupt):
        _run(_watch_async(store, certified, insecure))


async def _watch_async(store: CredentialStore, certified: bool, insecure: bool) -> None:
    """Async implementation of the watch command."""
    controller = Controller(store)
    await controller.discover()
    typer.echo("Watching for state updates... (Ctrl+C to stop)")

    def on_change(device_id: str, snapshot: StateSnapshot | None) -> None:
        if snapshot is None:
            return
        ts = datetime.now().strftime("%H:%M:%S")
        dev = controller.find_device(device_id)
        name = dev.name if dev is not None else device_id
        for label, formatted in _format_snapshot(snapshot):
            typer.echo(
                f"[{ts}] {_styled(name, bold=True)} {_styled(label, fg='cyan')}: {formatted}"
            )

    async def on_disconnect() -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        typer.echo(_styled(f"[{ts}] Disconnected, reconnecting...", fg="yellow"))

    controller.subscribe(on_change)
    try:
        sessions = await controller.connect_push(
            certified=certified,
            use_certificates=not insecure,
            allow_insecure=insecure,
            on_disconnect=on_disconnect,
        )
        await asyncio.gather(*(s.wait() for s in sessions))
    finally:
        await controller.stop()
