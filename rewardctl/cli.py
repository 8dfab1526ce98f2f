"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging

import typer

from rewardctl.core.errors import RewardctlError
from rewardctl.core.model import DeliveryOutcome, RfidRead, StatusSnapshot
from rewardctl.core.service import RewardService

app = typer.Typer(help="Reward pump and RFID peripheral control over Bluetooth LE")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection details to stderr"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_service(profile: str | None = None) -> RewardService:
    service = RewardService(profile)
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    for warning in getattr(service, "runtime_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _format_outcome(outcome: DeliveryOutcome) -> str:
    if outcome.delivered:
        return f"Reward {outcome.duration_ms} ms delivered, latency {outcome.latency_ms:.0f} ms"
    detail = f" ({outcome.detail})" if outcome.detail else ""
    return f"Reward {outcome.duration_ms} ms not delivered: {outcome.status.value}{detail}"


def _format_status(snapshot: StatusSnapshot) -> str:
    parts = [f"state={snapshot.state.value}"]
    if snapshot.last_ack_latency_ms is not None:
        parts.append(f"ack_latency={snapshot.last_ack_latency_ms:.0f}ms")
    if snapshot.last_rfid_tag:
        parts.append(f"rfid={snapshot.last_rfid_tag}")
    parts.append(f"retries_left={snapshot.retry_attempts_remaining}")
    return "Status: " + " ".join(parts)


def _format_rfid(read: RfidRead) -> str:
    if read.interval_ms is None:
        return f"RFID {read.tag_hex}"
    return f"RFID {read.tag_hex} interval={read.interval_ms:.0f}ms"


@app.command("profiles")
def list_profiles() -> None:
    """List available peripheral profiles."""
    try:
        service = _build_service()
        profiles = service.list_profiles()
        if not profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in profiles:
            prefixes = ", ".join(profile.identity.name_prefix)
            typer.echo(f"{profile.id}: {profile.name} (name prefix: {prefixes})")
            typer.echo(f"  service: {profile.gatt.service_uuid}")
            for role, uuid in profile.gatt.channels.items():
                typer.echo(f"  {role.value}: {uuid}")
    except RewardctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """List advertising BLE devices and whether they match the profile."""
    try:
        service = _build_service(profile)
        results = asyncio.run(service.scan())
        if not results:
            typer.echo("No Bluetooth devices found")
            return

        for device, matched in results:
            marker = service.profile.id if matched else "<no-match>"
            typer.echo(f"{device.address} {device.name} -> {marker}")
    except RewardctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


async def _pair_and_reward(
    service: RewardService,
    duration_ms: int,
    count: int,
    gap_s: float,
    device_hint: str | None,
) -> list[DeliveryOutcome]:
    try:
        device = await service.pair(device_hint)
        typer.echo(f"Paired with {device.address} ({device.name}) via {service.profile.id}")
        return await service.deliver_rewards(duration_ms, count, gap_s=gap_s)
    finally:
        await service.close()


@app.command("reward")
def reward(
    duration_ms: int = typer.Argument(..., help="Pump open time in milliseconds (0-65535)"),
    count: int = typer.Option(1, "--count", min=1, help="Number of pulses"),
    gap: float = typer.Option(0.5, "--gap", min=0.0, help="Seconds between pulses"),
    device: str | None = typer.Option(None, "--device", help="Address or partial name"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Pair with the pump and deliver one or more rewards.

    Exits with code 1 if any reward was not acknowledged.
    """
    try:
        service = _build_service(profile)
        outcomes = asyncio.run(_pair_and_reward(service, duration_ms, count, gap, device))
    except RewardctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    for outcome in outcomes:
        typer.echo(_format_outcome(outcome))
    if not outcomes or not all(o.delivered for o in outcomes):
        raise typer.Exit(code=1)


async def _pair_and_monitor(service: RewardService, seconds: float, device_hint: str | None) -> None:
    service.add_status_listener(lambda snapshot: typer.echo(_format_status(snapshot)))
    service.add_rfid_listener(lambda read: typer.echo(_format_rfid(read)))
    try:
        await service.pair(device_hint)
        await asyncio.sleep(seconds)
    finally:
        await service.close()


@app.command("monitor")
def monitor(
    seconds: float = typer.Option(60.0, "--seconds", min=0.0, help="How long to stay connected"),
    device: str | None = typer.Option(None, "--device", help="Address or partial name"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Stay connected and print connection status and RFID reads."""
    try:
        service = _build_service(profile)
        asyncio.run(_pair_and_monitor(service, seconds, device))
    except RewardctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Interrupted")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
