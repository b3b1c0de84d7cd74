"""Typer CLI for the Vigil dashboard server."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Annotated, Optional

import typer
from rich.console import Console

from vigil.config import VigilConfig
from vigil.logging_setup import setup_logging

app = typer.Typer(
    name="vigil",
    help="Real-time host and service health dashboard.",
    no_args_is_help=True,
)
console = Console(stderr=True)


def _config(simulated: bool = False) -> VigilConfig:
    try:
        config = VigilConfig.load()
    except ValueError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(2) from None
    if simulated:
        config = replace(config, source=replace(config.source, mode="simulated"))
    return config


def _parse_params(pairs: list[str]) -> dict[str, str]:
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--param")
        params[key] = value
    return params


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="Bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Listen port")] = None,
    simulated: Annotated[bool, typer.Option("--simulated", help="Use synthetic metrics")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Verbose logging")] = False,
) -> None:
    """Run the dashboard server."""
    import uvicorn

    from vigil.web.server import create_app

    config = _config(simulated)
    server = config.server
    if host is not None or port is not None:
        server = replace(
            server,
            host=host if host is not None else server.host,
            port=port if port is not None else server.port,
        )
        config = replace(config, server=server)

    setup_logging(logging.DEBUG if debug else logging.INFO, quiet_access=not debug)
    console.print(
        f"[green]Vigil listening on[/green] http://{server.host}:{server.port} "
        f"[dim](source: {config.source.mode})[/dim]"
    )
    uvicorn.run(
        create_app(config),
        host=server.host,
        port=server.port,
        log_level="debug" if debug else "info",
    )


@app.command()
def sample(
    simulated: Annotated[bool, typer.Option("--simulated", help="Use synthetic metrics")] = False,
) -> None:
    """Take one system sample and print it."""
    from rich.table import Table

    from vigil.core.sources import create_source
    from vigil.core.system import SystemMonitor

    config = _config(simulated)
    metrics = SystemMonitor(create_source(config)).sample()

    table = Table(title=f"System sample ({config.source.mode})")
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_column("Status")

    table.add_row("CPU", f"{metrics.cpu_percent:.1f}%", metrics.load_level.value)
    table.add_row(
        "Memory",
        f"{metrics.memory_percent:.1f}% of {metrics.memory_total_gb:.1f} GB",
        f"{metrics.memory_status.value} / {metrics.memory_pressure.value} pressure",
    )
    table.add_row(
        "Storage",
        f"{metrics.disk_percent:.1f}% ({metrics.disk_free_gb:.1f} GB free)",
        metrics.storage_status.value,
    )
    table.add_row("Connections", str(metrics.net_connections), f"{metrics.net_interfaces} interfaces")
    table.add_row("Uptime", f"{metrics.uptime_seconds / 3600:.1f} h", "")
    table.add_row("Health", f"{metrics.health_score:.0f}", metrics.health.value)
    console.print(table)


@app.command()
def scan(
    url: str,
    param: Annotated[
        Optional[list[str]], typer.Option("--param", help="Query parameter as key=value")
    ] = None,
    user_agent: Annotated[
        Optional[str], typer.Option("--user-agent", "-A", help="User agent to check")
    ] = None,
) -> None:
    """Run the request analyzer over a URL. Exits 1 when an attack is found."""
    from vigil.core.security import analyze_request, analyze_user_agent

    params = _parse_params(param or [])
    kinds = analyze_request(url, params)

    if user_agent is not None:
        if analyze_user_agent(user_agent):
            console.print(f"[yellow]Suspicious user agent:[/yellow] {user_agent or '(empty)'}")
        else:
            console.print(f"[green]User agent looks ordinary:[/green] {user_agent}")

    if not kinds:
        console.print("[green]No attack patterns found.[/green]")
        return

    for kind in kinds:
        console.print(f"[red]Detected:[/red] {kind.value}")
    raise typer.Exit(1)


def main() -> None:
    """Entry point for the vigil CLI."""
    app()


if __name__ == "__main__":
    main()
