"""CLI entry point for the mod gateway.

This module provides the command-line interface for serving the gateway over
HTTP and for one-off searches, health reports and API key checks.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from modgate import __version__
from modgate.fetcher.errors import ModGateError
from modgate.gateway.orchestrator import ModGateway
from modgate.models.config import ConfigManager, GatewayConfig
from modgate.models.data_models import (
    CheckStatus,
    HealthReport,
    OverallStatus,
    SearchResult,
    SortField,
    SortOrder,
)


console = Console()

_STATUS_STYLES = {
    CheckStatus.PASS: "green",
    CheckStatus.WARN: "yellow",
    CheckStatus.FAIL: "red",
    OverallStatus.HEALTHY: "green",
    OverallStatus.DEGRADED: "yellow",
    OverallStatus.UNHEALTHY: "red",
}


def build_gateway(config: GatewayConfig) -> ModGateway:
    return ModGateway(config)


def _load_config(ctx: click.Context, **overrides) -> GatewayConfig:
    cli_overrides = dict(ctx.obj["overrides"])
    cli_overrides.update(overrides)
    return ConfigManager(ctx.obj["config_path"]).load_config(cli_overrides)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides config)",
)
@click.version_option(version=__version__, prog_name="modgate")
@click.pass_context
def main(ctx: click.Context, config: Path, log_level: Optional[str]) -> None:
    """
    modgate - rate-limited, cached gateway to the CurseForge mod API.

    Examples:

        # Serve the HTTP API
        $ modgate serve --port 8080

        # One-off search
        $ modgate search building --page-size 10

        # Health report
        $ modgate health
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["overrides"] = {"log_level": log_level.upper() if log_level else None}


@main.command()
@click.option("--host", type=str, help="Bind address (overrides config)")
@click.option("--port", "-p", type=int, help="Port (overrides config)")
@click.option("--background/--no-background", default=None,
              help="Start warming and analytics with the server")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int],
          background: Optional[bool]) -> None:
    """Run the HTTP service with uvicorn."""
    import uvicorn

    from modgate.server.app import create_app

    gateway_config = _load_config(ctx, host=host, port=port, background_autostart=background)
    app = create_app(build_gateway(gateway_config))

    console.print(
        f"[bold cyan]modgate {__version__}[/bold cyan] serving on "
        f"http://{gateway_config.host}:{gateway_config.port}"
    )
    uvicorn.run(
        app,
        host=gateway_config.host,
        port=gateway_config.port,
        log_level=gateway_config.log_level.lower(),
    )


@main.command()
@click.argument("term", required=False, default="")
@click.option("--category", "-k", type=int, help="Category id")
@click.option(
    "--sort",
    "-s",
    type=click.Choice([f.value for f in SortField]),
    default=SortField.POPULARITY.value,
    show_default=True,
)
@click.option(
    "--order",
    type=click.Choice([o.value for o in SortOrder]),
    default=SortOrder.DESC.value,
    show_default=True,
)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--page-size", type=int, default=20, show_default=True)
@click.pass_context
def search(ctx: click.Context, term: str, category: Optional[int], sort: str,
           order: str, page: int, page_size: int) -> None:
    """Search mods and print a result table."""
    gateway_config = _load_config(ctx)

    async def run() -> SearchResult:
        async with build_gateway(gateway_config) as gateway:
            return await gateway.search(
                term=term,
                category_id=category,
                sort_field=SortField(sort),
                sort_order=SortOrder(order),
                page=page,
                page_size=page_size,
            )

    try:
        result = asyncio.run(run())
    except (ModGateError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}", style="bold red")
        sys.exit(1)

    table = Table(title=f"Mods matching '{term or '*'}'")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Downloads", justify="right", style="magenta")
    for mod in result.items:
        table.add_row(str(mod.get("id")), mod.get("name", ""), f"{mod.get('downloadCount', 0):,}")

    console.print(table)
    stale_note = " (stale)" if result.stale else ""
    console.print(
        f"Total: {result.total_count}  Source: {result.source.value}{stale_note}"
    )


@main.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Run every health check and print the report."""
    gateway_config = _load_config(ctx)

    async def run() -> HealthReport:
        async with build_gateway(gateway_config) as gateway:
            return await gateway.health()

    report = asyncio.run(run())
    _display_health(report)
    sys.exit(1 if report.status == OverallStatus.UNHEALTHY else 0)


@main.command(name="check-key")
@click.pass_context
def check_key(ctx: click.Context) -> None:
    """Check the configured API key locally (no upstream call)."""
    gateway_config = _load_config(ctx)
    status = build_gateway(gateway_config).client.check_api_key_configuration()

    style = "green" if status.is_valid_format else "red"
    console.print(f"[{style}]{status.message}[/{style}]")
    console.print(f"  Source: {status.source}")
    console.print(f"  Key length: {status.key_length}")
    sys.exit(0 if status.is_valid_format else 1)


def _display_health(report: HealthReport) -> None:
    """Display health report as rich tables."""
    style = _STATUS_STYLES[report.status]
    console.print(f"\n[bold {style}]Status: {report.status.value}[/bold {style}]  (v{report.version})\n")

    checks_table = Table(title="Health Checks")
    checks_table.add_column("Check", style="cyan")
    checks_table.add_column("Status")
    checks_table.add_column("Message")
    checks_table.add_column("Time", justify="right")
    for name, check in report.checks.items():
        check_style = _STATUS_STYLES[check.status]
        checks_table.add_row(
            name,
            f"[{check_style}]{check.status.value}[/{check_style}]",
            check.message,
            f"{check.response_time_ms:.0f}ms",
        )
    console.print(checks_table)

    if report.recommendations:
        console.print("\n[bold]Recommendations[/bold]")
        for recommendation in report.recommendations:
            console.print(f"  - {recommendation}")
    console.print()


if __name__ == "__main__":
    main()
