"""
CLI interface for Crystal Guide.

Provides command-line access to stone analysis, API key management, usage
statistics and client settings.
"""

import asyncio
import logging
import os
import sys
from typing import Awaitable, Callable, Optional, TypeVar

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from crystal_guide.config.loader import AppConfig, load_config
from crystal_guide.core.analysis import AnalysisRequest, AnalysisType
from crystal_guide.core.errors import StorageError
from crystal_guide.sdk.vision_client import StoneAnalysisClient, initialize

app = typer.Typer()
console = Console()

T = TypeVar("T")

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_ENV_VAR = "CRYSTAL_GUIDE_CONFIG"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _app_config(ctx: typer.Context) -> AppConfig:
    """Load the config selected by --config or the environment."""
    path = (ctx.obj or {}).get("config_path")
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _with_client(
    config: AppConfig,
    action: Callable[[StoneAnalysisClient], Awaitable[T]],
) -> T:
    """Run ``action`` against a freshly initialized client."""
    async def runner() -> T:
        client = await initialize(config)
        try:
            return await action(client)
        finally:
            await client.aclose()

    return asyncio.run(runner())


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to YAML config file (defaults to ${CONFIG_ENV_VAR})"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Crystal Guide stone analysis CLI."""
    _configure_logging(verbose)
    ctx.obj = {"config_path": config or os.environ.get(CONFIG_ENV_VAR)}
    if ctx.invoked_subcommand is None:
        console.print("Crystal Guide - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the local storage."""
    config = _app_config(ctx)
    try:
        _with_client(config, _noop)
        console.print(f"[green]✓[/] Storage initialized at {config.storage.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except StorageError as e:
        console.print(f"[red]Error initializing storage:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


async def _noop(client: StoneAnalysisClient) -> None:
    return None


@app.command("set-key")
def set_key(
    ctx: typer.Context,
    api_key: str = typer.Argument(..., help="Provider API key"),
    validate: bool = typer.Option(
        False,
        "--validate",
        help="Check the key against the provider before saving"
    )
):
    """Store the provider API key."""
    config = _app_config(ctx)

    async def action(client: StoneAnalysisClient) -> bool:
        if validate and not await client.validate_api_key(api_key):
            return False
        await client.set_api_key(api_key)
        return True

    try:
        saved = _with_client(config, action)
    except (StorageError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not saved:
        console.print("[red]Invalid API key.[/] The provider rejected it.")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] API key saved")
    sys.exit(EXIT_CODE_PASS)


@app.command("remove-key")
def remove_key(ctx: typer.Context):
    """Delete the stored provider API key."""
    config = _app_config(ctx)
    try:
        _with_client(config, lambda client: client.remove_api_key())
    except StorageError as e:
        console.print(f"[red]API key could not be removed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] API key removed")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Show whether an API key is set and whether requests are allowed."""
    config = _app_config(ctx)

    async def action(client: StoneAnalysisClient):
        return await client.is_api_key_set(), await client.can_make_request()

    try:
        key_set, decision = _with_client(config, action)
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if key_set:
        console.print("[green]✓[/] API key is set")
    else:
        console.print("[yellow]![/] API key is not set. Run `crystal-guide set-key`")
    if decision.allowed:
        console.print("[green]✓[/] Requests allowed")
    else:
        console.print(f"[yellow]![/] Requests blocked: {decision.reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def analyze(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Path to a JPEG, PNG or WebP stone photo"),
    analysis_type: AnalysisType = typer.Option(
        AnalysisType.FULL,
        "--type",
        "-t",
        help="What to ask the provider for"
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the raw response envelope as JSON"
    )
):
    """Identify the stone in a photo."""
    config = _app_config(ctx)
    try:
        request = AnalysisRequest.from_file(
            image,
            analysis_type=analysis_type,
            max_bytes=config.limits.max_image_bytes,
        )
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        response = _with_client(config, lambda client: client.analyze_stone(request))
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(data=response.to_dict())
    elif response.success:
        _display_analysis(response.data)
    else:
        console.print(f"[red]Analysis failed:[/] {response.error}")

    sys.exit(EXIT_CODE_PASS if response.success else EXIT_CODE_FAIL)


@app.command()
def stats(ctx: typer.Context):
    """Show API usage statistics."""
    config = _app_config(ctx)
    try:
        api_stats = _with_client(config, lambda client: client.get_api_stats())
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="API Usage")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Today", f"{api_stats.daily_count} / {config.limits.daily_requests}")
    table.add_row("This month", f"{api_stats.monthly_count} / {config.limits.monthly_requests}")
    table.add_row("Total requests", str(api_stats.total_requests))
    table.add_row("Successful", str(api_stats.successful_requests))
    table.add_row("Failed", str(api_stats.failed_requests))
    table.add_row("Avg response time", f"{api_stats.average_response_time_ms:.1f} ms")
    table.add_row("Queued", str(api_stats.queue_length))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-monthly")
def reset_monthly(ctx: typer.Context):
    """Reset the monthly usage counter."""
    config = _app_config(ctx)
    try:
        _with_client(config, lambda client: client.usage.reset_monthly_usage())
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Monthly usage reset")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def settings(
    ctx: typer.Context,
    auto_retry: Optional[str] = typer.Option(
        None, "--auto-retry", help="Retry transient failures (on/off)"
    ),
    max_retries: Optional[int] = typer.Option(
        None, "--max-retries", min=1, help="Attempts per request"
    ),
    timeout_ms: Optional[int] = typer.Option(
        None, "--timeout-ms", min=1, help="Per-attempt timeout in milliseconds"
    ),
    usage_tracking: Optional[str] = typer.Option(
        None, "--usage-tracking", help="Count requests against limits (on/off)"
    ),
    offline_queue: Optional[str] = typer.Option(
        None, "--offline-queue", help="Offline queue preference (on/off)"
    ),
    analytics: Optional[str] = typer.Option(
        None, "--analytics", help="Analytics preference (on/off)"
    ),
    reset: bool = typer.Option(
        False, "--reset", help="Restore the default settings"
    )
):
    """Show or change client settings."""
    config = _app_config(ctx)
    try:
        changes = {
            name: value
            for name, value in (
                ("auto_retry", _switch(auto_retry)),
                ("max_retries", max_retries),
                ("timeout_ms", timeout_ms),
                ("enable_usage_tracking", _switch(usage_tracking)),
                ("enable_offline_queue", _switch(offline_queue)),
                ("enable_analytics", _switch(analytics)),
            )
            if value is not None
        }
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    async def action(client: StoneAnalysisClient):
        if reset:
            await client.reset_settings()
        if changes:
            return await client.update_settings(**changes)
        return await client.get_settings()

    try:
        current = _with_client(config, action)
    except (StorageError, ValueError) as e:
        console.print(f"[red]Settings could not be saved:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Client Settings")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    for name, value in current.to_dict().items():
        table.add_row(name, str(value))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _switch(value: Optional[str]) -> Optional[bool]:
    """Parse an on/off option value."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in ("on", "true", "yes", "1"):
        return True
    if normalized in ("off", "false", "no", "0"):
        return False
    raise ValueError(f"Expected on or off, got '{value}'")


def _display_analysis(result):
    """Display an analysis result."""
    console.print(f"\n[bold]{result.stone_name}[/bold] ({result.confidence:.0f}% confidence)")
    console.print("-" * 40)

    props = result.properties
    console.print(f"Hardness: {props.hardness:g}")
    console.print(f"Color: {props.color}")
    console.print(f"Category: {props.category}")
    console.print(f"Origin: {props.origin}")
    if props.chakra:
        console.print(f"Chakra: {props.chakra}")
    if props.healing_properties:
        console.print(f"Healing: {', '.join(props.healing_properties)}")
    if props.metaphysical_properties:
        console.print(f"Metaphysical: {', '.join(props.metaphysical_properties)}")

    if result.description:
        console.print(f"\n{result.description}")

    if result.alternative_possibilities:
        console.print("\n[bold]Alternatives[/bold]")
        for alt in result.alternative_possibilities:
            console.print(f"  {alt.name} ({alt.confidence:.0f}%)")


if __name__ == "__main__":
    app()
