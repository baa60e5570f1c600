"""Command-line interface for infra-agent."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import NodeRole, Settings, save_setting, setting_sources
from .edge.agent import run_agent
from .edge.reconciler import ConfigReconciler
from .edge.sender import ControlPlaneClient
from .edge.state import AgentState
from .edge.updater import SelfUpdater
from .errors import ConfigError, UpdateError
from .utils.logger import setup_logging

app = typer.Typer(
    name="infra-agent",
    help="Infra Agent - edge node configuration, health and log agent",
    add_completion=False,
)
config_app = typer.Typer(help="Manage configuration", invoke_without_command=True)
gateway_app = typer.Typer(help="Gateway specific actions")
app.add_typer(config_app, name="config")
app.add_typer(gateway_app, name="gateway")

console = Console()


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def _overrides(ctx: typer.Context) -> dict:
    return (ctx.find_root().obj or {}).get("overrides", {})


def _load_settings(ctx: typer.Context) -> Settings:
    try:
        return Settings.load(**_overrides(ctx))
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _reconciler(settings: Settings) -> ConfigReconciler:
    return ConfigReconciler(
        AgentState(),
        config_dir=settings.config_dir,
        caddyfile=settings.caddyfile,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    node_id: Optional[str] = typer.Option(None, "--node-id", "-i", help="Node ID"),
    node_type: Optional[NodeRole] = typer.Option(None, "--node-type", "-t", help="Node type"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """Run the agent when no command is given."""
    overrides = {
        "node_id": node_id,
        "node_type": node_type,
        "verbose": verbose or None,
        "config_file": config_file,
    }
    ctx.obj = {"overrides": overrides}

    try:
        settings = Settings.load(**overrides)
        setup_logging(settings.verbose, settings.log_file)
    except ConfigError:
        # Commands report the error themselves; `config set` may be the fix
        setup_logging(verbose)

    if ctx.invoked_subcommand is None:
        try:
            run_agent(**overrides)
        except ConfigError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)


@app.command()
def version(ctx: typer.Context):
    """Show current and latest published version."""
    console.print(f"infra-agent {__version__}")

    settings = _load_settings(ctx)

    async def latest():
        async with ControlPlaneClient(settings.control_url, __version__, settings.http_timeout) as client:
            return await client.latest_version()

    console.print(f"latest: {run_async(latest()) or 'unknown'}")


@app.command()
def update(ctx: typer.Context):
    """Self-update the agent to the latest published version."""
    settings = _load_settings(ctx)

    async def perform() -> Optional[str]:
        async with ControlPlaneClient(settings.control_url, __version__, settings.http_timeout) as client:
            latest = await client.latest_version()
        if not latest:
            return None
        updater = SelfUpdater(
            service_name=settings.service_name,
            release_url_template=settings.release_url_template,
            timeout=settings.download_timeout,
        )
        await updater.self_update(latest, restart=False)
        await updater.restart_service()
        return latest

    try:
        installed = run_async(perform())
    except UpdateError as e:
        console.print(f"[red]Update failed: {e}[/red]")
        raise typer.Exit(1)

    if installed is None:
        console.print("[red]Could not determine the latest version[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Updated {__version__} -> {installed}[/green]")


@config_app.callback()
def config_show(ctx: typer.Context):
    """Show the effective configuration and where each value comes from."""
    if ctx.invoked_subcommand is not None:
        return

    overrides = _overrides(ctx)
    settings = _load_settings(ctx)
    sources = setting_sources(overrides, overrides.get("config_file"))

    table = Table(title="Configuration (Precedence: Flag > Env > Config > Default)")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source")

    for key, value in settings.public_items().items():
        table.add_row(key.replace("_", "-"), str(value), sources.get(key, "Default"))

    console.print(table)


@config_app.command("get")
def config_get(ctx: typer.Context, key: str = typer.Argument(..., help="Setting name")):
    """Get a configuration value."""
    items = _load_settings(ctx).public_items()
    field_name = key.replace("-", "_")
    if field_name not in items:
        console.print(f"[red]Unknown setting: {key}[/red]")
        raise typer.Exit(1)
    console.print(str(items[field_name]))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Setting name"),
    value: str = typer.Argument(..., help="New value"),
):
    """Set a configuration value in the config file."""
    try:
        path = save_setting(key, value, _overrides(ctx).get("config_file"))
    except (ConfigError, OSError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"Saved {key} to {path}")


@gateway_app.command("pull")
def gateway_pull(ctx: typer.Context):
    """Pull the latest proxy config."""
    outcome = run_async(_reconciler(_load_settings(ctx)).pull())
    if outcome.error is not None:
        console.print(f"[red]Pull failed:[/red]\n{outcome.error}")
        raise typer.Exit(1)
    console.print(outcome.output or "Already up to date.")


@gateway_app.command("reload")
def gateway_reload(ctx: typer.Context):
    """Validate and reload Caddy."""
    result = run_async(_reconciler(_load_settings(ctx)).validate_and_activate())
    if not result.ok:
        console.print(f"[red]Reload failed:[/red]\n{result.error_detail}")
        raise typer.Exit(1)
    console.print("[green]Caddy reloaded successfully[/green]")


@gateway_app.command("status")
def gateway_status(ctx: typer.Context):
    """Show gateway status and drift information."""
    settings = _load_settings(ctx)
    status = run_async(_reconciler(settings).drift_status())

    console.print(f"Node ID:        {settings.node_id}")
    console.print(f"Node Type:      {settings.node_type.value}")
    console.print(f"Agent Version:  {__version__}")
    console.print(f"Local Git SHA:  {status.local}")
    console.print(f"Remote Git SHA: {status.remote}")
    if status.drift:
        console.print("Status:         [yellow]DRIFT (run 'gateway pull' to sync)[/yellow]")
    else:
        console.print("Status:         [green]HEALTHY (up to date)[/green]")


if __name__ == "__main__":
    app()
