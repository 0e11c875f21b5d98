"""
Main CLI interface for MCP Gateway.

Operator commands over the gateway: inspect servers and tools, call
tools, manage packages and server copies, or run the gateway in the
foreground.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from mcp_gateway import __version__
from mcp_gateway.cli.helpers import handle_errors, run_async
from mcp_gateway.core.models import InstallPackageRequest, Runtime, ServerStatus
from mcp_gateway.core.packages import CommandRunner
from mcp_gateway.core.transport import TransportFactory
from mcp_gateway.gateway import Gateway
from mcp_gateway.utils.config import GatewayConfig, load_config
from mcp_gateway.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    ServerStatus.CONNECTED: "green",
    ServerStatus.CONNECTING: "yellow",
    ServerStatus.DISCONNECTED: "dim",
    ServerStatus.ERROR: "red",
    ServerStatus.DISABLED: "dim red",
}


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self):
        self.config: Optional[GatewayConfig] = None
        self.transport_factory: Optional[TransportFactory] = None
        self.runner: Optional[CommandRunner] = None
        self.http_transport: Any = None

    def get_config(self) -> GatewayConfig:
        if self.config is None:
            self.config = load_config()
        return self.config

    def create_gateway(self) -> Gateway:
        """Build a gateway from the loaded configuration."""
        return Gateway(
            self.get_config(),
            transport_factory=self.transport_factory,
            runner=self.runner,
            http_transport=self.http_transport,
        )


# Global CLI context
cli_context = CLIContext()


def parse_env(values: Tuple[str, ...]) -> Dict[str, str]:
    """Parse KEY=VALUE pairs."""
    env = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"Expected KEY=VALUE, got: {item}")
        key, value = item.split("=", 1)
        env[key] = value
    return env


async def _with_gateway(operation):
    async with cli_context.create_gateway() as gateway:
        return await operation(gateway)


@click.group()
@click.option(
    "--config", "-c", "config_files",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file (can be used multiple times)",
)
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__, prog_name="MCP Gateway")
def cli(config_files: Tuple[str, ...], debug: bool):
    """
    Gateway for MCP servers.

    Forwards tool calls to many MCP servers and manages the packages
    that back them.
    """
    overrides: Dict[str, Any] = {"debug": True} if debug else {}
    config = load_config(list(config_files) if config_files else None, **overrides)
    config.apply_logging()
    cli_context.config = config


@cli.command("servers")
@click.option(
    "--output-format", "-o",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format",
)
@handle_errors
def servers_cmd(output_format: str):
    """List registered servers and copies."""
    servers = run_async(_with_gateway(lambda gw: gw.list_servers()))

    if output_format == "json":
        console.print_json(json.dumps([s.model_dump(mode="json") for s in servers]))
        return

    if not servers:
        console.print("[yellow]No servers registered[/yellow]")
        console.print("[dim]Install one with: mcp-gateway install <package> --server <name>[/dim]")
        return

    table = Table(
        title=f"MCP Servers ({len(servers)} total)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan",
    )
    table.add_column("Name", style="green")
    table.add_column("Transport", style="blue")
    table.add_column("Status")
    table.add_column("Tools", justify="right")
    table.add_column("Copy of", style="dim")
    table.add_column("Warning", style="yellow")

    for server in servers:
        style = STATUS_STYLES.get(server.status, "white")
        tool_count = len(server.allowed_methods or []) if server.is_copy else len(server.tools)
        table.add_row(
            server.name,
            server.transport_type.value,
            f"[{style}]{server.status.value}[/{style}]",
            str(tool_count),
            server.original_name or "",
            server.warning or server.last_error or "",
        )

    console.print("")
    console.print(table)


@cli.command("tools")
@click.option("--server", "-s", "server_name", help="Only show tools of this server")
@handle_errors
def tools_cmd(server_name: Optional[str]):
    """List tools of enabled servers."""
    tools = run_async(_with_gateway(lambda gw: gw.list_tools()))
    if server_name:
        tools = {server_name: tools.get(server_name, [])}

    if not any(tools.values()):
        console.print("[yellow]No tools available[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Server", style="green")
    table.add_column("Tool", style="cyan")
    table.add_column("Description", style="dim")
    for name, server_tools in sorted(tools.items()):
        for tool in server_tools:
            table.add_row(name, tool.name, (tool.description or "")[:80])
    console.print(table)


@cli.command("call")
@click.argument("server")
@click.argument("method")
@click.option("--args", "-a", "args_json", default="{}", help="Tool arguments as a JSON object")
@click.option("--user", "-u", default="default", help="User whose secrets apply")
@handle_errors
def call_cmd(server: str, method: str, args_json: str, user: str):
    """Call METHOD on SERVER."""
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON arguments: {e}")
    if not isinstance(args, dict):
        raise click.BadParameter("Arguments must be a JSON object")

    result = run_async(_with_gateway(lambda gw: gw.call_tool(user, server, method, args)))
    console.print_json(json.dumps(result))


@cli.command("install")
@click.argument("package")
@click.option("--server", "-s", "server_name", required=True, help="Server name to register")
@click.option("--version", "-V", "version", help="Package version")
@click.option(
    "--runtime", "-r",
    type=click.Choice([r.value for r in Runtime], case_sensitive=False),
    default=Runtime.NODE.value,
    help="Package runtime",
)
@click.option("--module", "-m", "python_module", help="Module to run with python -m")
@click.option("--python-arg", "python_args", multiple=True, help="Argument after the module (can be used multiple times)")
@click.option("--command", help="Explicit launch command (node)")
@click.option("--arg", "args", multiple=True, help="Server argument (can be used multiple times)")
@click.option("--env", "-e", multiple=True, help="Environment variable as KEY=VALUE (can be used multiple times)")
@click.option("--secret", "secret_names", multiple=True, help="Secret injected into the environment (can be used multiple times)")
@click.option("--disabled", is_flag=True, help="Register the server disabled")
@click.option("--fail-on-warning", is_flag=True, help="Treat npm warnings as errors")
@handle_errors
def install_cmd(
    package: str,
    server_name: str,
    version: Optional[str],
    runtime: str,
    python_module: Optional[str],
    python_args: Tuple[str, ...],
    command: Optional[str],
    args: Tuple[str, ...],
    env: Tuple[str, ...],
    secret_names: Tuple[str, ...],
    disabled: bool,
    fail_on_warning: bool,
):
    """Install PACKAGE and register it as a server."""
    request = InstallPackageRequest(
        name=package,
        server_name=server_name,
        version=version,
        runtime=Runtime(runtime),
        command=command,
        args=list(args) or None,
        env=parse_env(env) or None,
        python_module=python_module,
        python_args=list(python_args),
        secret_names=list(secret_names),
        enabled=not disabled,
        fail_on_warning=fail_on_warning,
    )
    with console.status(f"Installing {package}..."):
        record = run_async(_with_gateway(lambda gw: gw.install_package(request)))
    console.print(f"[green]✓[/green] Installed {record.name}@{record.version} as server '{record.server_name}'")


@cli.command("upgrade")
@click.argument("server")
@click.option("--version", "-V", "version", help="Target version (default: latest)")
@handle_errors
def upgrade_cmd(server: str, version: Optional[str]):
    """Upgrade the package behind SERVER."""
    with console.status(f"Upgrading {server}..."):
        result = run_async(_with_gateway(lambda gw: gw.upgrade_package(server, version)))
    console.print(f"[green]✓[/green] Upgraded '{server}' to {result.package.version}")


@cli.command("upgrade-all")
@handle_errors
def upgrade_all_cmd():
    """Upgrade every installed package."""
    with console.status("Upgrading packages..."):
        outcome = run_async(_with_gateway(lambda gw: gw.upgrade_all_packages()))

    if not outcome.results:
        console.print("[yellow]No packages installed[/yellow]")
        return

    for result in outcome.results:
        if result.success:
            console.print(f"[green]✓[/green] {result.server_name}: {result.package.version}")
        else:
            console.print(f"[red]✗[/red] {result.server_name}: {result.error}")

    if not outcome.success:
        raise click.ClickException("Some upgrades failed")


@cli.command("check-updates")
@click.argument("server", required=False)
@handle_errors
def check_updates_cmd(server: Optional[str]):
    """Check registries for newer package versions."""
    updates = run_async(_with_gateway(lambda gw: gw.check_for_updates(server)))
    if not updates:
        console.print("[yellow]No packages installed[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Server", style="green")
    table.add_column("Current")
    table.add_column("Latest")
    table.add_column("Update")
    for info in updates:
        marker = "[yellow]available[/yellow]" if info.update_available else "[dim]-[/dim]"
        table.add_row(info.server_name, info.current_version, info.latest_version, marker)
    console.print(table)


@cli.command("uninstall")
@click.argument("server")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@handle_errors
def uninstall_cmd(server: str, yes: bool):
    """Uninstall the package behind SERVER and remove the server."""
    if not yes:
        from rich.prompt import Confirm
        if not Confirm.ask(f"Remove server '{server}' and its package?"):
            console.print("[dim]Uninstall cancelled[/dim]")
            return
    run_async(_with_gateway(lambda gw: gw.uninstall_package(server)))
    console.print(f"[green]✓[/green] Uninstalled '{server}'")


@cli.group("copy")
def copy_group():
    """Manage server copies."""


@copy_group.command("create")
@click.argument("original")
@click.argument("name")
@click.option("--method", "-m", "methods", multiple=True, required=True, help="Allowed method (can be used multiple times)")
@handle_errors
def copy_create_cmd(original: str, name: str, methods: Tuple[str, ...]):
    """Create copy NAME of ORIGINAL exposing only the given methods."""
    record = run_async(_with_gateway(lambda gw: gw.create_server_copy(original, name, list(methods))))
    console.print(
        f"[green]✓[/green] Created copy '{record.name}' of '{original}' "
        f"({', '.join(record.allowed_methods or [])})"
    )


@copy_group.command("delete")
@click.argument("name")
@handle_errors
def copy_delete_cmd(name: str):
    """Delete server copy NAME."""
    run_async(_with_gateway(lambda gw: gw.delete_server_copy(name)))
    console.print(f"[green]✓[/green] Deleted copy '{name}'")


async def _serve(gateway: Gateway) -> None:
    servers: List = await gateway.list_servers()
    console.print(f"[green]Gateway running[/green] with {len(servers)} server(s). Press Ctrl+C to stop.")
    await asyncio.Event().wait()


@cli.command("serve")
@handle_errors
def serve_cmd():
    """Run the gateway in the foreground, keeping servers connected."""
    run_async(_with_gateway(_serve))


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
