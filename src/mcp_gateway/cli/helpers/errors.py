"""
Error handling utilities for CLI commands.
"""

import asyncio
import functools
import logging
import sys
from typing import Any, Coroutine

from rich.console import Console

from mcp_gateway.core.exceptions import GatewayError

console = Console()


def run_async(coro: Coroutine) -> Any:
    """Run a coroutine from a synchronous click command."""
    return asyncio.run(coro)


def handle_errors(func):
    """Decorator to handle common CLI errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except GatewayError as e:
            console.print(f"[red]Error: {e.message}[/red] [dim]({e.error_code})[/dim]")
            if logging.getLogger().isEnabledFor(logging.DEBUG) and e.details:
                console.print(f"[dim]{e.details}[/dim]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            console.print("[dim]Use --debug for more details[/dim]")
            sys.exit(1)

    return wrapper
