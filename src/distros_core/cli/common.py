"""Shared CLI helpers: console, settings-backed runner, error reporting."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console

from distros_core.config import get_settings
from distros_core.errors import DistrosError
from distros_core.log import configure_logging
from distros_core.remote.pool import ConnectionPool
from distros_core.remote.runner import CommandRunner

T = TypeVar("T")

console = Console()


def build_runner() -> CommandRunner:
    """Command runner configured from the environment."""
    settings = get_settings()
    configure_logging(settings.log_level)
    pool = ConnectionPool(
        settings.resolve_ssh_credentials(),
        port=settings.ssh_port,
        connect_timeout=settings.ssh_connect_timeout,
    )
    return CommandRunner(pool)


def run_async(make: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine factory, printing distros errors in red and exiting 1."""
    try:
        return asyncio.run(make())
    except DistrosError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
