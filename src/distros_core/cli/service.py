"""CLI command for service actions on k3s/rke2 nodes."""

import typer

from distros_core.cli.common import build_runner, console, run_async
from distros_core.service import ServiceAction, ServiceManager


def service_command(
    action: str = typer.Argument(..., help="stop, start, restart, status, enable or rotate"),
    host: str = typer.Argument(..., help="Node address"),
    product: str = typer.Option(..., "--product", help="k3s, rke2, or a literal unit name"),
    node_type: str = typer.Option("", "--node-type", help="server or agent"),
    delay: float = typer.Option(0.0, "--delay", help="Seconds to wait before the action"),
    max_retries: int = typer.Option(3, help="Attempts for stop, status and enable"),
    retry_delay: float = typer.Option(5.0, help="Seconds between those attempts"),
) -> None:
    """Run a service ACTION (stop, start, restart, status, enable, rotate) on HOST."""

    async def _manage():
        runner = build_runner()
        async with runner.pool:
            manager = ServiceManager(runner, max_retries=max_retries, retry_delay=retry_delay)
            return await manager.run_action(
                host,
                ServiceAction(product, action, node_type or None, explicit_delay=delay),
            )

    output = run_async(_manage)
    if output:
        console.print(output, markup=False, highlight=False)
    console.print(f"[green]{action} {product} finished on {host}[/green]")
