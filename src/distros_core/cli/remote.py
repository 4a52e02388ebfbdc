"""CLI commands for remote execution.

- run: Run a shell command on a node
- wait-process: Wait for processes matching a pattern to exit
- ssh-ready: Wait until a node accepts SSH commands
"""

import typer

from distros_core.cli.common import build_runner, console, run_async
from distros_core.remote.process import await_completion

remote_app = typer.Typer(help="Run commands on remote nodes")


@remote_app.command("run")
def run_command(
    host: str = typer.Argument(..., help="Node address"),
    command: str = typer.Argument(..., help="Shell command to run"),
    retry: bool = typer.Option(False, "--retry", help="Retry transient failures"),
    stderr: bool = typer.Option(False, "--stderr", help="Append informational stderr"),
) -> None:
    """Run COMMAND on HOST and print its output."""

    async def _run():
        runner = build_runner()
        async with runner.pool:
            if retry:
                return await runner.run_with_retry(command, host)
            return await runner.run(command, host, include_stderr=stderr)

    output = run_async(_run)
    if output:
        console.print(output, markup=False, highlight=False)


@remote_app.command("wait-process")
def wait_process(
    host: str = typer.Argument(..., help="Node address"),
    pattern: str = typer.Argument(..., help="pgrep -f pattern"),
    attempts: int = typer.Option(30, help="Maximum liveness polls"),
    delay: float = typer.Option(10.0, help="Seconds between polls"),
) -> None:
    """Wait until processes matching PATTERN on HOST have exited."""

    async def _wait():
        runner = build_runner()
        async with runner.pool:
            await await_completion(runner, host, pattern, attempts, delay)

    run_async(_wait)
    console.print(f"[green]No process matching '{pattern}' left on {host}[/green]")


@remote_app.command("ssh-ready")
def ssh_ready(
    host: str = typer.Argument(..., help="Node address"),
    timeout: float = typer.Option(180.0, help="Seconds to wait"),
) -> None:
    """Wait until HOST accepts SSH commands."""

    async def _wait():
        runner = build_runner()
        async with runner.pool:
            await runner.wait_for_ssh_ready(host, timeout=timeout)

    run_async(_wait)
    console.print(f"[green]SSH is ready on {host}[/green]")
