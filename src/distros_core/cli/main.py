"""Distros CLI - remote execution and convergence for k3s/rke2 test clusters."""

import typer

from distros_core.cli.cluster import cluster_app
from distros_core.cli.remote import remote_app
from distros_core.cli.service import service_command

app = typer.Typer(
    name="distros",
    help="Remote execution and readiness checks for k3s/rke2 test clusters",
    no_args_is_help=True,
)

# Add command groups
app.add_typer(remote_app, name="remote")
app.add_typer(cluster_app, name="cluster")
app.command("service")(service_command)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
