"""CLI commands for cluster readiness.

- nodes-ready: Wait for nodes to be Ready
- pods-ready: Wait for pods to be ready
- health: Check API server health, then wait for nodes
"""

import typer
from rich.table import Table

from distros_core.cli.common import console, run_async
from distros_core.config import get_settings
from distros_core.k8s.client import KubeClient
from distros_core.k8s.readiness import ClusterTopology, ReadinessTracker, ReadinessWatcher
from distros_core.log import configure_logging

cluster_app = typer.Typer(help="Wait for cluster readiness")


def _watcher(kubeconfig: str | None, poll_interval: float = 5.0) -> ReadinessWatcher:
    settings = get_settings()
    configure_logging(settings.log_level)
    return ReadinessWatcher(
        KubeClient.from_kubeconfig(kubeconfig or settings.kubeconfig),
        poll_interval=poll_interval,
    )


def _print_tracker(title: str, tracker: ReadinessTracker) -> None:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Ready")
    for key, entity in sorted(tracker.states.items()):
        ready = "[green]yes[/green]" if entity.ready else "[yellow]no[/yellow]"
        table.add_row(key, ready)
    console.print(table)
    console.print(f"[green]{tracker.satisfied}/{tracker.threshold} ready[/green]")


@cluster_app.command("nodes-ready")
def nodes_ready(
    min_ready: int = typer.Option(0, help="Nodes required, 0 for all"),
    timeout: float = typer.Option(600.0, help="Seconds to wait"),
    poll: bool = typer.Option(False, "--poll", help="Poll listings instead of watching"),
    kubeconfig: str = typer.Option(None, help="Kubeconfig path (default: $KUBECONFIG)"),
) -> None:
    """Wait until nodes are Ready."""

    async def _wait():
        watcher = _watcher(kubeconfig)
        return await watcher.wait_for_nodes_ready(
            min_ready=min_ready, timeout=timeout, mode="poll" if poll else "watch"
        )

    _print_tracker("Nodes", run_async(_wait))


@cluster_app.command("pods-ready")
def pods_ready(
    namespace: str = typer.Option("", help="Namespace, empty for all"),
    selector: str = typer.Option("", help="Label selector"),
    min_ready: int = typer.Option(0, help="Pods required, 0 for all"),
    timeout: float = typer.Option(600.0, help="Seconds to wait"),
    product: str = typer.Option("", help="k3s or rke2, enables topology handling"),
    servers: int = typer.Option(0, help="Number of server nodes"),
    agents: int = typer.Option(0, help="Number of agent nodes"),
    poll: bool = typer.Option(False, "--poll", help="Poll listings instead of watching"),
    kubeconfig: str = typer.Option(None, help="Kubeconfig path (default: $KUBECONFIG)"),
) -> None:
    """Wait until pods are ready."""
    topology = ClusterTopology(product, servers, agents) if product else None

    async def _wait():
        watcher = _watcher(kubeconfig)
        return await watcher.wait_for_pods_ready(
            namespace=namespace,
            label_selector=selector,
            min_ready=min_ready,
            timeout=timeout,
            topology=topology,
            mode="poll" if poll else "watch",
        )

    _print_tracker("Pods", run_async(_wait))


@cluster_app.command("health")
def health(
    min_ready: int = typer.Option(0, help="Nodes required, 0 for all"),
    timeout: float = typer.Option(600.0, help="Seconds to wait for nodes"),
    kubeconfig: str = typer.Option(None, help="Kubeconfig path (default: $KUBECONFIG)"),
) -> None:
    """Check API server health, then wait for nodes."""

    async def _check():
        watcher = _watcher(kubeconfig)
        await watcher.check_cluster_health(min_ready=min_ready, timeout=timeout)

    run_async(_check)
    console.print("[green]Cluster is healthy[/green]")
