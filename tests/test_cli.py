"""Tests for the distros CLI commands."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from distros_core.cli.main import app
from distros_core.errors import CommandError, ReadinessTimeoutError
from distros_core.k8s.client import EntityStatus, Listing
from distros_core.k8s.readiness import ReadinessTracker, Tick

cli = CliRunner()


@pytest.fixture
def mock_runner():
    runner = MagicMock()
    runner.run = AsyncMock(return_value="")
    runner.run_with_retry = AsyncMock(return_value="")
    runner.wait_for_ssh_ready = AsyncMock()
    return runner


def _converged(kind: str, *names: str) -> ReadinessTracker:
    tracker = ReadinessTracker(kind)
    tracker.transition(Tick(Listing(tuple(EntityStatus(n, True) for n in names))))
    return tracker


# ===== remote Tests =====


class TestRemoteCommands:
    """Tests for distros remote ..."""

    def test_run_prints_output(self, mock_runner):
        mock_runner.run.return_value = "v1.30.2+k3s1"
        with patch("distros_core.cli.remote.build_runner", return_value=mock_runner):
            result = cli.invoke(app, ["remote", "run", "10.0.0.5", "k3s --version"])

        assert result.exit_code == 0
        assert "v1.30.2+k3s1" in result.output
        mock_runner.run.assert_awaited_once_with(
            "k3s --version", "10.0.0.5", include_stderr=False
        )

    def test_run_with_retry(self, mock_runner):
        with patch("distros_core.cli.remote.build_runner", return_value=mock_runner):
            result = cli.invoke(app, ["remote", "run", "10.0.0.5", "uptime", "--retry"])

        assert result.exit_code == 0
        mock_runner.run_with_retry.assert_awaited_once_with("uptime", "10.0.0.5")

    def test_run_failure_exits_1(self, mock_runner):
        mock_runner.run.side_effect = CommandError("false", "10.0.0.5", 1)
        with patch("distros_core.cli.remote.build_runner", return_value=mock_runner):
            result = cli.invoke(app, ["remote", "run", "10.0.0.5", "false"])

        assert result.exit_code == 1
        assert "exited with status 1" in result.output

    def test_wait_process(self, mock_runner):
        with patch("distros_core.cli.remote.build_runner", return_value=mock_runner), patch(
            "distros_core.cli.remote.await_completion", new_callable=AsyncMock
        ) as mock_wait:
            result = cli.invoke(
                app, ["remote", "wait-process", "10.0.0.5", "install.sh", "--attempts", "5"]
            )

        assert result.exit_code == 0
        mock_wait.assert_awaited_once_with(mock_runner, "10.0.0.5", "install.sh", 5, 10.0)

    def test_ssh_ready(self, mock_runner):
        with patch("distros_core.cli.remote.build_runner", return_value=mock_runner):
            result = cli.invoke(app, ["remote", "ssh-ready", "10.0.0.5"])

        assert result.exit_code == 0
        assert "SSH is ready" in result.output


# ===== service Tests =====


class TestServiceCommand:
    """Tests for distros service ..."""

    def test_stop_rke2_server(self, mock_runner):
        with patch("distros_core.cli.service.build_runner", return_value=mock_runner):
            result = cli.invoke(
                app,
                ["service", "stop", "10.0.0.5", "--product", "rke2", "--node-type", "server"],
            )

        assert result.exit_code == 0
        mock_runner.run.assert_awaited_once_with(
            "sudo systemctl --no-block stop rke2-server", "10.0.0.5"
        )

    def test_invalid_action_exits_1(self, mock_runner):
        with patch("distros_core.cli.service.build_runner", return_value=mock_runner):
            result = cli.invoke(
                app,
                ["service", "reload", "10.0.0.5", "--product", "k3s", "--node-type", "agent"],
            )

        assert result.exit_code == 1
        assert "invalid action" in result.output
        mock_runner.run.assert_not_awaited()


# ===== cluster Tests =====


class TestClusterCommands:
    """Tests for distros cluster ..."""

    def test_nodes_ready(self):
        watcher = MagicMock()
        watcher.wait_for_nodes_ready = AsyncMock(return_value=_converged("nodes", "n1", "n2"))
        with patch("distros_core.cli.cluster._watcher", return_value=watcher):
            result = cli.invoke(app, ["cluster", "nodes-ready", "--min-ready", "2", "--poll"])

        assert result.exit_code == 0
        assert "2/2 ready" in result.output
        watcher.wait_for_nodes_ready.assert_awaited_once_with(
            min_ready=2, timeout=600.0, mode="poll"
        )

    def test_nodes_ready_timeout_exits_1(self):
        watcher = MagicMock()
        watcher.wait_for_nodes_ready = AsyncMock(
            side_effect=ReadinessTimeoutError("nodes", 1, 3, 600)
        )
        with patch("distros_core.cli.cluster._watcher", return_value=watcher):
            result = cli.invoke(app, ["cluster", "nodes-ready"])

        assert result.exit_code == 1
        assert "timed out" in result.output

    def test_pods_ready_with_topology(self):
        watcher = MagicMock()
        watcher.wait_for_pods_ready = AsyncMock(return_value=_converged("pods", "coredns"))
        with patch("distros_core.cli.cluster._watcher", return_value=watcher):
            result = cli.invoke(
                app,
                [
                    "cluster",
                    "pods-ready",
                    "--namespace",
                    "kube-system",
                    "--product",
                    "rke2",
                    "--servers",
                    "1",
                ],
            )

        assert result.exit_code == 0
        kwargs = watcher.wait_for_pods_ready.await_args.kwargs
        assert kwargs["namespace"] == "kube-system"
        assert kwargs["topology"].tolerates_pending_cni

    def test_health(self):
        watcher = MagicMock()
        watcher.check_cluster_health = AsyncMock()
        with patch("distros_core.cli.cluster._watcher", return_value=watcher):
            result = cli.invoke(app, ["cluster", "health", "--min-ready", "3"])

        assert result.exit_code == 0
        assert "Cluster is healthy" in result.output
        watcher.check_cluster_health.assert_awaited_once_with(min_ready=3, timeout=600.0)
