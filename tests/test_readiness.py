"""Tests for node/pod readiness watchers and the readiness state machine."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from distros_core.errors import (
    ReadinessError,
    ReadinessTimeoutError,
    RetryExhaustedError,
    WatchClosedError,
)
from distros_core.k8s.client import EntityEvent, EntityStatus, Listing
from distros_core.k8s.readiness import (
    HEALTH_ATTEMPTS,
    WATCH_IDLE_RESTARTS,
    ClusterTopology,
    CniOperatorTally,
    Deadline,
    ReadinessPhase,
    ReadinessTracker,
    ReadinessWatcher,
    StreamClosed,
    Tick,
)

SINGLE_NODE_RKE2 = ClusterTopology("rke2", num_servers=1, num_agents=0)


def _nodes(*ready_flags: bool, resource_version: str = "100") -> Listing:
    return Listing(
        entities=tuple(
            EntityStatus(name=f"node-{i}", ready=flag) for i, flag in enumerate(ready_flags)
        ),
        resource_version=resource_version,
    )


def _pod(name: str, ready: bool, phase: str = "Running", namespace: str = "kube-system"):
    return EntityStatus(name=name, ready=ready, namespace=namespace, phase=phase)


class FakeCluster:
    """In-memory ClusterSource recording subscriptions.

    Each watch replays the next list in streams; once they run out, watches
    end immediately. hang keeps every stream open after its events,
    end_at_timeout ends it only when the requested timeout elapses, and
    fail_with raises from the stream after its events.
    """

    def __init__(
        self,
        listings=None,
        events=None,
        hang: bool = False,
        streams=None,
        end_at_timeout: bool = False,
        fail_with: Exception | None = None,
    ):
        self.listings = list(listings or [])
        self.streams = [list(s) for s in streams] if streams is not None else [list(events or [])]
        self.hang = hang
        self.end_at_timeout = end_at_timeout
        self.fail_with = fail_with
        self.subscriptions = []
        self.unsubscribed = 0
        self.api_server_health = AsyncMock(return_value="ok")

    async def list_nodes(self) -> Listing:
        return self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]

    async def list_pods(self, namespace: str = "", label_selector: str = "") -> Listing:
        return await self.list_nodes()

    async def _stream(self, timeout):
        events = self.streams.pop(0) if self.streams else []
        try:
            for event in events:
                yield event
            if self.fail_with is not None:
                raise self.fail_with
            if self.hang:
                await asyncio.Event().wait()
            if self.end_at_timeout:
                await asyncio.sleep(timeout)
        finally:
            self.unsubscribed += 1

    def watch_nodes(self, resource_version, timeout):
        self.subscriptions.append(("nodes", resource_version))
        return self._stream(timeout)

    def watch_pods(self, resource_version, timeout, namespace="", label_selector=""):
        self.subscriptions.append(("pods", resource_version, namespace, label_selector))
        return self._stream(timeout)


# ===== State Machine Tests =====


class TestReadinessTracker:
    """Tests for ReadinessTracker transitions."""

    def test_threshold_defaults_to_total(self):
        tracker = ReadinessTracker("nodes", min_ready=0)
        tracker.transition(Tick(_nodes(True, False, False)))

        assert tracker.threshold == 3
        assert tracker.phase is ReadinessPhase.WATCHING

    def test_min_ready_above_total_uses_total(self):
        tracker = ReadinessTracker("nodes", min_ready=10)
        tracker.transition(Tick(_nodes(True, True)))

        assert tracker.threshold == 2
        assert tracker.phase is ReadinessPhase.CONVERGED

    def test_empty_listing_fails(self):
        tracker = ReadinessTracker("nodes")
        tracker.transition(Tick(_nodes()))

        assert tracker.phase is ReadinessPhase.FAILED
        assert tracker.failure == "no nodes found"

    def test_events_adjust_counter(self):
        """Ready transitions move the counter by exactly one."""
        tracker = ReadinessTracker("nodes", min_ready=3)
        tracker.transition(Tick(_nodes(True, False, False)))

        tracker.transition(EntityEvent("MODIFIED", EntityStatus("node-1", True)))
        assert tracker.ready_count == 2
        # repeated ready event for the same node does not double count
        tracker.transition(EntityEvent("MODIFIED", EntityStatus("node-1", True)))
        assert tracker.ready_count == 2
        tracker.transition(EntityEvent("MODIFIED", EntityStatus("node-0", False)))
        assert tracker.ready_count == 1
        assert tracker.phase is ReadinessPhase.WATCHING

    def test_deleted_ready_entity_decrements(self):
        tracker = ReadinessTracker("nodes", min_ready=3)
        tracker.transition(Tick(_nodes(True, True, False)))

        tracker.transition(EntityEvent("DELETED", EntityStatus("node-0", True)))

        assert tracker.ready_count == 1
        assert "node-0" not in tracker.states

    def test_added_ready_entity_converges(self):
        tracker = ReadinessTracker("nodes", min_ready=2)
        tracker.transition(Tick(_nodes(True, False)))

        phase = tracker.transition(EntityEvent("ADDED", EntityStatus("node-9", True)))

        assert phase is ReadinessPhase.CONVERGED

    def test_error_event_fails(self):
        tracker = ReadinessTracker("pods")
        tracker.transition(Tick(_nodes(False)))

        tracker.transition(EntityEvent("ERROR", message="too old resource version"))

        assert tracker.phase is ReadinessPhase.FAILED
        assert "too old resource version" in tracker.failure

    def test_deadline_and_stream_closed(self):
        timed_out = ReadinessTracker("nodes")
        timed_out.transition(Tick(_nodes(False)))
        assert timed_out.transition(Deadline()) is ReadinessPhase.TIMED_OUT

        closed = ReadinessTracker("nodes")
        closed.transition(Tick(_nodes(False)))
        assert closed.transition(StreamClosed()) is ReadinessPhase.FAILED
        assert closed.stream_closed

    def test_terminal_phase_ignores_signals(self):
        tracker = ReadinessTracker("nodes")
        tracker.transition(Tick(_nodes(True)))
        assert tracker.phase is ReadinessPhase.CONVERGED

        assert tracker.transition(Deadline()) is ReadinessPhase.CONVERGED

    def test_event_before_snapshot_rejected(self):
        tracker = ReadinessTracker("nodes")

        with pytest.raises(ReadinessError, match="before snapshot"):
            tracker.transition(EntityEvent("ADDED", EntityStatus("node-0", True)))


# ===== CNI Operator Tests =====


class TestCniOperatorTally:
    """Tests for the cilium-operator allowance on single-node rke2."""

    def test_update_is_immutable(self):
        tally = CniOperatorTally()
        updated = tally.update(None, _pod("cilium-operator-abc", True))

        assert tally == CniOperatorTally(0, 0)
        assert updated == CniOperatorTally(running=1, pending=0)

    def test_pending_becomes_running(self):
        pending = _pod("cilium-operator-b", False, phase="Pending")
        running = _pod("cilium-operator-b", True)
        tally = CniOperatorTally().update(None, pending)

        assert tally.update(pending, running) == CniOperatorTally(running=1, pending=0)

    def test_other_pods_ignored(self):
        tally = CniOperatorTally().update(None, _pod("coredns-1", False, phase="Pending"))
        assert tally == CniOperatorTally(0, 0)

    def test_allowance_needs_one_running(self):
        assert CniOperatorTally(running=0, pending=2).allowance == 0
        assert CniOperatorTally(running=1, pending=1).allowance == 1

    def test_reports_zero_running(self):
        """One pending replica warns, several pending is an error."""
        with patch("distros_core.k8s.readiness.logger") as mock_logger:
            CniOperatorTally(running=0, pending=1).report()
            CniOperatorTally(running=0, pending=3).report()
            CniOperatorTally(running=1, pending=3).report()

        mock_logger.warning.assert_called_once()
        mock_logger.error.assert_called_once()

    def test_topology_gate(self):
        assert SINGLE_NODE_RKE2.tolerates_pending_cni
        assert not ClusterTopology("k3s", 1, 0).tolerates_pending_cni
        assert not ClusterTopology("rke2", 3, 0).tolerates_pending_cni
        assert not ClusterTopology("rke2", 1, 1).tolerates_pending_cni


# ===== Watcher Tests =====


class TestWaitForNodesReady:
    """Tests for ReadinessWatcher.wait_for_nodes_ready."""

    @pytest.mark.asyncio
    async def test_snapshot_satisfied_skips_subscription(self):
        """3 nodes, minReady 2, 2 already ready: no watch is opened."""
        cluster = FakeCluster(listings=[_nodes(True, True, False)])

        tracker = await ReadinessWatcher(cluster).wait_for_nodes_ready(min_ready=2, timeout=5)

        assert tracker.phase is ReadinessPhase.CONVERGED
        assert cluster.subscriptions == []

    @pytest.mark.asyncio
    async def test_ready_event_converges(self):
        """3 nodes, minReady 2, 1 ready: another node becoming ready succeeds."""
        cluster = FakeCluster(
            listings=[_nodes(True, False, False, resource_version="42")],
            events=[
                EntityEvent("MODIFIED", EntityStatus("node-0", True)),
                EntityEvent("MODIFIED", EntityStatus("node-2", True)),
            ],
            hang=True,
        )

        tracker = await ReadinessWatcher(cluster).wait_for_nodes_ready(min_ready=2, timeout=5)

        assert tracker.ready_count == 2
        assert cluster.subscriptions == [("nodes", "42")]
        assert cluster.unsubscribed == 1

    @pytest.mark.asyncio
    async def test_repeated_empty_streams_close(self):
        """Streams that keep ending without events give up as a closed watch."""
        cluster = FakeCluster(
            listings=[_nodes(True, False)],
            events=[EntityEvent("MODIFIED", EntityStatus("node-0", True))],
        )

        with pytest.raises(WatchClosedError, match="nodes watcher channel closed"):
            await ReadinessWatcher(cluster).wait_for_nodes_ready(timeout=5)

        assert len(cluster.subscriptions) == WATCH_IDLE_RESTARTS + 2
        assert cluster.unsubscribed == len(cluster.subscriptions)

    @pytest.mark.asyncio
    async def test_server_ended_watch_resumes_from_last_version(self):
        """A watch the server ends early is reopened from the last resourceVersion."""
        cluster = FakeCluster(
            listings=[_nodes(True, False, False, resource_version="42")],
            streams=[
                [EntityEvent("MODIFIED", EntityStatus("node-0", True), resource_version="43")],
                [EntityEvent("MODIFIED", EntityStatus("node-1", True), resource_version="44")],
            ],
        )

        tracker = await ReadinessWatcher(cluster).wait_for_nodes_ready(min_ready=2, timeout=5)

        assert tracker.phase is ReadinessPhase.CONVERGED
        assert cluster.subscriptions == [("nodes", "42"), ("nodes", "43")]
        assert cluster.unsubscribed == 2

    @pytest.mark.asyncio
    async def test_server_timeout_at_deadline_is_timeout(self):
        """A watch ended by its server-side timeout reports a timeout, not a closed stream."""
        cluster = FakeCluster(listings=[_nodes(True, False)], end_at_timeout=True)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await ReadinessWatcher(cluster).wait_for_nodes_ready(timeout=0.2)

        assert not isinstance(exc_info.value, WatchClosedError)
        assert exc_info.value.ready == 1
        assert exc_info.value.threshold == 2

    @pytest.mark.asyncio
    async def test_stream_failure_is_closed_watch(self):
        cluster = FakeCluster(
            listings=[_nodes(True, False)], fail_with=ConnectionResetError("reset by peer")
        )

        with pytest.raises(WatchClosedError):
            await ReadinessWatcher(cluster).wait_for_nodes_ready(timeout=5)

        assert len(cluster.subscriptions) == 1
        assert cluster.unsubscribed == 1

    @pytest.mark.asyncio
    async def test_timeout_unsubscribes(self):
        cluster = FakeCluster(listings=[_nodes(True, False)], hang=True)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await ReadinessWatcher(cluster).wait_for_nodes_ready(timeout=0.05)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.ready == 1
        assert exc_info.value.threshold == 2
        assert cluster.unsubscribed == 1

    @pytest.mark.asyncio
    async def test_no_nodes(self):
        cluster = FakeCluster(listings=[_nodes()])

        with pytest.raises(ReadinessError, match="no nodes found"):
            await ReadinessWatcher(cluster).wait_for_nodes_ready(timeout=5)

    @pytest.mark.asyncio
    async def test_poll_mode(self):
        cluster = FakeCluster(listings=[_nodes(True, False), _nodes(True, False), _nodes(True, True)])

        tracker = await ReadinessWatcher(cluster, poll_interval=0.01).wait_for_nodes_ready(
            timeout=5, mode="poll"
        )

        assert tracker.phase is ReadinessPhase.CONVERGED
        assert cluster.subscriptions == []

    @pytest.mark.asyncio
    async def test_poll_mode_timeout(self):
        cluster = FakeCluster(listings=[_nodes(False)])

        with pytest.raises(ReadinessTimeoutError):
            await ReadinessWatcher(cluster, poll_interval=0.01).wait_for_nodes_ready(
                timeout=0.05, mode="poll"
            )


class TestWaitForPodsReady:
    """Tests for ReadinessWatcher.wait_for_pods_ready."""

    @pytest.mark.asyncio
    async def test_pending_cni_operator_tolerated_on_single_node(self):
        listing = Listing(
            entities=(
                _pod("cilium-operator-aaa", True),
                _pod("cilium-operator-bbb", False, phase="Pending"),
                _pod("coredns-1", True),
            ),
            resource_version="7",
        )
        cluster = FakeCluster(listings=[listing])

        tracker = await ReadinessWatcher(cluster).wait_for_pods_ready(
            namespace="kube-system", timeout=5, topology=SINGLE_NODE_RKE2
        )

        assert tracker.phase is ReadinessPhase.CONVERGED
        assert tracker.cni == CniOperatorTally(running=1, pending=1)
        assert cluster.subscriptions == []

    @pytest.mark.asyncio
    async def test_pending_cni_operator_blocks_multi_node(self):
        listing = Listing(
            entities=(
                _pod("cilium-operator-aaa", True),
                _pod("cilium-operator-bbb", False, phase="Pending"),
            ),
        )
        cluster = FakeCluster(listings=[listing])

        with pytest.raises(WatchClosedError):
            await ReadinessWatcher(cluster).wait_for_pods_ready(
                timeout=5, topology=ClusterTopology("rke2", 3, 2)
            )

    @pytest.mark.asyncio
    async def test_cni_operator_starts_running(self):
        """Zero running replicas: the allowance kicks in once one runs."""
        pending_a = _pod("cilium-operator-aaa", False, phase="Pending")
        listing = Listing(
            entities=(
                pending_a,
                _pod("cilium-operator-bbb", False, phase="Pending"),
                _pod("coredns-1", True),
            ),
        )
        cluster = FakeCluster(
            listings=[listing],
            events=[EntityEvent("MODIFIED", _pod("cilium-operator-aaa", True))],
            hang=True,
        )

        tracker = await ReadinessWatcher(cluster).wait_for_pods_ready(
            label_selector="app=cilium", timeout=5, topology=SINGLE_NODE_RKE2
        )

        assert tracker.ready_count == 2
        assert tracker.satisfied == 3
        assert cluster.subscriptions == [("pods", None, "", "app=cilium")]

    @pytest.mark.asyncio
    async def test_completed_pods_count_as_ready(self):
        listing = Listing(entities=(_pod("helm-install-traefik", True, phase="Succeeded"),))
        cluster = FakeCluster(listings=[listing])

        tracker = await ReadinessWatcher(cluster).wait_for_pods_ready(timeout=5)

        assert tracker.phase is ReadinessPhase.CONVERGED


class TestCheckClusterHealth:
    """Tests for API server health then node readiness."""

    @pytest.mark.asyncio
    async def test_retries_health_then_waits_for_nodes(self):
        cluster = FakeCluster(listings=[_nodes(True)])
        cluster.api_server_health = AsyncMock(
            side_effect=[ReadinessError("API server health check failed: ..."), "ok"]
        )

        with patch("distros_core.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await ReadinessWatcher(cluster).check_cluster_health(min_ready=1)

        assert cluster.api_server_health.await_count == 2
        mock_sleep.assert_awaited_once_with(3.0)

    @pytest.mark.asyncio
    async def test_persistently_unhealthy_api_server(self):
        """Health never turns ok: every attempt is used and nodes are never listed."""
        cluster = FakeCluster(listings=[_nodes(True)])
        cluster.api_server_health = AsyncMock(
            side_effect=ReadinessError("API server health check failed: [-]etcd failed")
        )
        cluster.list_nodes = AsyncMock()

        with patch("distros_core.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryExhaustedError) as exc_info:
                await ReadinessWatcher(cluster).check_cluster_health(min_ready=1)

        assert exc_info.value.attempts == HEALTH_ATTEMPTS
        assert cluster.api_server_health.await_count == HEALTH_ATTEMPTS
        assert "etcd failed" in str(exc_info.value.last_error)
        cluster.list_nodes.assert_not_awaited()
