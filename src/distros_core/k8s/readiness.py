"""
Readiness watchers for cluster nodes and pods.

Convergence is modeled as a state machine (ReadinessTracker) with a single
transition function. The watcher feeds it signals and stops as soon as the
phase is terminal:

    COUNTING --Tick(snapshot)--> CONVERGED
                             \\-> WATCHING --EntityEvent/Tick--> CONVERGED
                             \\-> FAILED       \\--Deadline----> TIMED_OUT
                                               \\--StreamClosed-> FAILED

Events adjust the ready counter by +1/-1 on transitions instead of
recounting, so each event costs O(1).
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Protocol

from distros_core.errors import ReadinessError, ReadinessTimeoutError, WatchClosedError
from distros_core.k8s.client import EntityEvent, EntityStatus, Listing
from distros_core.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

CNI_OPERATOR_PREFIX = "cilium-operator"

# API server /healthz probe schedule
HEALTH_ATTEMPTS = 21
HEALTH_DELAY = 3.0

# consecutive server-ended watches with no events before giving up
WATCH_IDLE_RESTARTS = 3

WatchMode = Literal["watch", "poll"]


class ReadinessPhase(str, Enum):
    COUNTING = "counting"
    WATCHING = "watching"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_PHASES = frozenset(
    {ReadinessPhase.CONVERGED, ReadinessPhase.TIMED_OUT, ReadinessPhase.FAILED}
)


@dataclass(frozen=True)
class Tick:
    """A fresh listing: the initial snapshot, or a poll."""

    listing: Listing


@dataclass(frozen=True)
class Deadline:
    """The watch deadline elapsed."""


@dataclass(frozen=True)
class StreamClosed:
    """The event stream ended before convergence."""

    reason: str = ""


Signal = EntityEvent | Tick | Deadline | StreamClosed


@dataclass(frozen=True)
class ClusterTopology:
    """Shape of the cluster under test."""

    product: str
    num_servers: int
    num_agents: int

    @property
    def tolerates_pending_cni(self) -> bool:
        """Single-node rke2 schedules only one cilium-operator replica."""
        return self.product == "rke2" and self.num_servers == 1 and self.num_agents == 0


@dataclass(frozen=True)
class CniOperatorTally:
    """
    Running and pending cilium-operator pods seen by one watch.

    Immutable: every update returns a new tally, so concurrent watches never
    share counts.
    """

    running: int = 0
    pending: int = 0

    @staticmethod
    def applies_to(entity: EntityStatus) -> bool:
        return entity.name.startswith(CNI_OPERATOR_PREFIX)

    @staticmethod
    def _contribution(entity: EntityStatus | None) -> tuple[int, int]:
        if entity is None or not CniOperatorTally.applies_to(entity):
            return 0, 0
        if entity.phase == "Running" and entity.ready:
            return 1, 0
        if entity.phase == "Pending" or not entity.ready:
            return 0, 1
        return 0, 0

    def update(
        self, previous: EntityStatus | None, current: EntityStatus | None
    ) -> "CniOperatorTally":
        """Swap previous's contribution for current's."""
        old_running, old_pending = self._contribution(previous)
        new_running, new_pending = self._contribution(current)
        return CniOperatorTally(
            running=self.running - old_running + new_running,
            pending=self.pending - old_pending + new_pending,
        )

    @property
    def allowance(self) -> int:
        """Pending pods treated as satisfied once one replica runs."""
        return self.pending if self.running >= 1 else 0

    def report(self) -> None:
        if self.running >= 1 or self.pending == 0:
            return
        if self.pending == 1:
            logger.warning("No cilium-operator pods running yet, 1 pending")
        else:
            logger.error("No cilium-operator pods running, %d pending", self.pending)


@dataclass
class ReadinessTracker:
    """
    Ready-count state for one watch.

    Attributes:
        kind: "nodes" or "pods", used in messages
        min_ready: Requested threshold; 0 means every entity
        topology: Enables the CNI operator allowance when it applies
        phase: Current phase
        states: Entity key -> last seen status
        ready_count: Entities currently ready
        threshold: Count required, fixed by the snapshot
        cni: CNI operator tally, only maintained when topology applies
        failure: Reason for FAILED
        stream_closed: FAILED because the event stream ended
    """

    kind: str
    min_ready: int = 0
    topology: ClusterTopology | None = None
    phase: ReadinessPhase = ReadinessPhase.COUNTING
    states: dict[str, EntityStatus] = field(default_factory=dict)
    ready_count: int = 0
    threshold: int = 0
    cni: CniOperatorTally = field(default_factory=CniOperatorTally)
    failure: str | None = None
    stream_closed: bool = False

    @property
    def tracks_cni(self) -> bool:
        return self.topology is not None and self.topology.tolerates_pending_cni

    @property
    def satisfied(self) -> int:
        if self.tracks_cni:
            return self.ready_count + self.cni.allowance
        return self.ready_count

    @property
    def done(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def transition(self, signal: Signal) -> ReadinessPhase:
        """Apply one signal and return the resulting phase.

        Signals arriving after a terminal phase are ignored.
        """
        if self.done:
            return self.phase

        if isinstance(signal, Tick):
            self._load(signal.listing)
        elif isinstance(signal, EntityEvent):
            if self.phase is ReadinessPhase.COUNTING:
                raise ReadinessError(f"{self.kind} event received before snapshot")
            self._apply(signal)
        elif isinstance(signal, Deadline):
            self.phase = ReadinessPhase.TIMED_OUT
            return self.phase
        elif isinstance(signal, StreamClosed):
            self.phase = ReadinessPhase.FAILED
            self.stream_closed = True
            self.failure = signal.reason or f"{self.kind} watcher channel closed"
            return self.phase

        if self.phase is ReadinessPhase.WATCHING and self.satisfied >= self.threshold:
            self.phase = ReadinessPhase.CONVERGED
        return self.phase

    def _load(self, listing: Listing) -> None:
        first = self.phase is ReadinessPhase.COUNTING
        if not listing.entities:
            if first:
                self.phase = ReadinessPhase.FAILED
                self.failure = f"no {self.kind} found"
            return

        self.states = {e.key: e for e in listing.entities}
        self.ready_count = sum(1 for e in listing.entities if e.ready)
        if self.tracks_cni:
            tally = CniOperatorTally()
            for entity in listing.entities:
                tally = tally.update(None, entity)
            self.cni = tally
            tally.report()

        if first:
            total = len(listing.entities)
            if self.min_ready <= 0 or self.min_ready > total:
                self.threshold = total
            else:
                self.threshold = self.min_ready
            logger.debug(
                "%s snapshot: %d/%d ready, threshold %d",
                self.kind,
                self.ready_count,
                total,
                self.threshold,
            )
            self.phase = ReadinessPhase.WATCHING

    def _apply(self, event: EntityEvent) -> None:
        if event.type == "ERROR" or event.entity is None:
            self.phase = ReadinessPhase.FAILED
            self.failure = f"{self.kind} watch error: {event.message}"
            return

        current = event.entity
        previous = self.states.get(current.key)
        was_ready = previous is not None and previous.ready

        if event.type == "DELETED":
            self.states.pop(current.key, None)
            if was_ready:
                self.ready_count -= 1
            if self.tracks_cni:
                self.cni = self.cni.update(previous, None)
            return

        self.states[current.key] = current
        if current.ready and not was_ready:
            self.ready_count += 1
            logger.info("%s %s is ready (%d ready)", self.kind, current.name, self.ready_count)
        elif was_ready and not current.ready:
            self.ready_count -= 1
            logger.info("%s %s is no longer ready (%d ready)", self.kind, current.name, self.ready_count)

        if self.tracks_cni:
            self.cni = self.cni.update(previous, current)
            if CniOperatorTally.applies_to(current):
                self.cni.report()


class ClusterSource(Protocol):
    """List/watch surface readiness watchers need; KubeClient implements it."""

    async def list_nodes(self) -> Listing: ...

    async def list_pods(self, namespace: str = "", label_selector: str = "") -> Listing: ...

    def watch_nodes(
        self, resource_version: str | None, timeout: float
    ) -> AsyncIterator[EntityEvent]: ...

    def watch_pods(
        self,
        resource_version: str | None,
        timeout: float,
        namespace: str = "",
        label_selector: str = "",
    ) -> AsyncIterator[EntityEvent]: ...

    async def api_server_health(self) -> str: ...


class ReadinessWatcher:
    """Waits for nodes or pods to reach a ready threshold.

    Example:
        watcher = ReadinessWatcher(KubeClient.from_kubeconfig(path))
        await watcher.wait_for_nodes_ready(min_ready=3, timeout=600)
        await watcher.wait_for_pods_ready(
            namespace="kube-system",
            topology=ClusterTopology("rke2", num_servers=1, num_agents=0),
        )
    """

    def __init__(self, source: ClusterSource, *, poll_interval: float = 5.0) -> None:
        self.source = source
        self.poll_interval = poll_interval

    async def wait_for_nodes_ready(
        self, min_ready: int = 0, timeout: float = 600.0, mode: WatchMode = "watch"
    ) -> ReadinessTracker:
        """Wait until min_ready nodes (all nodes when 0) are Ready.

        Raises:
            ReadinessTimeoutError: Deadline elapsed first
            WatchClosedError: Event stream failed, or kept ending without events
            ReadinessError: No nodes found, or a watch error event
        """
        tracker = ReadinessTracker("nodes", min_ready=min_ready)
        return await self._converge(
            tracker,
            self.source.list_nodes,
            lambda rv, remaining: self.source.watch_nodes(rv, remaining),
            timeout,
            mode,
        )

    async def wait_for_pods_ready(
        self,
        namespace: str = "",
        label_selector: str = "",
        min_ready: int = 0,
        timeout: float = 600.0,
        topology: ClusterTopology | None = None,
        mode: WatchMode = "watch",
    ) -> ReadinessTracker:
        """Wait until pods matching namespace/label_selector are ready.

        An empty namespace means all namespaces. With a single-node rke2
        topology, pending cilium-operator replicas are tolerated once one runs.
        """
        tracker = ReadinessTracker("pods", min_ready=min_ready, topology=topology)
        return await self._converge(
            tracker,
            lambda: self.source.list_pods(namespace, label_selector),
            lambda rv, remaining: self.source.watch_pods(
                rv, remaining, namespace=namespace, label_selector=label_selector
            ),
            timeout,
            mode,
        )

    async def check_cluster_health(self, min_ready: int = 0, timeout: float = 600.0) -> None:
        """Wait for the API server /healthz to answer ok, then for nodes."""
        cfg = RetryConfig(
            attempts=HEALTH_ATTEMPTS,
            delay=HEALTH_DELAY,
            delay_multiplier=1.0,
            retryable_error_substrings=(),
            non_retryable_error_substrings=(),
        )
        await with_retry(self.source.api_server_health, cfg, description="API server health")
        logger.info("API server is healthy")
        await self.wait_for_nodes_ready(min_ready=min_ready, timeout=timeout)

    async def _converge(self, tracker, list_fn, watch_fn, timeout, mode) -> ReadinessTracker:
        if mode not in ("watch", "poll"):
            raise ValueError(f"mode must be watch or poll, got {mode!r}")
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + timeout

        listing = await list_fn()
        tracker.transition(Tick(listing))

        if tracker.phase is ReadinessPhase.WATCHING:
            if mode == "watch":
                await self._watch(tracker, watch_fn, listing.resource_version, deadline_at)
            else:
                await self._poll(tracker, list_fn, deadline_at)

        if tracker.phase is ReadinessPhase.CONVERGED:
            logger.info(
                "%s ready: %d/%d", tracker.kind.capitalize(), tracker.satisfied, tracker.threshold
            )
            return tracker
        if tracker.phase is ReadinessPhase.TIMED_OUT:
            raise ReadinessTimeoutError(tracker.kind, tracker.satisfied, tracker.threshold, timeout)
        if tracker.stream_closed:
            raise WatchClosedError(tracker.kind)
        raise ReadinessError(tracker.failure or f"{tracker.kind} readiness failed")

    async def _watch(self, tracker, watch_fn, resource_version, deadline_at) -> None:
        """Feed watch events to tracker, resuming watches the server ends.

        A stream that ends at the deadline is a timeout. A stream that ends
        early is reopened from the last seen resourceVersion, unless several
        in a row end without delivering anything.
        """
        loop = asyncio.get_running_loop()
        idle_ends = 0
        while not tracker.done:
            remaining = deadline_at - loop.time()
            if remaining <= 0:
                tracker.transition(Deadline())
                break

            received, resource_version = await self._drain(
                tracker, watch_fn(resource_version, remaining), resource_version, deadline_at
            )
            if tracker.done:
                break
            if loop.time() >= deadline_at:
                tracker.transition(Deadline())
                break

            idle_ends = 0 if received else idle_ends + 1
            if idle_ends > WATCH_IDLE_RESTARTS:
                tracker.transition(StreamClosed())
                break
            logger.debug(
                "%s watch ended by server, resuming from resourceVersion %s",
                tracker.kind,
                resource_version,
            )

    async def _drain(
        self, tracker, stream, resource_version, deadline_at
    ) -> tuple[int, str | None]:
        """Apply events from one stream until it ends or tracker is done.

        Returns the number of events received and the last resourceVersion.
        """
        loop = asyncio.get_running_loop()
        received = 0
        try:
            while not tracker.done:
                remaining = deadline_at - loop.time()
                if remaining <= 0:
                    tracker.transition(Deadline())
                    break
                try:
                    event = await asyncio.wait_for(anext(stream), timeout=remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    tracker.transition(Deadline())
                    break
                except Exception as e:
                    logger.warning("%s watch stream failed: %s", tracker.kind, e)
                    tracker.transition(StreamClosed(f"{tracker.kind} watch stream failed: {e}"))
                    break
                received += 1
                resource_version = event.resource_version or resource_version
                tracker.transition(event)
        finally:
            await stream.aclose()
        return received, resource_version

    async def _poll(self, tracker, list_fn, deadline_at) -> None:
        loop = asyncio.get_running_loop()
        while not tracker.done:
            remaining = deadline_at - loop.time()
            if remaining <= 0:
                tracker.transition(Deadline())
                break
            await asyncio.sleep(min(self.poll_interval, remaining))
            if loop.time() >= deadline_at:
                tracker.transition(Deadline())
                break
            tracker.transition(Tick(await list_fn()))
