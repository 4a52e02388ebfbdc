"""Kubernetes readiness watching: API adapter plus node/pod watchers."""

from distros_core.k8s.client import EntityEvent, EntityStatus, KubeClient, Listing
from distros_core.k8s.readiness import (
    ClusterTopology,
    CniOperatorTally,
    ReadinessPhase,
    ReadinessTracker,
    ReadinessWatcher,
)

__all__ = [
    "ClusterTopology",
    "CniOperatorTally",
    "EntityEvent",
    "EntityStatus",
    "KubeClient",
    "Listing",
    "ReadinessPhase",
    "ReadinessTracker",
    "ReadinessWatcher",
]
