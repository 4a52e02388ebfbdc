"""
Kubernetes API adapter for readiness watching.

KubeClient wraps the official kubernetes client and exposes the small
list/watch/health surface the readiness watchers need, converted into
plain EntityStatus values. The kubernetes client is blocking: listings run
in the default executor and watch streams are pumped from a daemon thread
into an asyncio queue.
"""

import asyncio
import logging
import math
import threading
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch

from distros_core.errors import ReadinessError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityStatus:
    """
    Readiness of one node or pod.

    Attributes:
        name: Node name, or pod name
        ready: Whether the entity counts as ready
        namespace: Pod namespace, empty for nodes
        phase: Pod phase (Running, Pending, Succeeded...), empty for nodes
    """

    name: str
    ready: bool
    namespace: str = ""
    phase: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class Listing:
    """Result of a list call: current entities plus the list resourceVersion."""

    entities: tuple[EntityStatus, ...]
    resource_version: str | None = None


@dataclass(frozen=True)
class EntityEvent:
    """A watch event: ADDED, MODIFIED, DELETED or ERROR.

    resource_version is the object's resourceVersion, used to resume a
    watch the server ended.
    """

    type: str
    entity: EntityStatus | None = None
    message: str = ""
    resource_version: str | None = None


def node_is_ready(node: Any) -> bool:
    """True when the node has condition Ready=True."""
    conditions = (node.status.conditions if node.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def pod_is_ready(pod: Any) -> bool:
    """True when the pod has condition Ready=True or ran to completion."""
    status = pod.status
    if status is None:
        return False
    if status.phase == "Succeeded":
        return True
    return any(c.type == "Ready" and c.status == "True" for c in status.conditions or [])


def node_status(node: Any) -> EntityStatus:
    return EntityStatus(name=node.metadata.name, ready=node_is_ready(node))


def pod_status(pod: Any) -> EntityStatus:
    return EntityStatus(
        name=pod.metadata.name,
        ready=pod_is_ready(pod),
        namespace=pod.metadata.namespace or "",
        phase=(pod.status.phase if pod.status else "") or "",
    )


class KubeClient:
    """Async facade over kubernetes CoreV1Api.

    Example:
        kube = KubeClient.from_kubeconfig("/tmp/kubeconfig.yaml")
        listing = await kube.list_nodes()
        async for event in kube.watch_nodes(listing.resource_version, timeout=300):
            print(event.type, event.entity)
    """

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self.api_client = api_client
        self.core = k8s_client.CoreV1Api(api_client)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str | None = None) -> "KubeClient":
        """Build a client from a kubeconfig file, or the default one if None."""
        try:
            api_client = k8s_config.new_client_from_config(config_file=kubeconfig)
        except k8s_config.ConfigException as e:
            raise ReadinessError(f"unable to load kubeconfig {kubeconfig or '(default)'}: {e}") from e
        return cls(api_client)

    async def list_nodes(self) -> Listing:
        result = await asyncio.to_thread(self.core.list_node)
        return Listing(
            entities=tuple(node_status(n) for n in result.items),
            resource_version=result.metadata.resource_version,
        )

    async def list_pods(self, namespace: str = "", label_selector: str = "") -> Listing:
        if namespace:
            result = await asyncio.to_thread(
                self.core.list_namespaced_pod, namespace, label_selector=label_selector
            )
        else:
            result = await asyncio.to_thread(
                self.core.list_pod_for_all_namespaces, label_selector=label_selector
            )
        return Listing(
            entities=tuple(pod_status(p) for p in result.items),
            resource_version=result.metadata.resource_version,
        )

    def watch_nodes(
        self, resource_version: str | None, timeout: float
    ) -> AsyncIterator[EntityEvent]:
        return self._stream(self.core.list_node, node_status, resource_version, timeout)

    def watch_pods(
        self,
        resource_version: str | None,
        timeout: float,
        namespace: str = "",
        label_selector: str = "",
    ) -> AsyncIterator[EntityEvent]:
        if namespace:
            return self._stream(
                self.core.list_namespaced_pod,
                pod_status,
                resource_version,
                timeout,
                namespace=namespace,
                label_selector=label_selector,
            )
        return self._stream(
            self.core.list_pod_for_all_namespaces,
            pod_status,
            resource_version,
            timeout,
            label_selector=label_selector,
        )

    async def api_server_health(self) -> str:
        """GET /healthz.

        Raises:
            ReadinessError: If the API server answers anything but "ok"
        """
        response = await asyncio.to_thread(
            self.api_client.call_api,
            "/healthz",
            "GET",
            response_type="str",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _preload_content=True,
        )
        response = str(response).strip()
        if response != "ok":
            raise ReadinessError(f"API server health check failed: {response}")
        return response

    async def _stream(
        self,
        list_func: Callable[..., Any],
        convert: Callable[[Any], EntityStatus],
        resource_version: str | None,
        timeout: float,
        **kwargs: Any,
    ) -> AsyncIterator[EntityEvent]:
        """Pump a blocking watch stream into the event loop.

        The server-side timeout is the caller's remaining deadline rounded
        up to whole seconds, so the pump thread cannot outlive the watch by
        much. The server may still end the stream early; callers resume from
        the last event's resource_version. Stopping the iterator stops the
        watch.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        watcher = k8s_watch.Watch()

        def put(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # event loop already closed, nobody is listening
                watcher.stop()

        def pump() -> None:
            try:
                stream_kwargs = dict(kwargs, timeout_seconds=max(math.ceil(timeout), 1))
                if resource_version:
                    stream_kwargs["resource_version"] = resource_version
                for raw in watcher.stream(list_func, **stream_kwargs):
                    event_type = raw.get("type", "")
                    if event_type == "ERROR":
                        put(EntityEvent(type="ERROR", message=str(raw.get("raw_object"))))
                        continue
                    if event_type == "BOOKMARK":
                        continue
                    obj = raw["object"]
                    put(
                        EntityEvent(
                            type=event_type,
                            entity=convert(obj),
                            resource_version=obj.metadata.resource_version,
                        )
                    )
            except Exception as e:
                put(e)
            finally:
                put(done)

        thread = threading.Thread(target=pump, name="k8s-watch", daemon=True)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is done:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            watcher.stop()
            logger.debug("Stopped watch on %s", getattr(list_func, "__name__", list_func))
