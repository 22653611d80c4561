"""Kubernetes watches and the reconcile worker pool."""

import asyncio
import logging
from typing import Any, Callable, Optional

from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException

from .cluster import KINDS, ClusterConnection
from .config import Settings
from .models import MANAGED_BY, WatchEvent
from .queue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)

OWNED_SELECTOR = f"managed-by={MANAGED_BY}"


class ResourceWatcher:
    """Watches clusters and their workloads for changes."""

    def __init__(self, cluster: ClusterConnection, namespace: str = "", timeout_seconds: int = 300):
        """
        Initialize resource watcher.

        Args:
            cluster: Cluster connection
            namespace: Namespace to watch, empty for all namespaces
            timeout_seconds: Server side timeout after which a watch is reopened
        """
        self.cluster = cluster
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self._watch = k8s_watch.Watch()
        self._handlers: list[Callable[[WatchEvent], None]] = []
        self._stopped = False

    def register_handler(self, handler: Callable[[WatchEvent], None]) -> None:
        """
        Register a handler for watch events.

        Args:
            handler: Callback function that takes WatchEvent
        """
        self._handlers.append(handler)

    def _emit_event(self, event: WatchEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in watch event handler: {e}", exc_info=True)

    def _stream(self, kind: str, list_func: Callable, *args: Any, **kwargs: Any) -> None:
        """Stream events of one kind, restarting when the watch expires."""
        kwargs.setdefault("timeout_seconds", self.timeout_seconds)
        while not self._stopped:
            try:
                logger.info(f"Starting watch on {kind} in {self.namespace or 'all namespaces'}")
                for event in self._watch.stream(list_func, *args, **kwargs):
                    obj = event["object"]
                    if not isinstance(obj, dict):
                        obj = self.cluster.api_client.sanitize_for_serialization(obj)
                    metadata = obj.get("metadata") or {}
                    self._emit_event(
                        WatchEvent(
                            event_type=event["type"],
                            kind=kind,
                            name=metadata.get("name", ""),
                            namespace=metadata.get("namespace", ""),
                            object=obj,
                        )
                    )
                if self._stopped:
                    return
            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.warning(f"Watch on {kind} expired, restarting...")
                    continue
                logger.error(f"Error watching {kind}: {e}", exc_info=True)
                raise

    def watch_clusters(self) -> None:
        """Watch VMCluster objects."""
        rk = KINDS["VMCluster"]
        api = self.cluster.custom_objects
        if self.namespace:
            self._stream(
                rk.kind, api.list_namespaced_custom_object,
                rk.group, rk.version, self.namespace, rk.plural,
            )
        else:
            self._stream(rk.kind, api.list_cluster_custom_object, rk.group, rk.version, rk.plural)

    def watch_statefulsets(self) -> None:
        """Watch StatefulSets managed by the operator."""
        api = self.cluster.apps_v1
        if self.namespace:
            self._stream(
                "StatefulSet", api.list_namespaced_stateful_set,
                namespace=self.namespace, label_selector=OWNED_SELECTOR,
            )
        else:
            self._stream(
                "StatefulSet", api.list_stateful_set_for_all_namespaces,
                label_selector=OWNED_SELECTOR,
            )

    def watch_deployments(self) -> None:
        """Watch Deployments managed by the operator."""
        api = self.cluster.apps_v1
        if self.namespace:
            self._stream(
                "Deployment", api.list_namespaced_deployment,
                namespace=self.namespace, label_selector=OWNED_SELECTOR,
            )
        else:
            self._stream(
                "Deployment", api.list_deployment_for_all_namespaces,
                label_selector=OWNED_SELECTOR,
            )

    def stop(self) -> None:
        """Stop all active watches."""
        self._stopped = True
        self._watch.stop()


class Controller:
    """
    Runs reconcile workers fed by watch events.

    Events are mapped to the key of the owning cluster and queued. A fixed
    number of workers take keys from the queue; the queue guarantees that a
    key is never reconciled by two workers at once.
    """

    def __init__(
        self,
        engine,
        queue: WorkQueue,
        settings: Settings,
        watcher: Optional[ResourceWatcher] = None,
    ):
        """
        Initialize controller.

        Args:
            engine: Orchestration engine
            queue: Work queue
            settings: Operator settings
            watcher: Resource watcher, None to only process queued keys
        """
        self.engine = engine
        self.queue = queue
        self.settings = settings
        self.watcher = watcher
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False
        self._tasks: list[asyncio.Task] = []

    def _handle_event(self, event: WatchEvent) -> None:
        """Queue the owning cluster of an event; runs on watch threads."""
        key = event.owner_key()
        if key is None or self._loop is None:
            return
        logger.debug(f"Received {event.event_type} event for {event.kind} {event.namespace}/{event.name}")
        self._loop.call_soon_threadsafe(self.queue.add, key)

    async def process(self, key: str) -> None:
        """
        Reconcile one key and schedule its follow-up.

        Args:
            key: Cluster key in namespace/name form
        """
        namespace, _, name = key.partition("/")
        try:
            result = await self.engine.reconcile(namespace, name)
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            delay = self.queue.add_rate_limited(key)
            logger.info(f"Requeued {key} in {delay:.1f}s")
            return

        if result.backoff:
            delay = self.queue.add_rate_limited(key)
            logger.info(f"Requeued {key} in {delay:.1f}s after error: {result.error}")
            return

        self.queue.forget(key)
        if result.requeue:
            self.queue.add_after(key, result.requeue_after or 0)

    async def _worker(self, index: int) -> None:
        logger.debug(f"Worker {index} started")
        while self._running:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                break
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
        logger.debug(f"Worker {index} stopped")

    async def start(self) -> None:
        """Start workers and watches."""
        if self._running:
            logger.warning("Controller already running")
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        logger.info(f"Starting controller with {self.settings.workers} workers")

        for i in range(self.settings.workers):
            self._tasks.append(asyncio.create_task(self._worker(i)))

        if self.watcher is not None:
            self.watcher.register_handler(self._handle_event)
            for watch_method in (
                self.watcher.watch_clusters,
                self.watcher.watch_statefulsets,
                self.watcher.watch_deployments,
            ):
                self._tasks.append(asyncio.create_task(asyncio.to_thread(watch_method)))

    async def stop(self) -> None:
        """Stop watches and workers."""
        logger.info("Stopping controller")
        self._running = False
        if self.watcher is not None:
            self.watcher.stop()
        self.queue.shutdown()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
