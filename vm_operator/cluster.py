"""Kubernetes API access for the operator."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from kubernetes import client, config
from kubernetes.client import ApiClient, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.client.exceptions import ApiException
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .errors import is_retryable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    """How to reach one object kind through the API."""

    kind: str
    api_version: str
    # Typed API attribute and method suffix, e.g. ("apps_v1", "stateful_set")
    api: Optional[str] = None
    resource: Optional[str] = None
    # Custom objects
    plural: Optional[str] = None
    namespaced: bool = True

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def is_custom(self) -> bool:
        return self.plural is not None


KINDS: dict[str, ResourceKind] = {
    kind.kind: kind
    for kind in (
        ResourceKind("Namespace", "v1", api="core_v1", resource="namespace", namespaced=False),
        ResourceKind("Secret", "v1", api="core_v1", resource="secret"),
        ResourceKind("ConfigMap", "v1", api="core_v1", resource="config_map"),
        ResourceKind("Service", "v1", api="core_v1", resource="service"),
        ResourceKind("StatefulSet", "apps/v1", api="apps_v1", resource="stateful_set"),
        ResourceKind("Deployment", "apps/v1", api="apps_v1", resource="deployment"),
        ResourceKind("VMServiceScrape", "operator.victoriametrics.com/v1beta1", plural="vmservicescrapes"),
        ResourceKind("VMPodScrape", "operator.victoriametrics.com/v1beta1", plural="vmpodscrapes"),
        ResourceKind("VMRule", "operator.victoriametrics.com/v1beta1", plural="vmrules"),
        ResourceKind("VMCluster", "operator.victoriametrics.com/v1beta1", plural="vmclusters"),
    )
}


def format_label_selector(labels: Optional[dict[str, str]]) -> Optional[str]:
    """
    Render an equality-based label selector.

    Args:
        labels: Label selector dict

    Returns:
        Selector string (e.g. "app=vm,managed-by=vm-operator") or None
    """
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class ClusterConnection:
    """Represents a connection to the Kubernetes cluster."""

    def __init__(self, settings: Settings):
        """
        Initialize cluster connection.

        Args:
            settings: Operator settings

        Raises:
            ValueError: If kubeconfig is invalid
        """
        self.settings = settings
        self._api_client: Optional[ApiClient] = None
        self._core_v1: Optional[CoreV1Api] = None
        self._apps_v1: Optional[AppsV1Api] = None
        self._custom_objects: Optional[CustomObjectsApi] = None

        self._initialize_client()

    def _initialize_client(self):
        """Initialize Kubernetes API client."""
        try:
            if self.settings.kubeconfig_path or self.settings.kube_context:
                config.load_kube_config(
                    config_file=self.settings.kubeconfig_path,
                    context=self.settings.kube_context,
                )
            else:
                # Running inside the cluster
                config.load_incluster_config()

            self._api_client = ApiClient()
            self._core_v1 = CoreV1Api(self._api_client)
            self._apps_v1 = AppsV1Api(self._api_client)
            self._custom_objects = CustomObjectsApi(self._api_client)

        except Exception as e:
            raise ValueError(f"Failed to initialize cluster connection: {e}") from e

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance."""
        if not self._core_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._core_v1

    @property
    def apps_v1(self) -> AppsV1Api:
        """Get AppsV1Api instance."""
        if not self._apps_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._apps_v1

    @property
    def custom_objects(self) -> CustomObjectsApi:
        """Get CustomObjectsApi instance."""
        if not self._custom_objects:
            raise RuntimeError("Cluster connection not initialized")
        return self._custom_objects

    @property
    def api_client(self) -> ApiClient:
        """Get ApiClient instance."""
        if not self._api_client:
            raise RuntimeError("Cluster connection not initialized")
        return self._api_client

    def is_healthy(self) -> bool:
        """
        Check if cluster connection is healthy.

        Returns:
            True if cluster is reachable
        """
        try:
            client.VersionApi(self.api_client).get_code()
            return True
        except ApiException:
            return False

    def close(self):
        """Close the cluster connection."""
        if self._api_client:
            self._api_client.close()
            self._api_client = None

        self._core_v1 = None
        self._apps_v1 = None
        self._custom_objects = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


class KubeClient:
    """
    Kind-dispatching async facade over the Kubernetes API.

    Every call returns plain camelCase dicts regardless of whether the kind is
    served by a typed API or by the custom objects API. Blocking client calls
    run in worker threads so that reconciles of different resources proceed
    concurrently.
    """

    def __init__(self, connection: ClusterConnection, request_timeout: float = 30.0):
        """
        Initialize client.

        Args:
            connection: Cluster connection
            request_timeout: Per-request timeout passed to the API client
        """
        self.connection = connection
        self.request_timeout = request_timeout

    def _kind(self, kind: str) -> ResourceKind:
        try:
            return KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind {kind}") from None

    def _typed(self, rk: ResourceKind, verb: str):
        api = getattr(self.connection, rk.api)
        if rk.namespaced:
            return getattr(api, f"{verb}_namespaced_{rk.resource}")
        return getattr(api, f"{verb}_{rk.resource}")

    def _to_dict(self, rk: ResourceKind, obj: Any) -> dict[str, Any]:
        data = self.connection.api_client.sanitize_for_serialization(obj)
        data.setdefault("kind", rk.kind)
        data.setdefault("apiVersion", rk.api_version)
        return data

    def _list(self, rk: ResourceKind, namespace: Optional[str], label_selector: Optional[str]):
        kwargs: dict[str, Any] = {"_request_timeout": self.request_timeout}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if rk.is_custom:
            if namespace:
                result = self.connection.custom_objects.list_namespaced_custom_object(
                    rk.group, rk.version, namespace, rk.plural, **kwargs
                )
            else:
                result = self.connection.custom_objects.list_cluster_custom_object(
                    rk.group, rk.version, rk.plural, **kwargs
                )
            return result.get("items", [])
        if rk.namespaced and namespace:
            result = self._typed(rk, "list")(namespace, **kwargs)
        elif rk.namespaced:
            api = getattr(self.connection, rk.api)
            result = getattr(api, f"list_{rk.resource}_for_all_namespaces")(**kwargs)
        else:
            result = self._typed(rk, "list")(**kwargs)
        return [self._to_dict(rk, item) for item in result.items]

    def _get(self, rk: ResourceKind, namespace: str, name: str):
        if rk.is_custom:
            return self.connection.custom_objects.get_namespaced_custom_object(
                rk.group, rk.version, namespace, rk.plural, name,
                _request_timeout=self.request_timeout,
            )
        if rk.namespaced:
            obj = self._typed(rk, "read")(name, namespace, _request_timeout=self.request_timeout)
        else:
            obj = self._typed(rk, "read")(name, _request_timeout=self.request_timeout)
        return self._to_dict(rk, obj)

    def _create(self, rk: ResourceKind, body: dict[str, Any]):
        namespace = body["metadata"]["namespace"]
        if rk.is_custom:
            return self.connection.custom_objects.create_namespaced_custom_object(
                rk.group, rk.version, namespace, rk.plural, body,
                _request_timeout=self.request_timeout,
            )
        obj = self._typed(rk, "create")(
            namespace=namespace, body=body, _request_timeout=self.request_timeout
        )
        return self._to_dict(rk, obj)

    def _replace(self, rk: ResourceKind, body: dict[str, Any]):
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        if rk.is_custom:
            return self.connection.custom_objects.replace_namespaced_custom_object(
                rk.group, rk.version, namespace, rk.plural, name, body,
                _request_timeout=self.request_timeout,
            )
        obj = self._typed(rk, "replace")(
            name=name, namespace=namespace, body=body, _request_timeout=self.request_timeout
        )
        return self._to_dict(rk, obj)

    def _delete(self, rk: ResourceKind, namespace: str, name: str):
        if rk.is_custom:
            self.connection.custom_objects.delete_namespaced_custom_object(
                rk.group, rk.version, namespace, rk.plural, name,
                propagation_policy="Background",
                _request_timeout=self.request_timeout,
            )
        else:
            self._typed(rk, "delete")(
                name, namespace,
                propagation_policy="Background",
                _request_timeout=self.request_timeout,
            )

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        List objects of a kind.

        Args:
            kind: Object kind (e.g. "StatefulSet")
            namespace: Namespace, None for all namespaces
            label_selector: Label selector string

        Returns:
            List of object dicts

        Raises:
            ApiException: If the list call fails
        """
        return await asyncio.to_thread(self._list, self._kind(kind), namespace, label_selector)

    async def get(self, kind: str, namespace: Optional[str], name: str) -> dict[str, Any]:
        """
        Read a single object.

        Raises:
            ApiException: With status 404 if the object does not exist
        """
        return await asyncio.to_thread(self._get, self._kind(kind), namespace, name)

    async def create(self, kind: str, body: dict[str, Any]) -> dict[str, Any]:
        """Create an object from its full body."""
        return await asyncio.to_thread(self._create, self._kind(kind), body)

    async def replace(self, kind: str, body: dict[str, Any]) -> dict[str, Any]:
        """Replace an object; the body must carry the live resourceVersion."""
        return await asyncio.to_thread(self._replace, self._kind(kind), body)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object, letting the garbage collector remove dependents."""
        await asyncio.to_thread(self._delete, self._kind(kind), namespace, name)

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def patch_status(
        self, kind: str, namespace: str, name: str, status: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Merge-patch the status subresource of a custom object.

        Transient API failures are retried a few times before surfacing.
        """
        rk = self._kind(kind)
        if not rk.is_custom:
            raise ValueError(f"{kind} has no writable status subresource")
        return await asyncio.to_thread(
            self.connection.custom_objects.patch_namespaced_custom_object_status,
            rk.group, rk.version, namespace, rk.plural, name, {"status": status},
            _request_timeout=self.request_timeout,
        )
