"""Pytest configuration and fixtures for operator tests."""

import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from vm_operator.config import Settings
from vm_operator.context import ReconcileContext

WORKLOAD_KINDS = ("StatefulSet", "Deployment")


def _parse_selector(label_selector: Optional[str]) -> dict[str, str]:
    if not label_selector:
        return {}
    return dict(part.split("=", 1) for part in label_selector.split(","))


class FakeKubeClient:
    """
    In-memory stand-in for KubeClient.

    Mimics the API server closely enough for the engine: resourceVersion
    conflicts, generation bumps on workload spec changes, cluster IP
    allocation and merge-patch status updates.
    """

    def __init__(self):
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str, str]] = []
        self.failures: dict[tuple, ApiException] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Store an object as if it was created by someone else."""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", "" if obj["kind"] == "Namespace" else "default")
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata.setdefault("generation", 1)
        metadata["resourceVersion"] = self._next_version()
        self.objects[(obj["kind"], metadata["namespace"], metadata["name"])] = obj
        return obj

    def fail(self, verb: str, kind: str, name: Optional[str] = None, status: int = 500) -> None:
        """Make a verb fail for a kind, or for one object of that kind."""
        key = (verb, kind, name) if name else (verb, kind)
        self.failures[key] = ApiException(status=status, reason=f"injected {status}")

    def _check(self, verb: str, kind: str, namespace: str, name: str = "") -> None:
        self.calls.append((verb, kind, namespace or "", name))
        for key in ((verb, kind, name), (verb, kind)):
            if key in self.failures:
                raise self.failures[key]

    def calls_for(self, *verbs: str) -> list[tuple[str, str, str, str]]:
        return [call for call in self.calls if call[0] in verbs]

    @property
    def writes(self) -> list[tuple[str, str, str, str]]:
        return self.calls_for("create", "replace", "delete")

    def stored(self, kind: str, namespace: str, name: str) -> Optional[dict[str, Any]]:
        return self.objects.get((kind, namespace, name))

    def names(self, kind: str, namespace: str = "default") -> list[str]:
        return sorted(n for k, ns, n in self.objects if k == kind and ns == namespace)

    def mark_ready(self, kind: str, namespace: str, name: str, ready: Optional[int] = None) -> None:
        """Report a workload as rolled out with the given number of ready replicas."""
        obj = self.objects[(kind, namespace, name)]
        replicas = obj["spec"].get("replicas", 1)
        ready = replicas if ready is None else ready
        obj["status"] = {
            "observedGeneration": obj["metadata"]["generation"],
            "replicas": replicas,
            "readyReplicas": ready,
            "updatedReplicas": ready,
        }

    async def list(self, kind, namespace=None, label_selector=None):
        self._check("list", kind, namespace or "")
        wanted = _parse_selector(label_selector)
        result = []
        for (k, ns, _), obj in sorted(self.objects.items()):
            if k != kind or (namespace and ns != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(key) == value for key, value in wanted.items()):
                result.append(copy.deepcopy(obj))
        return result

    async def get(self, kind, namespace, name):
        self._check("get", kind, namespace, name)
        obj = self.objects.get((kind, namespace or "", name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    async def create(self, kind, body):
        metadata = body["metadata"]
        self._check("create", kind, metadata["namespace"], metadata["name"])
        key = (kind, metadata["namespace"], metadata["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(body)
        obj["kind"] = kind
        obj["metadata"]["uid"] = str(uuid.uuid4())
        obj["metadata"]["generation"] = 1
        obj["metadata"]["resourceVersion"] = self._next_version()
        if kind == "Service" and "clusterIP" not in obj.get("spec", {}):
            obj["spec"]["clusterIP"] = f"10.96.0.{len(self.objects) + 1}"
        self.objects[key] = obj
        return copy.deepcopy(obj)

    async def replace(self, kind, body):
        metadata = body["metadata"]
        self._check("replace", kind, metadata["namespace"], metadata["name"])
        key = (kind, metadata["namespace"], metadata["name"])
        live = self.objects.get(key)
        if live is None:
            raise ApiException(status=404, reason="Not Found")
        if metadata.get("resourceVersion") != live["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        if kind == "Service" and body["spec"].get("clusterIP") != live["spec"].get("clusterIP"):
            raise ApiException(status=422, reason="spec.clusterIP: field is immutable")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._next_version()
        if kind in WORKLOAD_KINDS and obj.get("spec") != live.get("spec"):
            obj["metadata"]["generation"] = live["metadata"]["generation"] + 1
        obj["status"] = copy.deepcopy(live.get("status", {}))
        self.objects[key] = obj
        return copy.deepcopy(obj)

    async def delete(self, kind, namespace, name):
        self._check("delete", kind, namespace, name)
        if self.objects.pop((kind, namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")

    async def patch_status(self, kind, namespace, name, status):
        self._check("patch_status", kind, namespace, name)
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        obj["status"] = _merge_patch(obj.get("status") or {}, status)
        return copy.deepcopy(obj)


def _merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _merge_patch(result.get(key), value)
    return result


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_cluster(name: str = "example", namespace: str = "default", **spec: Any) -> dict[str, Any]:
    """Build a VMCluster object as returned by the API."""
    return {
        "apiVersion": "operator.victoriametrics.com/v1beta1",
        "kind": "VMCluster",
        "metadata": {"name": name, "namespace": namespace, "generation": 1},
        "spec": spec,
    }


def make_namespace(name: str, labels: Optional[dict[str, str]] = None) -> dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name, "labels": labels or {}}}


@pytest.fixture
def fake_client():
    """In-memory Kubernetes client."""
    return FakeKubeClient()


@pytest.fixture
def clock():
    """Controllable wall clock."""
    return FakeClock()


@pytest.fixture
def settings():
    """Settings without in-pass readiness polling."""
    return Settings(
        reconcile_timeout=30,
        app_ready_timeout=60,
        pod_wait_ready_timeout=0,
        pod_wait_ready_interval_check=5,
        conflict_requeue=1,
        error_backoff_base=5,
        error_backoff_max=300,
    )


@pytest.fixture
def ctx():
    """Fresh reconcile context."""
    return ReconcileContext.start(30)


@pytest.fixture
def mock_cluster_connection():
    """Mock cluster connection for testing."""
    mock_conn = MagicMock()
    mock_conn.core_v1 = MagicMock(spec=client.CoreV1Api)
    mock_conn.apps_v1 = MagicMock(spec=client.AppsV1Api)
    mock_conn.custom_objects = MagicMock(spec=client.CustomObjectsApi)
    mock_conn.api_client = MagicMock(spec=client.ApiClient)
    mock_conn.api_client.sanitize_for_serialization.side_effect = lambda obj: dict(obj)
    return mock_conn
