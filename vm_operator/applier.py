"""Convergence of live child objects towards their desired bodies."""

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from kubernetes.client.exceptions import ApiException

from .cluster import format_label_selector
from .errors import ApplyError, DeadlineExceededError
from .models import VMCluster

logger = logging.getLogger(__name__)

# Creation order; deletions run in reverse.
MANAGED_KINDS = ("Secret", "ConfigMap", "Service", "StatefulSet", "Deployment", "VMServiceScrape")
WORKLOAD_KINDS = ("StatefulSet", "Deployment")

# Owned fields written by the last apply, as JSON.
LAST_APPLIED_ANNOTATION = "operator.victoriametrics.com/last-applied"

# Fields the platform refuses to change in place.
IMMUTABLE_FIELDS: dict[str, tuple[tuple[str, ...], ...]] = {
    "StatefulSet": (
        ("spec", "selector"),
        ("spec", "serviceName"),
        ("spec", "volumeClaimTemplates"),
    ),
}

ObjectKey = tuple[str, str, str]


def object_identity(obj: dict[str, Any]) -> ObjectKey:
    metadata = obj["metadata"]
    return obj["kind"], metadata.get("namespace", ""), metadata["name"]


def is_subset(desired: Any, live: Any) -> bool:
    """
    Return True if every field set in desired has the same value in live.

    Dicts are compared key by key, lists element by element and must have the
    same length. Fields only present in live are ignored.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and is_subset(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def merge(live: Any, desired: Any) -> Any:
    """
    Overlay desired onto live.

    Fields set by the platform and absent from desired (cluster IPs, defaulted
    port protocols, resourceVersion) are carried over from live.
    """
    if isinstance(live, dict) and isinstance(desired, dict):
        merged = dict(live)
        for key, value in desired.items():
            merged[key] = merge(live[key], value) if key in live else copy.deepcopy(value)
        return merged
    if isinstance(live, list) and isinstance(desired, list) and len(live) == len(desired):
        return [merge(l, d) for l, d in zip(live, desired)]
    return copy.deepcopy(desired)


def owned_view(obj: dict[str, Any]) -> dict[str, Any]:
    """The part of a desired body the engine owns."""
    metadata = obj.get("metadata", {})
    view: dict[str, Any] = {
        "metadata": {
            key: metadata[key]
            for key in ("labels", "annotations", "ownerReferences")
            if key in metadata
        }
    }
    for key in ("spec", "data", "type"):
        if key in obj:
            view[key] = obj[key]
    return view


def prune(live: Any, last: Any, desired: Any) -> None:
    """
    Drop fields from live that the last apply set and desired no longer has.

    Fields the operator never wrote, such as cluster IPs, are left alone.
    Lists are only walked when they keep their length, since merge replaces
    them wholesale otherwise.
    """
    if isinstance(live, dict) and isinstance(last, dict) and isinstance(desired, dict):
        for key, value in last.items():
            if key not in live:
                continue
            if key not in desired:
                del live[key]
            else:
                prune(live[key], value, desired[key])
    elif isinstance(live, list) and isinstance(last, list) and isinstance(desired, list):
        if len(live) == len(desired):
            for l, p, d in zip(live, last, desired):
                prune(l, p, d)


def last_applied(obj: dict[str, Any]) -> dict[str, Any]:
    """The owned fields recorded on a live object, empty if there is no record."""
    annotations = obj.get("metadata", {}).get("annotations") or {}
    raw = annotations.get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return {}
    try:
        record = json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring unreadable {LAST_APPLIED_ANNOTATION} on {_format(object_identity(obj))}")
        return {}
    return record if isinstance(record, dict) else {}


def annotate(desired: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of desired carrying the record of its owned fields.

    Only the key names of data are recorded so that secret values never end
    up in an annotation.
    """
    body = copy.deepcopy(desired)
    view = owned_view(desired)
    if isinstance(view.get("data"), dict):
        view["data"] = {key: "" for key in view["data"]}
    record = json.dumps(view, sort_keys=True, separators=(",", ":"))
    annotations = body.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[LAST_APPLIED_ANNOTATION] = record
    return body


def _lookup(obj: dict[str, Any], path: tuple[str, ...]) -> Any:
    for part in path:
        if not isinstance(obj, dict) or part not in obj:
            return None
        obj = obj[part]
    return obj


def needs_recreate(desired: dict[str, Any], live: dict[str, Any]) -> bool:
    for path in IMMUTABLE_FIELDS.get(desired["kind"], ()):
        wanted = _lookup(desired, path)
        if wanted is not None and not is_subset(wanted, _lookup(live, path)):
            return True
    return False


def is_owned_by(obj: dict[str, Any], uid: str) -> bool:
    if not uid:
        return True
    refs = obj.get("metadata", {}).get("ownerReferences") or []
    return any(ref.get("uid") == uid for ref in refs)


def _format(key: ObjectKey) -> str:
    return "/".join(key)


@dataclass
class ApplyResult:
    """Outcome of applying one component's children."""

    component: str
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: list[ApplyError] = field(default_factory=list)
    # Objects waiting for a deletion to finish before they can be created
    pending: list[str] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    @property
    def hard_errors(self) -> list[ApplyError]:
        return [e for e in self.errors if not e.retryable]

    @property
    def retryable_errors(self) -> list[ApplyError]:
        return [e for e in self.errors if e.retryable]

    @property
    def workload_changed(self) -> bool:
        return any(
            identity.split("/", 1)[0] in WORKLOAD_KINDS
            for identity in (*self.created, *self.updated)
        )


class ReconcileApplier:
    """
    Computes and executes create/update/delete operations for child objects.

    Objects are matched by kind, namespace and name. Each object is applied
    on its own; a failing object is recorded and its siblings still proceed.
    """

    def __init__(self, client):
        """
        Initialize applier.

        Args:
            client: Kubernetes client
        """
        self.client = client

    async def live_objects(
        self, ctx, cluster: VMCluster, component: str
    ) -> dict[ObjectKey, dict[str, Any]]:
        """
        Fetch the live children of a component by owner labels and reference.

        Raises:
            ApplyError: If a kind could not be listed
        """
        selector = format_label_selector(cluster.selector_labels(component))
        live: dict[ObjectKey, dict[str, Any]] = {}
        for kind in MANAGED_KINDS:
            try:
                objects = await ctx.call(self.client.list(kind, cluster.namespace, selector))
            except (ApiException, DeadlineExceededError) as e:
                raise ApplyError(kind, cluster.namespace, "*", e) from e
            for obj in objects:
                obj.setdefault("kind", kind)
                if is_owned_by(obj, cluster.metadata.uid):
                    live[object_identity(obj)] = obj
        return live

    async def apply(
        self,
        ctx,
        cluster: VMCluster,
        component: str,
        desired: list[dict[str, Any]],
    ) -> ApplyResult:
        """
        Converge the live children of a component to the desired set.

        Args:
            ctx: Current reconcile context
            cluster: Owning cluster
            component: Component name
            desired: Desired child bodies, empty to remove the component

        Returns:
            ApplyResult listing performed operations and per-object errors
        """
        result = ApplyResult(component=component)
        try:
            live = await self.live_objects(ctx, cluster, component)
        except ApplyError as e:
            result.errors.append(e)
            return result

        wanted = {object_identity(obj): obj for obj in desired}
        order = {kind: i for i, kind in enumerate(MANAGED_KINDS)}

        for key in sorted(wanted, key=lambda k: (order.get(k[0], len(order)), k)):
            try:
                await self._apply_one(ctx, wanted[key], live.get(key), result)
            except (ApiException, DeadlineExceededError) as e:
                logger.warning(f"Failed to apply {_format(key)}: {e}")
                result.errors.append(ApplyError(key[0], key[1], key[2], e))

        stale = [key for key in live if key not in wanted]
        for key in sorted(stale, key=lambda k: (order.get(k[0], len(order)), k), reverse=True):
            try:
                await self._delete(ctx, key)
                result.deleted.append(_format(key))
            except (ApiException, DeadlineExceededError) as e:
                logger.warning(f"Failed to delete {_format(key)}: {e}")
                result.errors.append(ApplyError(key[0], key[1], key[2], e))

        if result.writes:
            logger.info(
                f"Applied {component} of {cluster.key}: {len(result.created)} created, "
                f"{len(result.updated)} updated, {len(result.deleted)} deleted"
            )
        return result

    async def _apply_one(
        self,
        ctx,
        desired: dict[str, Any],
        live: Optional[dict[str, Any]],
        result: ApplyResult,
    ) -> None:
        key = object_identity(desired)
        kind = desired["kind"]
        desired = annotate(desired)

        if live is None:
            await ctx.call(self.client.create(kind, desired))
            logger.info(f"Created {_format(key)}")
            result.created.append(_format(key))
            return

        if live.get("metadata", {}).get("deletionTimestamp"):
            logger.info(f"{_format(key)} is still being deleted, will create it on a later pass")
            result.pending.append(_format(key))
            return

        if needs_recreate(desired, live):
            logger.info(f"Recreating {_format(key)}: immutable fields changed")
            await self._delete(ctx, key)
            try:
                await ctx.call(self.client.create(kind, desired))
            except ApiException as e:
                if e.status != 409:
                    raise
                # Background deletion has not finished yet
                logger.info(f"{_format(key)} is still being deleted, will create it on a later pass")
                result.pending.append(_format(key))
                return
            result.updated.append(_format(key))
            return

        view = owned_view(desired)
        if is_subset(view, live):
            result.unchanged.append(_format(key))
            return

        body = copy.deepcopy(live)
        prune(body, last_applied(live), view)
        body = merge(body, view)
        body.pop("status", None)
        await ctx.call(self.client.replace(kind, body))
        logger.info(f"Updated {_format(key)}")
        result.updated.append(_format(key))

    async def _delete(self, ctx, key: ObjectKey) -> None:
        kind, namespace, name = key
        try:
            await ctx.call(self.client.delete(kind, namespace, name))
            logger.info(f"Deleted {_format(key)}")
        except ApiException as e:
            if e.status != 404:
                raise
