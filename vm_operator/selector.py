"""Label and namespace selector resolution."""

import logging
from typing import Any, Iterable, Optional

from kubernetes.client.exceptions import ApiException

from .errors import InvalidSelectorError, SelectionError
from .models import LabelSelector, VMAgentSpec, VMAlertSpec

logger = logging.getLogger(__name__)

SERVICE_SCRAPE = "VMServiceScrape"
POD_SCRAPE = "VMPodScrape"
RULE = "VMRule"

OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def object_key(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata", {})
    return f"{metadata.get('namespace', '')}/{metadata['name']}"


def validate(selector: Optional[LabelSelector]) -> None:
    """
    Check that every expression of a selector uses a known operator.

    Raises:
        InvalidSelectorError: On the first unknown operator
    """
    if selector is None:
        return
    for requirement in selector.match_expressions:
        if requirement.operator not in OPERATORS:
            raise InvalidSelectorError(requirement.key, requirement.operator)


def matches(selector: Optional[LabelSelector], labels: Optional[dict[str, str]]) -> bool:
    """
    Evaluate a label selector against a label set.

    An absent selector matches nothing, an empty one matches everything.

    Raises:
        InvalidSelectorError: If an expression uses an unknown operator
    """
    if selector is None:
        return False
    labels = labels or {}

    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False

    for requirement in selector.match_expressions:
        operator = requirement.operator
        present = requirement.key in labels
        if operator == "In":
            if not present or labels[requirement.key] not in requirement.values:
                return False
        elif operator == "NotIn":
            if present and labels[requirement.key] in requirement.values:
                return False
        elif operator == "Exists":
            if not present:
                return False
        elif operator == "DoesNotExist":
            if present:
                return False
        else:
            raise InvalidSelectorError(requirement.key, operator)
    return True


def select_namespaces(
    namespaces: Iterable[dict[str, Any]], selector: Optional[LabelSelector]
) -> list[str]:
    """Return the names of the namespaces matched by the selector."""
    return sorted(
        ns["metadata"]["name"]
        for ns in namespaces
        if matches(selector, ns["metadata"].get("labels"))
    )


def select_objects(
    objects: Iterable[dict[str, Any]], selector: Optional[LabelSelector]
) -> dict[str, dict[str, Any]]:
    """Return the objects matched by the selector, keyed by namespace/name."""
    return {
        object_key(obj): obj
        for obj in objects
        if matches(selector, obj.get("metadata", {}).get("labels"))
    }


async def resolve(
    client,
    ctx,
    kind: str,
    label_selector: Optional[LabelSelector],
    namespace_selector: Optional[LabelSelector],
    own_namespace: str,
) -> dict[str, dict[str, Any]]:
    """
    Resolve a selector pair into the matching objects of one kind.

    Without a namespace selector only the owner's namespace is searched. With
    one, namespaces are resolved first and every allowed namespace is listed
    separately.

    Args:
        client: Kubernetes client
        ctx: Current reconcile context
        kind: Kind of the selected objects
        label_selector: Object label selector
        namespace_selector: Namespace label selector
        own_namespace: Namespace of the owning resource

    Returns:
        Mapping of namespace/name to object

    Raises:
        SelectionError: If listing namespaces or objects failed, or a
            selector is invalid
    """
    if label_selector is None and namespace_selector is None:
        return {}
    if label_selector is None:
        label_selector = LabelSelector()

    # Reject bad selectors even when there is nothing to match them against
    try:
        validate(namespace_selector)
    except InvalidSelectorError as e:
        raise SelectionError("Namespace", None, e) from e
    try:
        validate(label_selector)
    except InvalidSelectorError as e:
        raise SelectionError(kind, own_namespace, e) from e

    if namespace_selector is None:
        namespaces = [own_namespace]
    else:
        try:
            candidates = await ctx.call(client.list("Namespace"))
        except ApiException as e:
            raise SelectionError("Namespace", None, e) from e
        namespaces = select_namespaces(candidates, namespace_selector)
        if not namespaces:
            logger.debug(f"No namespaces matched selector for {kind}")
            return {}

    selected: dict[str, dict[str, Any]] = {}
    for namespace in namespaces:
        try:
            objects = await ctx.call(client.list(kind, namespace))
        except ApiException as e:
            raise SelectionError(kind, namespace, e) from e
        selected.update(select_objects(objects, label_selector))

    logger.debug(f"Selected {len(selected)} {kind} objects across {len(namespaces)} namespaces")
    return selected


async def select_service_scrapes(client, ctx, spec: VMAgentSpec, namespace: str):
    return await resolve(
        client, ctx, SERVICE_SCRAPE,
        spec.service_scrape_selector, spec.service_scrape_namespace_selector, namespace,
    )


async def select_pod_scrapes(client, ctx, spec: VMAgentSpec, namespace: str):
    return await resolve(
        client, ctx, POD_SCRAPE,
        spec.pod_scrape_selector, spec.pod_scrape_namespace_selector, namespace,
    )


async def select_rules(client, ctx, spec: VMAlertSpec, namespace: str):
    return await resolve(
        client, ctx, RULE, spec.rule_selector, spec.rule_namespace_selector, namespace,
    )
