"""Orchestration of one reconcile pass over a cluster."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from kubernetes.client.exceptions import ApiException

from .applier import ReconcileApplier
from .config import Settings
from .context import ReconcileContext
from .credentials import get_secret_value, resolve_basic_auth, resolve_tls
from .errors import (
    CredentialError,
    DeadlineExceededError,
    OperatorError,
    SelectionError,
)
from .models import (
    COMPONENT_ORDER,
    VMAGENT,
    VMALERT,
    VMALERTMANAGER,
    ComponentSpec,
    ComponentStatus,
    SecretKeySelector,
    UpdateStatus,
    VMCluster,
    VMClusterStatus,
)
from .rollout import RolloutTracker, aggregate, utcnow
from .selector import (
    POD_SCRAPE,
    RULE,
    SERVICE_SCRAPE,
    select_pod_scrapes,
    select_rules,
    select_service_scrapes,
)
from .synthesizer import ResolvedInputs, endpoints_of, synthesize

logger = logging.getLogger(__name__)

CLUSTER_KIND = "VMCluster"


@dataclass
class ReconcileResult:
    """
    Outcome of a reconcile pass as seen by the work queue.

    Attributes:
        requeue: Whether the cluster should be reconciled again
        requeue_after: Delay before the next pass, None to use error backoff
        update_status: Composite state written to the cluster status
        error: First failure of the pass
    """

    requeue: bool = False
    requeue_after: Optional[float] = None
    update_status: Optional[UpdateStatus] = None
    error: Optional[BaseException] = None

    @property
    def backoff(self) -> bool:
        return self.requeue and self.requeue_after is None


@dataclass
class _PassOutcome:
    requeue_after: Optional[float] = None
    errors: list[BaseException] = field(default_factory=list)

    def requeue(self, delay: float) -> None:
        if self.requeue_after is None or delay < self.requeue_after:
            self.requeue_after = delay

    def fail(self, error: BaseException) -> None:
        self.errors.append(error)


class OrchestrationEngine:
    """
    Drives the reconcile of a cluster through its components in fixed order.

    For each component the engine resolves selectors and credentials,
    synthesizes the desired children, hands them to the applier and lets the
    rollout tracker judge the result. A hard apply failure stops processing
    of the components that follow, since they may depend on it.
    """

    def __init__(
        self,
        client,
        settings: Settings,
        synthesizer: Callable[..., Any] = synthesize,
        clock: Callable[[], datetime] = utcnow,
        tracker: Optional[RolloutTracker] = None,
    ):
        """
        Initialize engine.

        Args:
            client: Kubernetes client
            settings: Operator settings
            synthesizer: Builds desired children for a component
            clock: Wall clock used for status timestamps
            tracker: Rollout tracker, built from client and settings if omitted
        """
        self.client = client
        self.settings = settings
        self.synthesizer = synthesizer
        self.clock = clock
        self.applier = ReconcileApplier(client)
        self.tracker = tracker or RolloutTracker(client, settings, clock=clock)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one reconcile pass for a cluster.

        Args:
            namespace: Cluster namespace
            name: Cluster name

        Returns:
            ReconcileResult telling the queue whether and when to come back
        """
        ctx = ReconcileContext.start(self.settings.reconcile_timeout)
        try:
            obj = await ctx.call(self.client.get(CLUSTER_KIND, namespace, name))
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{namespace}/{name} no longer exists, nothing to do")
                return ReconcileResult()
            logger.error(f"Failed to read {namespace}/{name}: {e}")
            return ReconcileResult(requeue=True, error=e)
        except DeadlineExceededError as e:
            return ReconcileResult(requeue=True, error=e)

        cluster = VMCluster.from_object(obj)
        try:
            return await self._reconcile(ctx, cluster)
        except DeadlineExceededError as e:
            logger.warning(f"Reconcile of {cluster.key} ran out of time")
            return ReconcileResult(requeue=True, error=e)

    async def _reconcile(self, ctx: ReconcileContext, cluster: VMCluster) -> ReconcileResult:
        previous = cluster.status or VMClusterStatus()
        outcome = _PassOutcome()
        statuses: dict[str, ComponentStatus] = {}
        endpoints: dict[str, str] = {}
        aborted_by: Optional[str] = None

        for component in COMPONENT_ORDER:
            spec = cluster.component(component)
            prev = previous.components.get(component)

            if spec is None:
                await self._remove(ctx, cluster, component, outcome)
                continue

            if aborted_by is not None:
                if prev is not None:
                    statuses[component] = prev
                logger.info(f"Skipping {component} of {cluster.key}: {aborted_by} failed")
                continue

            status, hard_failure = await self._reconcile_component(
                ctx, cluster, component, spec, prev, endpoints, outcome
            )
            statuses[component] = status
            if hard_failure:
                aborted_by = component

        composite = aggregate(s.update_status for s in statuses.values())
        status = self._cluster_status(cluster, previous, composite, statuses)

        try:
            await self._write_status(ctx, cluster, previous, status)
        except ApiException as e:
            logger.error(f"Failed to update status of {cluster.key}: {e}")
            outcome.fail(e)

        if outcome.errors:
            logger.warning(f"Reconcile of {cluster.key} finished with errors: {outcome.errors[0]}")
            return ReconcileResult(
                requeue=True, update_status=composite, error=outcome.errors[0]
            )
        if outcome.requeue_after is not None:
            return ReconcileResult(
                requeue=True, requeue_after=outcome.requeue_after, update_status=composite
            )
        logger.info(f"✓ {cluster.key} reconciled: {composite.value}")
        return ReconcileResult(update_status=composite)

    async def _reconcile_component(
        self,
        ctx: ReconcileContext,
        cluster: VMCluster,
        component: str,
        spec: ComponentSpec,
        previous: Optional[ComponentStatus],
        endpoints: dict[str, str],
        outcome: _PassOutcome,
    ) -> tuple[ComponentStatus, bool]:
        """
        Reconcile one component.

        Returns:
            Component status and whether a hard apply failure occurred
        """
        if cluster.is_paused(component):
            endpoints.update(endpoints_of(cluster, component))
            try:
                decision = await self.tracker.evaluate(ctx, cluster, component, spec, previous, False)
            except ApiException as e:
                error = OperatorError(f"failed to observe {component}: {e}")
                outcome.fail(error)
                return await self._failed(ctx, cluster, component, spec, previous, error), False
            return decision.status, False

        try:
            inputs = await self.resolve_inputs(ctx, cluster, component, spec)
        except (CredentialError, SelectionError) as e:
            logger.warning(f"Cannot build {component} of {cluster.key}: {e}")
            outcome.fail(e)
            return await self._failed(ctx, cluster, component, spec, previous, e), False
        except ApiException as e:
            error = OperatorError(f"failed to resolve inputs of {component}: {e}")
            outcome.fail(error)
            return await self._failed(ctx, cluster, component, spec, previous, error), False

        children = self.synthesizer(cluster, component, spec, inputs, dict(endpoints))
        endpoints.update(children.endpoints)

        result = await self.applier.apply(ctx, cluster, component, children.objects)
        if result.hard_errors:
            error = result.hard_errors[0]
            outcome.fail(error)
            return await self._failed(ctx, cluster, component, spec, previous, error), True
        if result.retryable_errors or result.pending:
            outcome.requeue(self.settings.conflict_requeue)

        try:
            decision = await self.tracker.evaluate(
                ctx, cluster, component, spec, previous, result.workload_changed
            )
        except ApiException as e:
            error = OperatorError(f"failed to observe {component}: {e}")
            outcome.fail(error)
            return await self._failed(ctx, cluster, component, spec, previous, error), False

        if decision.error is not None:
            outcome.fail(decision.error)
        elif decision.requeue_after is not None:
            outcome.requeue(decision.requeue_after)
        return decision.status, False

    async def _failed(self, ctx, cluster, component, spec, previous, error) -> ComponentStatus:
        decision = await self.tracker.evaluate(
            ctx, cluster, component, spec, previous, False, error=error
        )
        return decision.status

    async def _remove(
        self, ctx: ReconcileContext, cluster: VMCluster, component: str, outcome: _PassOutcome
    ) -> None:
        """Delete the children of a component that is no longer declared."""
        result = await self.applier.apply(ctx, cluster, component, [])
        if result.deleted:
            logger.info(f"Removed {component} of {cluster.key}")
        for error in result.errors:
            outcome.fail(error)

    async def resolve_inputs(
        self, ctx: ReconcileContext, cluster: VMCluster, component: str, spec: ComponentSpec
    ) -> ResolvedInputs:
        """
        Resolve the selections and credentials a component needs.

        Raises:
            SelectionError: If a selector could not be evaluated
            CredentialError: If a referenced credential is missing
        """
        inputs = ResolvedInputs()
        namespace = cluster.namespace

        if component == VMAGENT:
            inputs.selections[SERVICE_SCRAPE] = await select_service_scrapes(
                self.client, ctx, spec, namespace
            )
            inputs.selections[POD_SCRAPE] = await select_pod_scrapes(
                self.client, ctx, spec, namespace
            )
            for i, remote in enumerate(spec.remote_write):
                prefix = f"remote-write-{i}"
                resolved = await resolve_basic_auth(self.client, ctx, namespace, remote.basic_auth)
                resolved.update(await resolve_tls(self.client, ctx, namespace, remote.tls_config))
                if remote.bearer_token_secret is not None:
                    resolved["bearer-token"] = await get_secret_value(
                        self.client, ctx, namespace, remote.bearer_token_secret
                    )
                for item, value in resolved.items():
                    inputs.files[f"{prefix}-{item}"] = value

        elif component == VMALERTMANAGER:
            if spec.config_secret:
                selector = SecretKeySelector(name=spec.config_secret, key=spec.config_key)
                inputs.files["alertmanager.yaml"] = await get_secret_value(
                    self.client, ctx, namespace, selector
                )
            for item, value in (await resolve_tls(self.client, ctx, namespace, spec.tls_config)).items():
                inputs.files[f"tls-{item}"] = value

        elif component == VMALERT:
            inputs.selections[RULE] = await select_rules(self.client, ctx, spec, namespace)
            auth = await resolve_basic_auth(self.client, ctx, namespace, spec.datasource_basic_auth)
            for item, value in auth.items():
                inputs.files[f"datasource-{item}"] = value

        return inputs

    def _cluster_status(
        self,
        cluster: VMCluster,
        previous: VMClusterStatus,
        composite: UpdateStatus,
        statuses: dict[str, ComponentStatus],
    ) -> VMClusterStatus:
        reason = None
        for component in COMPONENT_ORDER:
            status = statuses.get(component)
            if status is not None and status.update_status == composite and status.reason:
                reason = f"{component}: {status.reason}"
                break

        if previous.update_status == composite and previous.last_transition_time:
            last_transition = previous.last_transition_time
        else:
            last_transition = self.clock()

        return VMClusterStatus(
            update_status=composite,
            reason=reason,
            last_transition_time=last_transition,
            observed_generation=cluster.metadata.generation,
            components=statuses,
        )

    async def _write_status(
        self,
        ctx: ReconcileContext,
        cluster: VMCluster,
        previous: VMClusterStatus,
        status: VMClusterStatus,
    ) -> None:
        """Persist the status once per pass, skipping writes that change nothing."""
        body = status.model_dump(by_alias=True, mode="json")
        if cluster.status is not None and body == previous.model_dump(by_alias=True, mode="json"):
            return
        # Merge patch: null removes components that are no longer declared.
        for component in previous.components:
            if component not in status.components:
                body["components"][component] = None
        await ctx.call(
            self.client.patch_status(CLUSTER_KIND, cluster.namespace, cluster.name, body)
        )
        logger.debug(f"Status of {cluster.key} set to {status.update_status.value}")
