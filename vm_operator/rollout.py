"""Rollout tracking for component workloads."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from kubernetes.client.exceptions import ApiException

from .config import Settings
from .errors import OperatorError, ReadinessTimeoutError
from .models import ComponentSpec, ComponentStatus, UpdateStatus, VMCluster
from .synthesizer import PROFILES

logger = logging.getLogger(__name__)

# Higher wins when component states are folded into one.
SEVERITY = {
    UpdateStatus.OPERATIONAL: 0,
    UpdateStatus.PAUSED: 1,
    UpdateStatus.EXPANDING: 2,
    UpdateStatus.FAILED: 3,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def aggregate(states: Iterable[UpdateStatus]) -> UpdateStatus:
    """
    Fold component states into the state of the whole cluster.

    Failed beats expanding, expanding beats paused, paused beats operational.
    No components at all count as operational.
    """
    return max(states, key=SEVERITY.__getitem__, default=UpdateStatus.OPERATIONAL)


@dataclass(frozen=True)
class WorkloadObservation:
    """Replica counters read from a StatefulSet or Deployment."""

    exists: bool = True
    generation: int = 0
    observed_generation: int = 0
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "WorkloadObservation":
        status = obj.get("status") or {}
        return cls(
            generation=obj.get("metadata", {}).get("generation") or 0,
            observed_generation=status.get("observedGeneration") or 0,
            replicas=status.get("replicas") or 0,
            ready_replicas=status.get("readyReplicas") or 0,
            updated_replicas=status.get("updatedReplicas") or 0,
        )

    @classmethod
    def missing(cls) -> "WorkloadObservation":
        return cls(exists=False)


def is_ready(observation: WorkloadObservation, desired_replicas: int) -> bool:
    """A workload is ready once the controller saw its latest spec and every replica is ready and updated."""
    return (
        observation.exists
        and observation.observed_generation >= observation.generation
        and observation.ready_replicas == desired_replicas
        and observation.updated_replicas == desired_replicas
    )


def expanding_since(
    previous: Optional[ComponentStatus], spec_hash: str, changed: bool, now: datetime
) -> datetime:
    """
    Start of the current expansion.

    The clock restarts when the spec or workload changed, or when the
    component was settled before; otherwise the persisted start is kept so
    that the readiness timeout spans reconcile passes.
    """
    if (
        previous is None
        or changed
        or previous.spec_hash != spec_hash
        or previous.expanding_since is None
        or previous.update_status in (UpdateStatus.OPERATIONAL, UpdateStatus.PAUSED)
    ):
        return now
    return previous.expanding_since


def transition(
    previous: Optional[ComponentStatus],
    *,
    desired_replicas: int,
    observation: WorkloadObservation,
    paused: bool,
    spec_hash: str,
    changed: bool,
    now: datetime,
    ready_timeout: float,
    error: Optional[OperatorError] = None,
) -> ComponentStatus:
    """
    Compute the next state of a component.

    Args:
        previous: Persisted component status, None on first sight
        desired_replicas: Declared replica count
        observation: Current workload counters
        paused: Whether the component or cluster is paused
        spec_hash: Fingerprint of the component spec
        changed: Whether the workload was created or updated in this pass
        now: Current time
        ready_timeout: Seconds a component may stay expanding
        error: Failure that puts the component into the failed state

    Returns:
        New component status
    """
    since: Optional[datetime] = None
    reason: Optional[str] = None

    if error is not None:
        state = UpdateStatus.FAILED
        reason = str(error)
        since = previous.expanding_since if previous else None
    elif paused:
        state = UpdateStatus.PAUSED
    elif is_ready(observation, desired_replicas):
        state = UpdateStatus.OPERATIONAL
    else:
        since = expanding_since(previous, spec_hash, changed, now)
        waited = (now - since).total_seconds()
        if waited > ready_timeout:
            state = UpdateStatus.FAILED
            reason = f"not ready after {waited:.0f}s"
        else:
            state = UpdateStatus.EXPANDING

    if previous is not None and previous.update_status == state and previous.last_transition_time:
        last_transition = previous.last_transition_time
    else:
        last_transition = now

    return ComponentStatus(
        update_status=state,
        desired_replicas=desired_replicas,
        replicas=observation.replicas,
        ready_replicas=observation.ready_replicas,
        updated_replicas=observation.updated_replicas,
        expanding_since=since,
        last_transition_time=last_transition,
        spec_hash=spec_hash,
        reason=reason,
    )


@dataclass
class RolloutDecision:
    """Evaluated component state plus what the engine should do about it."""

    status: ComponentStatus
    requeue_after: Optional[float] = None
    error: Optional[OperatorError] = None


class RolloutTracker:
    """
    Observes component workloads and decides their rollout state.

    Readiness is polled for a bounded time within a pass. A component that
    is still not ready afterwards stays expanding and is re-checked on a
    later pass until the overall readiness timeout runs out.
    """

    def __init__(
        self,
        client,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        """
        Initialize tracker.

        Args:
            client: Kubernetes client
            settings: Operator settings
            clock: Wall clock used for persisted timestamps
            sleep: Coroutine used to wait between polls
        """
        self.client = client
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

    async def observe(self, ctx, cluster: VMCluster, component: str) -> WorkloadObservation:
        """
        Read the workload counters of a component.

        Raises:
            ApiException: If the workload could not be read
        """
        kind = PROFILES[component].workload
        try:
            obj = await ctx.call(
                self.client.get(kind, cluster.namespace, cluster.prefixed_name(component))
            )
        except ApiException as e:
            if e.status == 404:
                return WorkloadObservation.missing()
            raise
        return WorkloadObservation.from_object(obj)

    async def wait_ready(
        self,
        ctx,
        cluster: VMCluster,
        component: str,
        desired_replicas: int,
        since: datetime,
    ) -> WorkloadObservation:
        """
        Poll a workload until it is ready or the wait budget is spent.

        The budget is the smallest of the per-pass readiness wait, the time
        left in the pass and the time left until the overall timeout.

        Returns:
            Last observation
        """
        interval = self.settings.pod_wait_ready_interval_check
        overall_left = self.settings.app_ready_timeout - (self.clock() - since).total_seconds()
        budget = min(self.settings.pod_wait_ready_timeout, ctx.remaining(), overall_left)
        deadline = time.monotonic() + budget

        while True:
            observation = await self.observe(ctx, cluster, component)
            if is_ready(observation, desired_replicas):
                return observation
            if deadline - time.monotonic() < interval:
                return observation
            logger.debug(
                f"Waiting for {cluster.prefixed_name(component)}: "
                f"{observation.ready_replicas}/{desired_replicas} ready"
            )
            await self.sleep(interval)

    async def evaluate(
        self,
        ctx,
        cluster: VMCluster,
        component: str,
        spec: ComponentSpec,
        previous: Optional[ComponentStatus],
        changed: bool,
        error: Optional[OperatorError] = None,
    ) -> RolloutDecision:
        """
        Decide the state of a component after its children were applied.

        Args:
            ctx: Current reconcile context
            cluster: Owning cluster
            component: Component name
            spec: Component spec
            previous: Persisted component status
            changed: Whether the workload was written in this pass
            error: Apply or input failure of this pass

        Returns:
            RolloutDecision

        Raises:
            ApiException: If the workload could not be read
        """
        spec_hash = spec.fingerprint()
        paused = cluster.is_paused(component)

        if error is not None:
            try:
                observation = await self.observe(ctx, cluster, component)
            except (ApiException, OperatorError) as e:
                logger.debug(f"Could not observe {cluster.prefixed_name(component)}: {e}")
                observation = WorkloadObservation.missing()
        elif paused:
            observation = await self.observe(ctx, cluster, component)
        else:
            since = expanding_since(previous, spec_hash, changed, self.clock())
            observation = await self.wait_ready(ctx, cluster, component, spec.replica_count, since)

        status = transition(
            previous,
            desired_replicas=spec.replica_count,
            observation=observation,
            paused=paused,
            spec_hash=spec_hash,
            changed=changed,
            now=self.clock(),
            ready_timeout=self.settings.app_ready_timeout,
            error=error,
        )

        decision = RolloutDecision(status=status, error=error)
        if status.update_status == UpdateStatus.EXPANDING:
            decision.requeue_after = self.settings.pod_wait_ready_interval_check
        elif status.update_status == UpdateStatus.FAILED and error is None:
            waited = (self.clock() - status.expanding_since).total_seconds()
            decision.error = ReadinessTimeoutError(component, waited)
            status.reason = str(decision.error)

        if previous is None or previous.update_status != status.update_status:
            logger.info(
                f"{cluster.key} {component}: "
                f"{previous.update_status.value if previous else 'new'} -> {status.update_status.value}"
            )
        return decision
