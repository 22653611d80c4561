"""VictoriaMetrics cluster operator - reconciliation engine for VMCluster resources."""

from .applier import ApplyResult, ReconcileApplier
from .cluster import ClusterConnection, KubeClient
from .config import Settings, get_settings
from .context import ReconcileContext
from .credentials import CredentialCache, get_credential
from .engine import OrchestrationEngine, ReconcileResult
from .errors import (
    ApplyError,
    CredentialError,
    DeadlineExceededError,
    InvalidSelectorError,
    InvalidValueError,
    MissingKeyError,
    MissingObjectError,
    OperatorError,
    ReadinessTimeoutError,
    SelectionError,
)
from .models import (
    COMPONENT_ORDER,
    ComponentStatus,
    LabelSelector,
    UpdateStatus,
    VMCluster,
    VMClusterSpec,
    VMClusterStatus,
    WatchEvent,
)
from .queue import WorkQueue
from .rollout import RolloutTracker, aggregate
from .selector import matches, resolve
from .synthesizer import synthesize
from .watch import Controller, ResourceWatcher

__version__ = "0.1.0"

__all__ = [
    # Cluster access
    "ClusterConnection",
    "KubeClient",
    # Configuration
    "Settings",
    "get_settings",
    # Reconcile
    "OrchestrationEngine",
    "ReconcileResult",
    "ReconcileContext",
    "ReconcileApplier",
    "ApplyResult",
    "RolloutTracker",
    "aggregate",
    "synthesize",
    # Inputs
    "CredentialCache",
    "get_credential",
    "matches",
    "resolve",
    # Scheduling
    "WorkQueue",
    "Controller",
    "ResourceWatcher",
    # Models
    "COMPONENT_ORDER",
    "ComponentStatus",
    "LabelSelector",
    "UpdateStatus",
    "VMCluster",
    "VMClusterSpec",
    "VMClusterStatus",
    "WatchEvent",
    # Errors
    "OperatorError",
    "DeadlineExceededError",
    "SelectionError",
    "CredentialError",
    "MissingObjectError",
    "MissingKeyError",
    "InvalidValueError",
    "InvalidSelectorError",
    "ApplyError",
    "ReadinessTimeoutError",
]
