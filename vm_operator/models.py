"""Custom resource models for the VictoriaMetrics cluster operator."""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

VMSTORAGE = "vmstorage"
VMSELECT = "vmselect"
VMINSERT = "vminsert"
VMAGENT = "vmagent"
VMALERTMANAGER = "vmalertmanager"
VMALERT = "vmalert"

# Storage first: select, insert and the consumers behind them are wired to the
# endpoints of the components processed before them.
COMPONENT_ORDER = (VMSTORAGE, VMSELECT, VMINSERT, VMAGENT, VMALERTMANAGER, VMALERT)

MANAGED_BY = "vm-operator"


class _Model(BaseModel):
    """Base model reading and writing camelCase API objects."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class UpdateStatus(str, Enum):
    """Rollout phase of a component or of the whole cluster."""

    OPERATIONAL = "operational"
    EXPANDING = "expanding"
    PAUSED = "paused"
    FAILED = "failed"


class LabelSelectorRequirement(_Model):
    """Single set-based label requirement."""

    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(_Model):
    """Label query; an empty selector matches everything."""

    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)


class SecretKeySelector(_Model):
    """Reference to a key of a Secret in the resource namespace."""

    name: str
    key: str


class ConfigMapKeySelector(_Model):
    """Reference to a key of a ConfigMap in the resource namespace."""

    name: str
    key: str


class SecretOrConfigMap(_Model):
    """Value taken either from a Secret or from a ConfigMap."""

    secret: Optional[SecretKeySelector] = None
    config_map: Optional[ConfigMapKeySelector] = None


class TLSConfig(_Model):
    """TLS client settings."""

    ca: Optional[SecretOrConfigMap] = None
    cert: Optional[SecretOrConfigMap] = None
    key_secret: Optional[SecretKeySelector] = None
    server_name: Optional[str] = None
    insecure_skip_verify: bool = False


class BasicAuth(_Model):
    """Basic auth credentials stored in secrets."""

    username: Optional[SecretKeySelector] = None
    password: Optional[SecretKeySelector] = None


class RemoteWriteSpec(_Model):
    """Remote write target of vmagent."""

    url: str
    basic_auth: Optional[BasicAuth] = None
    tls_config: Optional[TLSConfig] = None
    bearer_token_secret: Optional[SecretKeySelector] = None


class EmbeddedObjectMetadata(_Model):
    """Subset of object metadata embedded into a spec."""

    name: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class AdditionalServiceSpec(_Model):
    """Extra Service exposing a component."""

    metadata: EmbeddedObjectMetadata = Field(default_factory=EmbeddedObjectMetadata)
    use_as_default: bool = False
    spec: dict[str, Any] = Field(default_factory=dict)


class ImageSpec(_Model):
    """Container image coordinates."""

    repository: Optional[str] = None
    tag: Optional[str] = None
    pull_policy: Optional[str] = None


class ComponentSpec(_Model):
    """Settings shared by all cluster components."""

    replica_count: int = 1
    revision_history_limit_count: Optional[int] = None
    image: ImageSpec = Field(default_factory=ImageSpec)
    extra_args: dict[str, str] = Field(default_factory=dict)
    paused: bool = False
    service_spec: Optional[AdditionalServiceSpec] = None
    resources: dict[str, Any] = Field(default_factory=dict)
    pod_metadata: Optional[EmbeddedObjectMetadata] = None

    def fingerprint(self) -> str:
        """Stable hash of the declared component spec."""
        payload = self.model_dump_json(by_alias=True, exclude_none=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class VMStorageSpec(ComponentSpec):
    """Storage tier."""

    storage_data_path: str = "/vm-data"


class VMSelectSpec(ComponentSpec):
    """Query tier."""

    cluster_native_port: str = ""


class VMInsertSpec(ComponentSpec):
    """Ingestion tier."""

    cluster_native_port: str = ""


class VMAgentSpec(ComponentSpec):
    """Scraping agent discovering its targets through selectors."""

    service_scrape_selector: Optional[LabelSelector] = None
    service_scrape_namespace_selector: Optional[LabelSelector] = None
    pod_scrape_selector: Optional[LabelSelector] = None
    pod_scrape_namespace_selector: Optional[LabelSelector] = None
    remote_write: list[RemoteWriteSpec] = Field(default_factory=list)


class VMAlertmanagerSpec(ComponentSpec):
    """Alert routing component configured from a secret."""

    config_secret: Optional[str] = None
    config_key: str = "alertmanager.yaml"
    tls_config: Optional[TLSConfig] = None


class VMAlertSpec(ComponentSpec):
    """Rule evaluation component discovering rules through selectors."""

    rule_selector: Optional[LabelSelector] = None
    rule_namespace_selector: Optional[LabelSelector] = None
    datasource_basic_auth: Optional[BasicAuth] = None


class VMClusterSpec(_Model):
    """Desired state of a cluster; every component is optional."""

    paused: bool = False
    retention_period: str = "1"
    image_pull_secrets: list[dict[str, str]] = Field(default_factory=list)
    vmstorage: Optional[VMStorageSpec] = None
    vmselect: Optional[VMSelectSpec] = None
    vminsert: Optional[VMInsertSpec] = None
    vmagent: Optional[VMAgentSpec] = None
    vmalertmanager: Optional[VMAlertmanagerSpec] = None
    vmalert: Optional[VMAlertSpec] = None


class ComponentStatus(_Model):
    """Observed rollout state of one component."""

    update_status: UpdateStatus = UpdateStatus.EXPANDING
    desired_replicas: int = 0
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    expanding_since: Optional[datetime] = None
    last_transition_time: Optional[datetime] = None
    spec_hash: Optional[str] = None
    reason: Optional[str] = None


class VMClusterStatus(_Model):
    """Status subresource of a cluster."""

    update_status: UpdateStatus = UpdateStatus.EXPANDING
    reason: Optional[str] = None
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0
    components: dict[str, ComponentStatus] = Field(default_factory=dict)


class ObjectMeta(_Model):
    """Identity of a custom resource."""

    name: str
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class VMCluster(_Model):
    """User-declared cluster; read-only to the engine apart from its status."""

    api_version: str = "operator.victoriametrics.com/v1beta1"
    kind: str = "VMCluster"
    metadata: ObjectMeta
    spec: VMClusterSpec = Field(default_factory=VMClusterSpec)
    status: Optional[VMClusterStatus] = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "VMCluster":
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def component(self, component: str) -> Optional[ComponentSpec]:
        return getattr(self.spec, component)

    def is_paused(self, component: str) -> bool:
        spec = self.component(component)
        return self.spec.paused or bool(spec and spec.paused)

    def prefixed_name(self, component: str) -> str:
        return f"{component}-{self.metadata.name}"

    def selector_labels(self, component: str) -> dict[str, str]:
        return {
            "app.kubernetes.io/name": component,
            "app.kubernetes.io/instance": self.metadata.name,
            "app.kubernetes.io/component": "monitoring",
            "managed-by": MANAGED_BY,
        }

    def final_labels(self, component: str) -> dict[str, str]:
        labels = dict(self.metadata.labels)
        labels.update(self.selector_labels(component))
        return labels

    def annotations(self) -> dict[str, str]:
        return {
            key: value
            for key, value in self.metadata.annotations.items()
            if not key.startswith("kubectl.kubernetes.io/")
        }

    def as_owner(self) -> list[dict[str, Any]]:
        return [
            {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "name": self.metadata.name,
                "uid": self.metadata.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]


class WatchEvent(BaseModel):
    """Kubernetes watch event."""

    event_type: str  # ADDED, MODIFIED, DELETED, ERROR
    kind: str
    name: str
    namespace: str
    object: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def owner_key(self) -> Optional[str]:
        """Key of the cluster this event belongs to, if any."""
        if self.kind == "VMCluster":
            return f"{self.namespace}/{self.name}"
        metadata = self.object.get("metadata") or {}
        for ref in metadata.get("ownerReferences") or []:
            if ref.get("kind") == "VMCluster" and ref.get("controller"):
                return f"{self.namespace}/{ref['name']}"
        instance = (metadata.get("labels") or {}).get("app.kubernetes.io/instance")
        if instance:
            return f"{self.namespace}/{instance}"
        return None
