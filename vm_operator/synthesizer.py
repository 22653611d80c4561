"""Translation of component specs into desired child objects."""

import base64
import copy
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import (
    VMAGENT,
    VMALERT,
    VMALERTMANAGER,
    VMINSERT,
    VMSELECT,
    VMSTORAGE,
    ComponentSpec,
    VMCluster,
)

ASSETS_MOUNT = "/etc/vm/assets"
CHECKSUM_ANNOTATION = "operator.victoriametrics.com/assets-checksum"

DEFAULT_ALERTMANAGER_CONFIG = """global:
  resolve_timeout: 5m
route:
  receiver: blackhole
receivers:
  - name: blackhole
"""


@dataclass(frozen=True)
class Profile:
    """Static shape of a component."""

    workload: str
    image: str
    tag: str
    port_name: str
    port: int
    extra_ports: tuple[tuple[str, int], ...] = ()
    headless: bool = False


PROFILES: dict[str, Profile] = {
    VMSTORAGE: Profile(
        "StatefulSet", "victoriametrics/vmstorage", "v1.93.0-cluster", "http", 8482,
        extra_ports=(("vminsert", 8400), ("vmselect", 8401)), headless=True,
    ),
    VMSELECT: Profile(
        "StatefulSet", "victoriametrics/vmselect", "v1.93.0-cluster", "http", 8481, headless=True,
    ),
    VMINSERT: Profile("Deployment", "victoriametrics/vminsert", "v1.93.0-cluster", "http", 8480),
    VMAGENT: Profile("Deployment", "victoriametrics/vmagent", "v1.93.0", "http", 8429),
    VMALERTMANAGER: Profile(
        "StatefulSet", "prom/alertmanager", "v0.25.0", "web", 9093, headless=True,
    ),
    VMALERT: Profile("Deployment", "victoriametrics/vmalert", "v1.93.0", "http", 8880),
}


@dataclass
class ResolvedInputs:
    """Selector and credential lookups done for one component."""

    selections: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)


@dataclass
class ChildSet:
    """Desired child objects of one component plus the endpoints it exposes."""

    component: str
    objects: list[dict[str, Any]] = field(default_factory=list)
    endpoints: dict[str, str] = field(default_factory=dict)

    @property
    def workload(self) -> Optional[dict[str, Any]]:
        for obj in self.objects:
            if obj["kind"] in ("StatefulSet", "Deployment"):
                return obj
        return None


def service_host(cluster: VMCluster, component: str) -> str:
    return f"{cluster.prefixed_name(component)}.{cluster.namespace}.svc"


def storage_nodes(cluster: VMCluster, port: int) -> list[str]:
    """Addresses of every storage replica behind the headless service."""
    spec = cluster.spec.vmstorage
    if spec is None:
        return []
    name = cluster.prefixed_name(VMSTORAGE)
    return [
        f"{name}-{i}.{name}.{cluster.namespace}.svc:{port}"
        for i in range(spec.replica_count)
    ]


def _metadata(cluster: VMCluster, component: str, name: str) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": cluster.namespace,
        "labels": cluster.final_labels(component),
        "ownerReferences": cluster.as_owner(),
    }
    annotations = cluster.annotations()
    if annotations:
        metadata["annotations"] = annotations
    return metadata


def _ports(component: str, spec: ComponentSpec) -> list[tuple[str, int]]:
    profile = PROFILES[component]
    ports = [(profile.port_name, profile.port), *profile.extra_ports]
    native = getattr(spec, "cluster_native_port", "")
    if native:
        ports.append(("clusternative", int(native)))
    return ports


def _service_ports(ports: list[tuple[str, int]]) -> list[dict[str, Any]]:
    return [
        {"name": name, "port": port, "targetPort": port, "protocol": "TCP"}
        for name, port in ports
    ]


def _args(cluster: VMCluster, component: str, spec: ComponentSpec, inputs: ResolvedInputs,
          endpoints: dict[str, str]) -> list[str]:
    profile = PROFILES[component]
    args: dict[str, str] = {"httpListenAddr": f":{profile.port}"}

    if component == VMSTORAGE:
        args["retentionPeriod"] = cluster.spec.retention_period
        args["storageDataPath"] = spec.storage_data_path
        args["vminsertAddr"] = ":8400"
        args["vmselectAddr"] = ":8401"
    elif component in (VMSELECT, VMINSERT):
        nodes = storage_nodes(cluster, 8401 if component == VMSELECT else 8400)
        if nodes:
            args["storageNode"] = ",".join(nodes)
        if spec.cluster_native_port:
            args["clusternativeListenAddr"] = f":{spec.cluster_native_port}"
    elif component == VMAGENT:
        args["promscrape.config"] = f"{ASSETS_MOUNT}/scrape.json"
        urls = [rw.url for rw in spec.remote_write]
        if not urls and VMINSERT in endpoints:
            urls = [f"{endpoints[VMINSERT]}/insert/0/prometheus/api/v1/write"]
        if urls:
            args["remoteWrite.url"] = ",".join(urls)
        for i, _ in enumerate(spec.remote_write):
            for item in ("username", "password", "bearer-token", "ca", "cert", "key"):
                if f"remote-write-{i}-{item}" in inputs.files:
                    args[f"remoteWrite.{i}.{item}File"] = f"{ASSETS_MOUNT}/remote-write-{i}-{item}"
    elif component == VMALERTMANAGER:
        del args["httpListenAddr"]
        args["web.listen-address"] = f":{profile.port}"
        args["config.file"] = f"{ASSETS_MOUNT}/alertmanager.yaml"
    elif component == VMALERT:
        args["rule"] = f"{ASSETS_MOUNT}/rules.json"
        if VMSELECT in endpoints:
            args["datasource.url"] = f"{endpoints[VMSELECT]}/select/0/prometheus"
        if VMALERTMANAGER in endpoints:
            args["notifier.url"] = endpoints[VMALERTMANAGER]
        if "datasource-password" in inputs.files:
            args["datasource.basicAuth.passwordFile"] = f"{ASSETS_MOUNT}/datasource-password"

    args.update(spec.extra_args)
    prefix = "--" if component == VMALERTMANAGER else "-"
    return [f"{prefix}{key}={value}" for key, value in sorted(args.items())]


def _assets_checksum(files: dict[str, str]) -> str:
    digest = hashlib.sha256()
    for name in sorted(files):
        digest.update(name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(files[name].encode("utf-8"))
    return digest.hexdigest()[:16]


def _workload(cluster: VMCluster, component: str, spec: ComponentSpec, inputs: ResolvedInputs,
              endpoints: dict[str, str]) -> dict[str, Any]:
    profile = PROFILES[component]
    name = cluster.prefixed_name(component)
    selector_labels = cluster.selector_labels(component)

    pod_labels = dict(selector_labels)
    pod_annotations: dict[str, str] = {}
    if spec.pod_metadata is not None:
        pod_labels.update(spec.pod_metadata.labels)
        pod_annotations.update(spec.pod_metadata.annotations)
    if inputs.files:
        pod_annotations[CHECKSUM_ANNOTATION] = _assets_checksum(inputs.files)

    container: dict[str, Any] = {
        "name": component,
        "image": f"{spec.image.repository or profile.image}:{spec.image.tag or profile.tag}",
        "args": _args(cluster, component, spec, inputs, endpoints),
        "ports": [
            {"name": port_name, "containerPort": port, "protocol": "TCP"}
            for port_name, port in _ports(component, spec)
        ],
    }
    if spec.image.pull_policy:
        container["imagePullPolicy"] = spec.image.pull_policy
    if spec.resources:
        container["resources"] = copy.deepcopy(spec.resources)

    volumes: list[dict[str, Any]] = []
    if inputs.files:
        container["volumeMounts"] = [{"name": "assets", "mountPath": ASSETS_MOUNT, "readOnly": True}]
        volumes.append({"name": "assets", "secret": {"secretName": f"{name}-assets"}})

    pod_spec: dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes
    if cluster.spec.image_pull_secrets:
        pod_spec["imagePullSecrets"] = copy.deepcopy(cluster.spec.image_pull_secrets)

    template_metadata: dict[str, Any] = {"labels": pod_labels}
    if pod_annotations:
        template_metadata["annotations"] = pod_annotations

    workload_spec: dict[str, Any] = {
        "replicas": spec.replica_count,
        "selector": {"matchLabels": selector_labels},
        "template": {"metadata": template_metadata, "spec": pod_spec},
    }
    if spec.revision_history_limit_count is not None:
        workload_spec["revisionHistoryLimit"] = spec.revision_history_limit_count
    if profile.workload == "StatefulSet":
        workload_spec["serviceName"] = name
        workload_spec["podManagementPolicy"] = "OrderedReady"

    return {
        "apiVersion": "apps/v1",
        "kind": profile.workload,
        "metadata": _metadata(cluster, component, name),
        "spec": workload_spec,
    }


def _services(cluster: VMCluster, component: str, spec: ComponentSpec) -> list[dict[str, Any]]:
    profile = PROFILES[component]
    name = cluster.prefixed_name(component)
    ports = _service_ports(_ports(component, spec))
    additional = spec.service_spec

    if additional is not None and additional.use_as_default:
        known = {port["name"] for port in ports}
        ports.extend(
            copy.deepcopy(port)
            for port in additional.spec.get("ports", [])
            if port.get("name") not in known
        )

    default_spec: dict[str, Any] = {
        "type": "ClusterIP",
        "selector": cluster.selector_labels(component),
        "ports": ports,
    }
    if profile.headless:
        default_spec["clusterIP"] = "None"

    services = [
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _metadata(cluster, component, name),
            "spec": default_spec,
        }
    ]

    if additional is not None and not additional.use_as_default:
        extra_name = additional.metadata.name or f"{name}-additional-service"
        metadata = _metadata(cluster, component, extra_name)
        metadata["labels"].update(additional.metadata.labels)
        if additional.metadata.annotations:
            metadata.setdefault("annotations", {}).update(additional.metadata.annotations)
        extra_spec = copy.deepcopy(additional.spec)
        extra_spec["selector"] = cluster.selector_labels(component)
        services.append(
            {"apiVersion": "v1", "kind": "Service", "metadata": metadata, "spec": extra_spec}
        )
    return services


def _service_scrape(cluster: VMCluster, component: str) -> dict[str, Any]:
    return {
        "apiVersion": "operator.victoriametrics.com/v1beta1",
        "kind": "VMServiceScrape",
        "metadata": _metadata(cluster, component, cluster.prefixed_name(component)),
        "spec": {
            "selector": {"matchLabels": cluster.selector_labels(component)},
            "endpoints": [{"port": PROFILES[component].port_name, "path": "/metrics"}],
        },
    }


def _assets_secret(cluster: VMCluster, component: str, files: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _metadata(cluster, component, f"{cluster.prefixed_name(component)}-assets"),
        "data": {
            key: base64.b64encode(value.encode("utf-8")).decode("ascii")
            for key, value in sorted(files.items())
        },
    }


def render_files(component: str, inputs: ResolvedInputs) -> dict[str, str]:
    """Render configuration files derived from selected objects."""
    files = dict(inputs.files)
    if component == VMAGENT:
        scrape = {
            kind: {key: obj.get("spec", {}) for key, obj in sorted(objects.items())}
            for kind, objects in sorted(inputs.selections.items())
        }
        files["scrape.json"] = json.dumps(scrape, sort_keys=True)
    elif component == VMALERTMANAGER:
        files.setdefault("alertmanager.yaml", DEFAULT_ALERTMANAGER_CONFIG)
    elif component == VMALERT:
        rules = {
            key: obj.get("spec", {})
            for key, obj in sorted(inputs.selections.get("VMRule", {}).items())
        }
        files["rules.json"] = json.dumps(rules, sort_keys=True)
    return files


def endpoints_of(cluster: VMCluster, component: str) -> dict[str, str]:
    """Endpoints a component exposes to the components processed after it."""
    if component == VMSTORAGE:
        return {
            "vmstorage-insert": ",".join(storage_nodes(cluster, 8400)),
            "vmstorage-select": ",".join(storage_nodes(cluster, 8401)),
        }
    return {component: f"http://{service_host(cluster, component)}:{PROFILES[component].port}"}


def synthesize(
    cluster: VMCluster,
    component: str,
    spec: ComponentSpec,
    inputs: Optional[ResolvedInputs] = None,
    endpoints: Optional[dict[str, str]] = None,
) -> ChildSet:
    """
    Build the desired children of a component.

    Args:
        cluster: Owning cluster
        component: Component name
        spec: Component spec
        inputs: Resolved selections and credentials
        endpoints: Endpoints exposed by previously processed components

    Returns:
        ChildSet with the desired objects
    """
    inputs = inputs or ResolvedInputs()
    endpoints = endpoints or {}
    files = render_files(component, inputs)
    rendered = ResolvedInputs(selections=inputs.selections, files=files)

    objects: list[dict[str, Any]] = []
    if files:
        objects.append(_assets_secret(cluster, component, files))
    objects.extend(_services(cluster, component, spec))
    objects.append(_workload(cluster, component, spec, rendered, endpoints))
    objects.append(_service_scrape(cluster, component))

    return ChildSet(component=component, objects=objects, endpoints=endpoints_of(cluster, component))
