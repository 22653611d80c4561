"""Tests for Kubernetes API access."""

from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from vm_operator.cluster import ClusterConnection, KubeClient, format_label_selector
from vm_operator.config import Settings


class TestFormatLabelSelector:
    def test_sorted_pairs(self):
        assert format_label_selector({"b": "2", "a": "1"}) == "a=1,b=2"

    def test_empty(self):
        assert format_label_selector({}) is None
        assert format_label_selector(None) is None


class TestClusterConnection:
    """Test cases for ClusterConnection."""

    def test_in_cluster_config_by_default(self):
        with patch("vm_operator.cluster.config") as mock_config:
            conn = ClusterConnection(Settings(_env_file=None))

        mock_config.load_incluster_config.assert_called_once()
        mock_config.load_kube_config.assert_not_called()
        assert conn.core_v1 is not None
        conn.close()

    def test_kubeconfig_when_configured(self):
        settings = Settings(_env_file=None, kubeconfig_path="/tmp/kubeconfig", kube_context="kind")
        with patch("vm_operator.cluster.config") as mock_config:
            with ClusterConnection(settings):
                pass

        mock_config.load_kube_config.assert_called_once_with(
            config_file="/tmp/kubeconfig", context="kind"
        )

    def test_invalid_config(self):
        with patch("vm_operator.cluster.config") as mock_config:
            mock_config.load_incluster_config.side_effect = Exception("no service account")
            with pytest.raises(ValueError):
                ClusterConnection(Settings(_env_file=None))

    def test_closed_connection(self):
        with patch("vm_operator.cluster.config"):
            conn = ClusterConnection(Settings(_env_file=None))
        conn.close()

        with pytest.raises(RuntimeError):
            conn.apps_v1


class TestKubeClient:
    """Test cases for KubeClient dispatch."""

    @pytest.fixture
    def kube(self, mock_cluster_connection):
        return KubeClient(mock_cluster_connection)

    @pytest.mark.asyncio
    async def test_list_namespaced_typed(self, kube, mock_cluster_connection):
        apps = mock_cluster_connection.apps_v1
        apps.list_namespaced_stateful_set.return_value = MagicMock(
            items=[{"metadata": {"name": "vmselect-example"}}]
        )

        result = await kube.list("StatefulSet", "default", "managed-by=vm-operator")

        apps.list_namespaced_stateful_set.assert_called_once_with(
            "default", label_selector="managed-by=vm-operator", _request_timeout=30.0
        )
        assert result == [
            {"metadata": {"name": "vmselect-example"}, "kind": "StatefulSet", "apiVersion": "apps/v1"}
        ]

    @pytest.mark.asyncio
    async def test_list_all_namespaces(self, kube, mock_cluster_connection):
        core = mock_cluster_connection.core_v1
        core.list_service_for_all_namespaces.return_value = MagicMock(items=[])

        assert await kube.list("Service") == []
        core.list_service_for_all_namespaces.assert_called_once()

    @pytest.mark.asyncio
    async def test_list_namespaces(self, kube, mock_cluster_connection):
        core = mock_cluster_connection.core_v1
        core.list_namespace.return_value = MagicMock(items=[{"metadata": {"name": "stg"}}])

        result = await kube.list("Namespace")

        assert result[0]["kind"] == "Namespace"

    @pytest.mark.asyncio
    async def test_list_custom_objects(self, kube, mock_cluster_connection):
        custom = mock_cluster_connection.custom_objects
        custom.list_namespaced_custom_object.return_value = {"items": [{"kind": "VMRule"}]}

        result = await kube.list("VMRule", "monitoring")

        custom.list_namespaced_custom_object.assert_called_once_with(
            "operator.victoriametrics.com", "v1beta1", "monitoring", "vmrules", _request_timeout=30.0
        )
        assert result == [{"kind": "VMRule"}]

    @pytest.mark.asyncio
    async def test_get_not_found(self, kube, mock_cluster_connection):
        mock_cluster_connection.core_v1.read_namespaced_secret.side_effect = ApiException(status=404)

        with pytest.raises(ApiException) as exc_info:
            await kube.get("Secret", "default", "absent")

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_create_and_replace(self, kube, mock_cluster_connection):
        apps = mock_cluster_connection.apps_v1
        apps.create_namespaced_deployment.return_value = {"metadata": {"name": "d"}}
        apps.replace_namespaced_deployment.return_value = {"metadata": {"name": "d"}}
        body = {"metadata": {"name": "d", "namespace": "default"}, "spec": {}}

        await kube.create("Deployment", body)
        await kube.replace("Deployment", body)

        assert apps.create_namespaced_deployment.call_args.kwargs["namespace"] == "default"
        assert apps.replace_namespaced_deployment.call_args.kwargs["name"] == "d"

    @pytest.mark.asyncio
    async def test_delete_background(self, kube, mock_cluster_connection):
        await kube.delete("Service", "default", "svc")

        mock_cluster_connection.core_v1.delete_namespaced_service.assert_called_once_with(
            "svc", "default", propagation_policy="Background", _request_timeout=30.0
        )

    @pytest.mark.asyncio
    async def test_unsupported_kind(self, kube):
        with pytest.raises(ValueError):
            await kube.list("Ingress")

    @pytest.mark.asyncio
    async def test_patch_status_retries_transient_errors(self, kube, mock_cluster_connection):
        custom = mock_cluster_connection.custom_objects
        custom.patch_namespaced_custom_object_status.side_effect = [
            ApiException(status=503),
            {"status": {"updateStatus": "operational"}},
        ]

        result = await kube.patch_status("VMCluster", "default", "example", {"updateStatus": "operational"})

        assert custom.patch_namespaced_custom_object_status.call_count == 2
        assert result["status"]["updateStatus"] == "operational"
        args = custom.patch_namespaced_custom_object_status.call_args.args
        assert args[3:] == ("vmclusters", "example", {"status": {"updateStatus": "operational"}})

    @pytest.mark.asyncio
    async def test_patch_status_forbidden_not_retried(self, kube, mock_cluster_connection):
        custom = mock_cluster_connection.custom_objects
        custom.patch_namespaced_custom_object_status.side_effect = ApiException(status=403)

        with pytest.raises(ApiException):
            await kube.patch_status("VMCluster", "default", "example", {})

        assert custom.patch_namespaced_custom_object_status.call_count == 1
