from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from nerdy_k8s_csi_check.k8s import (
    KubernetesApiVersionFetcher,
    KubernetesArgumentValidator,
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesDiscoveryError,
    describe_api_error,
    list_context_names,
    list_storage_class_names,
    list_volume_snapshot_class_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from nerdy_k8s_csi_check.models import ProtocolVersion, SnapshotGroupVersion


def _clients(
    *,
    core_api: Mock | None = None,
    storage_api: Mock | None = None,
    custom_api: Mock | None = None,
    apis_api: Mock | None = None,
) -> KubernetesClients:
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api or Mock(),
        storage_api=storage_api or Mock(),
        custom_api=custom_api or Mock(),
        apis_api=apis_api or Mock(),
    )


def _api_group(name: str, versions: list[str], preferred: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        name=name,
        versions=[SimpleNamespace(group_version=f"{name}/{version}") for version in versions],
        preferred_version=SimpleNamespace(group_version=f"{name}/{preferred}") if preferred else None,
    )


def _named(name: str | None) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


def test_get_csi_snapshot_group_version_with_preferred_v1_returns_stable_protocol() -> None:
    apis_api = Mock()
    apis_api.get_api_versions.return_value = SimpleNamespace(
        groups=[
            _api_group("apps", ["v1"], "v1"),
            _api_group("snapshot.storage.k8s.io", ["v1", "v1beta1"], "v1"),
        ]
    )
    fetcher = KubernetesApiVersionFetcher(_clients(apis_api=apis_api), request_timeout_seconds=5)

    group_version = fetcher.get_csi_snapshot_group_version()

    assert group_version.group_version == "snapshot.storage.k8s.io/v1"
    assert group_version.protocol is ProtocolVersion.STABLE
    apis_api.get_api_versions.assert_called_once_with(_request_timeout=5)


def test_get_csi_snapshot_group_version_without_preferred_uses_first_served_version() -> None:
    apis_api = Mock()
    apis_api.get_api_versions.return_value = SimpleNamespace(
        groups=[_api_group("snapshot.storage.k8s.io", ["v1alpha1"])]
    )

    group_version = KubernetesApiVersionFetcher(_clients(apis_api=apis_api)).get_csi_snapshot_group_version()

    assert group_version.version == "v1alpha1"
    assert group_version.protocol is ProtocolVersion.ALPHA


def test_get_csi_snapshot_group_version_without_snapshot_group_raises_runtime_error() -> None:
    apis_api = Mock()
    apis_api.get_api_versions.return_value = SimpleNamespace(groups=[_api_group("apps", ["v1"], "v1")])

    with pytest.raises(RuntimeError, match="not served by this cluster"):
        KubernetesApiVersionFetcher(_clients(apis_api=apis_api)).get_csi_snapshot_group_version()


def test_get_csi_snapshot_group_version_with_unknown_version_raises_value_error() -> None:
    apis_api = Mock()
    apis_api.get_api_versions.return_value = SimpleNamespace(
        groups=[_api_group("snapshot.storage.k8s.io", ["v2"], "v2")]
    )

    with pytest.raises(ValueError, match="unsupported snapshot API version 'v2'"):
        KubernetesApiVersionFetcher(_clients(apis_api=apis_api)).get_csi_snapshot_group_version()


def test_snapshot_group_version_with_foreign_group_raises_value_error() -> None:
    with pytest.raises(ValueError, match="is not a snapshot.storage.k8s.io group version"):
        SnapshotGroupVersion.from_group_version("storage.k8s.io/v1")


def test_argument_validator_with_storage_class_returns_provisioner() -> None:
    storage_api = Mock()
    storage_api.read_storage_class.return_value = SimpleNamespace(provisioner="hostpath.csi.k8s.io")
    validator = KubernetesArgumentValidator(_clients(storage_api=storage_api), request_timeout_seconds=3)

    descriptor = validator.validate_storage_class("csi-hostpath-sc")

    assert descriptor.name == "csi-hostpath-sc"
    assert descriptor.provisioner == "hostpath.csi.k8s.io"
    storage_api.read_storage_class.assert_called_once_with(name="csi-hostpath-sc", _request_timeout=3)


def test_argument_validator_with_namespace_reads_namespace() -> None:
    core_api = Mock()
    validator = KubernetesArgumentValidator(_clients(core_api=core_api), request_timeout_seconds=3)

    validator.validate_namespace("apps")

    core_api.read_namespace.assert_called_once_with(name="apps", _request_timeout=3)


def test_argument_validator_with_snapshot_class_reads_cluster_custom_object() -> None:
    custom_api = Mock()
    custom_api.get_cluster_custom_object.return_value = {"driver": "hostpath.csi.k8s.io"}
    validator = KubernetesArgumentValidator(_clients(custom_api=custom_api), request_timeout_seconds=3)
    group_version = SnapshotGroupVersion.from_group_version("snapshot.storage.k8s.io/v1beta1")

    snapshot_class = validator.validate_volume_snapshot_class("csi-hostpath-snapclass", group_version)

    assert snapshot_class == {"driver": "hostpath.csi.k8s.io"}
    custom_api.get_cluster_custom_object.assert_called_once_with(
        group="snapshot.storage.k8s.io",
        version="v1beta1",
        plural="volumesnapshotclasses",
        name="csi-hostpath-snapclass",
        _request_timeout=3,
    )


def test_list_storage_class_names_with_unsorted_items_returns_sorted_names() -> None:
    storage_api = Mock()
    storage_api.list_storage_class.return_value = SimpleNamespace(
        items=[_named("standard"), _named(None), _named("csi-hostpath-sc")]
    )

    names = list_storage_class_names(_clients(storage_api=storage_api), request_timeout_seconds=4)

    assert names == ["csi-hostpath-sc", "standard"]
    storage_api.list_storage_class.assert_called_once_with(_request_timeout=4)


def test_list_storage_class_names_with_api_exception_raises_actionable_discovery_error() -> None:
    storage_api = Mock()
    storage_api.list_storage_class.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(KubernetesDiscoveryError, match="list StorageClasses: API status 403"):
        list_storage_class_names(_clients(storage_api=storage_api))


def test_list_volume_snapshot_class_names_with_items_returns_sorted_names() -> None:
    custom_api = Mock()
    custom_api.list_cluster_custom_object.return_value = {
        "items": [{"metadata": {"name": "zeta"}}, {"metadata": {}}, {"metadata": {"name": "alpha"}}]
    }
    group_version = SnapshotGroupVersion.from_group_version("snapshot.storage.k8s.io/v1")

    names = list_volume_snapshot_class_names(_clients(custom_api=custom_api), group_version)

    assert names == ["alpha", "zeta"]
    assert custom_api.list_cluster_custom_object.call_args.kwargs["plural"] == "volumesnapshotclasses"


def test_list_volume_snapshot_class_names_with_missing_crd_raises_discovery_error() -> None:
    custom_api = Mock()
    custom_api.list_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    group_version = SnapshotGroupVersion.from_group_version("snapshot.storage.k8s.io/v1")

    with pytest.raises(KubernetesDiscoveryError, match="snapshot CRDs are installed"):
        list_volume_snapshot_class_names(_clients(custom_api=custom_api), group_version)


def test_describe_api_error_without_status_reports_unknown() -> None:
    assert describe_api_error(ApiException(status=409, reason="Conflict")) == "API status 409 (Conflict)"
    assert describe_api_error(ApiException()) == "API status unknown (no reason provided)"


def test_persist_kubeconfig_content_with_valid_yaml_writes_file_and_restricts_permissions() -> None:
    persisted_path = Path(persist_kubeconfig_content("apiVersion: v1\nkind: Config\n"))
    try:
        assert persisted_path.read_text(encoding="utf-8") == "apiVersion: v1\nkind: Config\n"
        assert persisted_path.stat().st_mode & 0o777 == 0o600
    finally:
        persisted_path.unlink(missing_ok=True)


def _patch_client_constructors(monkeypatch: pytest.MonkeyPatch) -> dict[str, Mock]:
    constructed = {
        "ApiClient": Mock(),
        "CoreV1Api": Mock(),
        "StorageV1Api": Mock(),
        "CustomObjectsApi": Mock(),
        "ApisApi": Mock(),
    }
    for name, instance in constructed.items():
        monkeypatch.setattr(f"nerdy_k8s_csi_check.k8s.client.{name}", Mock(return_value=instance))
    return constructed


def test_load_kubernetes_clients_with_in_cluster_mode_uses_incluster_auth(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()
    monkeypatch.setattr("nerdy_k8s_csi_check.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("nerdy_k8s_csi_check.k8s.config.load_kube_config", load_kube_config)
    constructed = _patch_client_constructors(monkeypatch)

    clients = load_kubernetes_clients(
        kubeconfig_path="~/.kube/config",
        context="ignored-context",
        in_cluster=True,
    )

    load_incluster_config.assert_called_once_with()
    load_kube_config.assert_not_called()
    assert clients.api_client is constructed["ApiClient"]
    assert clients.core_api is constructed["CoreV1Api"]
    assert clients.storage_api is constructed["StorageV1Api"]
    assert clients.custom_api is constructed["CustomObjectsApi"]
    assert clients.apis_api is constructed["ApisApi"]


def test_load_kubernetes_clients_with_kubeconfig_mode_expands_path_and_context(monkeypatch: pytest.MonkeyPatch) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()
    monkeypatch.setenv("HOME", "/tmp/nkcc-home")
    monkeypatch.setattr("nerdy_k8s_csi_check.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("nerdy_k8s_csi_check.k8s.config.load_kube_config", load_kube_config)
    _patch_client_constructors(monkeypatch)

    load_kubernetes_clients(
        kubeconfig_path="~/.kube/config",
        context="dev-cluster",
        in_cluster=False,
    )

    load_incluster_config.assert_not_called()
    load_kube_config.assert_called_once_with(
        config_file="/tmp/nkcc-home/.kube/config",
        context="dev-cluster",
    )


def test_load_kubernetes_clients_with_invalid_context_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "nerdy_k8s_csi_check.k8s.config.load_kube_config",
        Mock(side_effect=RuntimeError("context does not exist")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="context does not exist"):
        load_kubernetes_clients(
            kubeconfig_path="/etc/nkcc/remote/config",
            context="missing-context",
            in_cluster=False,
        )


def test_load_kubernetes_clients_with_missing_service_account_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "nerdy_k8s_csi_check.k8s.config.load_incluster_config",
        Mock(side_effect=RuntimeError("Service host/port is not set.")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="mounted service account token"):
        load_kubernetes_clients(kubeconfig_path=None, context=None, in_cluster=True)


def test_list_context_names_with_mixed_contexts_returns_sorted_names(monkeypatch: pytest.MonkeyPatch) -> None:
    list_contexts = Mock(
        return_value=(
            [{"name": "zeta"}, {"name": "alpha"}, {"name": "delta"}],
            {"name": "delta"},
        )
    )
    monkeypatch.setenv("HOME", "/tmp/nkcc-home")
    monkeypatch.setattr("nerdy_k8s_csi_check.k8s.config.list_kube_config_contexts", list_contexts)

    names = list_context_names("~/.kube/config")

    assert names == ["alpha", "delta", "zeta"]
    list_contexts.assert_called_once_with(config_file="/tmp/nkcc-home/.kube/config")


def test_list_context_names_with_invalid_kubeconfig_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "nerdy_k8s_csi_check.k8s.config.list_kube_config_contexts",
        Mock(side_effect=RuntimeError("parse failure")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="Unable to list kubeconfig contexts"):
        list_context_names("/tmp/invalid-config")
