from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import tempfile
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import SNAPSHOT_API_GROUP, SnapshotGroupVersion, StorageClassDescriptor

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
VOLUME_SNAPSHOT_CLASS_PLURAL = "volumesnapshotclasses"
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    storage_api: client.StorageV1Api
    custom_api: client.CustomObjectsApi
    apis_api: client.ApisApi


class KubernetesDiscoveryError(RuntimeError):
    """Raised when listing cluster resources for the check form fails."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    source = "in-cluster service account" if in_cluster else expanded or "default kubeconfig"
    logger.info(f"Loaded Kubernetes clients from {source}")
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        storage_api=client.StorageV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        apis_api=client.ApisApi(api_client),
    )


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        source = expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{source}': {reason}. "
            "Verify the kubeconfig path is readable and valid."
        ) from error
    if not contexts:
        return []
    return sorted(context["name"] for context in contexts)


def list_storage_class_names(
    clients: KubernetesClients,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[str]:
    storage_classes = _safe_kubernetes_discovery_call(
        operation="list StorageClasses",
        hint="Confirm cluster connectivity and RBAC verbs for storageclasses.",
        func=lambda: clients.storage_api.list_storage_class(_request_timeout=request_timeout_seconds).items,
    )
    return sorted(item.metadata.name for item in storage_classes if item.metadata and item.metadata.name)


def list_volume_snapshot_class_names(
    clients: KubernetesClients,
    group_version: SnapshotGroupVersion,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[str]:
    response = _safe_kubernetes_discovery_call(
        operation=f"list VolumeSnapshotClasses ({group_version.group_version})",
        hint="Confirm the CSI snapshot CRDs are installed and RBAC allows listing volumesnapshotclasses.",
        func=lambda: clients.custom_api.list_cluster_custom_object(
            group=group_version.group,
            version=group_version.version,
            plural=VOLUME_SNAPSHOT_CLASS_PLURAL,
            _request_timeout=request_timeout_seconds,
        ),
    )
    names = [item.get("metadata", {}).get("name") for item in response.get("items", [])]
    return sorted(name for name in names if name)


class KubernetesArgumentValidator:
    """Read-only lookups backing argument validation."""

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds

    def validate_namespace(self, namespace: str) -> None:
        self.clients.core_api.read_namespace(name=namespace, _request_timeout=self.request_timeout_seconds)

    def validate_storage_class(self, name: str) -> StorageClassDescriptor:
        storage_class = self.clients.storage_api.read_storage_class(
            name=name,
            _request_timeout=self.request_timeout_seconds,
        )
        return StorageClassDescriptor(name=name, provisioner=storage_class.provisioner or "")

    def validate_volume_snapshot_class(
        self,
        name: str,
        group_version: SnapshotGroupVersion,
    ) -> dict[str, Any]:
        return self.clients.custom_api.get_cluster_custom_object(
            group=group_version.group,
            version=group_version.version,
            plural=VOLUME_SNAPSHOT_CLASS_PLURAL,
            name=name,
            _request_timeout=self.request_timeout_seconds,
        )


class KubernetesApiVersionFetcher:
    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds

    def get_csi_snapshot_group_version(self) -> SnapshotGroupVersion:
        group_list = self.clients.apis_api.get_api_versions(_request_timeout=self.request_timeout_seconds)
        for group in group_list.groups or []:
            if group.name != SNAPSHOT_API_GROUP:
                continue
            preferred = group.preferred_version.group_version if group.preferred_version else None
            if not preferred and group.versions:
                preferred = group.versions[0].group_version
            if not preferred:
                break
            group_version = SnapshotGroupVersion.from_group_version(preferred)
            logger.debug(f"Resolved snapshot API {group_version.group_version} ({group_version.protocol.value})")
            return group_version

        raise RuntimeError(
            f"the {SNAPSHOT_API_GROUP} API group is not served by this cluster; "
            "install the CSI snapshot CRDs and snapshot controller"
        )


def describe_api_error(error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"


def _safe_kubernetes_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {describe_api_error(error)}. {hint}"
        ) from error
    except Exception as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
