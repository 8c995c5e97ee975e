from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event
import time
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .application import created_by_labels
from .errors import WorkflowCancelledError, error_message
from .interfaces import ApiVersionFetcher
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, VOLUME_SNAPSHOT_CLASS_PLURAL, KubernetesClients
from .models import (
    VOLUME_SNAPSHOT_KIND,
    CreateFromSourceCheckArgs,
    CreateSnapshotArgs,
    ProtocolVersion,
    Snapshot,
    SnapshotGroupVersion,
    driver_key_for,
)

logger = logging.getLogger(__name__)

VOLUME_SNAPSHOT_PLURAL = "volumesnapshots"
VOLUME_SNAPSHOT_CONTENT_PLURAL = "volumesnapshotcontents"
CLONE_PREFIX = "nkcc-clone-"
DELETION_POLICY_DELETE = "Delete"
DELETION_POLICY_RETAIN = "Retain"


@dataclass(frozen=True)
class SnapshotSource:
    handle: str
    driver: str
    volume_snapshot_class: str | None = None


class Snapshotter:
    """Access path to the cluster's CSI snapshot API for one group version.

    The alpha (v1alpha1) and stable (v1beta1, v1) generations lay out
    VolumeSnapshot and VolumeSnapshotContent objects differently; every manifest
    and field read goes through this class so callers never branch on the
    protocol themselves.
    """

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        group_version: SnapshotGroupVersion,
        *,
        ready_timeout_seconds: int = 300,
        poll_interval_seconds: float = 2,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_api = custom_api
        self._group_version = group_version
        self.ready_timeout_seconds = ready_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.request_timeout_seconds = request_timeout_seconds

    @property
    def group_version(self) -> SnapshotGroupVersion:
        return self._group_version

    @property
    def is_alpha(self) -> bool:
        return self._group_version.protocol is ProtocolVersion.ALPHA

    def create(
        self,
        *,
        name: str,
        namespace: str,
        claim_name: str,
        volume_snapshot_class: str,
        labels: dict[str, str] | None = None,
        wait_for_ready: bool = True,
        cancel_event: Event | None = None,
    ) -> dict[str, Any]:
        if self.is_alpha:
            spec = {
                "source": {"kind": "PersistentVolumeClaim", "name": claim_name},
                "snapshotClassName": volume_snapshot_class,
            }
        else:
            spec = {
                "source": {"persistentVolumeClaimName": claim_name},
                "volumeSnapshotClassName": volume_snapshot_class,
            }
        created = self.custom_api.create_namespaced_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            namespace=namespace,
            plural=VOLUME_SNAPSHOT_PLURAL,
            body=self._snapshot_manifest(name=name, namespace=namespace, labels=labels, spec=spec),
            _request_timeout=self.request_timeout_seconds,
        )
        created_name = created.get("metadata", {}).get("name") or name
        if wait_for_ready:
            return self.wait_until_ready(name=created_name, namespace=namespace, cancel_event=cancel_event)
        return self.get(name=created_name, namespace=namespace)

    def get(self, *, name: str, namespace: str) -> dict[str, Any]:
        return self.custom_api.get_namespaced_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            namespace=namespace,
            plural=VOLUME_SNAPSHOT_PLURAL,
            name=name,
            _request_timeout=self.request_timeout_seconds,
        )

    def delete(self, *, name: str, namespace: str) -> None:
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=self._group_version.group,
                version=self._group_version.version,
                namespace=namespace,
                plural=VOLUME_SNAPSHOT_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status != 404:
                raise

    def delete_content(self, *, name: str) -> None:
        try:
            self.custom_api.delete_cluster_custom_object(
                group=self._group_version.group,
                version=self._group_version.version,
                plural=VOLUME_SNAPSHOT_CONTENT_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status != 404:
                raise

    def get_source(self, *, name: str, namespace: str) -> SnapshotSource:
        snapshot = self.get(name=name, namespace=namespace)
        content_name = self.content_name(snapshot)
        if not content_name:
            raise RuntimeError(f"VolumeSnapshot {namespace}/{name} is not bound to a VolumeSnapshotContent")

        content = self.custom_api.get_cluster_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            plural=VOLUME_SNAPSHOT_CONTENT_PLURAL,
            name=content_name,
            _request_timeout=self.request_timeout_seconds,
        )
        content_spec = content.get("spec") or {}
        if self.is_alpha:
            csi_source = content_spec.get("csiVolumeSnapshotSource") or {}
            handle = csi_source.get("snapshotHandle")
            driver = csi_source.get("driver")
            snapshot_class = content_spec.get("snapshotClassName")
        else:
            handle = (content.get("status") or {}).get("snapshotHandle")
            driver = content_spec.get("driver")
            snapshot_class = content_spec.get("volumeSnapshotClassName")
        if not handle or not driver:
            raise RuntimeError(f"VolumeSnapshotContent {content_name} does not report a snapshot handle and driver")
        return SnapshotSource(handle=handle, driver=driver, volume_snapshot_class=snapshot_class)

    def clone_volume_snapshot_class(
        self,
        *,
        source_name: str,
        target_name: str,
        deletion_policy: str,
        labels: dict[str, str] | None = None,
    ) -> None:
        source_class = self.custom_api.get_cluster_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            plural=VOLUME_SNAPSHOT_CLASS_PLURAL,
            name=source_name,
            _request_timeout=self.request_timeout_seconds,
        )
        driver_key = driver_key_for(self._group_version.protocol)
        body = {
            "apiVersion": self._group_version.group_version,
            "kind": "VolumeSnapshotClass",
            "metadata": {"name": target_name, "labels": labels or {}},
            driver_key: source_class.get(driver_key),
            "deletionPolicy": deletion_policy,
        }
        if source_class.get("parameters"):
            body["parameters"] = source_class["parameters"]
        # A conflict means another owner holds the name; it must not be reused or deleted.
        self.custom_api.create_cluster_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            plural=VOLUME_SNAPSHOT_CLASS_PLURAL,
            body=body,
            _request_timeout=self.request_timeout_seconds,
        )

    def delete_volume_snapshot_class(self, *, name: str) -> None:
        try:
            self.custom_api.delete_cluster_custom_object(
                group=self._group_version.group,
                version=self._group_version.version,
                plural=VOLUME_SNAPSHOT_CLASS_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status != 404:
                raise

    def create_from_source(
        self,
        *,
        source: SnapshotSource,
        name: str,
        namespace: str,
        labels: dict[str, str] | None = None,
        wait_for_ready: bool = True,
        cancel_event: Event | None = None,
    ) -> dict[str, Any]:
        """Pre-provision a VolumeSnapshotContent for ``source`` and bind a new VolumeSnapshot to it."""
        deletion_policy = DELETION_POLICY_DELETE
        if source.volume_snapshot_class:
            snapshot_class = self.custom_api.get_cluster_custom_object(
                group=self._group_version.group,
                version=self._group_version.version,
                plural=VOLUME_SNAPSHOT_CLASS_PLURAL,
                name=source.volume_snapshot_class,
                _request_timeout=self.request_timeout_seconds,
            )
            deletion_policy = snapshot_class.get("deletionPolicy") or DELETION_POLICY_DELETE

        content_name = content_name_for(name)
        snapshot_ref = {"kind": VOLUME_SNAPSHOT_KIND, "name": name, "namespace": namespace}
        if self.is_alpha:
            content_spec: dict[str, Any] = {
                "csiVolumeSnapshotSource": {"driver": source.driver, "snapshotHandle": source.handle},
                "volumeSnapshotRef": snapshot_ref,
                "snapshotClassName": source.volume_snapshot_class,
                "deletionPolicy": deletion_policy,
            }
            snapshot_spec: dict[str, Any] = {
                "snapshotContentName": content_name,
                "snapshotClassName": source.volume_snapshot_class,
            }
        else:
            content_spec = {
                "deletionPolicy": deletion_policy,
                "driver": source.driver,
                "source": {"snapshotHandle": source.handle},
                "volumeSnapshotRef": snapshot_ref,
                "volumeSnapshotClassName": source.volume_snapshot_class,
            }
            snapshot_spec = {
                "source": {"volumeSnapshotContentName": content_name},
                "volumeSnapshotClassName": source.volume_snapshot_class,
            }

        self.custom_api.create_cluster_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            plural=VOLUME_SNAPSHOT_CONTENT_PLURAL,
            body={
                "apiVersion": self._group_version.group_version,
                "kind": "VolumeSnapshotContent",
                "metadata": {"name": content_name, "labels": labels or {}},
                "spec": content_spec,
            },
            _request_timeout=self.request_timeout_seconds,
        )
        self.custom_api.create_namespaced_custom_object(
            group=self._group_version.group,
            version=self._group_version.version,
            namespace=namespace,
            plural=VOLUME_SNAPSHOT_PLURAL,
            body=self._snapshot_manifest(name=name, namespace=namespace, labels=labels, spec=snapshot_spec),
            _request_timeout=self.request_timeout_seconds,
        )
        if wait_for_ready:
            return self.wait_until_ready(name=name, namespace=namespace, cancel_event=cancel_event)
        return self.get(name=name, namespace=namespace)

    def wait_until_ready(
        self,
        *,
        name: str,
        namespace: str,
        cancel_event: Event | None = None,
    ) -> dict[str, Any]:
        cancel_event = cancel_event or Event()
        deadline = time.time() + self.ready_timeout_seconds
        while True:
            if cancel_event.is_set():
                raise WorkflowCancelledError(
                    operation=f"wait for VolumeSnapshot '{namespace}/{name}' to become ready",
                    reason="cancelled by caller",
                )
            snapshot = self.get(name=name, namespace=namespace)
            status = snapshot.get("status") or {}
            if status.get("readyToUse") is True:
                return snapshot
            snapshot_error = (status.get("error") or {}).get("message")
            if snapshot_error:
                raise RuntimeError(f"VolumeSnapshot {namespace}/{name} reported an error: {snapshot_error}")
            if time.time() >= deadline:
                break
            cancel_event.wait(self.poll_interval_seconds)

        raise TimeoutError(
            f"VolumeSnapshot {namespace}/{name} was not ready to use within {self.ready_timeout_seconds}s"
        )

    def content_name(self, snapshot: dict[str, Any]) -> str | None:
        if self.is_alpha:
            return (snapshot.get("spec") or {}).get("snapshotContentName")
        return (snapshot.get("status") or {}).get("boundVolumeSnapshotContentName")

    def to_snapshot(self, snapshot: dict[str, Any]) -> Snapshot:
        metadata = snapshot.get("metadata") or {}
        spec = snapshot.get("spec") or {}
        source = spec.get("source") or {}
        restore_size = (snapshot.get("status") or {}).get("restoreSize")
        if self.is_alpha:
            source_claim = source.get("name")
            snapshot_class = spec.get("snapshotClassName")
        else:
            source_claim = source.get("persistentVolumeClaimName")
            snapshot_class = spec.get("volumeSnapshotClassName")
        return Snapshot(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            source_claim=source_claim,
            volume_snapshot_class=snapshot_class,
            restore_size=str(restore_size) if restore_size is not None else None,
            api_version=snapshot.get("apiVersion") or self._group_version.group_version,
        )

    def _snapshot_manifest(
        self,
        *,
        name: str,
        namespace: str,
        labels: dict[str, str] | None,
        spec: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "apiVersion": self._group_version.group_version,
            "kind": VOLUME_SNAPSHOT_KIND,
            "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
            "spec": spec,
        }


class KubernetesSnapshotCreator:
    def __init__(
        self,
        clients: KubernetesClients,
        version_fetcher: ApiVersionFetcher,
        *,
        ready_timeout_seconds: int = 300,
        poll_interval_seconds: float = 2,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_api = clients.custom_api
        self.version_fetcher = version_fetcher
        self.ready_timeout_seconds = ready_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.request_timeout_seconds = request_timeout_seconds

    def new_snapshotter(self) -> Snapshotter:
        return Snapshotter(
            self.custom_api,
            self.version_fetcher.get_csi_snapshot_group_version(),
            ready_timeout_seconds=self.ready_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
        )

    def create_snapshot(
        self,
        snapshotter: Snapshotter,
        args: CreateSnapshotArgs,
        cancel_event: Event | None = None,
    ) -> Snapshot:
        created = snapshotter.create(
            name=args.snapshot_name,
            namespace=args.namespace,
            claim_name=args.claim_name,
            volume_snapshot_class=args.volume_snapshot_class,
            labels=created_by_labels("snapshot"),
            cancel_event=cancel_event,
        )
        return snapshotter.to_snapshot(created)

    def create_from_source_check(
        self,
        snapshotter: Snapshotter,
        args: CreateFromSourceCheckArgs,
        cancel_event: Event | None = None,
    ) -> None:
        clone_name = f"{CLONE_PREFIX}{args.snapshot_name}"
        clone_class_name = f"{CLONE_PREFIX}{args.snapshot_name}"
        labels = created_by_labels("create-from-source-check")

        source = snapshotter.get_source(name=args.snapshot_name, namespace=args.namespace)
        snapshotter.clone_volume_snapshot_class(
            source_name=args.volume_snapshot_class,
            target_name=clone_class_name,
            deletion_policy=DELETION_POLICY_RETAIN,
            labels=labels,
        )
        try:
            snapshotter.create_from_source(
                source=SnapshotSource(
                    handle=source.handle,
                    driver=source.driver,
                    volume_snapshot_class=clone_class_name,
                ),
                name=clone_name,
                namespace=args.namespace,
                labels=labels,
                cancel_event=cancel_event,
            )
        finally:
            self._best_effort(
                f"delete VolumeSnapshot {args.namespace}/{clone_name}",
                lambda: snapshotter.delete(name=clone_name, namespace=args.namespace),
            )
            self._best_effort(
                f"delete VolumeSnapshotContent {content_name_for(clone_name)}",
                lambda: snapshotter.delete_content(name=content_name_for(clone_name)),
            )
            self._best_effort(
                f"delete VolumeSnapshotClass {clone_class_name}",
                lambda: snapshotter.delete_volume_snapshot_class(name=clone_class_name),
            )

    @staticmethod
    def _best_effort(description: str, func) -> None:
        try:
            func()
        except Exception as error:  # pylint: disable=broad-except
            logger.warning(f"Failed to {description}: {error_message(error)}")


def content_name_for(snapshot_name: str) -> str:
    return f"{snapshot_name}-content"
