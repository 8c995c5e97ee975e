from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client import ApiException

from .errors import error_message
from .k8s import KubernetesApiVersionFetcher, KubernetesClients
from .models import SnapshotRestoreOutcome, SnapshotRestoreResults, WorkflowState
from .snapshotter import VOLUME_SNAPSHOT_PLURAL

logger = logging.getLogger(__name__)


class ResourceCleaner:
    """Deletes whatever a snapshot/restore run left in the cluster.

    Deletion runs in reverse creation order and never stops early; every
    failure is returned as a message instead of raised.
    """

    def __init__(self, clients: KubernetesClients) -> None:
        self.clients = clients
        self.core_api = clients.core_api
        self.custom_api = clients.custom_api

    def cleanup_outcome(self, outcome: SnapshotRestoreOutcome) -> list[str]:
        """Cleans up a finished run, including a snapshot that never became ready."""
        pending_snapshot = None
        if outcome.results.snapshot is None and outcome.state is WorkflowState.ORIGINAL_APP_READY:
            pending_snapshot = (outcome.args.namespace, outcome.snapshot_name)
        return self.cleanup(outcome.results, pending_snapshot=pending_snapshot)

    def cleanup(
        self,
        results: SnapshotRestoreResults,
        *,
        pending_snapshot: tuple[str, str] | None = None,
    ) -> list[str]:
        failures: list[str] = []
        if results.cloned_workload is not None:
            self._collect(
                failures,
                f"delete pod {results.cloned_workload.namespace}/{results.cloned_workload.name}",
                lambda: self._delete_pod(results.cloned_workload.namespace, results.cloned_workload.name),
            )
        if results.cloned_claim is not None:
            self._collect(
                failures,
                f"delete PVC {results.cloned_claim.namespace}/{results.cloned_claim.name}",
                lambda: self._delete_pvc(results.cloned_claim.namespace, results.cloned_claim.name),
            )
        if results.snapshot is not None:
            self._collect(
                failures,
                f"delete VolumeSnapshot {results.snapshot.namespace}/{results.snapshot.name}",
                lambda: self._delete_snapshot(
                    results.snapshot.namespace,
                    results.snapshot.name,
                    results.snapshot.api_version,
                ),
            )
        elif pending_snapshot is not None:
            pending_namespace, pending_name = pending_snapshot
            self._collect(
                failures,
                f"delete VolumeSnapshot {pending_namespace}/{pending_name}",
                lambda: self._delete_snapshot(pending_namespace, pending_name, self._served_snapshot_api_version()),
            )
        if results.original_workload is not None:
            self._collect(
                failures,
                f"delete pod {results.original_workload.namespace}/{results.original_workload.name}",
                lambda: self._delete_pod(results.original_workload.namespace, results.original_workload.name),
            )
        if results.original_claim is not None:
            self._collect(
                failures,
                f"delete PVC {results.original_claim.namespace}/{results.original_claim.name}",
                lambda: self._delete_pvc(results.original_claim.namespace, results.original_claim.name),
            )
        return failures

    def _delete_pod(self, namespace: str, name: str) -> None:
        self._ignore_missing(
            lambda: self.core_api.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                grace_period_seconds=0,
                body=client.V1DeleteOptions(),
            )
        )

    def _delete_pvc(self, namespace: str, name: str) -> None:
        self._ignore_missing(
            lambda: self.core_api.delete_namespaced_persistent_volume_claim(name=name, namespace=namespace)
        )

    def _served_snapshot_api_version(self) -> str:
        return KubernetesApiVersionFetcher(self.clients).get_csi_snapshot_group_version().group_version

    def _delete_snapshot(self, namespace: str, name: str, api_version: str) -> None:
        group, _, version = api_version.partition("/")
        if not version:
            raise RuntimeError(f"VolumeSnapshot {namespace}/{name} has no API version recorded")
        self._ignore_missing(
            lambda: self.custom_api.delete_namespaced_custom_object(
                group=group,
                version=version,
                namespace=namespace,
                plural=VOLUME_SNAPSHOT_PLURAL,
                name=name,
            )
        )

    @staticmethod
    def _ignore_missing(func) -> None:
        try:
            func()
        except ApiException as error:
            if error.status == 404:
                return
            raise

    @staticmethod
    def _collect(failures: list[str], description: str, func) -> None:
        try:
            func()
            logger.info(f"Cleanup: {description}")
        except Exception as error:  # pylint: disable=broad-except
            message = f"cleanup failed to {description}: {error_message(error)}"
            logger.warning(message)
            failures.append(message)
