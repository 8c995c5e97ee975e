from __future__ import annotations

from threading import Event
from typing import Any, Protocol

from .models import (
    CreateClaimArgs,
    CreateFromSourceCheckArgs,
    CreatePodArgs,
    CreateSnapshotArgs,
    Snapshot,
    SnapshotGroupVersion,
    StorageClassDescriptor,
    VolumeClaim,
    Workload,
)


class ArgumentValidator(Protocol):
    def validate_namespace(self, namespace: str) -> None: ...

    def validate_storage_class(self, name: str) -> StorageClassDescriptor: ...

    def validate_volume_snapshot_class(
        self,
        name: str,
        group_version: SnapshotGroupVersion,
    ) -> dict[str, Any]: ...


class ApiVersionFetcher(Protocol):
    def get_csi_snapshot_group_version(self) -> SnapshotGroupVersion: ...


class ApplicationCreator(Protocol):
    def create_pvc(self, args: CreateClaimArgs) -> VolumeClaim: ...

    def create_pod(self, args: CreatePodArgs) -> Workload: ...

    def wait_for_pod_ready(
        self,
        namespace: str,
        pod_name: str,
        cancel_event: Event | None = None,
    ) -> None: ...


class SnapshotHandle(Protocol):
    @property
    def group_version(self) -> SnapshotGroupVersion: ...


class SnapshotCreator(Protocol):
    def new_snapshotter(self) -> SnapshotHandle: ...

    def create_snapshot(
        self,
        snapshotter: SnapshotHandle,
        args: CreateSnapshotArgs,
        cancel_event: Event | None = None,
    ) -> Snapshot: ...

    def create_from_source_check(
        self,
        snapshotter: SnapshotHandle,
        args: CreateFromSourceCheckArgs,
        cancel_event: Event | None = None,
    ) -> None: ...


class DataValidator(Protocol):
    def fetch_pod_data(self, namespace: str, pod_name: str) -> str: ...
