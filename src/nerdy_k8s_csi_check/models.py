from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .errors import CSICheckError, error_message

SNAPSHOT_API_GROUP = "snapshot.storage.k8s.io"
VOLUME_SNAPSHOT_KIND = "VolumeSnapshot"
DEFAULT_CLAIM_SIZE = "1Gi"
DATA_FILE_PATH = "/data/out.txt"


class ProtocolVersion(str, Enum):
    ALPHA = "alpha"
    STABLE = "stable"


# v1beta1 and v1 share the stable VolumeSnapshotClass layout.
PROTOCOL_BY_VERSION = {
    "v1alpha1": ProtocolVersion.ALPHA,
    "v1beta1": ProtocolVersion.STABLE,
    "v1": ProtocolVersion.STABLE,
}

DRIVER_KEY_BY_PROTOCOL = {
    ProtocolVersion.ALPHA: "snapshotter",
    ProtocolVersion.STABLE: "driver",
}


def driver_key_for(protocol: ProtocolVersion) -> str:
    return DRIVER_KEY_BY_PROTOCOL[protocol]


@dataclass(frozen=True)
class SnapshotGroupVersion:
    group_version: str
    protocol: ProtocolVersion

    @property
    def group(self) -> str:
        return self.group_version.split("/", 1)[0]

    @property
    def version(self) -> str:
        return self.group_version.split("/", 1)[-1]

    @classmethod
    def from_group_version(cls, group_version: str) -> SnapshotGroupVersion:
        group, _, version = group_version.partition("/")
        if group != SNAPSHOT_API_GROUP or not version:
            raise ValueError(f"'{group_version}' is not a {SNAPSHOT_API_GROUP} group version")
        protocol = PROTOCOL_BY_VERSION.get(version)
        if protocol is None:
            supported = ", ".join(sorted(PROTOCOL_BY_VERSION))
            raise ValueError(f"unsupported snapshot API version '{version}' (supported: {supported})")
        return cls(group_version=group_version, protocol=protocol)


@dataclass(frozen=True)
class WorkflowArgs:
    namespace: str
    storage_class: str
    volume_snapshot_class: str
    run_as_user: int = 0
    container_image: str = ""
    skip_create_from_source_check: bool = False

    def missing_fields(self) -> list[str]:
        required = (
            ("namespace", self.namespace),
            ("storage_class", self.storage_class),
            ("volume_snapshot_class", self.volume_snapshot_class),
        )
        return [name for name, value in required if not (value or "").strip()]


@dataclass(frozen=True)
class StorageClassDescriptor:
    name: str
    provisioner: str


@dataclass(frozen=True)
class ClaimDataSource:
    name: str
    kind: str = VOLUME_SNAPSHOT_KIND
    api_group: str = SNAPSHOT_API_GROUP


@dataclass(frozen=True)
class VolumeClaim:
    name: str
    namespace: str
    storage_class: str
    data_source: ClaimDataSource | None = None
    restore_size: str | None = None


@dataclass(frozen=True)
class Workload:
    name: str
    namespace: str
    command: str
    claim_name: str
    run_as_user: int = 0
    container_image: str = ""


@dataclass(frozen=True)
class Snapshot:
    name: str
    namespace: str
    source_claim: str | None
    volume_snapshot_class: str | None
    restore_size: str | None
    api_version: str = ""


@dataclass(frozen=True)
class CreateClaimArgs:
    generate_name: str
    storage_class: str
    namespace: str
    data_source: ClaimDataSource | None = None
    restore_size: str | None = None


@dataclass(frozen=True)
class CreatePodArgs:
    generate_name: str
    claim_name: str
    namespace: str
    command: str
    run_as_user: int
    container_image: str


@dataclass(frozen=True)
class CreateSnapshotArgs:
    namespace: str
    claim_name: str
    volume_snapshot_class: str
    snapshot_name: str


@dataclass(frozen=True)
class CreateFromSourceCheckArgs:
    volume_snapshot_class: str
    snapshot_name: str
    namespace: str


@dataclass(frozen=True)
class ApplicationResult:
    """Claim and workload created by one provisioning step.

    Either value may be set even when ``error`` is, so callers can clean up what
    the step left behind.
    """

    claim: VolumeClaim | None = None
    workload: Workload | None = None
    error: CSICheckError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass(frozen=True)
class SnapshotResult:
    snapshot: Snapshot | None = None
    error: CSICheckError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class WorkflowState(str, Enum):
    START = "start"
    ARGS_VALIDATED = "args_validated"
    ORIGINAL_APP_READY = "original_app_ready"
    SNAPSHOT_VERIFIED = "snapshot_verified"
    RESTORED_APP_READY = "restored_app_ready"
    DONE = "done"


WORKFLOW_STATE_ORDER = tuple(WorkflowState)


@dataclass
class SnapshotRestoreResults:
    original_claim: VolumeClaim | None = None
    original_workload: Workload | None = None
    snapshot: Snapshot | None = None
    cloned_claim: VolumeClaim | None = None
    cloned_workload: Workload | None = None

    def resource_names(self) -> dict[str, str]:
        return {
            "original_pvc": self.original_claim.name if self.original_claim else "",
            "original_pod": self.original_workload.name if self.original_workload else "",
            "snapshot": self.snapshot.name if self.snapshot else "",
            "cloned_pvc": self.cloned_claim.name if self.cloned_claim else "",
            "cloned_pod": self.cloned_workload.name if self.cloned_workload else "",
        }


@dataclass
class SnapshotRestoreOutcome:
    args: WorkflowArgs
    state: WorkflowState
    started_at: str
    finished_at: str
    payload: str
    snapshot_name: str
    results: SnapshotRestoreResults = field(default_factory=SnapshotRestoreResults)
    error: Exception | None = None

    @property
    def passed(self) -> bool:
        return self.error is None and self.state is WorkflowState.DONE

    @property
    def status(self) -> str:
        return "passed" if self.passed else "failed"

    @property
    def error_kind(self) -> str | None:
        if self.error is None:
            return None
        if isinstance(self.error, CSICheckError):
            return self.error.kind
        return "unexpected"

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return error_message(self.error)
