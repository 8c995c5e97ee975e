from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import WorkflowState


class CSICheckError(RuntimeError):
    """Base class for every failure the snapshot/restore check reports."""

    kind = "error"

    def __init__(self, *, operation: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{operation} failed: {normalized_reason}")
        self.operation = operation
        self.reason = normalized_reason
        self.state: WorkflowState | None = None


class PreconditionError(CSICheckError):
    """Raised before any remote call when the check arguments are unusable."""

    kind = "precondition"


class NotFoundError(CSICheckError):
    kind = "not_found"


class DriverMismatchError(CSICheckError):
    """StorageClass provisioner and VolumeSnapshotClass driver disagree."""

    kind = "driver_mismatch"

    def __init__(self, *, storage_class_provisioner: str, snapshot_class_driver: str) -> None:
        super().__init__(
            operation="compare StorageClass provisioner with VolumeSnapshotClass driver",
            reason=(
                f"StorageClass provisioner ({storage_class_provisioner}) and "
                f"VolumeSnapshotClass driver ({snapshot_class_driver or 'unset'}) are different"
            ),
        )
        self.storage_class_provisioner = storage_class_provisioner
        self.snapshot_class_driver = snapshot_class_driver


class RemoteOperationError(CSICheckError):
    kind = "remote_operation"


class WorkloadNotReadyError(CSICheckError):
    """The claim and pod exist but the pod never became ready."""

    kind = "workload_not_ready"


class CreateFromSourceError(CSICheckError):
    """The snapshot exists but could not serve as the source of a new snapshot."""

    kind = "create_from_source"


class DataMismatchError(CSICheckError):
    kind = "data_mismatch"

    def __init__(self, *, pod_name: str, expected: str, observed: str) -> None:
        super().__init__(
            operation=f"verify data in pod '{pod_name}'",
            reason=f"expected '{expected}' but read '{observed}'",
        )
        self.expected = expected
        self.observed = observed


class WorkflowCancelledError(CSICheckError):
    kind = "cancelled"


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
