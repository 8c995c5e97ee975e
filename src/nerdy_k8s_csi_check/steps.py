from __future__ import annotations

import logging
from threading import Event
from typing import Any, Callable, TypeVar

from kubernetes.client import ApiException

from .errors import (
    CreateFromSourceError,
    CSICheckError,
    DataMismatchError,
    DriverMismatchError,
    NotFoundError,
    PreconditionError,
    RemoteOperationError,
    WorkflowCancelledError,
    WorkloadNotReadyError,
)
from .interfaces import (
    ApiVersionFetcher,
    ApplicationCreator,
    ArgumentValidator,
    DataValidator,
    SnapshotCreator,
)
from .k8s import describe_api_error
from .models import (
    DATA_FILE_PATH,
    ApplicationResult,
    ClaimDataSource,
    CreateClaimArgs,
    CreateFromSourceCheckArgs,
    CreatePodArgs,
    CreateSnapshotArgs,
    ProtocolVersion,
    Snapshot,
    SnapshotResult,
    VolumeClaim,
    WorkflowArgs,
    Workload,
    driver_key_for,
)

logger = logging.getLogger(__name__)

ORIGINAL_PVC_GENERATE_NAME = "nkcc-original-pvc-"
ORIGINAL_POD_GENERATE_NAME = "nkcc-original-pod-"
CLONED_PVC_GENERATE_NAME = "nkcc-cloned-pvc-"
CLONED_POD_GENERATE_NAME = "nkcc-cloned-pod-"
IDLE_COMMAND = "tail -f /dev/null"
T = TypeVar("T")


def original_pod_command(payload: str) -> str:
    return f"echo '{payload}' >> {DATA_FILE_PATH}; sync; {IDLE_COMMAND}"


def driver_from_snapshot_class(snapshot_class: dict[str, Any], protocol: ProtocolVersion) -> str:
    driver = snapshot_class.get(driver_key_for(protocol))
    return driver if isinstance(driver, str) else ""


class SnapshotRestoreSteps:
    """Individual steps of the snapshot/restore check.

    Every remote interaction goes through an injected collaborator, so each step
    can be exercised against recorded-call mocks. Steps never retry: a retried
    create against server-side name generation could leave duplicate resources.
    """

    def __init__(
        self,
        *,
        validate_ops: ArgumentValidator | None = None,
        version_fetch: ApiVersionFetcher | None = None,
        create_app_ops: ApplicationCreator | None = None,
        snapshot_create_ops: SnapshotCreator | None = None,
        data_validate_ops: DataValidator | None = None,
    ) -> None:
        self.validate_ops = validate_ops
        self.version_fetch = version_fetch
        self.create_app_ops = create_app_ops
        self.snapshot_create_ops = snapshot_create_ops
        self.data_validate_ops = data_validate_ops

    def validate_args(self, args: WorkflowArgs) -> None:
        missing = args.missing_fields()
        if missing:
            raise PreconditionError(
                operation="validate check arguments",
                reason=f"required fields are missing ({', '.join(missing)})",
            )

        self._remote_call(
            operation=f"validate namespace '{args.namespace}'",
            func=lambda: self.validate_ops.validate_namespace(args.namespace),
        )
        storage_class = self._remote_call(
            operation=f"validate StorageClass '{args.storage_class}'",
            func=lambda: self.validate_ops.validate_storage_class(args.storage_class),
        )
        group_version = self._remote_call(
            operation="resolve the CSI snapshot API group version",
            func=self.version_fetch.get_csi_snapshot_group_version,
        )
        snapshot_class = self._remote_call(
            operation=f"validate VolumeSnapshotClass '{args.volume_snapshot_class}'",
            func=lambda: self.validate_ops.validate_volume_snapshot_class(
                args.volume_snapshot_class,
                group_version,
            ),
        )

        snapshot_class_driver = driver_from_snapshot_class(snapshot_class, group_version.protocol)
        if storage_class.provisioner != snapshot_class_driver:
            raise DriverMismatchError(
                storage_class_provisioner=storage_class.provisioner,
                snapshot_class_driver=snapshot_class_driver,
            )
        logger.info(
            f"Validated arguments: StorageClass '{args.storage_class}' and VolumeSnapshotClass "
            f"'{args.volume_snapshot_class}' both use driver '{snapshot_class_driver}' "
            f"({group_version.group_version})"
        )

    def create_application(
        self,
        args: WorkflowArgs,
        payload: str,
        cancel_event: Event | None = None,
    ) -> ApplicationResult:
        if "'" in payload:
            return ApplicationResult(
                error=PreconditionError(
                    operation="create the original application",
                    reason="the payload must not contain a single quote",
                )
            )

        return self._provision_application(
            args=args,
            claim_args=CreateClaimArgs(
                generate_name=ORIGINAL_PVC_GENERATE_NAME,
                storage_class=args.storage_class,
                namespace=args.namespace,
            ),
            pod_generate_name=ORIGINAL_POD_GENERATE_NAME,
            command=original_pod_command(payload),
            cancel_event=cancel_event,
        )

    def restore_application(
        self,
        args: WorkflowArgs,
        snapshot: Snapshot,
        cancel_event: Event | None = None,
    ) -> ApplicationResult:
        if not snapshot.restore_size:
            return ApplicationResult(
                error=PreconditionError(
                    operation=f"restore from VolumeSnapshot '{snapshot.name}'",
                    reason="the snapshot does not report a restore size",
                )
            )

        return self._provision_application(
            args=args,
            claim_args=CreateClaimArgs(
                generate_name=CLONED_PVC_GENERATE_NAME,
                storage_class=args.storage_class,
                namespace=args.namespace,
                data_source=ClaimDataSource(name=snapshot.name),
                restore_size=snapshot.restore_size,
            ),
            pod_generate_name=CLONED_POD_GENERATE_NAME,
            command=IDLE_COMMAND,
            cancel_event=cancel_event,
        )

    def snapshot_application(
        self,
        args: WorkflowArgs,
        claim: VolumeClaim,
        snapshot_name: str,
        cancel_event: Event | None = None,
    ) -> SnapshotResult:
        try:
            snapshotter = self._remote_call(
                operation="create a snapshotter for the CSI snapshot API",
                func=self.snapshot_create_ops.new_snapshotter,
            )
            snapshot = self._remote_call(
                operation=f"create VolumeSnapshot '{snapshot_name}' from PVC '{claim.name}'",
                func=lambda: self.snapshot_create_ops.create_snapshot(
                    snapshotter,
                    CreateSnapshotArgs(
                        namespace=args.namespace,
                        claim_name=claim.name,
                        volume_snapshot_class=args.volume_snapshot_class,
                        snapshot_name=snapshot_name,
                    ),
                    cancel_event,
                ),
            )
        except CSICheckError as error:
            logger.error(f"Snapshot step failed: {error}")
            return SnapshotResult(error=error)
        logger.info(f"Created VolumeSnapshot '{snapshot.name}' from PVC '{claim.name}'")

        if args.skip_create_from_source_check:
            logger.warning(f"Skipping the create-from-source check for VolumeSnapshot '{snapshot.name}'")
            return SnapshotResult(snapshot=snapshot)

        operation = f"create a snapshot from the source of VolumeSnapshot '{snapshot.name}'"
        try:
            self.snapshot_create_ops.create_from_source_check(
                snapshotter,
                CreateFromSourceCheckArgs(
                    volume_snapshot_class=args.volume_snapshot_class,
                    snapshot_name=snapshot.name,
                    namespace=args.namespace,
                ),
                cancel_event,
            )
        except WorkflowCancelledError as error:
            return SnapshotResult(snapshot=snapshot, error=error)
        except Exception as error:  # pylint: disable=broad-except
            logger.error(f"Create-from-source check failed for VolumeSnapshot '{snapshot.name}': {error}")
            return SnapshotResult(
                snapshot=snapshot,
                error=_wrap(CreateFromSourceError, operation=operation, error=error),
            )
        logger.info(f"VolumeSnapshot '{snapshot.name}' is usable as a restore source")
        return SnapshotResult(snapshot=snapshot)

    def validate_data(self, workload: Workload, expected: str) -> None:
        observed = self._remote_call(
            operation=f"read {DATA_FILE_PATH} from pod '{workload.name}'",
            func=lambda: self.data_validate_ops.fetch_pod_data(workload.namespace, workload.name),
        )
        if observed.strip() != expected.strip():
            raise DataMismatchError(pod_name=workload.name, expected=expected, observed=observed.strip())
        logger.info(f"Pod '{workload.name}' holds the expected data")

    def _provision_application(
        self,
        *,
        args: WorkflowArgs,
        claim_args: CreateClaimArgs,
        pod_generate_name: str,
        command: str,
        cancel_event: Event | None,
    ) -> ApplicationResult:
        try:
            claim = self._remote_call(
                operation=f"create PVC with prefix '{claim_args.generate_name}'",
                func=lambda: self.create_app_ops.create_pvc(claim_args),
            )
        except CSICheckError as error:
            logger.error(f"PVC creation failed: {error}")
            return ApplicationResult(error=error)

        try:
            workload = self._remote_call(
                operation=f"create pod with prefix '{pod_generate_name}' for PVC '{claim.name}'",
                func=lambda: self.create_app_ops.create_pod(
                    CreatePodArgs(
                        generate_name=pod_generate_name,
                        claim_name=claim.name,
                        namespace=args.namespace,
                        command=command,
                        run_as_user=args.run_as_user,
                        container_image=args.container_image,
                    )
                ),
            )
        except CSICheckError as error:
            logger.error(f"Pod creation failed: {error}")
            return ApplicationResult(claim=claim, error=error)

        try:
            self.create_app_ops.wait_for_pod_ready(args.namespace, workload.name, cancel_event)
        except WorkflowCancelledError as error:
            return ApplicationResult(claim=claim, workload=workload, error=error)
        except Exception as error:  # pylint: disable=broad-except
            logger.error(f"Pod '{workload.name}' did not become ready: {error}")
            return ApplicationResult(
                claim=claim,
                workload=workload,
                error=_wrap(
                    WorkloadNotReadyError,
                    operation=f"wait for pod '{args.namespace}/{workload.name}' to become ready",
                    error=error,
                ),
            )

        logger.info(f"Pod '{workload.name}' is ready with PVC '{claim.name}'")
        return ApplicationResult(claim=claim, workload=workload)

    @staticmethod
    def _remote_call(*, operation: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except CSICheckError:
            raise
        except ApiException as error:
            if error.status == 404:
                raise NotFoundError(operation=operation, reason=describe_api_error(error)) from error
            raise RemoteOperationError(operation=operation, reason=describe_api_error(error)) from error
        except Exception as error:  # pylint: disable=broad-except
            raise _wrap(RemoteOperationError, operation=operation, error=error) from error


def _wrap(error_type: type[CSICheckError], *, operation: str, error: Exception) -> CSICheckError:
    if isinstance(error, ApiException):
        reason = describe_api_error(error)
    else:
        reason = str(error).strip() or error.__class__.__name__
    wrapped = error_type(operation=operation, reason=reason)
    wrapped.__cause__ = error
    return wrapped
