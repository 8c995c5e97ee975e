from __future__ import annotations

from threading import Event
from unittest.mock import Mock

from nerdy_k8s_csi_check.application import KubernetesApplicationCreator, KubernetesDataValidator
from nerdy_k8s_csi_check.config import AppConfig
from nerdy_k8s_csi_check.errors import (
    CreateFromSourceError,
    DataMismatchError,
    PreconditionError,
    RemoteOperationError,
    WorkloadNotReadyError,
)
from nerdy_k8s_csi_check.k8s import KubernetesApiVersionFetcher, KubernetesArgumentValidator, KubernetesClients
from nerdy_k8s_csi_check.models import (
    ApplicationResult,
    Snapshot,
    SnapshotResult,
    VolumeClaim,
    WorkflowArgs,
    WorkflowState,
    Workload,
)
from nerdy_k8s_csi_check.snapshotter import KubernetesSnapshotCreator
from nerdy_k8s_csi_check.workflow import (
    SnapshotRestoreRunner,
    build_snapshot_restore_runner,
    generate_payload,
    generate_snapshot_name,
)

_ARGS = WorkflowArgs(namespace="ns", storage_class="sc", volume_snapshot_class="vsc")
_ORIGINAL_CLAIM = VolumeClaim(name="pvc1", namespace="ns", storage_class="sc")
_ORIGINAL_WORKLOAD = Workload(name="pod1", namespace="ns", command="cmd", claim_name="pvc1")
_SNAPSHOT = Snapshot(
    name="snap1",
    namespace="ns",
    source_claim="pvc1",
    volume_snapshot_class="vsc",
    restore_size="1Gi",
    api_version="snapshot.storage.k8s.io/v1",
)
_CLONED_CLAIM = VolumeClaim(name="pvc2", namespace="ns", storage_class="sc")
_CLONED_WORKLOAD = Workload(name="pod2", namespace="ns", command="tail -f /dev/null", claim_name="pvc2")


def _steps(*, validate_data: bool = True) -> Mock:
    steps = Mock()
    steps.data_validate_ops = Mock() if validate_data else None
    steps.create_application.return_value = ApplicationResult(claim=_ORIGINAL_CLAIM, workload=_ORIGINAL_WORKLOAD)
    steps.snapshot_application.return_value = SnapshotResult(snapshot=_SNAPSHOT)
    steps.restore_application.return_value = ApplicationResult(claim=_CLONED_CLAIM, workload=_CLONED_WORKLOAD)
    return steps


def test_run_with_successful_steps_reaches_done_and_reports_every_state() -> None:
    steps = _steps()
    states: list[WorkflowState] = []

    outcome = SnapshotRestoreRunner(steps).run(
        _ARGS,
        payload="payload",
        snapshot_name="snap1",
        on_state=states.append,
    )

    assert outcome.passed
    assert outcome.status == "passed"
    assert outcome.state is WorkflowState.DONE
    assert outcome.error is None
    assert outcome.error_kind is None
    assert outcome.message == ""
    assert states == [
        WorkflowState.ARGS_VALIDATED,
        WorkflowState.ORIGINAL_APP_READY,
        WorkflowState.SNAPSHOT_VERIFIED,
        WorkflowState.RESTORED_APP_READY,
        WorkflowState.DONE,
    ]
    assert outcome.results.resource_names() == {
        "original_pvc": "pvc1",
        "original_pod": "pod1",
        "snapshot": "snap1",
        "cloned_pvc": "pvc2",
        "cloned_pod": "pod2",
    }
    steps.create_application.assert_called_once_with(_ARGS, "payload", None)
    steps.snapshot_application.assert_called_once_with(_ARGS, _ORIGINAL_CLAIM, "snap1", None)
    steps.restore_application.assert_called_once_with(_ARGS, _SNAPSHOT, None)
    assert [recorded.args for recorded in steps.validate_data.call_args_list] == [
        (_ORIGINAL_WORKLOAD, "payload"),
        (_CLONED_WORKLOAD, "payload"),
    ]


def test_run_without_data_validator_skips_data_checks() -> None:
    steps = _steps(validate_data=False)

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.passed
    steps.validate_data.assert_not_called()


def test_run_without_payload_or_snapshot_name_generates_them() -> None:
    steps = _steps()

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.payload.startswith("nkcc-test-data-")
    assert outcome.snapshot_name.startswith("nkcc-snapshot-")
    steps.snapshot_application.assert_called_once_with(_ARGS, _ORIGINAL_CLAIM, outcome.snapshot_name, None)


def test_run_with_invalid_args_stays_at_start_and_creates_nothing() -> None:
    steps = _steps()
    steps.validate_args.side_effect = PreconditionError(
        operation="validate check arguments",
        reason="required fields are missing (namespace)",
    )

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.status == "failed"
    assert outcome.state is WorkflowState.START
    assert outcome.error_kind == "precondition"
    assert outcome.error.state is WorkflowState.START
    assert "halted at state 'start'" in outcome.error.__notes__[0]
    steps.create_application.assert_not_called()
    assert outcome.results.resource_names()["original_pvc"] == ""


def test_run_with_failed_original_application_keeps_partial_claim() -> None:
    steps = _steps()
    steps.create_application.return_value = ApplicationResult(
        claim=_ORIGINAL_CLAIM,
        error=RemoteOperationError(operation="create pod", reason="create pod error"),
    )

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.state is WorkflowState.ARGS_VALIDATED
    assert outcome.error_kind == "remote_operation"
    assert outcome.message == "create pod failed: create pod error"
    assert outcome.results.original_claim == _ORIGINAL_CLAIM
    assert outcome.results.original_workload is None
    steps.snapshot_application.assert_not_called()


def test_run_with_failed_create_from_source_check_keeps_snapshot() -> None:
    steps = _steps()
    steps.snapshot_application.return_value = SnapshotResult(
        snapshot=_SNAPSHOT,
        error=CreateFromSourceError(operation="create from source", reason="cfs error"),
    )

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.state is WorkflowState.ORIGINAL_APP_READY
    assert outcome.error_kind == "create_from_source"
    assert outcome.results.snapshot == _SNAPSHOT
    assert outcome.results.original_workload == _ORIGINAL_WORKLOAD
    steps.restore_application.assert_not_called()


def test_run_with_restored_pod_not_ready_stops_at_snapshot_verified() -> None:
    steps = _steps()
    steps.restore_application.return_value = ApplicationResult(
        claim=_CLONED_CLAIM,
        workload=_CLONED_WORKLOAD,
        error=WorkloadNotReadyError(operation="wait for pod", reason="timeout"),
    )

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.state is WorkflowState.SNAPSHOT_VERIFIED
    assert outcome.error_kind == "workload_not_ready"
    assert outcome.results.cloned_claim == _CLONED_CLAIM
    assert outcome.results.cloned_workload == _CLONED_WORKLOAD


def test_run_with_restored_data_mismatch_stops_at_restored_app_ready() -> None:
    steps = _steps()
    steps.validate_data.side_effect = [
        None,
        DataMismatchError(pod_name="pod2", expected="payload", observed=""),
    ]

    outcome = SnapshotRestoreRunner(steps).run(_ARGS, payload="payload")

    assert outcome.state is WorkflowState.RESTORED_APP_READY
    assert outcome.error_kind == "data_mismatch"
    assert not outcome.passed


def test_run_with_pre_cancelled_event_does_not_validate() -> None:
    steps = _steps()
    cancel_event = Event()
    cancel_event.set()

    outcome = SnapshotRestoreRunner(steps).run(_ARGS, cancel_event=cancel_event)

    assert outcome.state is WorkflowState.START
    assert outcome.error_kind == "cancelled"
    steps.validate_args.assert_not_called()


def test_run_with_cancel_between_steps_stops_before_next_step() -> None:
    steps = _steps()
    cancel_event = Event()

    def cancel_after_validation(state: WorkflowState) -> None:
        if state is WorkflowState.ARGS_VALIDATED:
            cancel_event.set()

    outcome = SnapshotRestoreRunner(steps).run(
        _ARGS,
        cancel_event=cancel_event,
        on_state=cancel_after_validation,
    )

    assert outcome.state is WorkflowState.ARGS_VALIDATED
    assert outcome.error_kind == "cancelled"
    steps.create_application.assert_not_called()


def test_run_with_unexpected_error_reports_unexpected_kind() -> None:
    steps = _steps()
    steps.snapshot_application.side_effect = KeyError("status")

    outcome = SnapshotRestoreRunner(steps).run(_ARGS)

    assert outcome.state is WorkflowState.ORIGINAL_APP_READY
    assert outcome.error_kind == "unexpected"
    assert isinstance(outcome.error, KeyError)
    assert "halted at state 'original_app_ready'" in outcome.error.__notes__[0]


def test_generate_names_with_timestamp_use_check_prefixes() -> None:
    assert generate_payload().startswith("nkcc-test-data-")
    assert generate_snapshot_name().startswith("nkcc-snapshot-")


def test_generate_snapshot_name_within_same_second_returns_distinct_names(monkeypatch) -> None:
    monkeypatch.setattr("nerdy_k8s_csi_check.workflow._timestamp", lambda: "20260223100000")

    names = {generate_snapshot_name() for _ in range(5)}

    assert len(names) == 5
    assert all(name.startswith("nkcc-snapshot-20260223100000-") for name in names)


def test_build_snapshot_restore_runner_with_config_wires_kubernetes_collaborators() -> None:
    clients = KubernetesClients(
        api_client=Mock(),
        core_api=Mock(),
        storage_api=Mock(),
        custom_api=Mock(),
        apis_api=Mock(),
    )
    config = AppConfig(
        container_image="busybox:1.36",
        pod_ready_timeout_seconds=42,
        snapshot_ready_timeout_seconds=43,
        poll_interval_seconds=0.5,
        request_timeout_seconds=7,
    )

    runner = build_snapshot_restore_runner(clients, config)

    steps = runner.steps
    assert isinstance(steps.validate_ops, KubernetesArgumentValidator)
    assert isinstance(steps.version_fetch, KubernetesApiVersionFetcher)
    assert isinstance(steps.create_app_ops, KubernetesApplicationCreator)
    assert isinstance(steps.snapshot_create_ops, KubernetesSnapshotCreator)
    assert isinstance(steps.data_validate_ops, KubernetesDataValidator)
    assert steps.create_app_ops.default_container_image == "busybox:1.36"
    assert steps.create_app_ops.pod_ready_timeout_seconds == 42
    assert steps.snapshot_create_ops.ready_timeout_seconds == 43
    assert steps.validate_ops.request_timeout_seconds == 7


def test_build_snapshot_restore_runner_without_data_validation_leaves_validator_unset() -> None:
    clients = KubernetesClients(
        api_client=Mock(),
        core_api=Mock(),
        storage_api=Mock(),
        custom_api=Mock(),
        apis_api=Mock(),
    )

    runner = build_snapshot_restore_runner(clients, AppConfig(), validate_data=False)

    assert runner.steps.data_validate_ops is None
