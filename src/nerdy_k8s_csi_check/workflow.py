from __future__ import annotations

from datetime import UTC, datetime
import logging
import secrets
from threading import Event
from typing import Callable

from .application import KubernetesApplicationCreator, KubernetesDataValidator
from .config import AppConfig
from .errors import CSICheckError, WorkflowCancelledError
from .k8s import KubernetesApiVersionFetcher, KubernetesArgumentValidator, KubernetesClients
from .models import (
    SnapshotRestoreOutcome,
    SnapshotRestoreResults,
    WorkflowArgs,
    WorkflowState,
)
from .snapshotter import KubernetesSnapshotCreator
from .steps import SnapshotRestoreSteps

logger = logging.getLogger(__name__)

StateCallback = Callable[[WorkflowState], None]


def generate_payload() -> str:
    return f"nkcc-test-data-{_timestamp()}"


def generate_snapshot_name() -> str:
    return f"nkcc-snapshot-{_timestamp()}-{secrets.token_hex(3)}"


class SnapshotRestoreRunner:
    """Runs the snapshot/restore check as a strictly linear state machine.

    START -> ARGS_VALIDATED -> ORIGINAL_APP_READY -> SNAPSHOT_VERIFIED ->
    RESTORED_APP_READY -> DONE. The first failure ends the run; the outcome keeps
    the last state reached, the original error and every resource created so
    far. Nothing is deleted here, cleanup belongs to the caller.
    """

    def __init__(self, steps: SnapshotRestoreSteps) -> None:
        self.steps = steps

    def run(
        self,
        args: WorkflowArgs,
        *,
        payload: str | None = None,
        snapshot_name: str | None = None,
        cancel_event: Event | None = None,
        on_state: StateCallback | None = None,
    ) -> SnapshotRestoreOutcome:
        started_at = _utc_now_iso()
        payload = payload or generate_payload()
        snapshot_name = snapshot_name or generate_snapshot_name()
        results = SnapshotRestoreResults()
        state = WorkflowState.START
        error: Exception | None = None

        def advance(next_state: WorkflowState) -> None:
            nonlocal state
            state = next_state
            logger.info(f"Snapshot/restore check reached state '{state.value}'")
            if on_state is not None:
                on_state(state)

        try:
            _raise_if_cancelled(cancel_event, "validate check arguments")
            self.steps.validate_args(args)
            advance(WorkflowState.ARGS_VALIDATED)

            _raise_if_cancelled(cancel_event, "create the original application")
            original = self.steps.create_application(args, payload, cancel_event)
            results.original_claim = original.claim
            results.original_workload = original.workload
            original.raise_for_error()
            advance(WorkflowState.ORIGINAL_APP_READY)
            if self.steps.data_validate_ops is not None:
                self.steps.validate_data(original.workload, payload)

            _raise_if_cancelled(cancel_event, "snapshot the original application")
            snapshot_result = self.steps.snapshot_application(args, original.claim, snapshot_name, cancel_event)
            results.snapshot = snapshot_result.snapshot
            snapshot_result.raise_for_error()
            advance(WorkflowState.SNAPSHOT_VERIFIED)

            _raise_if_cancelled(cancel_event, "restore the snapshot")
            restored = self.steps.restore_application(args, snapshot_result.snapshot, cancel_event)
            results.cloned_claim = restored.claim
            results.cloned_workload = restored.workload
            restored.raise_for_error()
            advance(WorkflowState.RESTORED_APP_READY)
            if self.steps.data_validate_ops is not None:
                self.steps.validate_data(restored.workload, payload)

            advance(WorkflowState.DONE)
        except CSICheckError as step_error:
            step_error.state = state
            step_error.add_note(f"snapshot/restore check halted at state '{state.value}'")
            error = step_error
            logger.error(f"Snapshot/restore check failed at state '{state.value}': {step_error}")
        except Exception as unexpected_error:  # pylint: disable=broad-except
            unexpected_error.add_note(f"snapshot/restore check halted at state '{state.value}'")
            error = unexpected_error
            logger.exception(f"Snapshot/restore check hit an unexpected error at state '{state.value}'")

        return SnapshotRestoreOutcome(
            args=args,
            state=state,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            payload=payload,
            snapshot_name=snapshot_name,
            results=results,
            error=error,
        )


def build_snapshot_restore_runner(
    clients: KubernetesClients,
    config: AppConfig,
    *,
    validate_data: bool = True,
) -> SnapshotRestoreRunner:
    version_fetcher = KubernetesApiVersionFetcher(
        clients,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    steps = SnapshotRestoreSteps(
        validate_ops=KubernetesArgumentValidator(
            clients,
            request_timeout_seconds=config.request_timeout_seconds,
        ),
        version_fetch=version_fetcher,
        create_app_ops=KubernetesApplicationCreator(
            clients,
            pod_ready_timeout_seconds=config.pod_ready_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            default_container_image=config.container_image,
            request_timeout_seconds=config.request_timeout_seconds,
        ),
        snapshot_create_ops=KubernetesSnapshotCreator(
            clients,
            version_fetcher,
            ready_timeout_seconds=config.snapshot_ready_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            request_timeout_seconds=config.request_timeout_seconds,
        ),
        data_validate_ops=KubernetesDataValidator(clients) if validate_data else None,
    )
    return SnapshotRestoreRunner(steps)


def _raise_if_cancelled(cancel_event: Event | None, operation: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise WorkflowCancelledError(operation=operation, reason="cancelled by caller")


def _timestamp() -> str:
    return datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S")


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
