from __future__ import annotations

from pathlib import Path
from typing import Any
import os

import streamlit as st
import yaml

from nerdy_k8s_csi_check.cleanup import ResourceCleaner
from nerdy_k8s_csi_check.config import AppConfig, configure_logging, ensure_directories
from nerdy_k8s_csi_check.k8s import (
    KubernetesApiVersionFetcher,
    KubernetesDiscoveryError,
    list_storage_class_names,
    list_volume_snapshot_class_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from nerdy_k8s_csi_check.metadata import CheckHistoryStore
from nerdy_k8s_csi_check.models import (
    WORKFLOW_STATE_ORDER,
    SnapshotRestoreOutcome,
    WorkflowArgs,
    WorkflowState,
)
from nerdy_k8s_csi_check.workflow import build_snapshot_restore_runner

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "failed": "Failed",
    "blocked": "Waiting",
}

_WORKFLOW_STEP_DESCRIPTIONS = {
    WorkflowState.ARGS_VALIDATED: "Namespace, StorageClass and VolumeSnapshotClass exist and share a CSI driver.",
    WorkflowState.ORIGINAL_APP_READY: "Source PVC is bound and the writer pod is ready.",
    WorkflowState.SNAPSHOT_VERIFIED: "VolumeSnapshot is ready and can be re-imported from its content.",
    WorkflowState.RESTORED_APP_READY: "Restored PVC is provisioned from the snapshot and its pod is ready.",
    WorkflowState.DONE: "Snapshot/restore round trip completed.",
}

_ERROR_HINTS = {
    "precondition": "Fill in the namespace, StorageClass and VolumeSnapshotClass before running the check.",
    "not_found": "Confirm the named resource exists and the snapshot CRDs are installed on this cluster.",
    "driver_mismatch": "Pick a VolumeSnapshotClass whose driver matches the StorageClass provisioner.",
    "remote_operation": "Review RBAC for PVCs, pods and snapshot resources, then inspect API server events.",
    "workload_not_ready": "Inspect pod events; the image may not be pullable or the PVC may not bind.",
    "create_from_source": "The CSI driver could not re-import the snapshot handle; check snapshot-controller logs.",
    "data_mismatch": "The restored volume did not carry the written data; review the driver's restore support.",
    "cancelled": "The check was cancelled; re-run it when ready.",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "storage_class_names": [],
        "volume_snapshot_class_names": [],
        "last_outcome": None,
        "cleanup_failures": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _actionable_next_step(message: str, error_kind: str | None) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    hint = _ERROR_HINTS.get(error_kind or "")
    if hint:
        return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect pod events and controller logs for more detail."


def _build_workflow_rows(*, reached: WorkflowState | None, failed: bool) -> list[dict[str, str]]:
    reached_index = WORKFLOW_STATE_ORDER.index(reached) if reached is not None else -1
    rows: list[dict[str, str]] = []
    for position, state in enumerate(WORKFLOW_STATE_ORDER[1:], start=1):
        step_state = "blocked"
        if position <= reached_index:
            step_state = "done"
        elif failed and position == reached_index + 1:
            step_state = "failed"
        rows.append(
            {
                "step": f"{position}. {state.value}",
                "state": _WORKFLOW_STATE_LABELS[step_state],
                "description": _WORKFLOW_STEP_DESCRIPTIONS[state],
            }
        )
    return rows


def _build_outcome_rows(outcome: SnapshotRestoreOutcome) -> list[dict[str, str]]:
    kinds = {
        "original_pvc": "PersistentVolumeClaim",
        "original_pod": "Pod",
        "snapshot": "VolumeSnapshot",
        "cloned_pvc": "PersistentVolumeClaim",
        "cloned_pod": "Pod",
    }
    rows: list[dict[str, str]] = []
    for role, name in outcome.results.resource_names().items():
        if not name:
            continue
        rows.append(
            {
                "role": role,
                "kind": kinds[role],
                "namespace": outcome.args.namespace,
                "name": name,
            }
        )
    return rows


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        status = str(row.get("status", ""))
        message = str(row.get("message", "") or "")
        actionable_message = "Snapshot/restore check passed."
        if status != "passed":
            actionable_message = _actionable_next_step(message, row.get("error_kind"))

        rendered_rows.append(
            {
                "namespace": str(row.get("namespace", "")),
                "storage_class": str(row.get("storage_class", "")),
                "volume_snapshot_class": str(row.get("volume_snapshot_class", "")),
                "status": status,
                "state": str(row.get("state", "")),
                "snapshot_name": str(row.get("snapshot_name", "") or ""),
                "finished_at": str(row.get("finished_at", "")),
                "message": message,
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_workflow_args(
    *,
    namespace_input: str,
    storage_class_input: str,
    volume_snapshot_class_input: str,
    run_as_user_input: int,
    container_image_input: str,
    skip_create_from_source_check: bool,
) -> WorkflowArgs:
    return WorkflowArgs(
        namespace=namespace_input.strip(),
        storage_class=storage_class_input.strip(),
        volume_snapshot_class=volume_snapshot_class_input.strip(),
        run_as_user=max(0, int(run_as_user_input)),
        container_image=container_image_input.strip(),
        skip_create_from_source_check=skip_create_from_source_check,
    )


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("NKCC_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _auth_mode_guidance(auth_mode: str) -> str:
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        return "Uses ServiceAccount credentials from the running pod. Bind the csi-check ClusterRole first."
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return "Use for local runs against any cluster. Provide a readable kubeconfig file path."
    return "Use only for short-lived troubleshooting. Paste a full kubeconfig with clusters, contexts and users."


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _refresh_class_names(clients: Any, config: AppConfig) -> None:
    fetcher = KubernetesApiVersionFetcher(clients, request_timeout_seconds=config.request_timeout_seconds)
    st.session_state.storage_class_names = list_storage_class_names(
        clients,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    group_version = fetcher.get_csi_snapshot_group_version()
    st.session_state.volume_snapshot_class_names = list_volume_snapshot_class_names(
        clients,
        group_version,
        request_timeout_seconds=config.request_timeout_seconds,
    )


def _run_check(
    *,
    clients: Any,
    config: AppConfig,
    history_store: CheckHistoryStore,
    args: WorkflowArgs,
    validate_data: bool,
) -> SnapshotRestoreOutcome:
    runner = build_snapshot_restore_runner(clients, config, validate_data=validate_data)
    total = len(WORKFLOW_STATE_ORDER) - 1
    progress = st.progress(0.0, text="Validating check arguments...")

    def on_state(state: WorkflowState) -> None:
        position = WORKFLOW_STATE_ORDER.index(state)
        progress.progress(position / total, text=f"[{position}/{total}] Reached {state.value}.")

    outcome = runner.run(args, on_state=on_state)
    history_store.record_outcome(outcome)
    return outcome


def main() -> None:
    st.set_page_config(page_title="Nerdy K8s CSI Check", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    configure_logging(base_config.log_level)
    ensure_directories(base_config)

    st.title("Nerdy K8s CSI Check")
    st.caption("Verify a CSI driver can snapshot a volume and restore it into a new claim.")

    last_outcome: SnapshotRestoreOutcome | None = st.session_state.last_outcome
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            reached=last_outcome.state if last_outcome else None,
            failed=bool(last_outcome and not last_outcome.passed),
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )
    st.sidebar.caption(_auth_mode_guidance(auth_mode))
    context = st.sidebar.text_input(
        "Kubernetes context (optional)",
        value="",
        help=(
            "Ignored for in-cluster service account mode."
            if auth_mode == _AUTH_MODE_IN_CLUSTER
            else "Optional kubeconfig context override."
        ),
    )

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    st.sidebar.caption(f"Check history DB path: {base_config.history_db_path}")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                kubeconfig_path: str | None = None
                in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER

                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=in_cluster,
                )

                st.session_state.connected = True
                st.session_state.clients = clients
                st.session_state.connection = {
                    "auth_mode": auth_mode,
                    "kubeconfig_path": kubeconfig_path,
                    "context": context or None,
                    "in_cluster": in_cluster,
                }
                st.session_state.storage_class_names = []
                st.session_state.volume_snapshot_class_names = []
                st.session_state.last_outcome = None
                st.session_state.cleanup_failures = []
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.connection = {}
        st.session_state.storage_class_names = []
        st.session_state.volume_snapshot_class_names = []
        st.session_state.last_outcome = None
        st.session_state.cleanup_failures = []

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to run a snapshot/restore check.")
        return

    history_store = CheckHistoryStore(base_config.history_db_path)
    history_store.initialize()
    clients = st.session_state.clients

    st.subheader("Storage Discovery")
    if st.button("Refresh storage classes"):
        with st.spinner("Listing StorageClasses and VolumeSnapshotClasses..."):
            try:
                _refresh_class_names(clients, base_config)
            except KubernetesDiscoveryError as error:
                st.error(str(error))
            except (RuntimeError, ValueError) as error:
                st.error(f"CSI snapshot API is unavailable: {error}")

    storage_class_names: list[str] = st.session_state.storage_class_names
    volume_snapshot_class_names: list[str] = st.session_state.volume_snapshot_class_names
    if not storage_class_names or not volume_snapshot_class_names:
        st.info("Click 'Refresh storage classes' to load the classes to check.")

    st.subheader("Snapshot/Restore Check")
    last_pass_map = history_store.get_last_pass_map()
    with st.form("csi_check_form"):
        namespace_input = st.text_input("Namespace", value="default")
        storage_class_input = st.selectbox("StorageClass", options=storage_class_names or [""])
        volume_snapshot_class_input = st.selectbox(
            "VolumeSnapshotClass",
            options=volume_snapshot_class_names or [""],
        )
        run_as_user_input = int(
            st.number_input("Run as user (0 keeps the image default)", min_value=0, value=base_config.run_as_user)
        )
        container_image_input = st.text_input("Container image", value=base_config.container_image)
        skip_create_from_source_check = st.checkbox(
            "Skip create-from-source check",
            value=False,
            help="Skip re-importing the snapshot through a pre-provisioned VolumeSnapshotContent.",
        )
        validate_data = st.checkbox("Verify restored data", value=True)
        cleanup_after_run = st.checkbox("Delete created resources after the run", value=True)
        submitted = st.form_submit_button("Run check", type="primary")

    last_pass = last_pass_map.get((storage_class_input, volume_snapshot_class_input))
    st.caption(f"Last passing run for this pair: {last_pass or 'never'}")

    if submitted:
        args = _build_workflow_args(
            namespace_input=namespace_input,
            storage_class_input=storage_class_input,
            volume_snapshot_class_input=volume_snapshot_class_input,
            run_as_user_input=run_as_user_input,
            container_image_input=container_image_input,
            skip_create_from_source_check=skip_create_from_source_check,
        )
        with st.spinner(f"Running snapshot/restore check in namespace {args.namespace or '?'}..."):
            outcome = _run_check(
                clients=clients,
                config=base_config,
                history_store=history_store,
                args=args,
                validate_data=validate_data,
            )
        st.session_state.last_outcome = outcome
        st.session_state.cleanup_failures = []
        if cleanup_after_run:
            with st.spinner("Deleting resources created by the check..."):
                st.session_state.cleanup_failures = ResourceCleaner(clients).cleanup_outcome(outcome)

        if outcome.passed:
            st.success(f"Snapshot/restore check passed for {args.storage_class}/{args.volume_snapshot_class}.")
        else:
            st.error(
                f"Snapshot/restore check failed at state '{outcome.state.value}': "
                f"{_actionable_next_step(outcome.message, outcome.error_kind)}"
            )

    outcome = st.session_state.last_outcome
    if outcome is not None:
        st.subheader("Latest Check Resources")
        resource_rows = _build_outcome_rows(outcome)
        if resource_rows:
            st.dataframe(resource_rows, use_container_width=True, hide_index=True)
        st.caption(f"Payload written: {outcome.payload}")
        for failure in st.session_state.cleanup_failures:
            st.warning(failure)

    st.subheader("Recent Check History")
    st.caption(f"Recorded runs: {history_store.count_runs()}")
    history_rows = _build_history_rows(history_store.get_recent_runs(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No check history yet. Run your first check to populate this table.")


if __name__ == "__main__":
    main()
