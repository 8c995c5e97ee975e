from __future__ import annotations

import logging
from threading import Event
import time

from kubernetes import client
from kubernetes.stream import stream

from .errors import WorkflowCancelledError
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, KubernetesClients
from .models import (
    DATA_FILE_PATH,
    DEFAULT_CLAIM_SIZE,
    CreateClaimArgs,
    CreatePodArgs,
    VolumeClaim,
    Workload,
)

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
COMPONENT_LABEL = "app.kubernetes.io/component"
MANAGED_BY_VALUE = "nerdy-k8s-csi-check"
CONTAINER_NAME = "csi-check"
DATA_VOLUME_NAME = "persistent-storage"
DATA_MOUNT_PATH = "/data"
DEFAULT_CONTAINER_IMAGE = "alpine:3.20"


def created_by_labels(component: str) -> dict[str, str]:
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        COMPONENT_LABEL: component.rstrip("-"),
    }


class KubernetesApplicationCreator:
    def __init__(
        self,
        clients: KubernetesClients,
        *,
        pod_ready_timeout_seconds: int = 300,
        poll_interval_seconds: float = 2,
        default_container_image: str = DEFAULT_CONTAINER_IMAGE,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = clients.core_api
        self.pod_ready_timeout_seconds = pod_ready_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.default_container_image = default_container_image
        self.request_timeout_seconds = request_timeout_seconds

    def create_pvc(self, args: CreateClaimArgs) -> VolumeClaim:
        data_source = None
        if args.data_source is not None:
            data_source = client.V1TypedLocalObjectReference(
                api_group=args.data_source.api_group,
                kind=args.data_source.kind,
                name=args.data_source.name,
            )
        pvc = client.V1PersistentVolumeClaim(
            metadata=client.V1ObjectMeta(
                generate_name=args.generate_name,
                namespace=args.namespace,
                labels=created_by_labels(args.generate_name),
            ),
            spec=client.V1PersistentVolumeClaimSpec(
                access_modes=["ReadWriteOnce"],
                storage_class_name=args.storage_class,
                data_source=data_source,
                resources=client.V1VolumeResourceRequirements(
                    requests={"storage": args.restore_size or DEFAULT_CLAIM_SIZE},
                ),
            ),
        )

        created = self.core_api.create_namespaced_persistent_volume_claim(
            namespace=args.namespace,
            body=pvc,
            _request_timeout=self.request_timeout_seconds,
        )
        logger.info(f"Created PVC {args.namespace}/{created.metadata.name}")
        return VolumeClaim(
            name=created.metadata.name,
            namespace=args.namespace,
            storage_class=args.storage_class,
            data_source=args.data_source,
            restore_size=args.restore_size,
        )

    def create_pod(self, args: CreatePodArgs) -> Workload:
        container_image = args.container_image or self.default_container_image
        security_context = None
        if args.run_as_user > 0:
            security_context = client.V1PodSecurityContext(
                run_as_user=args.run_as_user,
                fs_group=args.run_as_user,
            )
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(
                generate_name=args.generate_name,
                namespace=args.namespace,
                labels=created_by_labels(args.generate_name),
            ),
            spec=client.V1PodSpec(
                security_context=security_context,
                containers=[
                    client.V1Container(
                        name=CONTAINER_NAME,
                        image=container_image,
                        command=["/bin/sh"],
                        args=["-c", args.command],
                        volume_mounts=[client.V1VolumeMount(name=DATA_VOLUME_NAME, mount_path=DATA_MOUNT_PATH)],
                    )
                ],
                volumes=[
                    client.V1Volume(
                        name=DATA_VOLUME_NAME,
                        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                            claim_name=args.claim_name,
                        ),
                    )
                ],
            ),
        )

        created = self.core_api.create_namespaced_pod(
            namespace=args.namespace,
            body=pod,
            _request_timeout=self.request_timeout_seconds,
        )
        logger.info(f"Created pod {args.namespace}/{created.metadata.name} bound to PVC {args.claim_name}")
        return Workload(
            name=created.metadata.name,
            namespace=args.namespace,
            command=args.command,
            claim_name=args.claim_name,
            run_as_user=args.run_as_user,
            container_image=container_image,
        )

    def wait_for_pod_ready(
        self,
        namespace: str,
        pod_name: str,
        cancel_event: Event | None = None,
    ) -> None:
        cancel_event = cancel_event or Event()
        deadline = time.time() + self.pod_ready_timeout_seconds
        last_phase = "Unknown"
        last_hint: str | None = None
        while True:
            if cancel_event.is_set():
                raise WorkflowCancelledError(
                    operation=f"wait for pod '{namespace}/{pod_name}' to become ready",
                    reason="cancelled by caller",
                )
            pod = self.core_api.read_namespaced_pod(
                name=pod_name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
            phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
            last_phase = phase
            pending_hint = extract_pending_hint(pod)
            if pending_hint:
                last_hint = pending_hint
            if phase == "Running" and _pod_ready(pod):
                return
            if phase in {"Failed", "Succeeded"}:
                raise RuntimeError(f"pod entered unexpected phase: {phase}")
            if time.time() >= deadline:
                break
            cancel_event.wait(self.poll_interval_seconds)

        detail = f"last observed phase={last_phase}"
        if last_hint:
            detail = f"{detail}; {last_hint}"
        raise TimeoutError(
            f"pod {namespace}/{pod_name} did not become ready within "
            f"{self.pod_ready_timeout_seconds}s ({detail})"
        )


class KubernetesDataValidator:
    def __init__(self, clients: KubernetesClients) -> None:
        self.core_api = clients.core_api

    def fetch_pod_data(self, namespace: str, pod_name: str) -> str:
        output = stream(
            self.core_api.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            command=["sh", "-c", f"cat {DATA_FILE_PATH}"],
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
        )
        return output or ""


def _pod_ready(pod: object) -> bool:
    pod_status = getattr(pod, "status", None)
    conditions = getattr(pod_status, "conditions", None) or []
    return any(
        getattr(condition, "type", None) == "Ready" and getattr(condition, "status", None) == "True"
        for condition in conditions
    )


def extract_pending_hint(pod: object) -> str | None:
    pod_status = getattr(pod, "status", None)
    if pod_status is None:
        return None

    conditions = getattr(pod_status, "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "PodScheduled" and getattr(condition, "status", None) == "False":
            reason = getattr(condition, "reason", None) or "Unschedulable"
            message = (getattr(condition, "message", None) or "").strip()
            return f"pod unschedulable ({reason}: {message})" if message else f"pod unschedulable ({reason})"

    for attribute in ("init_container_statuses", "container_statuses"):
        container_statuses = getattr(pod_status, attribute, None) or []
        for container_status in container_statuses:
            state = getattr(container_status, "state", None)
            waiting_state = getattr(state, "waiting", None) if state is not None else None
            if waiting_state is None:
                continue
            reason = getattr(waiting_state, "reason", None) or "ContainerWaiting"
            message = (getattr(waiting_state, "message", None) or "").strip()
            if message:
                return f"container waiting ({reason}: {message})"
            return f"container waiting ({reason})"

    return None
