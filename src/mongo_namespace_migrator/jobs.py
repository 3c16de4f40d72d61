from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol
import logging
import os
import stat
import subprocess
import threading

from kubernetes import client

from .k8s import KubernetesClients, kubernetes_call
from .probe import ResourceProber

_OUTPUT_TAIL_LINES = 20
_UNKNOWN_CREATION_TIME = datetime.min.replace(tzinfo=UTC)

logger = logging.getLogger(__name__)


class JobTriggerError(RuntimeError):
    """Raised when an external job trigger script does not complete cleanly."""


class JobTrigger(Protocol):
    def trigger(self, *, source_namespace: str, target_namespace: str, namespace: str) -> None:
        ...


class ScriptJobTrigger:
    """Runs an external trigger script that creates a job and waits for it.

    The namespaces are handed to the script through its environment
    (``CS_NAMESPACE`` is the namespace the job runs in).
    """

    def __init__(self, *, script_path: Path, arguments: tuple[str, ...] = (), timeout_seconds: int = 3600) -> None:
        self.script_path = script_path
        self.arguments = arguments
        self.timeout_seconds = timeout_seconds

    def trigger(self, *, source_namespace: str, target_namespace: str, namespace: str) -> None:
        environment = os.environ.copy()
        environment["CS_NAMESPACE"] = namespace
        environment["ORIGINAL_NAMESPACE"] = source_namespace
        environment["TARGET_NAMESPACE"] = target_namespace

        command = [str(self.script_path), *self.arguments]
        logger.info(f"Running {' '.join(command)} with CS_NAMESPACE={namespace}")
        try:
            process = subprocess.Popen(
                command,
                env=environment,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as error:
            raise JobTriggerError(f"unable to run {self.script_path}: {error}") from error

        expired = threading.Event()

        def _expire() -> None:
            expired.set()
            process.kill()

        timer = threading.Timer(self.timeout_seconds, _expire)
        timer.daemon = True
        timer.start()
        output: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
        try:
            for line in process.stdout or ():
                line = line.rstrip("\n")
                output.append(line)
                logger.info(f"[{self.script_path.name}] {line}")
            returncode = process.wait()
        finally:
            timer.cancel()

        if expired.is_set():
            raise JobTriggerError(f"{self.script_path.name} did not finish within {self.timeout_seconds} seconds")
        if returncode != 0:
            detail = "\n".join(line for line in output if line.strip()).strip() or "no output"
            raise JobTriggerError(f"{self.script_path.name} exited with code {returncode}: {detail}")


def ensure_executable(path: Path) -> None:
    if not path.is_file():
        raise FileNotFoundError(f"required script not found at {path}")
    mode = path.stat().st_mode
    if not mode & stat.S_IXUSR:
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def find_job_pod(clients: KubernetesClients, *, namespace: str, job_name: str) -> client.V1Pod | None:
    """Pick the pod of ``job_name``.

    The ``job-name`` label set by the job controller is preferred. Without it
    pods whose name starts with the job name are considered; that match is not
    checked for uniqueness. Pods already being deleted, such as those of a job
    removed by an earlier cleanup, are skipped and the newest remaining pod wins.
    """
    labelled = kubernetes_call(
        operation=f"list pods of job '{namespace}/{job_name}'",
        hint="Verify RBAC allows list on pods.",
        func=lambda: clients.core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=f"job-name={job_name}",
        ).items,
    )
    candidates = list(labelled or [])
    if not candidates:
        every_pod = kubernetes_call(
            operation=f"list pods in namespace '{namespace}'",
            hint="Verify RBAC allows list on pods.",
            func=lambda: clients.core_api.list_namespaced_pod(namespace=namespace).items,
        )
        candidates = [pod for pod in every_pod or [] if (pod.metadata.name or "").startswith(job_name)]
    candidates = [pod for pod in candidates if pod.metadata.deletion_timestamp is None]
    if not candidates:
        return None
    candidates.sort(key=lambda pod: pod.metadata.name or "")
    candidates.sort(key=_creation_time, reverse=True)
    return candidates[0]


def _creation_time(pod: client.V1Pod) -> datetime:
    return pod.metadata.creation_timestamp or _UNKNOWN_CREATION_TIME


def locate_job_pod(
    clients: KubernetesClients,
    prober: ResourceProber,
    *,
    namespace: str,
    job_name: str,
    attempts: int | None = None,
    interval_seconds: float | None = None,
) -> client.V1Pod:
    result = prober.wait_for(
        description=f"pod of job {namespace}/{job_name}",
        read=lambda: find_job_pod(clients, namespace=namespace, job_name=job_name),
        predicate=lambda pod: pod is not None,
        attempts=attempts,
        interval_seconds=interval_seconds,
    )
    if not result.satisfied or result.last_observed is None:
        raise JobTriggerError(f"no pod found for job {namespace}/{job_name}")
    return result.last_observed


def capture_pod_logs(clients: KubernetesClients, *, namespace: str, pod_name: str, path: Path) -> Path:
    logs = kubernetes_call(
        operation=f"read logs of pod '{namespace}/{pod_name}'",
        hint="Verify RBAC allows get on pods/log.",
        func=lambda: clients.core_api.read_namespaced_pod_log(name=pod_name, namespace=namespace),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(logs or "", encoding="utf-8")
    return path
