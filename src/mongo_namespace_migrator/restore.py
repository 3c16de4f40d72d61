from __future__ import annotations

import logging

from .config import MigrationConfig
from .jobs import JobTrigger, capture_pod_logs, locate_job_pod
from .k8s import KubernetesClients
from .models import MigrationStageError, RestoreResult, error_message
from .probe import ResourceProber

logger = logging.getLogger(__name__)


class RestoreCoordinator:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: MigrationConfig,
        prober: ResourceProber,
        trigger: JobTrigger,
    ) -> None:
        self.clients = clients
        self.config = config
        self.prober = prober
        self.trigger = trigger

    def run_restore(self) -> RestoreResult:
        # Success is reported once the logs are captured; the job's own status is not checked.
        namespace = self.config.target_namespace or ""
        logger.info(f"Restoring copy of backup in namespace {namespace}")
        try:
            self.trigger.trigger(
                source_namespace=self.config.source_namespace,
                target_namespace=namespace,
                namespace=namespace,
            )
            pod = locate_job_pod(
                self.clients,
                self.prober,
                namespace=namespace,
                job_name=self.config.restore_job_name,
                attempts=self.config.pod_locate_attempts,
                interval_seconds=self.config.pod_locate_interval_seconds,
            )
            log_path = capture_pod_logs(
                self.clients,
                namespace=namespace,
                pod_name=pod.metadata.name,
                path=self.config.restore_log_path,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="restore", reason=error_message(error)) from error

        pod_phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
        logger.info(f"Restore logs can be found in {log_path}. Job pod {pod.metadata.name} was {pod_phase}.")
        logger.info(f"Restore completed successfully in namespace {namespace}")
        return RestoreResult(
            namespace=namespace,
            pod_name=pod.metadata.name,
            pod_phase=pod_phase,
            log_path=str(log_path),
        )
