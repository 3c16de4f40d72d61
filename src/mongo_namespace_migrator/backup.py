from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client import ApiException

from .config import MigrationConfig
from .jobs import JobTrigger, capture_pod_logs, locate_job_pod
from .k8s import KubernetesClients, is_conflict, read_or_none
from .models import BackupResult, MigrationStageError, error_message
from .probe import ResourceProber

logger = logging.getLogger(__name__)


class BackupCoordinator:
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

    def run_backup(self) -> BackupResult:
        namespace = self.config.source_namespace
        logger.info(f"Backing up MongoDB in namespace {namespace}")
        self.grant_access()

        try:
            self.trigger.trigger(
                source_namespace=namespace,
                target_namespace=self.config.target_namespace or "",
                namespace=namespace,
            )
            pod = locate_job_pod(
                self.clients,
                self.prober,
                namespace=namespace,
                job_name=self.config.backup_job_name,
                attempts=self.config.pod_locate_attempts,
                interval_seconds=self.config.pod_locate_interval_seconds,
            )
            log_path = capture_pod_logs(
                self.clients,
                namespace=namespace,
                pod_name=pod.metadata.name,
                path=self.config.backup_log_path,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="backup", reason=error_message(error)) from error
        logger.info(f"Backup logs can be found in {log_path}. Job pod will be cleaned up.")

        storage_class = self.validate_backup_claim()
        logger.info("MongoDB successfully backed up")
        return BackupResult(
            namespace=namespace,
            claim_name=self.config.claim_name,
            storage_class=storage_class,
            pod_name=pod.metadata.name,
            log_path=str(log_path),
        )

    def grant_access(self) -> None:
        """Bind the source namespace's default service account to cluster-admin."""
        logger.info("Creating RBAC for backup")
        body = client.V1ClusterRoleBinding(
            api_version="rbac.authorization.k8s.io/v1",
            kind="ClusterRoleBinding",
            metadata=client.V1ObjectMeta(name=self.config.role_binding_name),
            subjects=[
                client.RbacV1Subject(
                    kind="ServiceAccount",
                    name=self.config.service_account,
                    namespace=self.config.source_namespace,
                )
            ],
            role_ref=client.V1RoleRef(
                api_group="rbac.authorization.k8s.io",
                kind="ClusterRole",
                name=self.config.cluster_role,
            ),
        )
        try:
            self.clients.rbac_api.create_cluster_role_binding(body=body)
        except ApiException as error:
            if not is_conflict(error):
                raise MigrationStageError(
                    stage="rbac",
                    reason=(
                        f"unable to create ClusterRoleBinding {self.config.role_binding_name}: "
                        f"API status {error.status} ({error.reason})"
                    ),
                ) from error
            logger.warning(f"ClusterRoleBinding {self.config.role_binding_name} already exists. Moving on...")

    def validate_backup_claim(self) -> str:
        namespace = self.config.source_namespace
        claim_name = self.config.claim_name
        logger.info(f"Verify {claim_name} PVC exists...")
        try:
            claim = read_or_none(
                operation=f"read PVC '{namespace}/{claim_name}'",
                hint="Verify RBAC allows get on persistentvolumeclaims.",
                func=lambda: self.clients.core_api.read_namespaced_persistent_volume_claim(
                    name=claim_name,
                    namespace=namespace,
                ),
            )
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="backup", reason=error_message(error)) from error
        if claim is None:
            raise MigrationStageError(stage="backup", reason=f"Backup PVC {claim_name} not found in {namespace}")

        storage_class = claim.spec.storage_class_name if claim.spec else None
        if storage_class != self.config.storage_class_name:
            raise MigrationStageError(
                stage="backup",
                reason=(
                    f"Backup PVC {claim_name} not bound to persistent volume provisioned by correct storage class. "
                    f'Provisioned by "{storage_class}" instead of "{self.config.storage_class_name}"'
                ),
            )
        logger.info(
            f"Backup PVC {claim_name} bound to persistent volume provisioned by "
            f"{self.config.storage_class_name} storage class."
        )
        return storage_class
