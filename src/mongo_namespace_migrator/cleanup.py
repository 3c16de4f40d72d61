from __future__ import annotations

import logging

from .config import MigrationConfig
from .k8s import KubernetesClients, delete_if_present, read_or_none
from .models import MigrationStageError, error_message
from .resources import (
    clear_claim_finalizers,
    clear_volume_finalizers,
    delete_claim,
    delete_job,
    delete_volume,
    read_claim,
)

logger = logging.getLogger(__name__)


class CleanupSweeper:
    """Removes everything a migration creates, in both namespaces.

    Each deletion is preceded by an existence check, so the sweep is safe on a
    clean cluster, after a full run and after a run that stopped halfway.
    """

    def __init__(self, *, clients: KubernetesClients, config: MigrationConfig) -> None:
        self.clients = clients
        self.config = config

    def cleanup(self) -> None:
        logger.info("Cleaning up resources created during backup restore process")
        try:
            self._sweep_namespace(
                namespace=self.config.source_namespace,
                job_name=self.config.backup_job_name,
                label="backup",
            )
            if self.config.target_namespace:
                self._sweep_namespace(
                    namespace=self.config.target_namespace,
                    job_name=self.config.restore_job_name,
                    label="restore",
                )
            self._delete_role_binding()
            self._delete_storage_class()
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="cleanup", reason=error_message(error)) from error
        logger.info("Cleanup complete.")

    def _sweep_namespace(self, *, namespace: str, job_name: str, label: str) -> None:
        claim_name = self.config.claim_name
        claim = read_claim(self.clients, namespace=namespace, name=claim_name)
        if claim is None:
            logger.info(f"Resources used in {label} already cleaned up in {namespace}. Moving on...")
            return

        volume_name = claim.spec.volume_name if claim.spec else None
        delete_job(self.clients, namespace=namespace, name=job_name)
        clear_claim_finalizers(self.clients, namespace=namespace, name=claim_name)
        delete_claim(self.clients, namespace=namespace, name=claim_name)
        logger.info(f"Deleted PVC {namespace}/{claim_name}")

        if not volume_name:
            return
        clear_volume_finalizers(self.clients, name=volume_name)
        if delete_volume(self.clients, name=volume_name):
            logger.info(f"Deleted PersistentVolume {volume_name}")
        else:
            logger.info(f"PersistentVolume {volume_name} already deleted. Moving on...")

    def _delete_role_binding(self) -> None:
        name = self.config.role_binding_name
        existing = read_or_none(
            operation=f"read ClusterRoleBinding '{name}'",
            hint="Verify RBAC allows get on clusterrolebindings.",
            func=lambda: self.clients.rbac_api.read_cluster_role_binding(name=name),
        )
        if existing is None:
            logger.info(f"ClusterRoleBinding {name} not present. Moving on...")
            return
        logger.info("Deleting RBAC from backup restore process")
        delete_if_present(
            operation=f"delete ClusterRoleBinding '{name}'",
            hint="Verify RBAC allows delete on clusterrolebindings.",
            func=lambda: self.clients.rbac_api.delete_cluster_role_binding(name=name),
        )

    def _delete_storage_class(self) -> None:
        name = self.config.storage_class_name
        existing = read_or_none(
            operation=f"read StorageClass '{name}'",
            hint="Verify RBAC allows get on storageclasses.",
            func=lambda: self.clients.storage_api.read_storage_class(name=name),
        )
        if existing is None:
            logger.info(f"StorageClass {name} not present. Moving on...")
            return
        logger.info("Deleting storage class used in backup restore process")
        delete_if_present(
            operation=f"delete StorageClass '{name}'",
            hint="Verify RBAC allows delete on storageclasses.",
            func=lambda: self.clients.storage_api.delete_storage_class(name=name),
        )
