"""Moves the backup volume from the source namespace's claim to an equivalent claim in the target namespace.

The volume walks ``Bound(source) -> Released -> Available -> Bound(target)``:

1. snapshot the source claim and resolve its volume,
2. delete the backup job, clear the claim's finalizers and delete the claim,
3. null the volume's ``claimRef`` so the control plane can make it Available,
4. poll for ``Available`` (a timeout here is only a warning),
5. create the snapshotted claim in the target namespace,
6. poll for ``Bound`` and check the new claim resolved to the same volume.

Every mutation tolerates having been applied by an earlier, interrupted run.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .config import MigrationConfig
from .k8s import KubernetesClients, is_conflict, kubernetes_call, to_manifest, write_manifest
from .models import (
    PHASE_AVAILABLE,
    PHASE_BOUND,
    AmbiguousVolumeError,
    MigrationStageError,
    TransferResult,
    error_message,
)
from .probe import ResourceProber
from .resources import (
    clear_claim_finalizers,
    delete_claim,
    delete_job,
    read_claim,
    read_volume,
    release_volume,
    volume_phase,
)

STAGE = "transfer"
_DROPPED_ANNOTATION_PREFIXES = ("pv.kubernetes.io/", "kubectl.kubernetes.io/")

logger = logging.getLogger(__name__)


class VolumeTransfer:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: MigrationConfig,
        prober: ResourceProber,
    ) -> None:
        self.clients = clients
        self.config = config
        self.prober = prober

    @property
    def source_namespace(self) -> str:
        return self.config.source_namespace

    @property
    def target_namespace(self) -> str:
        return self.config.target_namespace or ""

    @property
    def claim_name(self) -> str:
        return self.config.claim_name

    def transfer(self) -> TransferResult:
        logger.info(f"Preparing for restore in namespace {self.target_namespace}")
        try:
            manifest, volume_name = self._snapshot()
            self._check_for_competing_volumes(volume_name)
            snapshot_path = self.config.work_dir / f"{self.claim_name}-copy.yaml"
            write_manifest(snapshot_path, manifest)

            self._detach()
            release_volume(self.clients, name=volume_name)
            became_available = self._wait_for_available(volume_name)

            self._apply_target_claim(manifest)
            self._wait_for_target_binding(volume_name)
        except MigrationStageError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage=STAGE, reason=error_message(error)) from error

        logger.info("Preparation for restore completed successfully.")
        return TransferResult(
            claim_name=self.claim_name,
            volume_name=volume_name,
            source_namespace=self.source_namespace,
            target_namespace=self.target_namespace,
            became_available=became_available,
            snapshot_path=str(snapshot_path),
        )

    def _snapshot(self) -> tuple[dict[str, Any], str]:
        claim = read_claim(self.clients, namespace=self.source_namespace, name=self.claim_name)
        if claim is None:
            raise MigrationStageError(
                stage=STAGE,
                reason=f"PVC {self.claim_name} not found in namespace {self.source_namespace}",
            )
        volume_name = claim.spec.volume_name if claim.spec else None
        if not volume_name:
            raise MigrationStageError(
                stage=STAGE,
                reason=f"PVC {self.source_namespace}/{self.claim_name} is not bound to a volume",
            )
        logger.info(f"PVC {self.source_namespace}/{self.claim_name} is bound to PersistentVolume {volume_name}")
        manifest = retarget_claim_manifest(to_manifest(self.clients, claim), namespace=self.target_namespace)
        return manifest, volume_name

    def _check_for_competing_volumes(self, volume_name: str) -> None:
        volumes = kubernetes_call(
            operation="list PersistentVolumes",
            hint="Verify RBAC allows list on persistentvolumes.",
            func=lambda: self.clients.core_api.list_persistent_volume().items,
        )
        competing = sorted(
            volume.metadata.name
            for volume in volumes or []
            if volume.metadata.name != volume_name
            and volume.spec is not None
            and volume.spec.storage_class_name == self.config.storage_class_name
            and volume_phase(volume) != PHASE_BOUND
        )
        if competing:
            raise AmbiguousVolumeError(
                stage=STAGE,
                reason=(
                    f"unbound PersistentVolumes of storage class {self.config.storage_class_name} other than "
                    f"{volume_name} exist ({', '.join(competing)}); the transferred claim could bind to any of "
                    "them. Remove the leftovers of earlier runs and retry."
                ),
            )

    def _detach(self) -> None:
        delete_job(self.clients, namespace=self.source_namespace, name=self.config.backup_job_name)
        clear_claim_finalizers(self.clients, namespace=self.source_namespace, name=self.claim_name)
        delete_claim(self.clients, namespace=self.source_namespace, name=self.claim_name)

        result = self.prober.wait_for(
            description=f"PVC {self.source_namespace}/{self.claim_name} to be deleted",
            read=lambda: read_claim(self.clients, namespace=self.source_namespace, name=self.claim_name),
            predicate=lambda claim: claim is None,
        )
        if not result.satisfied:
            raise MigrationStageError(
                stage=STAGE,
                reason=f"PVC {self.source_namespace}/{self.claim_name} was never deleted",
            )
        logger.info(f"PVC {self.claim_name} detached from namespace {self.source_namespace}")

    def _wait_for_available(self, volume_name: str) -> bool:
        result = self.prober.wait_for(
            description=f"PersistentVolume {volume_name} to become {PHASE_AVAILABLE}",
            read=lambda: read_volume(self.clients, name=volume_name),
            predicate=self._is_free_for_target,
        )
        if result.satisfied:
            logger.info(f"PersistentVolume {volume_name} available. Moving on...")
            return True
        logger.warning(
            f"PersistentVolume {volume_name} is still {volume_phase(result.last_observed)} "
            f"after {result.retries_used} retries; "
            f"applying PVC {self.claim_name} in {self.target_namespace} anyway"
        )
        return False

    def _is_free_for_target(self, volume: client.V1PersistentVolume | None) -> bool:
        # A claim left in the target namespace by an interrupted run may grab the volume first.
        if volume_phase(volume) == PHASE_AVAILABLE:
            return True
        claim_ref = volume.spec.claim_ref if volume is not None and volume.spec else None
        return (
            volume_phase(volume) == PHASE_BOUND
            and claim_ref is not None
            and (claim_ref.namespace, claim_ref.name) == (self.target_namespace, self.claim_name)
        )

    def _apply_target_claim(self, manifest: dict[str, Any]) -> None:
        try:
            self.clients.core_api.create_namespaced_persistent_volume_claim(
                namespace=self.target_namespace,
                body=manifest,
            )
        except ApiException as error:
            if not is_conflict(error):
                raise MigrationStageError(
                    stage=STAGE,
                    reason=(
                        f"unable to create PVC {self.target_namespace}/{self.claim_name}: "
                        f"API status {error.status} ({error.reason})"
                    ),
                ) from error
            logger.warning(
                f"PVC {self.target_namespace}/{self.claim_name} already exists; verifying its binding instead"
            )
            return
        logger.info(f"Created PVC {self.claim_name} in namespace {self.target_namespace}")

    def _wait_for_target_binding(self, volume_name: str) -> None:
        result = self.prober.wait_for(
            description=f"PersistentVolume {volume_name} to become {PHASE_BOUND}",
            read=lambda: read_volume(self.clients, name=volume_name),
            predicate=lambda volume: volume_phase(volume) == PHASE_BOUND,
        )
        if not result.satisfied:
            raise MigrationStageError(
                stage=STAGE,
                reason=(
                    f"PersistentVolume {volume_name} never bound to PVC {self.target_namespace}/{self.claim_name} "
                    f"(last phase {volume_phase(result.last_observed)})"
                ),
            )

        volume = result.last_observed
        claim_ref = volume.spec.claim_ref if volume is not None and volume.spec else None
        bound_to = f"{claim_ref.namespace}/{claim_ref.name}" if claim_ref is not None else "nothing"
        if bound_to != f"{self.target_namespace}/{self.claim_name}":
            raise MigrationStageError(
                stage=STAGE,
                reason=(
                    f"PersistentVolume {volume_name} bound to {bound_to} instead of "
                    f"{self.target_namespace}/{self.claim_name}"
                ),
            )

        logger.info(f"PersistentVolume {volume_name} bound. Checking PVC...")
        claim_result = self.prober.wait_for(
            description=f"PVC {self.target_namespace}/{self.claim_name} to resolve its volume",
            read=lambda: read_claim(self.clients, namespace=self.target_namespace, name=self.claim_name),
            predicate=lambda claim: claim is not None and claim.spec is not None and bool(claim.spec.volume_name),
        )
        claim = claim_result.last_observed
        bound_volume = claim.spec.volume_name if claim is not None and claim.spec else None
        if bound_volume != volume_name:
            raise MigrationStageError(
                stage=STAGE,
                reason=(
                    f"Error binding {self.claim_name} PVC to backup PV {volume_name}. "
                    f"Bound to {bound_volume} instead."
                ),
            )
        logger.info(f"PVC {self.claim_name} successfully bound to backup PV {volume_name}")


def retarget_claim_manifest(manifest: dict[str, Any], *, namespace: str) -> dict[str, Any]:
    """Return a creatable copy of a claim manifest placed in ``namespace``.

    Status, server-populated metadata and bind annotations are dropped; the
    spec, ``volumeName`` included, is kept as is.
    """
    source_metadata = manifest.get("metadata") or {}
    metadata: dict[str, Any] = {"name": source_metadata.get("name"), "namespace": namespace}
    if source_metadata.get("labels"):
        metadata["labels"] = dict(source_metadata["labels"])
    annotations = {
        key: value
        for key, value in (source_metadata.get("annotations") or {}).items()
        if not key.startswith(_DROPPED_ANNOTATION_PREFIXES)
    }
    if annotations:
        metadata["annotations"] = annotations

    return {
        "apiVersion": manifest.get("apiVersion") or "v1",
        "kind": manifest.get("kind") or "PersistentVolumeClaim",
        "metadata": metadata,
        "spec": copy.deepcopy(manifest.get("spec") or {}),
    }
