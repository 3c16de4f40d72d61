from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .config import MigrationConfig
from .k8s import KubernetesClients, is_conflict, kubernetes_call, read_or_none, to_manifest, write_manifest
from .models import MigrationStageError, StorageClassResult

RETAIN_RECLAIM_POLICY = "Retain"
DEFAULT_CLASS_ANNOTATIONS = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)
_SERVER_METADATA_FIELDS = ("uid", "resourceVersion", "creationTimestamp", "managedFields", "generation", "selfLink")

logger = logging.getLogger(__name__)


def find_source_volume(
    clients: KubernetesClients,
    *,
    namespace: str,
    claim_prefix: str,
) -> client.V1PersistentVolume | None:
    """Return the first volume, by name, claimed in ``namespace`` by a claim starting with ``claim_prefix``.

    Uniqueness is not validated; with several database replicas any of their
    volumes carries the storage class that matters here.
    """
    volumes = kubernetes_call(
        operation="list PersistentVolumes",
        hint="Verify RBAC allows list on persistentvolumes.",
        func=lambda: clients.core_api.list_persistent_volume().items,
    )
    matches = []
    for volume in volumes or []:
        claim_ref = volume.spec.claim_ref if volume.spec else None
        if claim_ref is None or claim_ref.namespace != namespace:
            continue
        if (claim_ref.name or "").startswith(claim_prefix):
            matches.append(volume)
    matches.sort(key=lambda item: item.metadata.name or "")
    return matches[0] if matches else None


def derive_backup_storage_class(source: dict[str, Any], *, name: str) -> dict[str, Any]:
    derived = copy.deepcopy(source)
    metadata = derived.setdefault("metadata", {})
    for field in _SERVER_METADATA_FIELDS:
        metadata.pop(field, None)
    annotations = metadata.get("annotations") or {}
    for annotation in DEFAULT_CLASS_ANNOTATIONS:
        annotations.pop(annotation, None)
    annotations.pop("kubectl.kubernetes.io/last-applied-configuration", None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    metadata["name"] = name
    derived["reclaimPolicy"] = RETAIN_RECLAIM_POLICY
    derived.setdefault("apiVersion", "storage.k8s.io/v1")
    derived.setdefault("kind", "StorageClass")
    return derived


def ensure_backup_storage_class(clients: KubernetesClients, config: MigrationConfig) -> StorageClassResult:
    volume = find_source_volume(
        clients,
        namespace=config.source_namespace,
        claim_prefix=config.source_volume_claim_prefix,
    )
    if volume is None:
        raise MigrationStageError(
            stage="storage-class",
            reason=(
                f"no PersistentVolume claimed by '{config.source_volume_claim_prefix}*' in namespace "
                f"'{config.source_namespace}'; is MongoDB deployed there?"
            ),
        )
    volume_name = volume.metadata.name
    source_class_name = volume.spec.storage_class_name if volume.spec else None
    if not source_class_name:
        raise MigrationStageError(
            stage="storage-class",
            reason=f"PersistentVolume '{volume_name}' has no storage class to derive the backup class from",
        )

    logger.info("Checking for existing backup Storage Class")
    existing = read_or_none(
        operation=f"read StorageClass '{config.storage_class_name}'",
        hint="Verify RBAC allows get on storageclasses.",
        func=lambda: clients.storage_api.read_storage_class(name=config.storage_class_name),
    )
    if existing is not None:
        logger.warning(f"Storage Class {config.storage_class_name} present from previous attempt. Moving on...")
        return StorageClassResult(
            name=config.storage_class_name,
            source_storage_class=source_class_name,
            source_volume=volume_name,
            created=False,
        )

    source_class = kubernetes_call(
        operation=f"read StorageClass '{source_class_name}'",
        hint="Verify the storage class of the MongoDB volume still exists.",
        func=lambda: clients.storage_api.read_storage_class(name=source_class_name),
    )
    body = derive_backup_storage_class(to_manifest(clients, source_class), name=config.storage_class_name)
    write_manifest(config.work_dir / f"{config.storage_class_name}.yaml", body)

    logger.info(f"Creating Storage Class {config.storage_class_name} from {source_class_name} for backup")
    try:
        clients.storage_api.create_storage_class(body=body)
    except ApiException as error:
        if not is_conflict(error):
            raise MigrationStageError(
                stage="storage-class",
                reason=f"error creating StorageClass {config.storage_class_name}: {error.status} ({error.reason})",
            ) from error
        logger.warning(f"Storage Class {config.storage_class_name} was created concurrently. Moving on...")
        return StorageClassResult(
            name=config.storage_class_name,
            source_storage_class=source_class_name,
            source_volume=volume_name,
            created=False,
        )

    return StorageClassResult(
        name=config.storage_class_name,
        source_storage_class=source_class_name,
        source_volume=volume_name,
        created=True,
    )
