from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import (
    MERGE_PATCH,
    KubernetesClients,
    KubernetesOperationError,
    delete_if_present,
    is_conflict,
    is_not_found,
    kubernetes_call,
    read_or_none,
)

_CLEAR_FINALIZERS = {"metadata": {"finalizers": None}}
_CLEAR_CLAIM_REF = {"spec": {"claimRef": None}}

logger = logging.getLogger(__name__)


def read_claim(clients: KubernetesClients, *, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None:
    return read_or_none(
        operation=f"read PVC '{namespace}/{name}'",
        hint="Verify RBAC allows get on persistentvolumeclaims.",
        func=lambda: clients.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace),
    )


def read_volume(clients: KubernetesClients, *, name: str) -> client.V1PersistentVolume | None:
    return read_or_none(
        operation=f"read PersistentVolume '{name}'",
        hint="Verify RBAC allows get on persistentvolumes.",
        func=lambda: clients.core_api.read_persistent_volume(name=name),
    )


def volume_phase(volume: client.V1PersistentVolume | None) -> str | None:
    if volume is None or volume.status is None:
        return None
    return volume.status.phase


def delete_job(clients: KubernetesClients, *, namespace: str, name: str) -> bool:
    deleted = delete_if_present(
        operation=f"delete Job '{namespace}/{name}'",
        hint="Verify RBAC allows delete on jobs.",
        func=lambda: clients.batch_api.delete_namespaced_job(
            name=name,
            namespace=namespace,
            propagation_policy="Background",
        ),
    )
    if deleted:
        logger.info(f"Deleted job {namespace}/{name}")
    else:
        logger.info(f"Job {namespace}/{name} already deleted. Moving on...")
    return deleted


def clear_claim_finalizers(clients: KubernetesClients, *, namespace: str, name: str) -> bool:
    try:
        clients.core_api.patch_namespaced_persistent_volume_claim(
            name=name,
            namespace=namespace,
            body=_CLEAR_FINALIZERS,
            _content_type=MERGE_PATCH,
        )
    except ApiException as error:
        if is_not_found(error):
            return False
        raise KubernetesOperationError(
            f"Unable to clear finalizers of PVC {namespace}/{name}: API status {error.status} ({error.reason})"
        ) from error
    return True


def delete_claim(clients: KubernetesClients, *, namespace: str, name: str) -> bool:
    """Delete a claim whose finalizers are expected to be cleared already.

    A conflict on deletion means a finalizer came back; the clear is requested
    once more before the single retry.
    """
    try:
        clients.core_api.delete_namespaced_persistent_volume_claim(name=name, namespace=namespace)
    except ApiException as error:
        if is_not_found(error):
            return False
        if not is_conflict(error):
            raise KubernetesOperationError(
                f"Unable to delete PVC {namespace}/{name}: API status {error.status} ({error.reason})"
            ) from error
        logger.warning(f"Deletion of PVC {namespace}/{name} was rejected; clearing finalizers and retrying")
        clear_claim_finalizers(clients, namespace=namespace, name=name)
        return delete_if_present(
            operation=f"delete PVC '{namespace}/{name}'",
            hint="Check for finalizers re-added by a storage controller.",
            func=lambda: clients.core_api.delete_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )
    return True


def release_volume(clients: KubernetesClients, *, name: str) -> None:
    kubernetes_call(
        operation=f"clear claimRef of PersistentVolume '{name}'",
        hint="Verify RBAC allows patch on persistentvolumes.",
        func=lambda: clients.core_api.patch_persistent_volume(
            name=name,
            body=_CLEAR_CLAIM_REF,
            _content_type=MERGE_PATCH,
        ),
    )


def clear_volume_finalizers(clients: KubernetesClients, *, name: str) -> bool:
    try:
        clients.core_api.patch_persistent_volume(name=name, body=_CLEAR_FINALIZERS, _content_type=MERGE_PATCH)
    except ApiException as error:
        if is_not_found(error):
            return False
        raise KubernetesOperationError(
            f"Unable to clear finalizers of PersistentVolume {name}: API status {error.status} ({error.reason})"
        ) from error
    return True


def delete_volume(clients: KubernetesClients, *, name: str) -> bool:
    return delete_if_present(
        operation=f"delete PersistentVolume '{name}'",
        hint="Verify RBAC allows delete on persistentvolumes.",
        func=lambda: clients.core_api.delete_persistent_volume(name=name),
    )
