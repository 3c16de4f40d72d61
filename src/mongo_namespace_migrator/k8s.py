from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
import yaml

MERGE_PATCH = "application/merge-patch+json"
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api
    storage_api: client.StorageV1Api
    rbac_api: client.RbacAuthorizationV1Api


class KubernetesOperationError(RuntimeError):
    """Raised when a cluster call fails for a reason other than absence."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        storage_api=client.StorageV1Api(api_client),
        rbac_api=client.RbacAuthorizationV1Api(api_client),
    )


def kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesOperationError(
            _format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error
    except KubernetesOperationError:
        raise
    except Exception as error:
        raise KubernetesOperationError(
            f"Kubernetes call failed while trying to {operation}: {error}. {hint}"
        ) from error


def read_or_none(*, operation: str, hint: str, func: Callable[[], T]) -> T | None:
    try:
        return func()
    except ApiException as error:
        if is_not_found(error):
            return None
        raise KubernetesOperationError(
            _format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error
    except Exception as error:
        raise KubernetesOperationError(
            f"Kubernetes call failed while trying to {operation}: {error}. {hint}"
        ) from error


def delete_if_present(*, operation: str, hint: str, func: Callable[[], Any]) -> bool:
    """Run a delete call, reporting ``False`` when the object was already gone."""
    try:
        func()
    except ApiException as error:
        if is_not_found(error):
            return False
        raise KubernetesOperationError(
            _format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error
    return True


def is_not_found(error: ApiException) -> bool:
    return error.status == 404


def is_conflict(error: ApiException) -> bool:
    return error.status == 409


def to_manifest(clients: KubernetesClients, obj: Any) -> dict[str, Any]:
    return clients.api_client.sanitize_for_serialization(obj)


def write_manifest(path: Path, manifest: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(manifest, sort_keys=False), encoding="utf-8")


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes call failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
