from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

DEFAULT_SOURCE_NAMESPACE = "ibm-common-services"


class ConfigurationError(RuntimeError):
    """Raised when the migration parameters are unusable."""


@dataclass(frozen=True)
class MigrationConfig:
    target_namespace: str | None = None
    source_namespace: str = os.getenv("MNM_SOURCE_NAMESPACE", DEFAULT_SOURCE_NAMESPACE)
    kubeconfig_path: str | None = os.getenv("MNM_KUBECONFIG")
    context: str | None = os.getenv("MNM_CONTEXT")
    in_cluster_auth: bool = os.getenv("MNM_IN_CLUSTER", "").strip().lower() in {"1", "true", "yes", "on"}

    claim_name: str = "cs-mongodump"
    storage_class_name: str = "backup-sc"
    role_binding_name: str = "cs-br"
    backup_job_name: str = "mongodb-backup"
    restore_job_name: str = "mongodb-restore"
    source_volume_claim_prefix: str = os.getenv("MNM_SOURCE_VOLUME_CLAIM_PREFIX", "mongodbdir")
    service_account: str = "default"
    cluster_role: str = "cluster-admin"

    backup_script: Path = Path(os.getenv("MNM_BACKUP_SCRIPT", "./mongo-backup.sh"))
    backup_script_args: tuple[str, ...] = ("true",)
    restore_script: Path = Path(os.getenv("MNM_RESTORE_SCRIPT", "./mongo-restore.sh"))
    cli_binary: str = os.getenv("MNM_CLI_BINARY", "oc")
    trigger_timeout_seconds: int = int(os.getenv("MNM_TRIGGER_TIMEOUT_SECONDS", "3600"))

    log_dir: Path = Path(os.getenv("MNM_LOG_DIR", "."))
    work_dir: Path = Path(os.getenv("MNM_WORK_DIR", "."))

    probe_attempts: int = int(os.getenv("MNM_PROBE_ATTEMPTS", "6"))
    probe_interval_seconds: float = float(os.getenv("MNM_PROBE_INTERVAL_SECONDS", "30"))
    pod_locate_attempts: int = int(os.getenv("MNM_POD_LOCATE_ATTEMPTS", "6"))
    pod_locate_interval_seconds: float = float(os.getenv("MNM_POD_LOCATE_INTERVAL_SECONDS", "10"))

    @property
    def backup_log_path(self) -> Path:
        return self.log_dir / f"backup_from_{self.source_namespace}_for_{self.target_namespace}.log"

    @property
    def restore_log_path(self) -> Path:
        return self.log_dir / f"restore_to_{self.target_namespace}_from_{self.source_namespace}.log"


def validate_config(config: MigrationConfig) -> None:
    target = (config.target_namespace or "").strip()
    if not target:
        raise ConfigurationError(
            "Target namespace not specified, please specify the target namespace parameter and try again."
        )
    source = config.source_namespace.strip()
    if not source:
        raise ConfigurationError("Source namespace must not be blank.")
    if source == target:
        raise ConfigurationError(f"Source and target namespace are both '{source}'; they must differ.")
    if config.probe_attempts <= 0:
        raise ConfigurationError("probe_attempts must be positive")
    if config.probe_interval_seconds < 0:
        raise ConfigurationError("probe_interval_seconds must not be negative")
    if config.pod_locate_attempts <= 0:
        raise ConfigurationError("pod_locate_attempts must be positive")
    if config.trigger_timeout_seconds <= 0:
        raise ConfigurationError("trigger_timeout_seconds must be positive")


def ensure_directories(config: MigrationConfig) -> None:
    config.log_dir.mkdir(parents=True, exist_ok=True)
    config.work_dir.mkdir(parents=True, exist_ok=True)
