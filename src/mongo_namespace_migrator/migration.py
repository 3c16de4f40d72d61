from __future__ import annotations

from datetime import UTC, datetime
import logging
import shutil

from kubernetes import client
from kubernetes.client import ApiException

from .backup import BackupCoordinator
from .cleanup import CleanupSweeper
from .config import ConfigurationError, MigrationConfig, ensure_directories, validate_config
from .jobs import JobTrigger, ScriptJobTrigger, ensure_executable
from .k8s import KubernetesClients, is_conflict
from .models import MigrationResult, MigrationStageError, error_message
from .probe import ResourceProber
from .restore import RestoreCoordinator
from .storage_class import ensure_backup_storage_class
from .transfer import VolumeTransfer

logger = logging.getLogger(__name__)


class MongoMigration:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: MigrationConfig,
        prober: ResourceProber | None = None,
        backup_trigger: JobTrigger | None = None,
        restore_trigger: JobTrigger | None = None,
    ) -> None:
        self.clients = clients
        self.config = config
        self.prober = prober or ResourceProber(
            attempts=config.probe_attempts,
            interval_seconds=config.probe_interval_seconds,
        )
        self.backup_trigger = backup_trigger or ScriptJobTrigger(
            script_path=config.backup_script,
            arguments=config.backup_script_args,
            timeout_seconds=config.trigger_timeout_seconds,
        )
        self.restore_trigger = restore_trigger or ScriptJobTrigger(
            script_path=config.restore_script,
            timeout_seconds=config.trigger_timeout_seconds,
        )
        self.sweeper = CleanupSweeper(clients=clients, config=config)

    def run(self) -> MigrationResult:
        started_at = _utc_now_iso()
        stage = "config"
        status = "failed"
        message = ""
        volume_name: str | None = None
        backup_log_path: str | None = None
        restore_log_path: str | None = None

        try:
            validate_config(self.config)
            ensure_directories(self.config)
            logger.info(
                f"Migrating MongoDB data from {self.config.source_namespace} to {self.config.target_namespace}"
            )

            stage = "cleanup"
            self.sweeper.cleanup()

            stage = "prereq"
            self.check_prerequisites()

            stage = "storage-class"
            ensure_backup_storage_class(self.clients, self.config)

            stage = "backup"
            backup = BackupCoordinator(
                clients=self.clients,
                config=self.config,
                prober=self.prober,
                trigger=self.backup_trigger,
            ).run_backup()
            backup_log_path = backup.log_path

            stage = "transfer"
            transfer = VolumeTransfer(clients=self.clients, config=self.config, prober=self.prober).transfer()
            volume_name = transfer.volume_name

            stage = "restore"
            restore = RestoreCoordinator(
                clients=self.clients,
                config=self.config,
                prober=self.prober,
                trigger=self.restore_trigger,
            ).run_restore()
            restore_log_path = restore.log_path

            stage = "cleanup"
            self.sweeper.cleanup()
            stage = "done"
            status = "success"
        except (ConfigurationError, MigrationStageError) as error:
            message = str(error)
        except Exception as error:  # pylint: disable=broad-except
            message = f"unexpected failure during {stage}: {error_message(error)}"

        if status != "success":
            logger.error(message)
            if stage != "config":
                logger.error("Run the cleanup (--cleanup-only) before retrying the migration.")
        else:
            logger.info(
                f"MongoDB data moved from {self.config.source_namespace} to {self.config.target_namespace}"
            )

        return MigrationResult(
            source_namespace=self.config.source_namespace,
            target_namespace=self.config.target_namespace or "",
            status=status,
            stage=stage,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            volume_name=volume_name,
            backup_log_path=backup_log_path,
            restore_log_path=restore_log_path,
            message=message,
        )

    def run_cleanup(self) -> None:
        self.sweeper.cleanup()

    def check_prerequisites(self) -> None:
        script_triggers = [
            trigger
            for trigger in (self.backup_trigger, self.restore_trigger)
            if isinstance(trigger, ScriptJobTrigger)
        ]
        if script_triggers and shutil.which(self.config.cli_binary) is None:
            raise MigrationStageError(stage="prereq", reason=f"Missing {self.config.cli_binary} CLI")
        for trigger in script_triggers:
            try:
                ensure_executable(trigger.script_path)
            except (FileNotFoundError, PermissionError) as error:
                raise MigrationStageError(stage="prereq", reason=error_message(error)) from error

        self._ensure_target_namespace()
        logger.info("Prerequisites present.")

    def _ensure_target_namespace(self) -> None:
        namespace = self.config.target_namespace or ""
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
        try:
            self.clients.core_api.create_namespace(body=body)
        except ApiException as error:
            if not is_conflict(error):
                raise MigrationStageError(
                    stage="prereq",
                    reason=f"unable to create namespace {namespace}: API status {error.status} ({error.reason})",
                ) from error
            logger.info(f"Target namespace {namespace} already exists. Moving on...")
            return
        logger.info(f"Created target namespace {namespace}")


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
