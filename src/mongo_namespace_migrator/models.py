from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

PHASE_AVAILABLE = "Available"
PHASE_BOUND = "Bound"

T = TypeVar("T")


class MigrationStageError(RuntimeError):
    """Fatal failure of one migration stage."""

    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage
        self.reason = normalized_reason


class AmbiguousVolumeError(MigrationStageError):
    """More than one volume could satisfy the transferred claim."""


@dataclass(frozen=True)
class ProbeResult(Generic[T]):
    satisfied: bool
    retries_used: int
    last_observed: T | None


@dataclass(frozen=True)
class StorageClassResult:
    name: str
    source_storage_class: str
    source_volume: str
    created: bool


@dataclass(frozen=True)
class BackupResult:
    namespace: str
    claim_name: str
    storage_class: str
    pod_name: str
    log_path: str


@dataclass(frozen=True)
class TransferResult:
    claim_name: str
    volume_name: str
    source_namespace: str
    target_namespace: str
    became_available: bool
    snapshot_path: str | None = None


@dataclass(frozen=True)
class RestoreResult:
    namespace: str
    pod_name: str
    pod_phase: str
    log_path: str


@dataclass(frozen=True)
class MigrationResult:
    source_namespace: str
    target_namespace: str
    status: str
    stage: str
    started_at: str
    finished_at: str
    volume_name: str | None = None
    backup_log_path: str | None = None
    restore_log_path: str | None = None
    message: str = ""


def error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
