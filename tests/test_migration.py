from __future__ import annotations

from dataclasses import replace
import logging
from unittest.mock import Mock

import pytest

from mongo_namespace_migrator.config import MigrationConfig
from mongo_namespace_migrator.jobs import ScriptJobTrigger
from mongo_namespace_migrator.k8s import KubernetesClients
from mongo_namespace_migrator.migration import MongoMigration
from mongo_namespace_migrator.models import MigrationStageError
from mongo_namespace_migrator.probe import ResourceProber

from fakes import FakeBackupTrigger, FakeCluster, FakeRestoreTrigger


def _migration(
    cluster: FakeCluster,
    clients: KubernetesClients,
    config: MigrationConfig,
    prober: ResourceProber,
    *,
    backup_trigger: object | None = None,
) -> MongoMigration:
    return MongoMigration(
        clients=clients,
        config=config,
        prober=prober,
        backup_trigger=backup_trigger or FakeBackupTrigger(cluster),  # type: ignore[arg-type]
        restore_trigger=FakeRestoreTrigger(cluster),
    )


def test_run_moves_backup_volume_and_cleans_up(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
) -> None:
    result = _migration(cluster, clients, migration_config, prober).run()

    assert result.status == "success"
    assert result.stage == "done"
    assert result.volume_name == "pv-123"
    assert result.message == ""

    mutations = cluster.mutations
    assert ("create", "namespace", "ns-b") in mutations
    assert ("create", "storageclass", "backup-sc") in mutations
    assert ("create", "clusterrolebinding", "cs-br") in mutations
    assert mutations.index(("delete", "pvc", "ns-a/cs-mongodump")) < mutations.index(("create", "pvc", "ns-b/cs-mongodump"))
    assert ("delete", "pv", "pv-123") in mutations

    assert "backup-sc" not in cluster.storage_classes
    assert "cs-br" not in cluster.role_bindings
    assert cluster.claims.keys() == {("ns-a", "mongodbdir-icp-mongodb-0")}
    assert "pvc-4f1c2a" in cluster.volumes


def test_run_creates_backup_storage_class_with_retain_policy(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
) -> None:
    created: dict[str, object] = {}
    original_create = cluster.create_storage_class

    def capture(*, body: dict, **kwargs: object) -> None:
        created.update(body)
        original_create(body=body, **kwargs)

    cluster.create_storage_class = capture  # type: ignore[method-assign]

    _migration(cluster, clients, migration_config, prober).run()

    assert created["metadata"]["name"] == "backup-sc"  # type: ignore[index]
    assert created["reclaimPolicy"] == "Retain"
    assert created["provisioner"] == "kubernetes.io/aws-ebs"


def test_run_writes_backup_and_restore_logs(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
) -> None:
    result = _migration(cluster, clients, migration_config, prober).run()

    assert result.backup_log_path == str(migration_config.backup_log_path)
    assert result.restore_log_path == str(migration_config.restore_log_path)
    assert migration_config.backup_log_path.read_text(encoding="utf-8") == "dump complete\n"
    assert migration_config.restore_log_path.read_text(encoding="utf-8") == "restore complete\n"


def test_run_with_wrong_backup_storage_class_stops_before_transfer(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR)
    trigger = FakeBackupTrigger(cluster, storage_class="gp2")

    result = _migration(cluster, clients, migration_config, prober, backup_trigger=trigger).run()

    assert result.status == "failed"
    assert result.stage == "backup"
    assert 'Provisioned by "gp2" instead of "backup-sc"' in result.message
    assert ("create", "pvc", "ns-b/cs-mongodump") not in cluster.mutations
    assert not any(kind == "pv" for _verb, kind, _name in cluster.mutations)
    assert ("ns-a", "cs-mongodump") in cluster.claims
    assert "--cleanup-only" in caplog.text


def test_run_without_target_namespace_fails_before_any_mutation(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
) -> None:
    config = replace(migration_config, target_namespace=None)

    result = _migration(cluster, clients, config, prober).run()

    assert result.status == "failed"
    assert result.stage == "config"
    assert "Target namespace not specified" in result.message
    assert cluster.mutations == []


def test_run_with_leftovers_from_previous_run_sweeps_them_first(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
) -> None:
    cluster.add_bound_claim(namespace="ns-b", name="cs-mongodump", volume_name="pv-old", storage_class="backup-sc")
    cluster.add_storage_class("backup-sc", reclaim_policy="Retain")

    result = _migration(cluster, clients, migration_config, prober).run()

    assert result.status == "success"
    mutations = cluster.mutations
    assert mutations.index(("delete", "pv", "pv-old")) < mutations.index(("create", "storageclass", "backup-sc"))


def test_check_prerequisites_without_cli_binary_raises_prereq_error(
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("mongo_namespace_migrator.migration.shutil.which", lambda _name: None)
    migration = MongoMigration(clients=clients, config=migration_config, prober=prober)

    with pytest.raises(MigrationStageError, match="prereq stage failed: Missing oc CLI"):
        migration.check_prerequisites()


def test_check_prerequisites_without_backup_script_raises_prereq_error(
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path,
) -> None:
    monkeypatch.setattr("mongo_namespace_migrator.migration.shutil.which", lambda _name: "/usr/bin/oc")
    config = replace(migration_config, backup_script=tmp_path / "missing-backup.sh")
    migration = MongoMigration(clients=clients, config=config, prober=prober)

    assert isinstance(migration.backup_trigger, ScriptJobTrigger)
    with pytest.raises(MigrationStageError, match="required script not found"):
        migration.check_prerequisites()


def test_check_prerequisites_with_existing_target_namespace_makes_no_mutation(
    cluster: FakeCluster,
    clients: KubernetesClients,
    migration_config: MigrationConfig,
    prober: ResourceProber,
) -> None:
    cluster.namespaces.add("ns-b")
    migration = MongoMigration(
        clients=clients,
        config=migration_config,
        prober=prober,
        backup_trigger=Mock(),
        restore_trigger=Mock(),
    )

    migration.check_prerequisites()

    assert cluster.mutations == []
