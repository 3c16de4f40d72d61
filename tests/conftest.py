from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
from kubernetes import client

from mongo_namespace_migrator.config import MigrationConfig
from mongo_namespace_migrator.k8s import KubernetesClients
from mongo_namespace_migrator.probe import ResourceProber

from fakes import FakeCluster, SleepRecorder


@pytest.fixture
def cluster() -> FakeCluster:
    fake = FakeCluster()
    fake.add_storage_class("gp2", reclaim_policy="Delete", default=True)
    fake.add_bound_claim(
        namespace="ns-a",
        name="mongodbdir-icp-mongodb-0",
        volume_name="pvc-4f1c2a",
        storage_class="gp2",
    )
    return fake


@pytest.fixture
def clients(cluster: FakeCluster) -> KubernetesClients:
    return KubernetesClients(
        api_client=client.ApiClient(),
        core_api=cluster,
        batch_api=cluster,
        storage_api=cluster,
        rbac_api=cluster,
    )


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def prober(sleeper: SleepRecorder) -> ResourceProber:
    return ResourceProber(attempts=6, interval_seconds=30, sleep=sleeper)


@pytest.fixture
def migration_config(tmp_path: Path) -> MigrationConfig:
    return replace(
        MigrationConfig(),
        source_namespace="ns-a",
        target_namespace="ns-b",
        log_dir=tmp_path / "logs",
        work_dir=tmp_path / "work",
        pod_locate_attempts=2,
        pod_locate_interval_seconds=1,
    )
