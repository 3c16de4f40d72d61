"""mongo-namespace-migrator - move MongoDB data between namespaces by rebinding its backup volume."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Sequence
import argparse
import logging
import sys

from .config import ConfigurationError, MigrationConfig, ensure_directories, validate_config
from .k8s import KubernetesAuthenticationError, load_kubernetes_clients
from .migration import MongoMigration
from .models import MigrationStageError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIGURATION = 2
EXIT_AUTHENTICATION = 3

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    defaults = MigrationConfig()
    parser = argparse.ArgumentParser(
        prog="mongo-namespace-migrator",
        description="Back up MongoDB in one namespace and restore it into another by moving its backup volume.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-s",
        "--source-namespace",
        default=defaults.source_namespace,
        help=f"Namespace MongoDB is backed up from (default: {defaults.source_namespace})",
    )
    parser.add_argument("-t", "--target-namespace", help="Namespace MongoDB is restored into (required)")
    parser.add_argument("--kubeconfig", default=defaults.kubeconfig_path, help="Path to a kubeconfig file")
    parser.add_argument("--context", default=defaults.context, help="Kubeconfig context to use")
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        default=defaults.in_cluster_auth,
        help="Authenticate with the pod's service account",
    )
    parser.add_argument("--log-dir", type=Path, default=defaults.log_dir, help="Directory for job pod logs")
    parser.add_argument("--work-dir", type=Path, default=defaults.work_dir, help="Directory for manifest snapshots")
    parser.add_argument(
        "--cleanup-only",
        action="store_true",
        help="Only remove resources left behind by earlier runs",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = create_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
        stream=sys.stdout,
    )

    config = replace(
        MigrationConfig(),
        source_namespace=args.source_namespace,
        target_namespace=args.target_namespace,
        kubeconfig_path=args.kubeconfig,
        context=args.context,
        in_cluster_auth=args.in_cluster,
        log_dir=args.log_dir,
        work_dir=args.work_dir,
    )

    logger.info("MongoDB Backup and Restore")
    try:
        validate_config(config)
        ensure_directories(config)
    except ConfigurationError as error:
        logger.error(str(error))
        return EXIT_CONFIGURATION

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster_auth,
        )
    except KubernetesAuthenticationError as error:
        logger.error(str(error))
        return EXIT_AUTHENTICATION

    migration = MongoMigration(clients=clients, config=config)

    if args.cleanup_only:
        try:
            migration.run_cleanup()
        except MigrationStageError as error:
            logger.error(str(error))
            return EXIT_FAILED
        return EXIT_OK

    result = migration.run()
    return EXIT_OK if result.status == "success" else EXIT_FAILED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
