#!/usr/bin/env python3
"""Seed custom Cluster and Clients CA secrets before the cluster is created."""

import argparse
import sys
from pathlib import Path

from ca_rotation.lib.ca_role import CARole
from ca_rotation.lib.config import CAConfig
from ca_rotation.lib.coordinator import seed_role
from ca_rotation.lib.credential_store import KubernetesSecretStore
from ca_rotation.lib.kube_config import load_api_client
from ca_rotation.lib.logging_config import LOGGER


def main() -> int:
    """Generate a bundle per CA role and create its certificate and key secrets.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Seed custom CA secrets (Cluster CA + Clients CA)")
    parser.add_argument("--cluster-name", required=True, help="Kafka cluster name")
    parser.add_argument("--namespace", required=True, help="Namespace of the Kafka cluster")
    parser.add_argument(
        "--role",
        choices=[role.value for role in CARole],
        action="append",
        help="CA role to seed (repeatable, default: both)",
    )
    parser.add_argument("--kubeconfig", help="Path to kubeconfig (default: in-cluster, then ~/.kube/config)")
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Also write the generated bundles here for safekeeping",
    )
    args = parser.parse_args()

    roles = [CARole(value) for value in args.role] if args.role else list(CARole)

    try:
        config = CAConfig()
        store = KubernetesSecretStore(args.namespace, load_api_client(args.kubeconfig))

        for role in roles:
            LOGGER.info("Seeding %s for %s/%s...", role.display_name, args.namespace, args.cluster_name)
            bundle = seed_role(store, role, args.cluster_name, config)
            LOGGER.info("  Subject: %s", bundle.subject_name)
            LOGGER.info("  Fingerprint: %s", bundle.fingerprint())
            if args.output_dir:
                written = bundle.write_to(args.output_dir / args.cluster_name / role.value / "seed")
                LOGGER.info("  Bundle: %s", written.bundle_path)

        LOGGER.info("Seeding complete. Next: create the Kafka cluster with generateCertificateAuthority=false")
        return 0

    except Exception as e:
        LOGGER.error("Seeding failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
