#!/usr/bin/env python3
"""Rotate a custom Cluster or Clients CA, or resume a staged rotation."""

import argparse
import signal
import sys
import threading
from pathlib import Path

from ca_rotation.lib.ca_role import CARole
from ca_rotation.lib.config import CAConfig, RotationSettings
from ca_rotation.lib.coordinator import RotationCoordinator
from ca_rotation.lib.credential_store import CredentialStore, KubernetesSecretStore
from ca_rotation.lib.exceptions import RotationCancelled
from ca_rotation.lib.kube_config import load_api_client
from ca_rotation.lib.logging_config import LOGGER
from ca_rotation.lib.models import VerificationResult
from ca_rotation.lib.reconciliation_gate import ReconciliationGate
from ca_rotation.lib.rollout_monitor import RolloutMonitor
from ca_rotation.lib.verification_probe import ClientTlsMaterial, VerificationProbe


def build_verifier(
    store: CredentialStore,
    settings: RotationSettings,
    config: CAConfig,
    bootstrap_address: str,
    user: str,
):
    """Return a callable that probes the cluster with freshly issued credentials."""

    def _verify() -> VerificationResult:
        material = ClientTlsMaterial.issue_from_store(store, settings.cluster_name, user, config)
        return VerificationProbe(material).verify(
            bootstrap_address=bootstrap_address,
            topic=settings.topic,
            message_count=settings.message_count,
            per_message_delay=settings.per_message_delay,
            timeout=settings.verification_timeout,
        )

    return _verify


def main() -> int:
    """Run or resume a CA rotation.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Rotate a custom Cluster or Clients CA")
    parser.add_argument("--role", choices=[role.value for role in CARole], required=True, help="CA role to rotate")
    parser.add_argument("--cluster-name", required=True, help="Kafka cluster name")
    parser.add_argument("--namespace", required=True, help="Namespace of the Kafka cluster")
    parser.add_argument("--kubeconfig", help="Path to kubeconfig (default: in-cluster, then ~/.kube/config)")
    parser.add_argument("--subject", help="Common name of the new CA (default: '<cluster> <Role> CA')")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("ca_rotation/output"),
        help="Directory for staged bundles and rotation state (default: ca_rotation/output)",
    )
    parser.add_argument("--resume", action="store_true", help="Continue a staged rotation")
    parser.add_argument("--kafka-replicas", type=int, default=1, help="Kafka broker pods (default: 1)")
    parser.add_argument("--zookeeper-replicas", type=int, default=1, help="ZooKeeper pods (default: 1)")
    parser.add_argument("--rollout-timeout", type=float, default=900.0, help="Seconds per rollout (default: 900)")
    parser.add_argument("--bootstrap-address", help="TLS bootstrap address for the probe")
    parser.add_argument("--topic", default="ca-rotation-probe", help="Probe topic (default: ca-rotation-probe)")
    parser.add_argument("--message-count", type=int, default=100, help="Probe messages (default: 100)")
    parser.add_argument("--probe-user", default="ca-rotation-probe", help="CN of the probe client certificate")
    parser.add_argument("--skip-verification", action="store_true", help="Do not run the produce probe")
    args = parser.parse_args()

    cancel_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: cancel_event.set())

    try:
        settings = RotationSettings(
            cluster_name=args.cluster_name,
            namespace=args.namespace,
            output_dir=args.output_dir,
            kafka_replicas=args.kafka_replicas,
            zookeeper_replicas=args.zookeeper_replicas,
            rollout_timeout=args.rollout_timeout,
            topic=args.topic,
            message_count=args.message_count,
        )
        config = CAConfig()
        api_client = load_api_client(args.kubeconfig)
        store = KubernetesSecretStore(settings.namespace, api_client)

        verifier = None
        if not args.skip_verification:
            verifier = build_verifier(
                store,
                settings,
                config,
                args.bootstrap_address or settings.bootstrap_address,
                args.probe_user,
            )

        coordinator = RotationCoordinator(
            settings=settings,
            role=CARole(args.role),
            store=store,
            gate=ReconciliationGate(settings.namespace, settings.cluster_name, api_client, settings.poll_interval),
            monitor=RolloutMonitor(settings.namespace, api_client, settings.poll_interval),
            ca_config=config,
            verifier=verifier,
            cancel_event=cancel_event,
        )

        result = coordinator.resume() if args.resume else coordinator.rotate(args.subject)

        LOGGER.info("Rotation complete:")
        LOGGER.info("  Role: %s", result.role)
        LOGGER.info("  New CA: %s (%s)", result.subject_name, result.fingerprint)
        LOGGER.info("  Archived previous certificate as: %s", result.archival_key)
        LOGGER.info("  Cert generation: %d", result.cert_generation)
        LOGGER.info("  Key generation: %d", result.key_generation)
        LOGGER.info("  Rollouts observed: %d", len(result.rollouts))
        if result.verification:
            LOGGER.info("  Probe acknowledged: %d", result.verification.acknowledged)
        LOGGER.info("  Bundle: %s", result.bundle_path)
        return 0

    except KeyboardInterrupt:
        LOGGER.warning("Rotation interrupted; re-run with --resume to continue")
        return 1
    except RotationCancelled as e:
        LOGGER.warning("%s; re-run with --resume to continue", e)
        return 1
    except Exception as e:
        LOGGER.error("Rotation failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
