"""Tests for the rotation coordinator."""

import threading
from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives import serialization

from ca_rotation.lib.ca_bundle import CABundle
from ca_rotation.lib.ca_role import (
    ANNO_CA_CERT_GENERATION,
    ANNO_CA_KEY_GENERATION,
    CA_CERT_FIELD,
    CA_KEY_FIELD,
    LABEL_CLUSTER,
    CARole,
)
from ca_rotation.lib.cert_utils import (
    deserialize_certificate,
    deserialize_certificates,
    validate_certificate_chain,
)
from ca_rotation.lib.config import CAConfig, RotationSettings
from ca_rotation.lib.coordinator import STATE_FILE, RotationCoordinator, RotationState, seed_role
from ca_rotation.lib.credential_store import CredentialStore
from ca_rotation.lib.exceptions import (
    CARotationError,
    ConflictError,
    GateTimeoutError,
    NotFoundError,
    RolloutTimeoutError,
    RotationCancelled,
    RotationError,
)
from ca_rotation.lib.models import RotationPhase, VerificationResult
from ca_rotation.lib.verification_probe import ClientTlsMaterial, trusted_certificates
from ca_rotation.scripts.rotate_ca import build_verifier

CLUSTER = "my-cluster"
ZOOKEEPER = "strimzi.io/name=my-cluster-zookeeper"
KAFKA = "strimzi.io/name=my-cluster-kafka"
ENTITY_OPERATOR = "strimzi.io/name=my-cluster-entity-operator"


def _archived_fields(store: CredentialStore, role: CARole) -> dict[str, bytes]:
    fields = store.read(role.cert_secret_name(CLUSTER)).fields
    return {key: value for key, value in fields.items() if key.startswith("ca-")}


def _generations(store: CredentialStore, role: CARole) -> tuple[int, int]:
    return (
        store.read(role.cert_secret_name(CLUSTER)).generation(ANNO_CA_CERT_GENERATION),
        store.read(role.key_secret_name(CLUSTER)).generation(ANNO_CA_KEY_GENERATION),
    )


def _probe_result(settings: RotationSettings) -> VerificationResult:
    return VerificationResult(
        topic=settings.topic, acknowledged=settings.message_count, consumed=0, elapsed_seconds=0.0
    )


@pytest.fixture
def make_coordinator(rotation_settings, memory_store, fake_gate, controller_monitor, ca_config):
    """Build coordinators sharing the same store, gate and monitor.

    Request ``seeded_store`` as well to start from seeded records.
    """

    def _make(role: CARole, **kwargs) -> RotationCoordinator:
        return RotationCoordinator(
            settings=rotation_settings,
            role=role,
            store=memory_store,
            gate=fake_gate,
            monitor=controller_monitor,
            ca_config=ca_config,
            **kwargs,
        )

    return _make


class TestSeedRole:
    """Tests for seed_role."""

    def test_seed_creates_both_records(self, memory_store: CredentialStore, ca_config: CAConfig) -> None:
        """Certificate and PKCS8 key records start at generation 0 with cluster labels."""
        bundle = seed_role(memory_store, CARole.CLUSTER, CLUSTER, ca_config)

        cert_record = memory_store.read("my-cluster-cluster-ca-cert")
        key_record = memory_store.read("my-cluster-cluster-ca")
        assert cert_record.fields[CA_CERT_FIELD] == bundle.export_certificate_pem()
        assert cert_record.generation(ANNO_CA_CERT_GENERATION) == 0
        assert key_record.generation(ANNO_CA_KEY_GENERATION) == 0
        assert cert_record.labels[LABEL_CLUSTER] == CLUSTER
        key = serialization.load_der_private_key(key_record.fields[CA_KEY_FIELD], password=None)
        assert key.public_key().public_numbers() == bundle.certificate().public_key().public_numbers()
        assert bundle.subject_name == "my-cluster Cluster CA"

    def test_seed_twice_conflicts(self, memory_store: CredentialStore, ca_config: CAConfig) -> None:
        """Existing records are never overwritten by seeding."""
        seed_role(memory_store, CARole.CLIENTS, CLUSTER, ca_config)

        with pytest.raises(ConflictError):
            seed_role(memory_store, CARole.CLIENTS, CLUSTER, ca_config)

    def test_half_seeded_role_raises_not_found(self, memory_store: CredentialStore, ca_config: CAConfig) -> None:
        """A certificate without its key needs manual repair."""
        memory_store.create("my-cluster-clients-ca-cert", {CA_CERT_FIELD: b"PEM"})

        with pytest.raises(NotFoundError, match="my-cluster-clients-ca is missing"):
            seed_role(memory_store, CARole.CLIENTS, CLUSTER, ca_config)


class TestPreflight:
    """Tests for RotationCoordinator.preflight."""

    def test_missing_rotated_role_raises_not_found(self, make_coordinator, memory_store: CredentialStore) -> None:
        """The role being rotated must already exist."""
        coordinator = make_coordinator(CARole.CLUSTER)

        with pytest.raises(NotFoundError, match="seed the Cluster CA first"):
            coordinator.preflight()

    def test_missing_counterpart_is_seeded(
        self, make_coordinator, memory_store: CredentialStore, ca_config: CAConfig
    ) -> None:
        """Rotating one role seeds the other when it is absent."""
        seed_role(memory_store, CARole.CLUSTER, CLUSTER, ca_config)
        coordinator = make_coordinator(CARole.CLUSTER)

        coordinator.preflight()

        assert memory_store.exists("my-cluster-clients-ca-cert")
        assert memory_store.exists("my-cluster-clients-ca")

    def test_existing_counterpart_untouched(self, make_coordinator, seeded_store: CredentialStore) -> None:
        """Nothing is written when both roles exist."""
        before = dict(seeded_store.records)

        make_coordinator(CARole.CLIENTS).preflight()

        assert seeded_store.records == before


class TestRotationState:
    """Tests for RotationState persistence."""

    def test_save_and_load(self, tmp_path) -> None:
        """Snapshots survive a save/load cycle and no temporary file is left behind."""
        state = RotationState(role="cluster", subject_name="CA", fingerprint="ab" * 32)
        state.trust_snapshots = {KAFKA: {"my-cluster-kafka-0": "uid-1"}}

        state.save(tmp_path)

        assert RotationState.load(tmp_path) == state
        assert [path.name for path in tmp_path.iterdir()] == [STATE_FILE]

    def test_interrupted_save_keeps_previous_state(self, tmp_path) -> None:
        """A write that never completes leaves the last saved state loadable."""
        state = RotationState(role="cluster", subject_name="CA", fingerprint="ab" * 32)
        state.save(tmp_path)
        state.archival_key = "ca-2027-01-01T00-00-00Z-abababab.crt"

        with (
            patch("ca_rotation.lib.coordinator.os.replace", side_effect=OSError("disk full")),
            pytest.raises(OSError),
        ):
            state.save(tmp_path)

        assert RotationState.load(tmp_path).archival_key == ""


class TestStaging:
    """Tests for the two persisted phases."""

    def test_stage_trust_archives_previous_certificate(
        self, make_coordinator, seeded_store: CredentialStore, bundle: CABundle
    ) -> None:
        """The superseded certificate is kept byte for byte and cert generation moves by one."""
        coordinator = make_coordinator(CARole.CLUSTER)
        previous = seeded_store.read(coordinator.cert_record_name).fields[CA_CERT_FIELD]
        key_before = seeded_store.read(coordinator.key_record_name)

        archival_key = coordinator.stage_trust(bundle)

        record = seeded_store.read(coordinator.cert_record_name)
        assert record.fields[archival_key] == previous
        assert record.fields[CA_CERT_FIELD] == bundle.export_certificate_pem()
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 0)
        assert seeded_store.read(coordinator.key_record_name) == key_before

    def test_stage_trust_twice_is_noop(
        self, make_coordinator, seeded_store: CredentialStore, bundle: CABundle
    ) -> None:
        """Re-applying a staged certificate neither archives nor bumps again."""
        coordinator = make_coordinator(CARole.CLUSTER)
        coordinator.stage_trust(bundle)

        assert coordinator.stage_trust(bundle) is None
        assert len(_archived_fields(seeded_store, CARole.CLUSTER)) == 1
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 0)

    def test_stage_trust_retries_conflicts(
        self, make_coordinator, seeded_store: CredentialStore, bundle: CABundle
    ) -> None:
        """Concurrent writers cause a re-read, never a double bump."""
        coordinator = make_coordinator(CARole.CLUSTER)
        seeded_store.conflicts_to_raise = 2

        coordinator.stage_trust(bundle)

        assert len(_archived_fields(seeded_store, CARole.CLUSTER)) == 1
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 0)

    def test_old_and_new_leaves_trusted_after_trust_phase(
        self, make_coordinator, memory_store: CredentialStore, ca_config: CAConfig, bundle: CABundle
    ) -> None:
        """Leaves of the previous key still validate against the persisted trust set."""
        old_bundle = seed_role(memory_store, CARole.CLUSTER, CLUSTER, ca_config)
        seed_role(memory_store, CARole.CLIENTS, CLUSTER, ca_config)
        make_coordinator(CARole.CLUSTER).stage_trust(bundle)

        trusted = deserialize_certificates(
            trusted_certificates(memory_store.read("my-cluster-cluster-ca-cert"), include_archived=True)
        )
        _, old_leaf = old_bundle.issue_leaf("my-cluster-kafka-0", ca_config)
        _, new_leaf = bundle.issue_leaf("my-cluster-kafka-0", ca_config)

        assert validate_certificate_chain(deserialize_certificate(old_leaf), trusted)
        assert validate_certificate_chain(deserialize_certificate(new_leaf), trusted)

    def test_stage_key_writes_pkcs8_and_bumps_key_generation(
        self, make_coordinator, seeded_store: CredentialStore, bundle: CABundle
    ) -> None:
        """Key phase only touches the key record."""
        coordinator = make_coordinator(CARole.CLIENTS)
        cert_before = seeded_store.read(coordinator.cert_record_name)
        seeded_store.conflicts_to_raise = 1

        coordinator.stage_key(bundle)
        coordinator.stage_key(bundle)

        assert seeded_store.read(coordinator.key_record_name).fields[CA_KEY_FIELD] == bundle.export_private_key_pkcs8()
        assert _generations(seeded_store, CARole.CLIENTS) == (0, 1)
        assert seeded_store.read(coordinator.cert_record_name) == cert_before

    def test_current_phase_follows_records(self, make_coordinator, seeded_store: CredentialStore, bundle: CABundle) -> None:
        """Phase is derived from what has been persisted."""
        coordinator = make_coordinator(CARole.CLUSTER)

        assert coordinator.current_phase(bundle) is RotationPhase.IDLE
        coordinator.stage_trust(bundle)
        assert coordinator.current_phase(bundle) is RotationPhase.TRUST_STAGED
        coordinator.stage_key(bundle)
        assert coordinator.current_phase(bundle) is RotationPhase.KEY_STAGED


class TestRotate:
    """End-to-end rotations against the fake controller."""

    def test_cluster_ca_rotation_rolls_every_group_per_phase(
        self,
        make_coordinator,
        seeded_store: CredentialStore,
        fake_gate,
        controller_monitor,
        rotation_settings: RotationSettings,
    ) -> None:
        """Cluster CA: each group rolls once per phase, cert generation before key generation."""
        observed = []
        controller_monitor.observer = lambda selector: observed.append(
            (selector, _generations(seeded_store, CARole.CLUSTER))
        )
        previous_cert = seeded_store.read("my-cluster-cluster-ca-cert").fields[CA_CERT_FIELD]
        verifier = MagicMock(return_value=_probe_result(rotation_settings))
        coordinator = make_coordinator(CARole.CLUSTER, verifier=verifier)

        result = coordinator.rotate()

        assert observed == [
            (ZOOKEEPER, (1, 0)),
            (KAFKA, (1, 0)),
            (ENTITY_OPERATOR, (1, 0)),
            (ZOOKEEPER, (1, 1)),
            (KAFKA, (1, 1)),
            (ENTITY_OPERATOR, (1, 1)),
        ]
        assert fake_gate.calls == ["pause", "resume"]
        assert result.phase is RotationPhase.COMPLETED
        assert (result.cert_generation, result.key_generation) == (1, 1)
        assert result.verification.acknowledged == 100
        assert len(result.rollouts) == 6
        verifier.assert_called_once()

        assert _archived_fields(seeded_store, CARole.CLUSTER) == {result.archival_key: previous_cert}
        new_cert = seeded_store.read("my-cluster-cluster-ca-cert").fields[CA_CERT_FIELD]
        assert result.fingerprint == CABundle.load(result.bundle_path).fingerprint()
        assert deserialize_certificate(new_cert) == CABundle.load(result.bundle_path).certificate()
        assert not coordinator.staged_dir.exists()
        assert _generations(seeded_store, CARole.CLIENTS) == (0, 0)

    def test_clients_ca_key_rotation_rolls_brokers_only(
        self,
        make_coordinator,
        seeded_store: CredentialStore,
        controller_monitor,
        rotation_settings: RotationSettings,
        ca_config: CAConfig,
    ) -> None:
        """Clients CA with a staged certificate: brokers roll once and a fresh client cert is accepted."""
        with patch("ca_rotation.scripts.rotate_ca.VerificationProbe") as mock_probe_cls:
            mock_probe_cls.return_value.verify.return_value = _probe_result(rotation_settings)
            verifier = build_verifier(
                seeded_store, rotation_settings, ca_config, rotation_settings.bootstrap_address, "probe-user"
            )
            coordinator = make_coordinator(CARole.CLIENTS, verifier=verifier)

            bundle = CABundle.generate("my-cluster Clients CA", ca_config).write_to(coordinator.staged_dir)
            state = RotationState(role="clients", subject_name=bundle.subject_name, fingerprint=bundle.fingerprint())
            coordinator.stage_trust(bundle)
            state.key_snapshots = {KAFKA: controller_monitor.snapshot(KAFKA)}
            state.save(coordinator.staged_dir)
            coordinator.stage_key(bundle)

            result = coordinator.resume()

        assert controller_monitor.rolls == [KAFKA]
        assert result.phase is RotationPhase.COMPLETED
        assert result.verification.acknowledged == 100

        material = mock_probe_cls.call_args.args[0]
        assert validate_certificate_chain(
            deserialize_certificate(material.cert_pem),
            deserialize_certificates(bundle.export_certificate_pem()),
        )
        verify_kwargs = mock_probe_cls.return_value.verify.call_args.kwargs
        assert verify_kwargs["message_count"] == 100
        assert verify_kwargs["bootstrap_address"] == "my-cluster-kafka-bootstrap.kafka.svc:9093"

    def test_verifier_truststore_rejects_superseded_cluster_ca(
        self, make_coordinator, memory_store: CredentialStore, ca_config: CAConfig
    ) -> None:
        """After a completed Cluster CA rotation only leaves of the new key are trusted."""
        old_bundle = seed_role(memory_store, CARole.CLUSTER, CLUSTER, ca_config)
        seed_role(memory_store, CARole.CLIENTS, CLUSTER, ca_config)

        result = make_coordinator(CARole.CLUSTER).rotate()
        material = ClientTlsMaterial.issue_from_store(memory_store, CLUSTER, "probe-user", ca_config)
        trusted = deserialize_certificates(material.ca_pem)
        _, old_leaf = old_bundle.issue_leaf("my-cluster-kafka-0", ca_config)
        _, new_leaf = CABundle.load(result.bundle_path).issue_leaf("my-cluster-kafka-0", ca_config)

        assert result.phase is RotationPhase.COMPLETED
        assert not validate_certificate_chain(deserialize_certificate(old_leaf), trusted)
        assert validate_certificate_chain(deserialize_certificate(new_leaf), trusted)

    def test_resume_at_key_staged_unpauses_reconciliation(
        self, make_coordinator, seeded_store: CredentialStore, fake_gate, controller_monitor, ca_config: CAConfig
    ) -> None:
        """A rotation interrupted while still paused after the key write resumes reconciliation first."""
        coordinator = make_coordinator(CARole.CLUSTER)
        bundle = CABundle.generate("my-cluster Cluster CA", ca_config).write_to(coordinator.staged_dir)
        state = RotationState(role="cluster", subject_name=bundle.subject_name, fingerprint=bundle.fingerprint())
        coordinator.stage_trust(bundle)
        state.key_snapshots = {
            selector: controller_monitor.snapshot(selector) for selector in (ZOOKEEPER, KAFKA, ENTITY_OPERATOR)
        }
        state.save(coordinator.staged_dir)
        coordinator.stage_key(bundle)
        fake_gate.paused = True

        result = coordinator.resume()

        assert fake_gate.calls == ["resume"]
        assert not fake_gate.paused
        assert controller_monitor.rolls == [ZOOKEEPER, KAFKA, ENTITY_OPERATOR]
        assert result.phase is RotationPhase.COMPLETED
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 1)

    def test_cancel_then_resume_does_not_repeat_trust_phase(
        self, make_coordinator, seeded_store: CredentialStore, fake_gate, controller_monitor
    ) -> None:
        """Cancelled during the trust rollout, a new coordinator resumes at TrustStaged."""
        cancel_event = threading.Event()

        def cancel(selector: str) -> None:
            cancel_event.set()
            raise RotationCancelled(f"Cancelled while waiting for {selector}")

        controller_monitor.before_wait = cancel
        first = make_coordinator(CARole.CLUSTER, cancel_event=cancel_event)

        with pytest.raises(RotationCancelled):
            first.rotate()

        assert first.phase is RotationPhase.TRUST_STAGED
        assert (first.staged_dir / STATE_FILE).exists()
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 0)

        controller_monitor.before_wait = None
        result = make_coordinator(CARole.CLUSTER).resume()

        assert result.phase is RotationPhase.COMPLETED
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 1)
        assert len(_archived_fields(seeded_store, CARole.CLUSTER)) == 1
        assert fake_gate.calls.count("pause") == 1
        assert controller_monitor.rolls == [ZOOKEEPER, KAFKA, ENTITY_OPERATOR] * 2

    def test_pause_failure_leaves_records_untouched(
        self, make_coordinator, seeded_store: CredentialStore, fake_gate
    ) -> None:
        """A gate timeout fails the rotation before anything is written."""
        fake_gate.pause = MagicMock(side_effect=GateTimeoutError("not paused"))
        coordinator = make_coordinator(CARole.CLUSTER)

        with pytest.raises(RotationError) as exc_info:
            coordinator.rotate()

        assert exc_info.value.step == "pause"
        assert exc_info.value.last_phase == "Idle"
        assert isinstance(exc_info.value.__cause__, GateTimeoutError)
        assert coordinator.phase is RotationPhase.FAILED
        assert seeded_store.writes == []

    def test_rollout_timeout_is_resumable(
        self, make_coordinator, seeded_store: CredentialStore, controller_monitor
    ) -> None:
        """A stuck trust rollout fails without touching the key, and resume finishes the job."""

        def stuck(selector: str) -> None:
            raise RolloutTimeoutError(f"{selector} did not roll")

        controller_monitor.before_wait = stuck
        coordinator = make_coordinator(CARole.CLUSTER)

        with pytest.raises(RotationError) as exc_info:
            coordinator.rotate()

        assert exc_info.value.step == "trust rollout"
        assert exc_info.value.last_phase == "TrustStaged"
        assert _generations(seeded_store, CARole.CLUSTER) == (1, 0)

        controller_monitor.before_wait = None
        result = make_coordinator(CARole.CLUSTER).resume()

        assert (result.cert_generation, result.key_generation) == (1, 1)

    def test_missing_role_fails_preflight(self, make_coordinator, memory_store: CredentialStore) -> None:
        """Rotation of an unseeded role fails in pre-flight."""
        coordinator = make_coordinator(CARole.CLIENTS)

        with pytest.raises(RotationError) as exc_info:
            coordinator.rotate()

        assert exc_info.value.step == "pre-flight"
        assert isinstance(exc_info.value.__cause__, NotFoundError)

    def test_rotate_refuses_unfinished_rotation(
        self, make_coordinator, seeded_store: CredentialStore, controller_monitor
    ) -> None:
        """A staged rotation must be resumed before a new one starts."""

        def stuck(selector: str) -> None:
            raise RolloutTimeoutError(f"{selector} did not roll")

        controller_monitor.before_wait = stuck
        coordinator = make_coordinator(CARole.CLUSTER)
        with pytest.raises(RotationError):
            coordinator.rotate()

        with pytest.raises(CARotationError, match="resume it"):
            coordinator.rotate()

    def test_resume_without_staged_rotation(self, make_coordinator) -> None:
        """Resume needs a staged bundle."""
        with pytest.raises(CARotationError, match="No staged Clients CA rotation"):
            make_coordinator(CARole.CLIENTS).resume()

    def test_consecutive_rotations_accumulate_archives(
        self, make_coordinator, seeded_store: CredentialStore
    ) -> None:
        """Each completed rotation retains one more superseded certificate."""
        make_coordinator(CARole.CLIENTS).rotate()
        make_coordinator(CARole.CLIENTS).rotate()

        assert len(_archived_fields(seeded_store, CARole.CLIENTS)) == 2
        assert _generations(seeded_store, CARole.CLIENTS) == (2, 2)
