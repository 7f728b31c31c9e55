"""Rotation coordinator - two-phase replacement of a custom CA role.

Public certificate first, private key second:

1. pre-flight: both CA roles must have records; the counterpart role is
   seeded when missing because the operator fails reconciliation otherwise
2. pause reconciliation and wait for ReconciliationPaused
3. archive the current certificate, write the new one, bump cert generation
4. resume reconciliation
5. wait until every trust-dependent component rolled (old + new roots trusted)
6. write the new PKCS8 key, bump key generation (no pause needed)
7. wait for the second rollout that re-issues leaves with the new key
8. optionally run the verification probe

Progress is persisted next to the staged bundle so a restarted coordinator
continues from the phase derived from the credential records.
"""

import json
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TypeVar

from .ca_bundle import CABundle
from .ca_role import (
    ANNO_CA_CERT_GENERATION,
    ANNO_CA_KEY_GENERATION,
    CA_CERT_FIELD,
    CA_KEY_FIELD,
    CARole,
    ComponentGroup,
)
from .cert_utils import derive_archival_key
from .config import CAConfig, RotationSettings
from .credential_store import CredentialStore
from .exceptions import CARotationError, ConflictError, NotFoundError, RotationCancelled, RotationError
from .models import RolloutResult, RotationPhase, RotationResult, VerificationResult
from .polling import retry_on_conflict
from .reconciliation_gate import ReconciliationGate
from .rollout_monitor import RolloutMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_FILE = "rotation-state.json"
STAGED_DIR = "staged"


@dataclass
class RotationState:
    """Progress persisted alongside the staged bundle."""

    role: str
    subject_name: str
    fingerprint: str
    archival_key: str = ""
    trust_snapshots: dict[str, dict[str, str]] = field(default_factory=dict)
    key_snapshots: dict[str, dict[str, str]] = field(default_factory=dict)

    def save(self, directory: Path) -> None:
        """Replace the state file atomically; a partial write never becomes visible."""
        tmp_path = directory / f"{STATE_FILE}.tmp"
        tmp_path.write_text(json.dumps(asdict(self), indent=2))
        os.replace(tmp_path, directory / STATE_FILE)

    @classmethod
    def load(cls, directory: Path) -> "RotationState":
        return cls(**json.loads((directory / STATE_FILE).read_text()))


def seed_role(
    store: CredentialStore,
    role: CARole,
    cluster_name: str,
    ca_config: CAConfig,
    subject_name: str | None = None,
) -> CABundle:
    """Create both records of a CA role from a freshly generated bundle.

    Generation annotations start at 0.

    Raises:
        NotFoundError: If only one of the role's two records exists
    """
    cert_name = role.cert_secret_name(cluster_name)
    key_name = role.key_secret_name(cluster_name)
    cert_exists, key_exists = store.exists(cert_name), store.exists(key_name)
    if cert_exists != key_exists:
        missing = key_name if cert_exists else cert_name
        raise NotFoundError(
            f"{role.display_name} is half seeded: {missing} is missing; restore it manually"
        )

    bundle = CABundle.generate(subject_name or role.default_subject(cluster_name), ca_config)
    labels = role.record_labels(cluster_name)

    store.create(
        cert_name,
        fields={CA_CERT_FIELD: bundle.export_certificate_pem()},
        annotations={ANNO_CA_CERT_GENERATION: "0"},
        labels=labels,
    )
    store.create(
        key_name,
        fields={CA_KEY_FIELD: bundle.export_private_key_pkcs8()},
        annotations={ANNO_CA_KEY_GENERATION: "0"},
        labels=labels,
    )
    logger.info("Seeded %s for %s (fingerprint %s)", role.display_name, cluster_name, bundle.fingerprint())
    return bundle


class RotationCoordinator:
    """Runs the two-phase rotation protocol for one CA role."""

    def __init__(
        self,
        settings: RotationSettings,
        role: CARole,
        store: CredentialStore,
        gate: ReconciliationGate,
        monitor: RolloutMonitor,
        ca_config: CAConfig,
        verifier: Callable[[], VerificationResult] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            settings: Cluster, namespace, timeouts and output directory
            role: CA role to rotate
            store: Credential store holding both roles' records
            gate: Reconciliation gate of the cluster resource
            monitor: Rolling restart monitor for the cluster's pods
            ca_config: Key size, validity and DN template for new bundles
            verifier: Optional end-to-end check run after the second rollout
            cancel_event: Cooperative cancellation checked between polls
        """
        self.settings = settings
        self.role = role
        self.store = store
        self.gate = gate
        self.monitor = monitor
        self.ca_config = ca_config
        self.verifier = verifier
        self.cancel_event = cancel_event or threading.Event()
        self.phase = RotationPhase.IDLE
        self._last_phase = RotationPhase.IDLE

    @property
    def cert_record_name(self) -> str:
        return self.role.cert_secret_name(self.settings.cluster_name)

    @property
    def key_record_name(self) -> str:
        return self.role.key_secret_name(self.settings.cluster_name)

    @property
    def staged_dir(self) -> Path:
        return self.settings.output_dir / self.settings.cluster_name / self.role.value / STAGED_DIR

    @property
    def component_groups(self) -> list[ComponentGroup]:
        return self.role.component_groups(self.settings)

    def _enter(self, phase: RotationPhase) -> None:
        logger.info("%s rotation: %s -> %s", self.role.display_name, self.phase.value, phase.value)
        self.phase = phase
        self._last_phase = phase

    def _run_step(self, step: str, operation: Callable[[], T]) -> T:
        """Run one protocol step, moving to FAILED on any error but cancellation."""
        try:
            return operation()
        except RotationCancelled:
            logger.warning("%s rotation cancelled during %s", self.role.display_name, step)
            raise
        except Exception as e:
            self.phase = RotationPhase.FAILED
            logger.error("%s rotation failed during %s: %s", self.role.display_name, step, e)
            raise RotationError(step, self._last_phase.value, str(e)) from e

    def preflight(self) -> None:
        """Require the rotated role's records and seed a missing counterpart role.

        Raises:
            NotFoundError: If the rotated role itself has no records
        """
        for name in (self.cert_record_name, self.key_record_name):
            if not self.store.exists(name):
                raise NotFoundError(f"Record {name} not found; seed the {self.role.display_name} first")

        counterpart = self.role.counterpart
        cluster = self.settings.cluster_name
        if self.store.exists(counterpart.cert_secret_name(cluster)) and self.store.exists(
            counterpart.key_secret_name(cluster)
        ):
            return

        logger.info("%s records missing; seeding them before rotation", counterpart.display_name)
        try:
            seed_role(self.store, counterpart, cluster, self.ca_config)
        except ConflictError:
            # Seeded by someone else between the check and the write
            if not self.store.exists(counterpart.key_secret_name(cluster)):
                raise

    def stage_trust(self, bundle: CABundle) -> str | None:
        """Public-key phase: archive current cert, write new cert, bump cert generation.

        The key record is not touched; the old key keeps signing while the
        new trust anchor is distributed.

        Returns:
            Archival field name holding the superseded certificate, or None
            if the bundle's certificate is already the canonical one
        """
        new_cert = bundle.export_certificate_pem()
        if self.store.read(self.cert_record_name).fields.get(CA_CERT_FIELD) == new_cert:
            logger.info("New certificate already staged in %s", self.cert_record_name)
            return None

        archival_key = retry_on_conflict(
            lambda: self.store.archive_current(self.cert_record_name, CA_CERT_FIELD, derive_archival_key),
            self.settings.conflict_retries,
            f"archival in {self.cert_record_name}",
        )

        def _apply() -> None:
            record = self.store.read(self.cert_record_name)
            if record.fields.get(CA_CERT_FIELD) == new_cert:
                logger.info("New certificate already staged in %s", self.cert_record_name)
                return
            if archival_key not in record.fields:
                raise ConflictError(f"Archived certificate {archival_key} vanished from {record.name}")
            self.store.replace(
                record.with_field(CA_CERT_FIELD, new_cert).with_generation(ANNO_CA_CERT_GENERATION, 1)
            )

        retry_on_conflict(_apply, self.settings.conflict_retries, f"trust staging of {self.cert_record_name}")
        logger.info(
            "Staged new %s certificate %s (previous archived as %s)",
            self.role.display_name,
            bundle.fingerprint(),
            archival_key,
        )
        return archival_key

    def stage_key(self, bundle: CABundle) -> None:
        """Private-key phase: write the new PKCS8 key and bump key generation."""
        new_key = bundle.export_private_key_pkcs8()

        def _apply() -> None:
            record = self.store.read(self.key_record_name)
            if record.fields.get(CA_KEY_FIELD) == new_key:
                logger.info("New key already staged in %s", self.key_record_name)
                return
            self.store.replace(
                record.with_field(CA_KEY_FIELD, new_key).with_generation(ANNO_CA_KEY_GENERATION, 1)
            )

        retry_on_conflict(_apply, self.settings.conflict_retries, f"key staging of {self.key_record_name}")
        logger.info("Staged new %s signing key", self.role.display_name)

    def current_phase(self, bundle: CABundle) -> RotationPhase:
        """Derive how far the bundle has been persisted from the records."""
        cert_record = self.store.read(self.cert_record_name)
        key_record = self.store.read(self.key_record_name)
        trust_staged = cert_record.fields.get(CA_CERT_FIELD) == bundle.export_certificate_pem()
        key_staged = key_record.fields.get(CA_KEY_FIELD) == bundle.export_private_key_pkcs8()
        if trust_staged and key_staged:
            return RotationPhase.KEY_STAGED
        if trust_staged:
            return RotationPhase.TRUST_STAGED
        return RotationPhase.IDLE

    def _snapshot_groups(self) -> dict[str, dict[str, str]]:
        return {group.selector: self.monitor.snapshot(group.selector) for group in self.component_groups}

    def _wait_for_groups(self, snapshots: dict[str, dict[str, str]]) -> list[RolloutResult]:
        results = []
        for group in self.component_groups:
            snapshot = snapshots.get(group.selector)
            if snapshot is None:
                logger.warning("No snapshot for %s; waiting for readiness only", group.selector)
                results.append(
                    self.monitor.wait_for_ready(
                        group.selector,
                        group.expected_replicas,
                        self.settings.rollout_timeout,
                        cancel_event=self.cancel_event,
                    )
                )
                continue
            results.append(
                self.monitor.wait_for_rollout(
                    group.selector,
                    group.expected_replicas,
                    snapshot,
                    self.settings.rollout_timeout,
                    cancel_event=self.cancel_event,
                )
            )
        return results

    def rotate(self, subject_name: str | None = None) -> RotationResult:
        """Run a complete rotation with a newly generated bundle.

        Raises:
            CARotationError: If an unfinished rotation is staged for this role
            RotationError: If any step fails; the cause is chained
            RotationCancelled: If cancelled between polls
        """
        if (self.staged_dir / STATE_FILE).exists():
            raise CARotationError(
                f"Unfinished {self.role.display_name} rotation staged in {self.staged_dir}; resume it"
            )

        subject = subject_name or self.role.default_subject(self.settings.cluster_name)
        self.phase = RotationPhase.IDLE
        self._last_phase = RotationPhase.IDLE

        self._run_step("pre-flight", self.preflight)
        bundle = self._run_step(
            "bundle generation",
            lambda: CABundle.generate(subject, self.ca_config).write_to(self.staged_dir),
        )
        state = RotationState(role=self.role.value, subject_name=subject, fingerprint=bundle.fingerprint())
        state.save(self.staged_dir)
        logger.info("Generated %s bundle %s in %s", self.role.display_name, state.fingerprint, self.staged_dir)

        return self._advance(bundle, state, RotationPhase.IDLE)

    def resume(self) -> RotationResult:
        """Continue a staged rotation from the phase derived from the records."""
        if not (self.staged_dir / STATE_FILE).exists():
            raise CARotationError(f"No staged {self.role.display_name} rotation in {self.staged_dir}")
        bundle = CABundle.load(self.staged_dir)
        state = RotationState.load(self.staged_dir)
        phase = self._run_step("phase derivation", lambda: self.current_phase(bundle))
        self.phase = phase
        self._last_phase = phase
        logger.info("Resuming %s rotation at %s", self.role.display_name, phase.value)
        if phase is RotationPhase.IDLE:
            self._run_step("pre-flight", self.preflight)
        return self._advance(bundle, state, phase)

    def _advance(self, bundle: CABundle, state: RotationState, phase: RotationPhase) -> RotationResult:
        rollouts: list[RolloutResult] = []
        timeout = self.settings.gate_timeout

        if phase is RotationPhase.IDLE:
            self._run_step("pause", lambda: self.gate.pause(timeout, cancel_event=self.cancel_event))
            archival_key = self._run_step("public-key phase", lambda: self.stage_trust(bundle))
            if archival_key:
                state.archival_key = archival_key
                state.save(self.staged_dir)
            self._enter(RotationPhase.TRUST_STAGED)
            phase = RotationPhase.TRUST_STAGED

        if phase is RotationPhase.TRUST_STAGED:
            if not state.trust_snapshots:
                # Taken while still paused, so nothing has rolled yet
                state.trust_snapshots = self._run_step("trust snapshot", self._snapshot_groups)
                state.save(self.staged_dir)
            self._run_step("resume", lambda: self.gate.resume(timeout, cancel_event=self.cancel_event))
            rollouts += self._run_step("trust rollout", lambda: self._wait_for_groups(state.trust_snapshots))

            state.key_snapshots = self._run_step("key snapshot", self._snapshot_groups)
            state.save(self.staged_dir)
            self._run_step("private-key phase", lambda: self.stage_key(bundle))
            self._enter(RotationPhase.KEY_STAGED)
            phase = RotationPhase.KEY_STAGED

        if phase is RotationPhase.KEY_STAGED:
            if self._run_step("gate check", self.gate.is_paused):
                self._run_step("resume", lambda: self.gate.resume(timeout, cancel_event=self.cancel_event))
            rollouts += self._run_step("key rollout", lambda: self._wait_for_groups(state.key_snapshots))

        verification = None
        if self.verifier is not None:
            verification = self._run_step("verification", self.verifier)

        bundle_path = self._finalize(state)
        self._enter(RotationPhase.COMPLETED)

        cert_record = self.store.read(self.cert_record_name)
        key_record = self.store.read(self.key_record_name)
        return RotationResult(
            role=self.role.value,
            phase=self.phase,
            subject_name=state.subject_name,
            fingerprint=state.fingerprint,
            archival_key=state.archival_key,
            cert_generation=cert_record.generation(ANNO_CA_CERT_GENERATION),
            key_generation=key_record.generation(ANNO_CA_KEY_GENERATION),
            bundle_path=bundle_path,
            rollouts=rollouts,
            verification=verification,
        )

    def _finalize(self, state: RotationState) -> Path:
        """Move the staged bundle aside so the next rotation starts fresh."""
        completed_dir = self.staged_dir.parent / f"completed-{state.fingerprint[:16]}"
        if completed_dir.exists():
            return completed_dir
        self.staged_dir.rename(completed_dir)
        return completed_dir
