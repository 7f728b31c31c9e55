"""Test fixtures for ca_rotation tests."""

import dataclasses
import itertools
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from ca_rotation.lib.ca_bundle import CABundle
from ca_rotation.lib.ca_role import CARole
from ca_rotation.lib.config import CAConfig, RotationSettings
from ca_rotation.lib.coordinator import seed_role
from ca_rotation.lib.credential_store import CredentialStore
from ca_rotation.lib.exceptions import ConflictError, NotFoundError, RolloutTimeoutError
from ca_rotation.lib.models import CredentialRecord, RolloutResult

CLUSTER_NAME = "my-cluster"
NAMESPACE = "kafka"


class InMemoryCredentialStore(CredentialStore):
    """Credential store keeping records in a dict with integer versions.

    ``conflicts_to_raise`` simulates concurrent writers: each pending
    conflict bumps the stored version and rejects the incoming write.
    """

    def __init__(self) -> None:
        self.records: dict[str, CredentialRecord] = {}
        self.writes: list[CredentialRecord] = []
        self.conflicts_to_raise = 0
        self._versions = itertools.count(1)

    def read(self, name: str) -> CredentialRecord:
        if name not in self.records:
            raise NotFoundError(f"Record {name} not found")
        return self.records[name]

    def create(self, name, fields, annotations=None, labels=None) -> CredentialRecord:
        if name in self.records:
            raise ConflictError(f"Record {name} already exists")
        record = CredentialRecord(
            name=name,
            fields=dict(fields),
            annotations=dict(annotations or {}),
            labels=dict(labels or {}),
            version=str(next(self._versions)),
        )
        self.records[name] = record
        return record

    def replace(self, record: CredentialRecord) -> CredentialRecord:
        current = self.read(record.name)
        if self.conflicts_to_raise:
            self.conflicts_to_raise -= 1
            self.records[record.name] = dataclasses.replace(current, version=str(next(self._versions)))
            raise ConflictError(f"Record {record.name} was modified concurrently")
        if current.version != record.version:
            raise ConflictError(f"Record {record.name} was modified concurrently")
        stored = dataclasses.replace(record, version=str(next(self._versions)))
        self.records[record.name] = stored
        self.writes.append(stored)
        return stored


class FakeGate:
    """Reconciliation gate that flips a flag and records calls."""

    def __init__(self) -> None:
        self.paused = False
        self.calls: list[str] = []

    def pause(self, timeout: float, cancel_event: threading.Event | None = None) -> None:
        self.calls.append("pause")
        self.paused = True

    def resume(self, timeout: float, wait: bool = True, cancel_event: threading.Event | None = None) -> None:
        self.calls.append("resume")
        self.paused = False

    def is_paused(self) -> bool:
        return self.paused


class ControllerMonitor:
    """Rollout monitor fake that plays the operator rolling pods.

    Waiting for a rollout while the gate is paused times out, as the real
    operator would not roll anything. Otherwise every pod of the group gets
    a new UID and ``observer`` is called with the selector.
    """

    def __init__(
        self,
        gate: FakeGate,
        selectors: list[str],
        observer: Callable[[str], None] | None = None,
    ) -> None:
        self.gate = gate
        self.observer = observer
        self.before_wait: Callable[[str], None] | None = None
        self.pods = {selector: {f"{selector.split('=')[1]}-0": "uid-0"} for selector in selectors}
        self.rolls: list[str] = []
        self.snapshots_waited: list[dict[str, str]] = []
        self._uids = itertools.count(1)

    def snapshot(self, selector: str) -> dict[str, str]:
        return dict(self.pods[selector])

    def wait_for_rollout(self, selector, expected_replicas, snapshot, timeout, cancel_event=None):
        if self.before_wait is not None:
            self.before_wait(selector)
        if self.gate.paused:
            raise RolloutTimeoutError(f"{selector} did not roll while reconciliation is paused")
        self.snapshots_waited.append(dict(snapshot))
        if self.pods[selector] == snapshot:
            self.pods[selector] = {name: f"uid-{next(self._uids)}" for name in self.pods[selector]}
            self.rolls.append(selector)
            if self.observer is not None:
                self.observer(selector)
        return RolloutResult(selector=selector, replaced=dict(self.pods[selector]), elapsed_seconds=0.0)

    def wait_for_ready(self, selector, expected_replicas, timeout, cancel_event=None):
        return RolloutResult(selector=selector, replaced=dict(self.pods[selector]), elapsed_seconds=0.0)


@pytest.fixture
def ca_config() -> CAConfig:
    """Return test CA configuration with smaller keys and shorter validity."""
    return CAConfig(
        country="GB",
        state="London",
        locality="London",
        organization="Test Org",
        organizational_unit="Test Unit",
        root_validity_days=30,
        intermediate_validity_days=20,
        client_validity_days=5,
        key_size=2048,  # Faster for tests
    )


@pytest.fixture
def rotation_settings(tmp_path: Path) -> RotationSettings:
    """Return rotation settings writing into a temporary directory."""
    return RotationSettings(
        cluster_name=CLUSTER_NAME,
        namespace=NAMESPACE,
        output_dir=tmp_path / "output",
        poll_interval=0,
        gate_timeout=1,
        rollout_timeout=1,
        verification_timeout=5,
        message_count=100,
        per_message_delay=0,
    )


@pytest.fixture
def memory_store() -> InMemoryCredentialStore:
    """Return an empty in-memory credential store."""
    return InMemoryCredentialStore()


@pytest.fixture
def seeded_store(memory_store: InMemoryCredentialStore, ca_config: CAConfig) -> InMemoryCredentialStore:
    """Return a store with both CA roles seeded."""
    seed_role(memory_store, CARole.CLUSTER, CLUSTER_NAME, ca_config)
    seed_role(memory_store, CARole.CLIENTS, CLUSTER_NAME, ca_config)
    return memory_store


@pytest.fixture
def fake_gate() -> FakeGate:
    return FakeGate()


@pytest.fixture
def controller_monitor(fake_gate: FakeGate, rotation_settings: RotationSettings) -> ControllerMonitor:
    """Return a monitor running one pod in every component group of the cluster."""
    selectors = [group.selector for group in CARole.CLUSTER.component_groups(rotation_settings)]
    return ControllerMonitor(fake_gate, selectors)


@pytest.fixture
def bundle(ca_config: CAConfig) -> CABundle:
    """Return a freshly generated CA bundle."""
    return CABundle.generate("Test Cluster CA", ca_config)
