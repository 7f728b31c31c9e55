"""Records and result models for CA rotation operations."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class RotationPhase(Enum):
    """Position of a rotation in the two-phase protocol."""

    IDLE = "Idle"
    TRUST_STAGED = "TrustStaged"
    KEY_STAGED = "KeyStaged"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True)
class CredentialRecord:
    """Named credential record with byte fields and string annotations.

    ``version`` is the opaque token the store compares on conditional writes.
    """

    name: str
    fields: dict[str, bytes]
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    version: str = ""

    def generation(self, annotation_key: str) -> int:
        """Return an integer generation annotation, 0 when absent."""
        return int(self.annotations.get(annotation_key, "0"))

    def with_field(self, field_key: str, value: bytes) -> "CredentialRecord":
        return CredentialRecord(
            name=self.name,
            fields={**self.fields, field_key: value},
            annotations=dict(self.annotations),
            labels=dict(self.labels),
            version=self.version,
        )

    def with_generation(self, annotation_key: str, delta: int) -> "CredentialRecord":
        return CredentialRecord(
            name=self.name,
            fields=dict(self.fields),
            annotations={
                **self.annotations,
                annotation_key: str(self.generation(annotation_key) + delta),
            },
            labels=dict(self.labels),
            version=self.version,
        )


@dataclass
class RolloutResult:
    """Result from waiting for a component group to roll."""

    selector: str
    replaced: dict[str, str]
    elapsed_seconds: float


@dataclass
class VerificationResult:
    """Result from a produce (and optional consume) probe run."""

    topic: str
    acknowledged: int
    consumed: int
    elapsed_seconds: float


@dataclass
class RotationResult:
    """Result from a CA role rotation.

    Generations are the values after the run; archival_key is the field the
    superseded certificate was retained under.
    """

    role: str
    phase: RotationPhase
    subject_name: str
    fingerprint: str
    archival_key: str
    cert_generation: int
    key_generation: int
    bundle_path: Path | None = None
    rollouts: list[RolloutResult] = field(default_factory=list)
    verification: VerificationResult | None = None
