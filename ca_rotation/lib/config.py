"""CA and rotation configuration dataclasses."""

from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.x509 import oid


@dataclass
class CAConfig:
    """CA material configuration with no cluster dependencies."""

    country: str = "GB"
    state: str = "London"
    locality: str = "London"
    organization: str = "Strimzi Custom CA"
    organizational_unit: str = "Platform"
    root_validity_days: int = 730
    intermediate_validity_days: int = 365
    client_validity_days: int = 30
    key_size: int = 4096


@dataclass
class RotationSettings:
    """Where and how a rotation runs.

    Passed explicitly into the coordinator, gate, monitor and probe.
    """

    cluster_name: str
    namespace: str
    output_dir: Path = Path("ca_rotation/output")
    poll_interval: float = 5.0
    gate_timeout: float = 300.0
    rollout_timeout: float = 900.0
    verification_timeout: float = 300.0
    kafka_replicas: int = 1
    zookeeper_replicas: int = 1
    entity_operator_replicas: int = 1
    topic: str = "ca-rotation-probe"
    message_count: int = 100
    per_message_delay: float = 0.01
    conflict_retries: int = 5

    @property
    def bootstrap_address(self) -> str:
        """TLS bootstrap address of the cluster's internal listener."""
        return f"{self.cluster_name}-kafka-bootstrap.{self.namespace}.svc:9093"


@dataclass
class DistinguishedName:
    """X.509 Subject Distinguished Name."""

    country: str
    state: str
    locality: str
    organization: str
    organizational_unit: str
    common_name: str

    @classmethod
    def from_config(cls, config: CAConfig, common_name: str) -> "DistinguishedName":
        """Build DN from CAConfig fields + common_name."""
        return cls(
            country=config.country,
            state=config.state,
            locality=config.locality,
            organization=config.organization,
            organizational_unit=config.organizational_unit,
            common_name=common_name,
        )

    def to_x509_name(self) -> x509.Name:
        """Convert to cryptography x509.Name for certificate generation."""
        return x509.Name(
            [
                x509.NameAttribute(oid.NameOID.COUNTRY_NAME, self.country),
                x509.NameAttribute(oid.NameOID.STATE_OR_PROVINCE_NAME, self.state),
                x509.NameAttribute(oid.NameOID.LOCALITY_NAME, self.locality),
                x509.NameAttribute(oid.NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(oid.NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
                x509.NameAttribute(oid.NameOID.COMMON_NAME, self.common_name),
            ]
        )
