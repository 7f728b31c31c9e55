"""CA roles of a cluster and what each role's rotation touches."""

from dataclasses import dataclass
from enum import Enum

from .config import RotationSettings

CA_CERT_FIELD = "ca.crt"
CA_KEY_FIELD = "ca.key"
ANNO_CA_CERT_GENERATION = "strimzi.io/ca-cert-generation"
ANNO_CA_KEY_GENERATION = "strimzi.io/ca-key-generation"
LABEL_CLUSTER = "strimzi.io/cluster"
LABEL_KIND = "strimzi.io/kind"
LABEL_NAME = "strimzi.io/name"


@dataclass(frozen=True)
class ComponentGroup:
    """Pods of one cluster component, selected by label."""

    name: str
    selector: str
    expected_replicas: int


def _component(settings: RotationSettings, suffix: str, replicas: int) -> ComponentGroup:
    name = f"{settings.cluster_name}-{suffix}"
    return ComponentGroup(name=name, selector=f"{LABEL_NAME}={name}", expected_replicas=replicas)


class CARole(Enum):
    """Cluster CA signs node-to-node certificates, Clients CA signs user certificates."""

    CLUSTER = "cluster"
    CLIENTS = "clients"

    @property
    def counterpart(self) -> "CARole":
        return CARole.CLIENTS if self is CARole.CLUSTER else CARole.CLUSTER

    @property
    def display_name(self) -> str:
        return "Cluster CA" if self is CARole.CLUSTER else "Clients CA"

    def cert_secret_name(self, cluster_name: str) -> str:
        """Name of the record holding the role's public CA certificate."""
        return f"{cluster_name}-{self.value}-ca-cert"

    def key_secret_name(self, cluster_name: str) -> str:
        """Name of the record holding the role's private CA key."""
        return f"{cluster_name}-{self.value}-ca"

    def default_subject(self, cluster_name: str) -> str:
        return f"{cluster_name} {self.display_name}"

    def component_groups(self, settings: RotationSettings) -> list[ComponentGroup]:
        """Component groups that must roll when this role's trust changes.

        Every cluster component trusts the Cluster CA; only the brokers
        present the Clients CA to clients.
        """
        kafka = _component(settings, "kafka", settings.kafka_replicas)
        if self is CARole.CLIENTS:
            return [kafka]
        return [
            _component(settings, "zookeeper", settings.zookeeper_replicas),
            kafka,
            _component(settings, "entity-operator", settings.entity_operator_replicas),
        ]

    def record_labels(self, cluster_name: str) -> dict[str, str]:
        """Labels the operator expects on the role's seeded records."""
        return {LABEL_CLUSTER: cluster_name, LABEL_KIND: "Kafka"}
