"""Credential store adapter - named records with byte fields and generation annotations."""

import base64
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from kubernetes import client
from kubernetes.client.rest import ApiException

from .exceptions import ConflictError, NotFoundError
from .models import CredentialRecord

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Storage contract for CA credential records.

    Backends implement read/create/replace; replace is a conditional write
    keyed on the record version returned by the last read.
    """

    @abstractmethod
    def read(self, name: str) -> CredentialRecord:
        """Return the record.

        Raises:
            NotFoundError: If no record with that name exists
        """

    @abstractmethod
    def create(
        self,
        name: str,
        fields: dict[str, bytes],
        annotations: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> CredentialRecord:
        """Insert a new record.

        Raises:
            ConflictError: If the record already exists
        """

    @abstractmethod
    def replace(self, record: CredentialRecord) -> CredentialRecord:
        """Write the record if it is unchanged since ``record.version`` was read.

        Returns:
            The stored record carrying its new version

        Raises:
            ConflictError: If a concurrent writer changed the record
            NotFoundError: If the record was deleted
        """

    def exists(self, name: str) -> bool:
        try:
            self.read(name)
        except NotFoundError:
            return False
        return True

    def _read_expecting(self, name: str, expected_version: str | None) -> CredentialRecord:
        record = self.read(name)
        if expected_version is not None and record.version != expected_version:
            raise ConflictError(
                f"Record {name} changed: expected version {expected_version}, found {record.version}"
            )
        return record

    def write_field(
        self,
        name: str,
        field_key: str,
        value: bytes,
        expected_version: str | None = None,
    ) -> CredentialRecord:
        """Replace or insert a single field."""
        record = self._read_expecting(name, expected_version)
        return self.replace(record.with_field(field_key, value))

    def bump_annotation(
        self,
        name: str,
        annotation_key: str,
        delta: int = 1,
        expected_version: str | None = None,
    ) -> CredentialRecord:
        """Increase an integer annotation by ``delta``.

        Raises:
            ConflictError: If the record changed since ``expected_version``
                was read; callers must re-read and retry
        """
        record = self._read_expecting(name, expected_version)
        updated = self.replace(record.with_generation(annotation_key, delta))
        logger.info(
            "Bumped %s on %s to %s",
            annotation_key,
            name,
            updated.annotations.get(annotation_key),
        )
        return updated

    def archive_current(
        self,
        name: str,
        canonical_key: str,
        derive_archival_key: Callable[[bytes], str],
        expected_version: str | None = None,
    ) -> str:
        """Copy the canonical field to a key derived from the current bytes.

        Archiving the same certificate twice is a no-op, so repeated rotations
        accumulate one entry per superseded certificate.

        Returns:
            The archival field name

        Raises:
            NotFoundError: If the record or its canonical field is missing
        """
        record = self._read_expecting(name, expected_version)
        current = record.fields.get(canonical_key)
        if current is None:
            raise NotFoundError(f"Record {name} has no '{canonical_key}' field to archive")

        archival_key = derive_archival_key(current)
        if record.fields.get(archival_key) == current:
            logger.info("Certificate already archived in %s as %s", name, archival_key)
            return archival_key

        self.replace(record.with_field(archival_key, current))
        logger.info("Archived %s/%s as %s", name, canonical_key, archival_key)
        return archival_key


def _encode_fields(fields: dict[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(value).decode("ascii") for key, value in fields.items()}


def _decode_fields(data: dict[str, str] | None) -> dict[str, bytes]:
    return {key: base64.b64decode(value) for key, value in (data or {}).items()}


class KubernetesSecretStore(CredentialStore):
    """Credential records backed by Kubernetes Secrets in one namespace.

    Field values are base64 text at rest; ``resourceVersion`` is the
    compare-and-swap token.
    """

    def __init__(self, namespace: str, api_client: client.ApiClient | None = None) -> None:
        """Initialize secret store.

        Args:
            namespace: Namespace holding the CA secrets
            api_client: Configured Kubernetes ApiClient (default configuration if None)
        """
        self.namespace = namespace
        self.core_v1 = client.CoreV1Api(api_client)

    def _to_record(self, secret: client.V1Secret) -> CredentialRecord:
        metadata = secret.metadata
        return CredentialRecord(
            name=metadata.name,
            fields=_decode_fields(secret.data),
            annotations=dict(metadata.annotations or {}),
            labels=dict(metadata.labels or {}),
            version=metadata.resource_version or "",
        )

    def _to_secret(self, record: CredentialRecord) -> client.V1Secret:
        return client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="Opaque",
            metadata=client.V1ObjectMeta(
                name=record.name,
                namespace=self.namespace,
                annotations=record.annotations,
                labels=record.labels,
                resource_version=record.version or None,
            ),
            data=_encode_fields(record.fields),
        )

    def read(self, name: str) -> CredentialRecord:
        try:
            secret = self.core_v1.read_namespaced_secret(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"Secret {self.namespace}/{name} not found") from e
            raise
        return self._to_record(secret)

    def create(
        self,
        name: str,
        fields: dict[str, bytes],
        annotations: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> CredentialRecord:
        record = CredentialRecord(
            name=name,
            fields=dict(fields),
            annotations=dict(annotations or {}),
            labels=dict(labels or {}),
        )
        try:
            secret = self.core_v1.create_namespaced_secret(
                namespace=self.namespace, body=self._to_secret(record)
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"Secret {self.namespace}/{name} already exists") from e
            raise
        logger.info("Created secret %s/%s", self.namespace, name)
        return self._to_record(secret)

    def replace(self, record: CredentialRecord) -> CredentialRecord:
        try:
            secret = self.core_v1.replace_namespaced_secret(
                name=record.name, namespace=self.namespace, body=self._to_secret(record)
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(
                    f"Secret {self.namespace}/{record.name} was modified concurrently "
                    f"(read at resourceVersion {record.version})"
                ) from e
            if e.status == 404:
                raise NotFoundError(f"Secret {self.namespace}/{record.name} not found") from e
            raise
        return self._to_record(secret)
