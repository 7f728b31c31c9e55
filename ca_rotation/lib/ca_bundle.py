"""Root + intermediate certificate authority bundle as an immutable value object."""

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm

from .cert_utils import (
    certificate_fingerprint,
    create_truststore_bundle,
    deserialize_certificate,
    generate_private_key,
    get_certificate_serial_hex,
    load_private_key,
    normalize_private_key_pkcs8,
    serialize_certificate,
    serialize_private_key,
)
from .certificate_builder import CertificateBuilder
from .config import CAConfig, DistinguishedName
from .exceptions import CryptoError

ROOT_CERT_FILE = "root-ca.pem"
CHAIN_CERT_FILE = "ca.crt"
KEY_FILE = "ca.key"
METADATA_FILE = "metadata.json"


@dataclass(frozen=True)
class CABundle:
    """Intended CA material for one rotation attempt.

    Describes what a CA role will become once persisted; the credential
    record stays the source of truth for what is current.
    """

    subject_name: str
    root_certificate: bytes
    intermediate_certificate: bytes
    private_key: bytes
    bundle_path: Path | None = None

    @classmethod
    def generate(cls, subject_name: str, config: CAConfig) -> "CABundle":
        """Generate a self-signed root and an intermediate CA signed by it.

        The intermediate's key becomes the bundle's signing key; the root key
        is discarded once the intermediate is signed.

        Args:
            subject_name: Common name of the intermediate CA
            config: Key size, validity and DN template

        Returns:
            New CABundle with PEM certificates and a PKCS8 DER key

        Raises:
            CryptoError: If key generation or signing fails
        """
        try:
            root_key = generate_private_key(config.key_size)
            root_cert = CertificateBuilder.build_root_ca(
                subject_dn=DistinguishedName.from_config(config, f"{subject_name} Root"),
                private_key=root_key,
                validity_days=config.root_validity_days,
            )

            intermediate_key = generate_private_key(config.key_size)
            intermediate_cert = CertificateBuilder.build_intermediate_ca(
                subject_dn=DistinguishedName.from_config(config, subject_name),
                public_key=intermediate_key.public_key(),
                root_cert=root_cert,
                root_key=root_key,
                validity_days=config.intermediate_validity_days,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CryptoError(f"Failed to generate CA bundle '{subject_name}': {e}") from e

        return cls(
            subject_name=subject_name,
            root_certificate=serialize_certificate(root_cert),
            intermediate_certificate=serialize_certificate(intermediate_cert),
            private_key=normalize_private_key_pkcs8(serialize_private_key(intermediate_key)),
        )

    @classmethod
    def load(cls, directory: Path) -> "CABundle":
        """Load a bundle previously written with write_to()."""
        metadata = json.loads((directory / METADATA_FILE).read_text())
        chain = (directory / CHAIN_CERT_FILE).read_bytes()
        return cls(
            subject_name=metadata["subjectName"],
            root_certificate=(directory / ROOT_CERT_FILE).read_bytes(),
            intermediate_certificate=serialize_certificate(deserialize_certificate(chain)),
            private_key=normalize_private_key_pkcs8((directory / KEY_FILE).read_bytes()),
            bundle_path=directory,
        )

    def certificate(self) -> x509.Certificate:
        """Return the intermediate (signing) CA certificate."""
        return deserialize_certificate(self.intermediate_certificate)

    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the signing CA certificate."""
        return certificate_fingerprint(self.certificate())

    def export_certificate_pem(self) -> bytes:
        """Return the intermediate + root PEM chain stored in the canonical cert field."""
        return create_truststore_bundle(self.intermediate_certificate, self.root_certificate)

    def export_private_key_pkcs8(self) -> bytes:
        """Return the signing key as unencrypted PKCS8 DER.

        Raises:
            EncodingError: If the key type is unsupported or unparsable
        """
        return normalize_private_key_pkcs8(self.private_key)

    def write_to(self, directory: Path) -> "CABundle":
        """Persist bundle files and return a copy pointing at them.

        Raises:
            CryptoError: If the key material cannot be written
        """
        key_pem = serialize_private_key(load_private_key(self.private_key))
        cert = self.certificate()
        metadata = {
            "subjectName": self.subject_name,
            "fingerprint": self.fingerprint(),
            "serialNumber": get_certificate_serial_hex(cert),
            "notAfter": cert.not_valid_after_utc.isoformat(),
        }

        try:
            directory.mkdir(parents=True, exist_ok=True)
            (directory / ROOT_CERT_FILE).write_bytes(self.root_certificate)
            (directory / CHAIN_CERT_FILE).write_bytes(self.export_certificate_pem())
            key_path = directory / KEY_FILE
            key_path.write_bytes(key_pem)
            os.chmod(key_path, 0o600)
            (directory / METADATA_FILE).write_text(json.dumps(metadata, indent=2))
        except OSError as e:
            raise CryptoError(f"Failed to write CA bundle to {directory}: {e}") from e

        return replace(self, bundle_path=directory)

    def issue_leaf(self, common_name: str, config: CAConfig, key_size: int = 2048) -> tuple[bytes, bytes]:
        """Issue an end-entity certificate signed by this bundle's key.

        Args:
            common_name: CN of the leaf (e.g. a Kafka user name)
            config: DN template and client validity
            key_size: RSA key size of the leaf key

        Returns:
            Tuple of (private_key_pem, certificate_pem)
        """
        return issue_leaf_certificate(
            issuer_cert_pem=self.intermediate_certificate,
            issuer_key=self.private_key,
            common_name=common_name,
            config=config,
            key_size=key_size,
        )


def issue_leaf_certificate(
    issuer_cert_pem: bytes,
    issuer_key: bytes,
    common_name: str,
    config: CAConfig,
    key_size: int = 2048,
) -> tuple[bytes, bytes]:
    """Issue an end-entity certificate from raw issuer material.

    Args:
        issuer_cert_pem: PEM of the issuing CA (first certificate is used)
        issuer_key: Issuer private key in any supported encoding
        common_name: CN of the leaf
        config: DN template and client validity
        key_size: RSA key size of the leaf key

    Returns:
        Tuple of (private_key_pem, certificate_pem)

    Raises:
        CryptoError: If signing fails
        EncodingError: If the issuer key cannot be loaded
    """
    signing_key = load_private_key(issuer_key)
    try:
        leaf_key = generate_private_key(key_size)
        leaf_cert = CertificateBuilder.build_leaf_certificate(
            subject_dn=DistinguishedName.from_config(config, common_name),
            public_key=leaf_key.public_key(),
            issuer_cert=deserialize_certificate(issuer_cert_pem),
            issuer_key=signing_key,
            validity_days=config.client_validity_days,
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Failed to issue certificate for '{common_name}': {e}") from e
    return serialize_private_key(leaf_key), serialize_certificate(leaf_cert)
