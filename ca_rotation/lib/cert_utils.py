"""Certificate utility functions for key generation, serialization, and identity derivation."""

import hashlib
import uuid

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from ca_rotation.lib.exceptions import EncodingError

# Key types the operator accepts as a CA signing key
SUPPORTED_KEY_TYPES = (
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
)

ARCHIVAL_FINGERPRINT_LENGTH = 8


def generate_private_key(key_size: int = 4096) -> RSAPrivateKey:
    """Generate RSA private key with specified size."""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def serialize_private_key(key: RSAPrivateKey) -> bytes:
    """Serialize private key to PEM format (PKCS8, no encryption)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(data: bytes):
    """Load a private key from PEM (PKCS1 or PKCS8) or DER (PKCS8) bytes.

    Raises:
        EncodingError: If the bytes are not an unencrypted private key of a
            supported type
    """
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            key = serialization.load_pem_private_key(data, password=None)
        else:
            key = serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncodingError(f"Unable to load private key: {e}") from e

    if not isinstance(key, SUPPORTED_KEY_TYPES):
        raise EncodingError(f"Unsupported private key type: {type(key).__name__}")
    return key


def normalize_private_key_pkcs8(data: bytes) -> bytes:
    """Re-encode any supported private key as unencrypted PKCS8 DER."""
    key = load_private_key(data)
    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize the first certificate from PEM bytes."""
    return x509.load_pem_x509_certificates(pem_data)[0]


def deserialize_certificates(pem_data: bytes) -> list[x509.Certificate]:
    """Deserialize every certificate in a PEM bundle."""
    return x509.load_pem_x509_certificates(pem_data)


def generate_serial_number() -> int:
    """Generate certificate serial number from UUID4.

    128-bit values with ~122 bits of entropy, above the 64-bit CSPRNG
    minimum of the CA/Browser Forum baseline.

    Returns:
        Integer serial number for x509.CertificateBuilder.serial_number()
    """
    return uuid.uuid4().int


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as hex with colons (e.g., 3A:F2:B1:...)."""
    serial_hex = f"{cert.serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def certificate_fingerprint(cert: x509.Certificate) -> str:
    """Return SHA-256 fingerprint of the certificate DER as lowercase hex."""
    return hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest()


def derive_archival_key(cert_pem: bytes) -> str:
    """Derive the field name a superseded CA certificate is archived under.

    Built from the certificate's own identity (expiry plus fingerprint
    prefix), so the same certificate always maps to the same key and two
    different certificates never collide.

    Args:
        cert_pem: PEM bytes of the certificate currently in the canonical field

    Returns:
        Field name such as ``ca-2026-10-19T10-00-00Z-1a2b3c4d.crt``
    """
    cert = deserialize_certificate(cert_pem)
    not_after = cert.not_valid_after_utc.strftime("%Y-%m-%dT%H-%M-%SZ")
    fingerprint = certificate_fingerprint(cert)[:ARCHIVAL_FINGERPRINT_LENGTH]
    return f"ca-{not_after}-{fingerprint}.crt"


def create_truststore_bundle(*cert_pems: bytes) -> bytes:
    """Create truststore bundle by concatenating PEM certificates in order."""
    return b"\n".join(pem.strip() for pem in cert_pems) + b"\n"


def validate_certificate_chain(
    leaf_cert: x509.Certificate,
    trusted_certs: list[x509.Certificate],
) -> bool:
    """Check that a leaf chains to a self-signed root through the trusted set.

    Walks issuer links inside ``trusted_certs`` (intermediates and roots of
    every CA currently trusted) until a self-signed certificate is reached.

    Returns True if chain is valid, False otherwise.
    """
    current = leaf_cert
    for _ in range(len(trusted_certs) + 1):
        issuer = _find_issuer(current, trusted_certs)
        if issuer is None:
            return False
        if issuer.subject == issuer.issuer:
            return True
        current = issuer
    return False


def _find_issuer(
    cert: x509.Certificate, candidates: list[x509.Certificate]
) -> x509.Certificate | None:
    """Return the candidate whose key verifies the certificate's signature."""
    for candidate in candidates:
        try:
            cert.verify_directly_issued_by(candidate)
        except (ValueError, TypeError, InvalidSignature):
            continue
        return candidate
    return None
