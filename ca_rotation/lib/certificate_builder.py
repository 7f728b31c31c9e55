"""X.509 construction for a root + intermediate CA pair and the leaves it signs."""

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.types import (
    CertificateIssuerPrivateKeyTypes,
    CertificatePublicKeyTypes,
)
from cryptography.x509.oid import ExtendedKeyUsageOID

from .cert_utils import generate_serial_number
from .config import DistinguishedName

CA_KEY_USAGE = x509.KeyUsage(
    digital_signature=False,
    content_commitment=False,
    key_encipherment=False,
    data_encipherment=False,
    key_agreement=False,
    key_cert_sign=True,
    crl_sign=True,
    encipher_only=False,
    decipher_only=False,
)

LEAF_KEY_USAGE = x509.KeyUsage(
    digital_signature=True,
    content_commitment=False,
    key_encipherment=True,
    data_encipherment=False,
    key_agreement=False,
    key_cert_sign=False,
    crl_sign=False,
    encipher_only=False,
    decipher_only=False,
)

# Strimzi leaves are used on both sides of the TLS listener
LEAF_EXTENDED_USAGES = (ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH)


def _validity_window(days: int) -> tuple[datetime, datetime]:
    not_before = datetime.now(timezone.utc)
    return not_before, not_before + timedelta(days=days)


def _issued_by(
    subject: x509.Name,
    public_key: CertificatePublicKeyTypes,
    issuer_cert: x509.Certificate,
    validity_days: int,
) -> x509.CertificateBuilder:
    not_before, not_after = _validity_window(validity_days)
    try:
        issuer_ski = issuer_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
        authority_key_id = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(issuer_ski)
    except x509.ExtensionNotFound:
        # Issuers imported from elsewhere may lack an SKI
        authority_key_id = x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_cert.public_key())
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject)
        .public_key(public_key)
        .serial_number(generate_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(authority_key_id, critical=False)
    )


class CertificateBuilder:
    """Builds the certificates of one CA role: root, signing intermediate, leaves."""

    @staticmethod
    def build_root_ca(
        subject_dn: DistinguishedName,
        private_key: CertificateIssuerPrivateKeyTypes,
        validity_days: int,
    ) -> x509.Certificate:
        """Build the self-signed root that anchors a CA role's trust.

        The root key only signs the intermediate and is not kept afterwards.
        """
        subject = subject_dn.to_x509_name()
        not_before, not_after = _validity_window(validity_days)

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(CA_KEY_USAGE, critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
        )
        return builder.sign(private_key, hashes.SHA256())

    @staticmethod
    def build_intermediate_ca(
        subject_dn: DistinguishedName,
        public_key: CertificatePublicKeyTypes,
        root_cert: x509.Certificate,
        root_key: CertificateIssuerPrivateKeyTypes,
        validity_days: int,
    ) -> x509.Certificate:
        """Build the signing CA stored in a role's ``ca.crt``.

        The operator signs broker, ZooKeeper and user certificates with this
        key, so it carries pathlen:0.

        Args:
            subject_dn: Distinguished name of the intermediate
            public_key: Public half of the key written to ``ca.key``
            root_cert: Issuing root certificate
            root_key: Root private key
            validity_days: Validity period in days

        Returns:
            Intermediate certificate signed by the root
        """
        builder = (
            _issued_by(subject_dn.to_x509_name(), public_key, root_cert, validity_days)
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(CA_KEY_USAGE, critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        )
        return builder.sign(root_key, hashes.SHA256())

    @staticmethod
    def build_leaf_certificate(
        subject_dn: DistinguishedName,
        public_key: CertificatePublicKeyTypes,
        issuer_cert: x509.Certificate,
        issuer_key: CertificateIssuerPrivateKeyTypes,
        validity_days: int,
        extended_usages: Sequence[x509.ObjectIdentifier] = LEAF_EXTENDED_USAGES,
    ) -> x509.Certificate:
        """Build an end-entity certificate signed by a role's intermediate."""
        builder = (
            _issued_by(subject_dn.to_x509_name(), public_key, issuer_cert, validity_days)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(LEAF_KEY_USAGE, critical=False)
            .add_extension(x509.ExtendedKeyUsage(list(extended_usages)), critical=False)
        )
        return builder.sign(issuer_key, hashes.SHA256())
