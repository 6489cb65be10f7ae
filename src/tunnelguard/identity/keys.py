"""
Key and Certificate Primitives

Local key generation, certificate signing and revocation-list building for
the host authority. Keys never leave the install root.

The key algorithm/size is chosen once for the authority (KeySpec) and every
leaf is generated with the same spec, so chain validation stays uniform.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from ..schemas.provision import KeyAlgorithm, KeySpec

CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}

# Backdate notBefore to tolerate small clock skew between server and peers
CLOCK_SKEW = timedelta(minutes=5)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_private_key(spec: KeySpec):
    """
    Generate a new private key.

    Args:
        spec: Key algorithm and size (curve bits for ECDSA)

    Returns:
        cryptography private key object
    """
    if spec.algorithm == KeyAlgorithm.RSA:
        return rsa.generate_private_key(public_exponent=65537, key_size=spec.size)
    return ec.generate_private_key(CURVES[spec.size]())


def key_spec_of(private_key) -> KeySpec:
    """Derive the KeySpec of an existing key."""
    if isinstance(private_key, rsa.RSAPrivateKey):
        return KeySpec(algorithm=KeyAlgorithm.RSA, size=private_key.key_size)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return KeySpec(algorithm=KeyAlgorithm.ECDSA, size=private_key.curve.key_size)
    raise ValueError(f"Unsupported key type: {type(private_key).__name__}")


def private_key_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def certificate_pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


def load_private_key(pem: bytes):
    return serialization.load_pem_private_key(pem, password=None)


def load_certificate(pem: bytes) -> x509.Certificate:
    return x509.load_pem_x509_certificate(pem)


def fingerprint(certificate: x509.Certificate) -> str:
    """SHA-256 fingerprint of the DER encoding."""
    return hashlib.sha256(certificate.public_bytes(serialization.Encoding.DER)).hexdigest()


def serial_hex(certificate: x509.Certificate) -> str:
    return format(certificate.serial_number, "X")


def common_name(certificate: x509.Certificate) -> Optional[str]:
    attrs = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else None


def key_matches_certificate(private_key, certificate: x509.Certificate) -> bool:
    """True if the certificate carries this key's public half."""
    pub = serialization.PublicFormat.SubjectPublicKeyInfo
    enc = serialization.Encoding.DER
    return private_key.public_key().public_bytes(enc, pub) == certificate.public_key().public_bytes(enc, pub)


def is_signed_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    """Check issuer name and signature against the given authority certificate."""
    try:
        certificate.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def build_authority_certificate(private_key, days: int) -> x509.Certificate:
    """Self-signed authority certificate (pathlen 0: only leaves below it)."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "TunnelGuard CA")])
    now = _now()
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - CLOCK_SKEW)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()), critical=False)
        .sign(private_key, hashes.SHA256())
    )


def build_leaf_certificate(
    common_name_value: str,
    public_key,
    authority_cert: x509.Certificate,
    authority_key,
    days: int,
    server: bool = False,
) -> x509.Certificate:
    """
    Sign a leaf certificate for the server or a peer.

    Args:
        common_name_value: Subject CN (the peer name, or "server")
        public_key: Leaf public key
        authority_cert: Signing authority certificate
        authority_key: Signing authority private key
        days: Validity in days
        server: serverAuth EKU when True, clientAuth otherwise

    Returns:
        Signed x509.Certificate
    """
    eku = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
    now = _now()
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name_value)]))
        .issuer_name(authority_cert.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - CLOCK_SKEW)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=server,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([eku]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(authority_key.public_key()),
            critical=False,
        )
        .sign(authority_key, hashes.SHA256())
    )


def build_revocation_list(
    authority_cert: x509.Certificate,
    authority_key,
    revoked: Iterable[Tuple[int, datetime]],
    days: int,
) -> x509.CertificateRevocationList:
    """
    Sign a CRL listing every revoked serial.

    Args:
        revoked: (serial_number, revocation_date) pairs
        days: next_update horizon
    """
    now = _now()
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(authority_cert.subject)
        .last_update(now)
        .next_update(now + timedelta(days=days))
    )
    for serial, revoked_at in revoked:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(revoked_at)
            .build()
        )
    return builder.sign(private_key=authority_key, algorithm=hashes.SHA256())


def revocation_list_pem(crl: x509.CertificateRevocationList) -> bytes:
    return crl.public_bytes(serialization.Encoding.PEM)


def load_revocation_list(pem: bytes) -> x509.CertificateRevocationList:
    return x509.load_pem_x509_crl(pem)
