"""X.509 validation against the trust anchor: signed-by-CA, validity window, CN."""

from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from certrelay.common.errors import PeerCertificateError


class BadCertError(PeerCertificateError):
    """Certificate validation failed."""
    pass


def load_certificate(cert_path: Path) -> x509.Certificate:
    """
    Load an X.509 certificate from a PEM file.

    Raises:
        BadCertError: If certificate cannot be loaded
    """
    try:
        with open(cert_path, "rb") as f:
            cert_data = f.read()
    except OSError as e:
        raise BadCertError(f"Failed to read certificate {cert_path}: {e}")
    return load_certificate_from_bytes(cert_data)


def load_certificate_from_bytes(cert_data: bytes) -> x509.Certificate:
    """
    Load an X.509 certificate from PEM bytes.

    Raises:
        BadCertError: If certificate cannot be parsed
    """
    try:
        return x509.load_pem_x509_certificate(cert_data, default_backend())
    except ValueError as e:
        raise BadCertError(f"Failed to parse certificate: {e}")


def get_certificate_cn(cert: x509.Certificate) -> str:
    """
    Extract Common Name (CN) from certificate.

    Raises:
        BadCertError: If CN not found
    """
    cn_attr = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not cn_attr:
        raise BadCertError("Certificate has no Common Name (CN)")
    return cn_attr[0].value


def verify_certificate_chain(cert: x509.Certificate, ca_cert: x509.Certificate) -> None:
    """
    Verify that a certificate is signed by the CA (RSA, PKCS#1 v1.5).

    Raises:
        BadCertError: If verification fails
    """
    if cert.issuer != ca_cert.subject:
        raise BadCertError("Certificate was not issued by the trusted CA")

    ca_public_key = ca_cert.public_key()
    if not isinstance(ca_public_key, rsa.RSAPublicKey):
        raise BadCertError("Trusted CA key is not an RSA key")

    hash_alg = cert.signature_hash_algorithm
    if hash_alg is None:
        raise BadCertError("Unsupported signature algorithm")

    try:
        ca_public_key.verify(
            cert.signature,
            cert.tbs_certificate_bytes,
            padding.PKCS1v15(),
            hash_alg,
        )
    except Exception as e:
        raise BadCertError(f"Certificate signature verification failed: {e}")


def check_certificate_validity(cert: x509.Certificate) -> None:
    """
    Check if certificate is within its validity period.

    Raises:
        BadCertError: If certificate is expired or not yet valid
    """
    now = datetime.now(timezone.utc)

    if now < cert.not_valid_before_utc:
        raise BadCertError(
            f"Certificate not yet valid. Valid from: {cert.not_valid_before_utc}"
        )

    if now > cert.not_valid_after_utc:
        raise BadCertError(
            f"Certificate expired. Expired on: {cert.not_valid_after_utc}"
        )


def check_certificate_cn(cert: x509.Certificate, expected_cn: str) -> None:
    """
    Check if certificate CN matches expected value.

    Raises:
        BadCertError: If CN doesn't match
    """
    cert_cn = get_certificate_cn(cert)

    if cert_cn != expected_cn:
        raise BadCertError(
            f"CN mismatch: expected '{expected_cn}', got '{cert_cn}'"
        )


def is_self_signed(cert: x509.Certificate) -> bool:
    return cert.subject == cert.issuer


def validate_certificate(
    cert: x509.Certificate,
    ca_cert: x509.Certificate,
    expected_cn: str = None
) -> x509.Certificate:
    """
    Comprehensive certificate validation.

    Validates:
    1. Certificate is not self-signed
    2. Certificate is signed by CA
    3. Certificate is within validity period
    4. CN matches expected value (if provided)

    Returns:
        The certificate, for chaining

    Raises:
        BadCertError: If any validation fails
    """
    if is_self_signed(cert):
        raise BadCertError("Certificate is self-signed (not trusted)")

    verify_certificate_chain(cert, ca_cert)
    check_certificate_validity(cert)

    if expected_cn:
        check_certificate_cn(cert, expected_cn)

    return cert


def validate_certificate_pem(cert_data: bytes, ca_cert: x509.Certificate, expected_cn: str = None) -> x509.Certificate:
    """Parse PEM bytes and run validate_certificate() on the result."""
    return validate_certificate(load_certificate_from_bytes(cert_data), ca_cert, expected_cn)


def load_ca_certificate(ca_cert_path: Path = Path("certs/ca_cert.pem")) -> x509.Certificate:
    """
    Load the CA certificate (the trust anchor).

    Raises:
        BadCertError: If CA certificate cannot be loaded
    """
    if not ca_cert_path.exists():
        raise BadCertError(f"CA certificate not found at: {ca_cert_path}")

    return load_certificate(ca_cert_path)
