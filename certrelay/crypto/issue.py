"""Certificate issuance: root CA, CA-signed leaf certs, CSRs.

Used by scripts/gen_ca.py and scripts/gen_cert.py to bootstrap a relay
deployment, and by the client to build the CSR sent with getcert.
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


ORGANIZATION = "certrelay"


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size, backend=default_backend())


def build_name(cn: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def create_root_ca(name: str, private_key: rsa.RSAPrivateKey, valid_days: int = 3650) -> x509.Certificate:
    """
    Self-signed CA certificate for private_key.

    Args:
        name: Common Name for the CA
        private_key: CA key pair
        valid_days: Validity period (default 10 years)
    """
    subject = build_name(name)
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
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
        .sign(private_key, hashes.SHA256(), default_backend())
    )


def issue_certificate(
    cn: str,
    public_key: rsa.RSAPublicKey,
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    valid_days: int = 365,
    not_before: Optional[datetime] = None,
    dns_names: Optional[Sequence[str]] = None,
) -> x509.Certificate:
    """
    Sign a leaf certificate for public_key with the CA.

    Args:
        cn: Common Name; a username for user certs, a hostname for servers
        public_key: Subject key
        ca_key: CA private key
        ca_cert: CA certificate (becomes the issuer)
        valid_days: Validity period from not_before
        not_before: Start of validity (default: now)
        dns_names: SubjectAlternativeName entries (default: [cn])
    """
    start = not_before or datetime.now(timezone.utc) - timedelta(minutes=1)
    san = [x509.DNSName(name) for name in (dns_names if dns_names is not None else [cn])]
    builder = (
        x509.CertificateBuilder()
        .subject_name(build_name(cn))
        .issuer_name(ca_cert.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + timedelta(days=valid_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key()), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    if san:
        builder = builder.add_extension(x509.SubjectAlternativeName(san), critical=False)
    return builder.sign(ca_key, hashes.SHA256(), default_backend())


def create_csr(username: str, private_key: rsa.RSAPrivateKey) -> bytes:
    """PEM certificate signing request with CN=username."""
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(build_name(username))
        .sign(private_key, hashes.SHA256(), default_backend())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def sign_csr(csr_pem: bytes, ca_key: rsa.RSAPrivateKey, ca_cert: x509.Certificate, valid_days: int = 365) -> x509.Certificate:
    """
    Issue a certificate for a PEM CSR, keeping its CN.

    Raises:
        ValueError: If the CSR cannot be parsed or its signature is invalid
    """
    csr = x509.load_pem_x509_csr(csr_pem, default_backend())
    if not csr.is_signature_valid:
        raise ValueError("CSR signature is invalid")
    cn = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    return issue_certificate(cn, csr.public_key(), ca_key, ca_cert, valid_days)


def certificate_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def private_key_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def write_key_pair(private_key: rsa.RSAPrivateKey, cert: x509.Certificate, prefix: Path) -> tuple:
    """
    Write ``<prefix>_key.pem`` (mode 0600) and ``<prefix>_cert.pem``.

    Returns:
        (key_path, cert_path)
    """
    prefix = Path(prefix)
    prefix.parent.mkdir(parents=True, exist_ok=True)

    key_path = Path(f"{prefix}_key.pem")
    key_path.write_bytes(private_key_pem(private_key))
    os.chmod(key_path, 0o600)

    cert_path = Path(f"{prefix}_cert.pem")
    cert_path.write_bytes(certificate_pem(cert))
    return key_path, cert_path
