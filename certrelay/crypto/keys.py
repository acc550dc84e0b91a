"""RSA-OAEP (SHA-256) public-key encrypt/decrypt + key loading."""

from pathlib import Path
from typing import Union

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key, load_pem_public_key


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def load_private_key(key_path: Path) -> rsa.RSAPrivateKey:
    """
    Load RSA private key from PEM file.

    Args:
        key_path: Path to private key file

    Returns:
        RSA private key object
    """
    with open(key_path, "rb") as f:
        key_data = f.read()
    key = load_pem_private_key(key_data, password=None, backend=default_backend())
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"{key_path} does not contain an RSA private key")
    return key


def load_public_key(key_data: bytes) -> rsa.RSAPublicKey:
    """Load an RSA public key from PEM (SubjectPublicKeyInfo) bytes."""
    key = load_pem_public_key(key_data, backend=default_backend())
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Not an RSA public key")
    return key


def get_public_key_from_cert(cert: Union[x509.Certificate, bytes]) -> rsa.RSAPublicKey:
    """
    Extract RSA public key from an X.509 certificate (object or PEM bytes).

    Raises:
        ValueError: If the certificate does not carry an RSA key
    """
    if isinstance(cert, bytes):
        cert = x509.load_pem_x509_certificate(cert, default_backend())
    public_key = cert.public_key()

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ValueError("Certificate does not contain an RSA public key")

    return public_key


def public_key_encrypt(public_key: rsa.RSAPublicKey, plaintext: bytes) -> bytes:
    """
    Seal a short plaintext so only the private-key holder can read it.

    Args:
        public_key: Recipient RSA public key
        plaintext: At most key_size/8 - 66 bytes

    Returns:
        Ciphertext bytes (key_size/8 long)
    """
    return public_key.encrypt(plaintext, _oaep())


def private_key_decrypt(private_key: rsa.RSAPrivateKey, ciphertext: bytes) -> bytes:
    """
    Open a ciphertext produced by public_key_encrypt().

    Raises:
        ValueError: If decryption fails (wrong key or tampered data)
    """
    return private_key.decrypt(ciphertext, _oaep())
