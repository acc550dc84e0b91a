"""Recipient envelope: AES-128-GCM body, key wrapped with RSA-OAEP.

Layout:

    wrapped_key_len (2 bytes, big-endian) || wrapped_key || nonce (12) || ciphertext+tag
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from certrelay.crypto.keys import private_key_decrypt, public_key_encrypt


KEY_SIZE = 16  # AES-128
NONCE_SIZE = 12


def seal(public_key: rsa.RSAPublicKey, plaintext: bytes) -> bytes:
    """
    Encrypt a message of any length for the holder of public_key.

    Args:
        public_key: Recipient RSA public key
        plaintext: Message bytes

    Returns:
        Envelope bytes
    """
    key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    wrapped = public_key_encrypt(public_key, key)
    return len(wrapped).to_bytes(2, byteorder="big") + wrapped + nonce + ciphertext


def open_envelope(private_key: rsa.RSAPrivateKey, envelope: bytes) -> bytes:
    """
    Decrypt an envelope produced by seal().

    Raises:
        ValueError: If the envelope is truncated, the key does not match,
            or the ciphertext was tampered with.
    """
    if len(envelope) < 2:
        raise ValueError("Envelope too short")
    wrapped_len = int.from_bytes(envelope[:2], byteorder="big")
    offset = 2 + wrapped_len
    if len(envelope) < offset + NONCE_SIZE:
        raise ValueError("Envelope too short")

    key = private_key_decrypt(private_key, envelope[2:offset])
    if len(key) != KEY_SIZE:
        raise ValueError("AES-128 key must be 16 bytes")
    nonce = envelope[offset:offset + NONCE_SIZE]
    try:
        return AESGCM(key).decrypt(nonce, envelope[offset + NONCE_SIZE:], None)
    except InvalidTag as e:
        raise ValueError("Envelope authentication failed") from e
