"""Keystore module for session and device key primitives.

Provides AES-256-GCM authenticated encryption under a per-session key and
X25519 + HKDF-SHA256 pairwise key agreement used with ChaCha20-Poly1305
for per-device copies.

Security Notes:
- Keys are generated with a cryptographically secure RNG
- Associated data binds each ciphertext to its position in a session
- A tag mismatch is always surfaced as AuthenticationError, never retried
- Nothing in this module persists key material

Usage:
    from agentwire.core.keystore import generate_key, encrypt, decrypt

    key = generate_key()
    ciphertext, nonce = encrypt(b"secret", key, b"sess-01:outbound:1")
    plaintext = decrypt(ciphertext, key, nonce, b"sess-01:outbound:1")
"""

import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from agentwire.core.exceptions import AuthenticationError

# Constants
KEY_LENGTH = 32  # 256 bits for AES-256 and ChaCha20
NONCE_LENGTH = 12  # 96 bits for GCM and ChaCha20-Poly1305
PUBLIC_KEY_LENGTH = 32
PAIRWISE_INFO = b"agentwire-pairwise-v1"


def generate_key() -> bytes:
    """Generate a fresh random 256-bit symmetric key."""
    return AESGCM.generate_key(bit_length=KEY_LENGTH * 8)


def encrypt(plaintext: bytes, key: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """Encrypt data using AES-256-GCM authenticated encryption.

    Args:
        plaintext: Data to encrypt (can be any size, including empty).
        key: 32-byte encryption key.
        associated_data: Authenticated but unencrypted context.

    Returns:
        Tuple of (ciphertext, nonce) where ciphertext includes auth tag.
    """
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(bytes(key)).encrypt(nonce, plaintext, associated_data or None)
    return ciphertext, nonce


def decrypt(
    ciphertext: bytes, key: bytes, nonce: bytes, associated_data: bytes = b""
) -> bytes:
    """Decrypt data using AES-256-GCM authenticated encryption.

    Raises:
        AuthenticationError: If the tag does not verify (wrong key, tampered
            ciphertext or associated data, malformed nonce).
    """
    try:
        return AESGCM(bytes(key)).decrypt(nonce, ciphertext, associated_data or None)
    except InvalidTag as e:
        raise AuthenticationError("invalid tag (wrong key or tampered data)") from e
    except ValueError as e:
        raise AuthenticationError(str(e)) from e


def seal(plaintext: bytes, key: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """Encrypt data under a pairwise key with ChaCha20-Poly1305."""
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = ChaCha20Poly1305(bytes(key)).encrypt(
        nonce, plaintext, associated_data or None
    )
    return ciphertext, nonce


def open_sealed(
    ciphertext: bytes, key: bytes, nonce: bytes, associated_data: bytes = b""
) -> bytes:
    """Decrypt data sealed with :func:`seal`.

    Raises:
        AuthenticationError: If the tag does not verify.
    """
    try:
        return ChaCha20Poly1305(bytes(key)).decrypt(
            nonce, ciphertext, associated_data or None
        )
    except InvalidTag as e:
        raise AuthenticationError("invalid tag (wrong device key or tampered data)") from e
    except ValueError as e:
        raise AuthenticationError(str(e)) from e


def generate_device_keypair() -> Tuple[bytes, bytes]:
    """Generate an X25519 keypair.

    Returns:
        Tuple of (private_key, public_key) as 32-byte raw encodings.
    """
    private_key = X25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        Encoding.Raw, PrivateFormat.Raw, NoEncryption()
    )
    public_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return private_bytes, public_bytes


def derive_pairwise_key(private_key: bytes, peer_public_key: bytes, session_id: str) -> bytes:
    """Derive a pairwise key from an X25519 exchange.

    Both sides arrive at the same key: the session with its identity
    private key and the device's public key, the device with its private
    key and the session's public key.

    Args:
        private_key: Raw 32-byte X25519 private key of this side.
        peer_public_key: Raw 32-byte X25519 public key of the other side.
        session_id: Session identifier, used as HKDF salt.

    Returns:
        32-byte key for ChaCha20-Poly1305.

    Raises:
        ValueError: If either key is malformed.
    """
    if len(peer_public_key) != PUBLIC_KEY_LENGTH:
        raise ValueError(
            f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(peer_public_key)}"
        )
    shared = X25519PrivateKey.from_private_bytes(bytes(private_key)).exchange(
        X25519PublicKey.from_public_bytes(bytes(peer_public_key))
    )
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=session_id.encode("utf-8"),
        info=PAIRWISE_INFO,
    )
    return hkdf.derive(shared)


def zero_bytes(buffer: bytearray) -> None:
    """Overwrite a mutable key buffer in place."""
    for i in range(len(buffer)):
        buffer[i] = 0
