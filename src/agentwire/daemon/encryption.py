"""Per-session Encryption Manager.

Holds the key material of exactly one session:
- a fresh 256-bit session key (AES-256-GCM), never reused across sessions
- an ephemeral X25519 identity used to pair devices
- one pairwise key per paired device (ChaCha20-Poly1305), so each device
  authenticates and decrypts only its own copy of the stream

All key material lives in mutable buffers that discard() overwrites; any
use after discard raises KeyMaterialError. Nothing here is persisted, and
plaintext never leaves the caller.

Usage:
    from agentwire.core.keystore import generate_device_keypair
    from agentwire.daemon.encryption import EncryptionManager, open_device_envelope

    manager = EncryptionManager("sess-01")
    envelope = manager.encrypt("sess-01", b"hello")
    assert manager.decrypt(envelope) == b"hello"

    device_private, device_public = generate_device_keypair()
    manager.pair_device("phone", device_public)
    copy = manager.encrypt_for_device("phone", b"hello")
    open_device_envelope(copy, device_private, manager.public_key)  # b"hello"
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from agentwire.core import keystore
from agentwire.core.exceptions import AuthenticationError, KeyMaterialError

log = structlog.get_logger()


@dataclass(frozen=True)
class CiphertextEnvelope:
    """Opaque ciphertext plus everything needed to authenticate it.

    Attributes:
        session_id: Session the ciphertext belongs to.
        ciphertext: Encrypted payload including the authentication tag.
        nonce: 96-bit nonce used for this ciphertext.
        device_id: Paired device whose pairwise key sealed it, None for
            the session key.
        associated_data: Authenticated context bound into the tag.
    """

    session_id: str
    ciphertext: bytes = field(repr=False)
    nonce: bytes = field(repr=False)
    device_id: Optional[str] = None
    associated_data: bytes = b""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (binary fields base64)."""
        return {
            "session_id": self.session_id,
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "device_id": self.device_id,
            "associated_data": base64.b64encode(self.associated_data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CiphertextEnvelope":
        """Deserialize from :meth:`to_dict` output.

        Raises:
            ValueError: If a field is missing or not valid base64.
        """
        try:
            return cls(
                session_id=str(data["session_id"]),
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                nonce=base64.b64decode(data["nonce"], validate=True),
                device_id=data.get("device_id"),
                associated_data=base64.b64decode(data.get("associated_data", ""), validate=True),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid ciphertext envelope: {e}") from e


@dataclass
class SessionKeyMaterial:
    """Key buffers owned by one EncryptionManager."""

    session_key: bytearray = field(repr=False)
    pairwise_keys: dict[str, bytearray] = field(default_factory=dict, repr=False)

    def zero(self) -> None:
        """Overwrite every key buffer and forget the devices."""
        keystore.zero_bytes(self.session_key)
        for key in self.pairwise_keys.values():
            keystore.zero_bytes(key)
        self.pairwise_keys.clear()


class EncryptionManager:
    """Encrypts and decrypts message payloads for one session."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._material: Optional[SessionKeyMaterial] = SessionKeyMaterial(
            session_key=bytearray(keystore.generate_key())
        )
        private_key, public_key = keystore.generate_device_keypair()
        self._identity_private: Optional[bytearray] = bytearray(private_key)
        self._identity_public = public_key

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def public_key(self) -> bytes:
        """Session identity public key, handed to devices during pairing."""
        return self._identity_public

    @property
    def is_discarded(self) -> bool:
        return self._material is None

    @property
    def device_ids(self) -> list[str]:
        """Paired devices, in pairing order."""
        if self._material is None:
            return []
        return list(self._material.pairwise_keys)

    def _require_material(self) -> SessionKeyMaterial:
        if self._material is None:
            raise KeyMaterialError(
                self._session_id,
                message=f"Key material for session '{self._session_id}' has been discarded",
            )
        return self._material

    def _device_key(self, device_id: str) -> bytearray:
        material = self._require_material()
        key = material.pairwise_keys.get(device_id)
        if key is None:
            raise KeyMaterialError(self._session_id, device_id=device_id)
        return key

    def encrypt(
        self, session_id: str, plaintext: bytes, associated_data: bytes = b""
    ) -> CiphertextEnvelope:
        """Encrypt ``plaintext`` under the session key.

        Raises:
            KeyMaterialError: If ``session_id`` is not this manager's session
                or the keys were discarded.
        """
        if session_id != self._session_id:
            raise KeyMaterialError(
                session_id,
                message=f"Encryption manager is bound to session '{self._session_id}'",
            )
        material = self._require_material()
        ciphertext, nonce = keystore.encrypt(plaintext, material.session_key, associated_data)
        return CiphertextEnvelope(
            session_id=session_id,
            ciphertext=ciphertext,
            nonce=nonce,
            associated_data=associated_data,
        )

    def encrypt_for_device(
        self, device_id: str, plaintext: bytes, associated_data: bytes = b""
    ) -> CiphertextEnvelope:
        """Encrypt ``plaintext`` under one device's pairwise key.

        Raises:
            KeyMaterialError: If the device is not paired.
        """
        key = self._device_key(device_id)
        ciphertext, nonce = keystore.seal(plaintext, key, associated_data)
        return CiphertextEnvelope(
            session_id=self._session_id,
            ciphertext=ciphertext,
            nonce=nonce,
            device_id=device_id,
            associated_data=associated_data,
        )

    def fan_out(
        self, plaintext: bytes, associated_data: bytes = b""
    ) -> dict[str, CiphertextEnvelope]:
        """Encrypt one copy of ``plaintext`` per paired device."""
        return {
            device_id: self.encrypt_for_device(device_id, plaintext, associated_data)
            for device_id in self.device_ids
        }

    def decrypt(self, envelope: CiphertextEnvelope) -> bytes:
        """Authenticate and decrypt an envelope.

        Envelopes carrying a ``device_id`` are opened with that device's
        pairwise key, all others with the session key.

        Raises:
            AuthenticationError: If the tag does not verify. Fatal for the
                envelope; retrying with the same keys cannot succeed.
            KeyMaterialError: If keys were discarded or the device is unknown.
        """
        if envelope.session_id != self._session_id:
            raise AuthenticationError(
                f"envelope belongs to session '{envelope.session_id}'",
                session_id=self._session_id,
            )
        try:
            if envelope.device_id is None:
                material = self._require_material()
                return keystore.decrypt(
                    envelope.ciphertext,
                    material.session_key,
                    envelope.nonce,
                    envelope.associated_data,
                )
            return keystore.open_sealed(
                envelope.ciphertext,
                self._device_key(envelope.device_id),
                envelope.nonce,
                envelope.associated_data,
            )
        except AuthenticationError as e:
            log.warning(
                "envelope_authentication_failed",
                session_id=self._session_id,
                device_id=envelope.device_id,
            )
            raise AuthenticationError(e.reason, session_id=self._session_id) from e

    def pair_device(self, device_id: str, device_public_key: bytes) -> bytes:
        """Derive and cache the pairwise key for a device.

        Pairing the same device again replaces its key.

        Args:
            device_id: Device identifier.
            device_public_key: Raw 32-byte X25519 public key of the device.

        Returns:
            The derived pairwise key, for hand-off to a secret store.

        Raises:
            KeyMaterialError: If the public key is malformed or keys were
                discarded.
        """
        material = self._require_material()
        assert self._identity_private is not None
        try:
            key = keystore.derive_pairwise_key(
                self._identity_private, device_public_key, self._session_id
            )
        except ValueError as e:
            raise KeyMaterialError(
                self._session_id, device_id=device_id, message=f"Invalid device public key: {e}"
            ) from e

        self._store_device_key(material, device_id, key)
        log.info("device_paired", session_id=self._session_id, device_id=device_id)
        return key

    def register_device_key(self, device_id: str, key: bytes) -> None:
        """Cache a pairwise key established elsewhere (e.g. restored from a secret store).

        Raises:
            KeyMaterialError: If the key is not 32 bytes or keys were discarded.
        """
        material = self._require_material()
        if len(key) != keystore.KEY_LENGTH:
            raise KeyMaterialError(
                self._session_id,
                device_id=device_id,
                message=f"Pairwise key must be {keystore.KEY_LENGTH} bytes, got {len(key)}",
            )
        self._store_device_key(material, device_id, key)
        log.info("device_key_registered", session_id=self._session_id, device_id=device_id)

    @staticmethod
    def _store_device_key(material: SessionKeyMaterial, device_id: str, key: bytes) -> None:
        previous = material.pairwise_keys.get(device_id)
        if previous is not None:
            keystore.zero_bytes(previous)
        material.pairwise_keys[device_id] = bytearray(key)

    def unpair_device(self, device_id: str) -> bool:
        """Forget a device's pairwise key. Returns False if it was not paired."""
        if self._material is None:
            return False
        key = self._material.pairwise_keys.pop(device_id, None)
        if key is None:
            return False
        keystore.zero_bytes(key)
        log.info("device_unpaired", session_id=self._session_id, device_id=device_id)
        return True

    def discard(self) -> None:
        """Zero all key material. Idempotent."""
        if self._material is None:
            return
        devices = len(self._material.pairwise_keys)
        self._material.zero()
        self._material = None
        if self._identity_private is not None:
            keystore.zero_bytes(self._identity_private)
            self._identity_private = None
        log.info("session_keys_discarded", session_id=self._session_id, devices=devices)


def open_device_envelope(
    envelope: CiphertextEnvelope,
    device_private_key: bytes,
    session_public_key: bytes,
) -> bytes:
    """Decrypt a device's copy on the device side.

    Raises:
        AuthenticationError: If the tag does not verify.
        ValueError: If a key is malformed.
    """
    key = keystore.derive_pairwise_key(
        device_private_key, session_public_key, envelope.session_id
    )
    return keystore.open_sealed(
        envelope.ciphertext, key, envelope.nonce, envelope.associated_data
    )


def seal_device_envelope(
    session_id: str,
    device_id: str,
    plaintext: bytes,
    device_private_key: bytes,
    session_public_key: bytes,
    associated_data: bytes = b"",
) -> CiphertextEnvelope:
    """Encrypt a command on the device side for delivery to a session."""
    key = keystore.derive_pairwise_key(device_private_key, session_public_key, session_id)
    ciphertext, nonce = keystore.seal(plaintext, key, associated_data)
    return CiphertextEnvelope(
        session_id=session_id,
        ciphertext=ciphertext,
        nonce=nonce,
        device_id=device_id,
        associated_data=associated_data,
    )
