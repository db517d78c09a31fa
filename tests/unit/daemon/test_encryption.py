"""Unit tests for the per-session EncryptionManager.

Tests cover:
- Session-key encrypt/decrypt with associated data
- Tamper and cross-session detection
- Device pairing, fan-out and device-side helpers
- Key discard and use-after-discard
- Envelope serialization
"""

from dataclasses import replace

import pytest

from agentwire.core.exceptions import AuthenticationError, KeyMaterialError
from agentwire.core.keystore import generate_device_keypair, generate_key
from agentwire.daemon.encryption import (
    CiphertextEnvelope,
    EncryptionManager,
    open_device_envelope,
    seal_device_envelope,
)


def _flip_first_byte(data: bytes) -> bytes:
    return bytes([data[0] ^ 0x01]) + data[1:]


@pytest.mark.unit
class TestSessionKey:
    """Tests for encryption under the session key."""

    def test_encrypt_decrypt(self) -> None:
        manager = EncryptionManager("s1")
        envelope = manager.encrypt("s1", b"payload", b"s1:outbound:1")
        assert envelope.session_id == "s1"
        assert envelope.device_id is None
        assert envelope.ciphertext != b"payload"
        assert manager.decrypt(envelope) == b"payload"

    def test_encrypt_for_other_session_rejected(self) -> None:
        with pytest.raises(KeyMaterialError):
            EncryptionManager("s1").encrypt("s2", b"payload")

    def test_tampered_ciphertext(self) -> None:
        manager = EncryptionManager("s1")
        envelope = manager.encrypt("s1", b"payload")
        tampered = replace(envelope, ciphertext=_flip_first_byte(envelope.ciphertext))
        with pytest.raises(AuthenticationError) as exc_info:
            manager.decrypt(tampered)
        assert exc_info.value.session_id == "s1"

    def test_tampered_associated_data(self) -> None:
        manager = EncryptionManager("s1")
        envelope = manager.encrypt("s1", b"payload", b"s1:outbound:1")
        with pytest.raises(AuthenticationError):
            manager.decrypt(replace(envelope, associated_data=b"s1:outbound:2"))

    def test_sessions_have_distinct_keys(self) -> None:
        envelope = EncryptionManager("s1").encrypt("s1", b"payload")
        other = EncryptionManager("s1")
        with pytest.raises(AuthenticationError):
            other.decrypt(envelope)

    def test_envelope_from_other_session(self) -> None:
        envelope = EncryptionManager("s2").encrypt("s2", b"payload")
        with pytest.raises(AuthenticationError, match="session 's2'"):
            EncryptionManager("s1").decrypt(envelope)


@pytest.mark.unit
class TestDevices:
    """Tests for pairing and per-device copies."""

    def test_pair_and_fan_out(self) -> None:
        manager = EncryptionManager("s1")
        phone_private, phone_public = generate_device_keypair()
        laptop_private, laptop_public = generate_device_keypair()
        manager.pair_device("phone", phone_public)
        manager.pair_device("laptop", laptop_public)
        assert manager.device_ids == ["phone", "laptop"]

        copies = manager.fan_out(b"event", b"s1:outbound:1")
        assert set(copies) == {"phone", "laptop"}
        assert open_device_envelope(copies["phone"], phone_private, manager.public_key) == b"event"
        assert open_device_envelope(copies["laptop"], laptop_private, manager.public_key) == b"event"

    def test_device_cannot_open_other_copy(self) -> None:
        manager = EncryptionManager("s1")
        phone_private, phone_public = generate_device_keypair()
        _, laptop_public = generate_device_keypair()
        manager.pair_device("phone", phone_public)
        manager.pair_device("laptop", laptop_public)

        laptop_copy = manager.encrypt_for_device("laptop", b"event")
        with pytest.raises(AuthenticationError):
            open_device_envelope(laptop_copy, phone_private, manager.public_key)

    def test_device_sealed_command_decrypts(self) -> None:
        manager = EncryptionManager("s1")
        private, public = generate_device_keypair()
        manager.pair_device("phone", public)

        envelope = seal_device_envelope("s1", "phone", b"continue", private, manager.public_key, b"aad")
        assert manager.decrypt(envelope) == b"continue"

    def test_unknown_device(self) -> None:
        manager = EncryptionManager("s1")
        with pytest.raises(KeyMaterialError):
            manager.encrypt_for_device("ghost", b"x")

    def test_bad_public_key(self) -> None:
        with pytest.raises(KeyMaterialError, match="Invalid device public key"):
            EncryptionManager("s1").pair_device("phone", b"too short")

    def test_register_device_key(self) -> None:
        manager = EncryptionManager("s1")
        key = generate_key()
        manager.register_device_key("phone", key)
        assert manager.device_ids == ["phone"]
        with pytest.raises(KeyMaterialError):
            manager.register_device_key("tablet", b"short")

    def test_unpair(self) -> None:
        manager = EncryptionManager("s1")
        _, public = generate_device_keypair()
        manager.pair_device("phone", public)
        assert manager.unpair_device("phone") is True
        assert manager.unpair_device("phone") is False
        assert manager.fan_out(b"x") == {}

    def test_repair_replaces_key(self) -> None:
        manager = EncryptionManager("s1")
        first = manager.pair_device("phone", generate_device_keypair()[1])
        second = manager.pair_device("phone", generate_device_keypair()[1])
        assert first != second
        assert manager.device_ids == ["phone"]


@pytest.mark.unit
class TestDiscard:
    """Tests for key discard."""

    def test_use_after_discard(self) -> None:
        manager = EncryptionManager("s1")
        envelope = manager.encrypt("s1", b"payload")
        manager.discard()

        assert manager.is_discarded
        assert manager.device_ids == []
        with pytest.raises(KeyMaterialError):
            manager.encrypt("s1", b"payload")
        with pytest.raises(KeyMaterialError):
            manager.decrypt(envelope)
        with pytest.raises(KeyMaterialError):
            manager.pair_device("phone", generate_device_keypair()[1])

    def test_discard_idempotent(self) -> None:
        manager = EncryptionManager("s1")
        manager.discard()
        manager.discard()
        assert manager.is_discarded


@pytest.mark.unit
class TestCiphertextEnvelope:
    """Tests for envelope serialization."""

    def test_dict_restores_envelope(self) -> None:
        envelope = EncryptionManager("s1").encrypt("s1", b"payload", b"s1:outbound:1")
        assert CiphertextEnvelope.from_dict(envelope.to_dict()) == envelope

    def test_invalid_base64(self) -> None:
        with pytest.raises(ValueError, match="Invalid ciphertext envelope"):
            CiphertextEnvelope.from_dict({"session_id": "s1", "ciphertext": "!!", "nonce": ""})

    def test_missing_field(self) -> None:
        with pytest.raises(ValueError):
            CiphertextEnvelope.from_dict({"session_id": "s1"})

    def test_repr_hides_ciphertext(self) -> None:
        envelope = CiphertextEnvelope("s1", b"secret-bytes", b"n" * 12)
        assert "secret-bytes" not in repr(envelope)
