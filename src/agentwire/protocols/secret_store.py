"""Secret store protocol for AgentWire.

Pairwise device keys are handed to, and restored from, an external secret
store (OS keychain, credential manager). The core never writes key
material to disk itself; it only talks to an implementation of this
protocol when one is configured.

Usage:
    from agentwire.protocols import SecretStoreProtocol

    class KeychainStore:
        # Implement all protocol methods...
        pass

    store = KeychainStore()
    assert isinstance(store, SecretStoreProtocol)
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class SecretStoreProtocol(Protocol):
    """Protocol for device key storage backends.

    Keys are addressed by (session_id, device_id). Implementations do NOT
    need to inherit from this class.

    Methods:
        store_device_key: Persist a pairwise key.
        load_device_key: Retrieve a pairwise key.
        delete_device_key: Remove a pairwise key.
    """

    async def store_device_key(self, session_id: str, device_id: str, key: bytes) -> bool:
        """Persist a pairwise key.

        Args:
            session_id: Owning session.
            device_id: Paired device.
            key: Raw 32-byte pairwise key.

        Returns:
            True if the key was stored.
        """
        ...

    async def load_device_key(self, session_id: str, device_id: str) -> Optional[bytes]:
        """Retrieve a pairwise key, or None if the store has none."""
        ...

    async def delete_device_key(self, session_id: str, device_id: str) -> bool:
        """Remove a pairwise key. Returns True if a key was removed."""
        ...
