"""Protocol abstractions for AgentWire.

Interfaces of the external collaborators the daemon talks to. All
protocols use `typing.Protocol` for structural subtyping with
`@runtime_checkable` for isinstance() support.

Protocols:
    SecretStoreProtocol: Storage for pairwise device keys.
    SessionObserverProtocol: Receiver of lifecycle and delivery notifications.
"""

from __future__ import annotations

from agentwire.protocols.observer import SessionObserverProtocol
from agentwire.protocols.secret_store import SecretStoreProtocol

__all__ = [
    "SecretStoreProtocol",
    "SessionObserverProtocol",
]
