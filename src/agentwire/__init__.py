"""
AgentWire - supervised coding-agent sessions

Spawns agent subprocesses, tracks each through an explicit lifecycle and
exchanges ordered, acknowledged, encrypted messages with paired devices.
"""

from agentwire.protocols import (
    SecretStoreProtocol,
    SessionObserverProtocol,
)

__version__ = "0.1.0"

__all__ = [
    "SecretStoreProtocol",
    "SessionObserverProtocol",
]
