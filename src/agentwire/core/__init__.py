"""Core module for AgentWire.

Exports the cross-cutting components: exceptions, configuration and
key primitives.
"""

from agentwire.core.exceptions import (
    AgentWireError,
    AuthenticationError,
    BackpressureError,
    ConcurrencyLimitExceeded,
    ConfigurationError,
    DuplicateSessionError,
    InvalidTransitionError,
    KeyMaterialError,
    LaunchError,
    QueueClosedError,
    SessionNotFoundError,
)
from agentwire.core.config import (
    AgentConfig,
    LoggingConfig,
    ManagerConfig,
    QueueConfig,
    Settings,
    StorageConfig,
    get_settings,
    reset_settings,
)
from agentwire.core.keystore import (
    decrypt,
    derive_pairwise_key,
    encrypt,
    generate_device_keypair,
    generate_key,
)

__all__ = [
    # Exceptions
    "AgentWireError",
    "AuthenticationError",
    "BackpressureError",
    "ConcurrencyLimitExceeded",
    "ConfigurationError",
    "DuplicateSessionError",
    "InvalidTransitionError",
    "KeyMaterialError",
    "LaunchError",
    "QueueClosedError",
    "SessionNotFoundError",
    # Config
    "AgentConfig",
    "LoggingConfig",
    "ManagerConfig",
    "QueueConfig",
    "Settings",
    "StorageConfig",
    "get_settings",
    "reset_settings",
    # Keystore
    "decrypt",
    "derive_pairwise_key",
    "encrypt",
    "generate_device_keypair",
    "generate_key",
]
