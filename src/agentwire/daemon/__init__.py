"""AgentWire Daemon Package.

The session supervision runtime.

Components:
- process: agent subprocess wrapper and stream events
- state_machine: session lifecycle states and transitions
- message_queue: ordered, acknowledged envelope delivery
- encryption: per-session and per-device keys
- session: one supervised agent with its queue and keys
- session_manager: concurrency limit, routing and observers
"""

from agentwire.daemon.encryption import CiphertextEnvelope, EncryptionManager
from agentwire.daemon.message_queue import (
    AckStatus,
    Direction,
    MessageEnvelope,
    MessageQueue,
    RetryPolicy,
)
from agentwire.daemon.notifications import DeliveryFailure, LifecycleChange
from agentwire.daemon.process import ProcessHandle, ProcessWrapper, SignalKind
from agentwire.daemon.session import Session, SessionSpec, SessionSummary
from agentwire.daemon.session_manager import (
    CommandKind,
    SessionCommand,
    SessionManager,
    ShutdownResult,
)
from agentwire.daemon.state_machine import SessionEvent, SessionState, SessionStateMachine

__all__ = [
    "AckStatus",
    "CiphertextEnvelope",
    "CommandKind",
    "DeliveryFailure",
    "Direction",
    "EncryptionManager",
    "LifecycleChange",
    "MessageEnvelope",
    "MessageQueue",
    "ProcessHandle",
    "ProcessWrapper",
    "RetryPolicy",
    "Session",
    "SessionCommand",
    "SessionEvent",
    "SessionManager",
    "SessionSpec",
    "SessionState",
    "SessionStateMachine",
    "SessionSummary",
    "ShutdownResult",
    "SignalKind",
]
