"""Session Manager for multi-session orchestration.

This module provides the SessionManager class that owns every Session by
identifier, enforces the concurrency limit on non-terminal sessions,
routes commands to the right session and broadcasts lifecycle changes and
delivery failures to observers.

The session collection is the single owning structure; it is guarded by a
lock so creation and cleanup never interleave with lookups. The manager
does no per-message work: each session's consumer task drives its own
process and queue.

Usage:
    from agentwire.daemon.session_manager import SessionManager

    manager = SessionManager(max_concurrent_sessions=5)
    session_id = manager.create_session(SessionSpec(command="claude", args=["--print", "hi"]))
    await manager.route(session_id, SessionCommand(CommandKind.START))
    manager.list_active()  # Returns SessionSummary list
"""

from __future__ import annotations

import asyncio
import base64
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Optional

import structlog

from agentwire.core.config import AgentConfig, QueueConfig, Settings
from agentwire.core.exceptions import (
    ConcurrencyLimitExceeded,
    DuplicateSessionError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from agentwire.daemon.encryption import CiphertextEnvelope
from agentwire.daemon.message_queue import MessageEnvelope
from agentwire.daemon.notifications import (
    DeliveryFailure,
    LifecycleChange,
    Notification,
    Observer,
    broadcast,
)
from agentwire.daemon.process import ProcessWrapper
from agentwire.daemon.session import ProcessFactory, Session, SessionSpec, SessionSummary
from agentwire.daemon.state_machine import SessionState
from agentwire.protocols.secret_store import SecretStoreProtocol

log = structlog.get_logger()


class CommandKind(StrEnum):
    """Commands accepted by SessionManager.route()."""

    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    ABORT = "abort"
    SEND_INPUT = "send_input"
    RECEIVE_INBOUND = "receive_inbound"
    ACK = "ack"
    DELIVER_NEXT = "deliver_next"
    NEXT_DELIVERY = "next_delivery"
    PAIR_DEVICE = "pair_device"
    SUMMARY = "summary"


@dataclass(frozen=True)
class SessionCommand:
    """A command addressed to one session.

    Attributes:
        kind: What to do.
        params: Command parameters, e.g. ``{"sequence_number": 3}`` for ACK.
    """

    kind: CommandKind
    params: dict[str, Any] = field(default_factory=dict)

    def param(self, name: str) -> Any:
        """Return a required parameter.

        Raises:
            ValueError: If the parameter is missing.
        """
        try:
            return self.params[name]
        except KeyError:
            raise ValueError(f"Command '{self.kind}' requires parameter '{name}'") from None


@dataclass(frozen=True)
class ManagerStats:
    """Counts across every tracked session."""

    total: int
    active: int
    by_state: dict[str, int]
    max_concurrent_sessions: int
    remaining_capacity: int


@dataclass
class ShutdownResult:
    """Result of a manager shutdown.

    Attributes:
        aborted_ids: Sessions that were aborted.
        errors: Error messages from sessions that could not be aborted.
    """

    aborted_ids: list[str]
    errors: list[str]


class SessionManager:
    """Owns every session and routes commands to them.

    Attributes:
        max_concurrent_sessions: Maximum non-terminal sessions.
        max_history: Maximum tracked sessions (terminal ones are pruned first).
    """

    def __init__(
        self,
        max_concurrent_sessions: int = 5,
        max_history: int = 50,
        agent_config: Optional[AgentConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        secret_store: Optional[SecretStoreProtocol] = None,
        process_factory: ProcessFactory = ProcessWrapper,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize SessionManager.

        Args:
            max_concurrent_sessions: Maximum non-terminal sessions (default: 5).
            max_history: Maximum total sessions to track (default: 50).
            agent_config: Process supervision settings for new sessions.
            queue_config: Delivery settings for new sessions.
            secret_store: Optional store for pairwise device keys.
            process_factory: Builds each session's ProcessWrapper.
            clock: Monotonic clock passed to each session's queue.

        Raises:
            ValueError: If the limits are inconsistent.
        """
        if max_concurrent_sessions < 1:
            raise ValueError("max_concurrent_sessions must be >= 1")
        if max_history < max_concurrent_sessions:
            raise ValueError("max_history must be >= max_concurrent_sessions")

        self._max_concurrent = max_concurrent_sessions
        self._max_history = max_history
        self._agent_config = agent_config or AgentConfig()
        self._queue_config = queue_config or QueueConfig()
        self._secret_store = secret_store
        self._process_factory = process_factory
        self._clock = clock

        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._observers: dict[str, Observer] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        secret_store: Optional[SecretStoreProtocol] = None,
    ) -> "SessionManager":
        """Build a manager from loaded settings."""
        return cls(
            max_concurrent_sessions=settings.manager.max_concurrent_sessions,
            max_history=settings.manager.max_history,
            agent_config=settings.agent,
            queue_config=settings.queue,
            secret_store=secret_store,
        )

    @property
    def max_concurrent_sessions(self) -> int:
        return self._max_concurrent

    @property
    def max_history(self) -> int:
        return self._max_history

    @property
    def active_count(self) -> int:
        """Count of non-terminal sessions (PENDING, ACTIVE or PAUSED)."""
        with self._lock:
            return self._active_count_locked()

    @property
    def remaining_capacity(self) -> int:
        return max(0, self._max_concurrent - self.active_count)

    def _active_count_locked(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.is_terminal)

    @staticmethod
    def _generate_id() -> str:
        return f"sess-{secrets.token_hex(6)}"

    def _prune_history_locked(self) -> None:
        """Drop the oldest terminal sessions to make room for one more."""
        if len(self._sessions) < self._max_history:
            return
        candidates = sorted(
            (s for s in self._sessions.values() if s.is_terminal),
            key=lambda s: s.created_at,
        )
        num_to_remove = len(self._sessions) - self._max_history + 1
        for session in candidates[:num_to_remove]:
            del self._sessions[session.session_id]
            log.info("session_pruned", session_id=session.session_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Creation and lookup
    # ─────────────────────────────────────────────────────────────────────────

    def create_session(self, spec: SessionSpec) -> str:
        """Create a PENDING session.

        Args:
            spec: What the session runs.

        Returns:
            The session identifier.

        Raises:
            ConcurrencyLimitExceeded: If max_concurrent_sessions non-terminal
                sessions already exist.
            DuplicateSessionError: If ``spec.session_id`` is already tracked.
        """
        with self._lock:
            active = self._active_count_locked()
            if active >= self._max_concurrent:
                raise ConcurrencyLimitExceeded(current_value=active, max_value=self._max_concurrent)

            session_id = spec.session_id or self._generate_id()
            if session_id in self._sessions:
                raise DuplicateSessionError(session_id)

            self._prune_history_locked()

            session = Session(
                session_id,
                spec,
                agent_config=self._agent_config,
                queue_config=self._queue_config,
                secret_store=self._secret_store,
                process_factory=self._process_factory,
                clock=self._clock,
            )

            def on_state_change(old: SessionState, new: SessionState, s: Session = session) -> None:
                self._broadcast(
                    LifecycleChange(
                        session_id=s.session_id,
                        previous_state=old,
                        new_state=new,
                        cause=s.failure_cause if new == SessionState.FAILED else None,
                    )
                )

            session.add_state_listener(on_state_change)
            session.add_failure_listener(self._broadcast)
            self._sessions[session_id] = session

        log.info(
            "session_created",
            session_id=session_id,
            command=spec.command,
            active=active + 1,
        )
        self._broadcast(
            LifecycleChange(session_id=session_id, previous_state=None, new_state=SessionState.PENDING)
        )
        return session_id

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_session_or_raise(self, session_id: str) -> Session:
        """Get a session by ID.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_active(self) -> list[SessionSummary]:
        """Summaries of non-terminal sessions, oldest first.

        Recomputed from current state on every call.
        """
        with self._lock:
            sessions = [s for s in self._sessions.values() if not s.is_terminal]
        return [s.summary() for s in sorted(sessions, key=lambda s: s.created_at)]

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of every tracked session, oldest first."""
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.summary() for s in sorted(sessions, key=lambda s: s.created_at)]

    def snapshot(self) -> list[dict[str, Any]]:
        """JSON-compatible summaries of every tracked session, for persistence."""
        return [summary.to_dict() for summary in self.list_sessions()]

    def stats(self) -> ManagerStats:
        with self._lock:
            states = [str(s.state) for s in self._sessions.values()]
            active = self._active_count_locked()
        by_state = {str(state): states.count(str(state)) for state in SessionState}
        return ManagerStats(
            total=len(states),
            active=active,
            by_state=by_state,
            max_concurrent_sessions=self._max_concurrent,
            remaining_capacity=max(0, self._max_concurrent - active),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Per-session operations
    # ─────────────────────────────────────────────────────────────────────────

    async def start_session(self, session_id: str) -> SessionState:
        return await self.get_session_or_raise(session_id).start()

    async def pause_session(self, session_id: str) -> SessionState:
        return await self.get_session_or_raise(session_id).pause()

    async def resume_session(self, session_id: str) -> SessionState:
        return await self.get_session_or_raise(session_id).resume()

    async def abort_session(self, session_id: str) -> SessionState:
        return await self.get_session_or_raise(session_id).abort()

    async def send_input(self, session_id: str, text: str) -> bool:
        return await self.get_session_or_raise(session_id).send_input(text)

    async def receive_inbound(
        self, session_id: str, sequence_number: int, envelope: CiphertextEnvelope
    ) -> int:
        return await self.get_session_or_raise(session_id).receive_inbound(sequence_number, envelope)

    def acknowledge(self, session_id: str, sequence_number: int) -> bool:
        return self.get_session_or_raise(session_id).acknowledge(sequence_number)

    def deliver_next(self, session_id: str) -> Optional[MessageEnvelope]:
        return self.get_session_or_raise(session_id).deliver_next()

    async def next_delivery(
        self, session_id: str, timeout: Optional[float] = None
    ) -> Optional[MessageEnvelope]:
        return await self.get_session_or_raise(session_id).next_delivery(timeout)

    async def pair_device(self, session_id: str, device_id: str, public_key: bytes) -> bool:
        return await self.get_session_or_raise(session_id).pair_device(device_id, public_key)

    async def route(self, session_id: str, command: SessionCommand) -> Any:
        """Forward a command to the named session.

        Returns:
            Whatever the underlying operation returns (new state, sequence
            acknowledgement result, envelope, summary).

        Raises:
            SessionNotFoundError: If the session is unknown.
            InvalidTransitionError: If the session rejects the command.
            ValueError: If a required parameter is missing.
        """
        session = self.get_session_or_raise(session_id)
        kind = CommandKind(command.kind)
        log.debug("command_routed", session_id=session_id, command=str(kind))

        if kind == CommandKind.START:
            return await session.start()
        if kind == CommandKind.PAUSE:
            return await session.pause()
        if kind == CommandKind.RESUME:
            return await session.resume()
        if kind == CommandKind.ABORT:
            return await session.abort()
        if kind == CommandKind.SEND_INPUT:
            return await session.send_input(str(command.param("text")))
        if kind == CommandKind.RECEIVE_INBOUND:
            envelope = command.param("envelope")
            if isinstance(envelope, dict):
                envelope = CiphertextEnvelope.from_dict(envelope)
            return await session.receive_inbound(int(command.param("sequence_number")), envelope)
        if kind == CommandKind.ACK:
            return session.acknowledge(int(command.param("sequence_number")))
        if kind == CommandKind.DELIVER_NEXT:
            return session.deliver_next()
        if kind == CommandKind.NEXT_DELIVERY:
            return await session.next_delivery(command.params.get("timeout"))
        if kind == CommandKind.PAIR_DEVICE:
            public_key = command.param("public_key")
            if isinstance(public_key, str):
                public_key = base64.b64decode(public_key)
            return await session.pair_device(str(command.param("device_id")), public_key)
        return session.summary()

    # ─────────────────────────────────────────────────────────────────────────
    # Observers
    # ─────────────────────────────────────────────────────────────────────────

    def subscribe(self, observer: Observer) -> str:
        """Register an observer for lifecycle changes and delivery failures.

        Returns:
            Subscription ID for unsubscribe().
        """
        subscription_id = f"sub-{secrets.token_hex(8)}"
        with self._lock:
            self._observers[subscription_id] = observer
        log.info("subscription_created", subscription_id=subscription_id)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        """Remove an observer. Unknown IDs are a no-op."""
        with self._lock:
            removed = self._observers.pop(subscription_id, None)
        if removed is None:
            log.debug("subscription_not_found", subscription_id=subscription_id)
        else:
            log.info("subscription_removed", subscription_id=subscription_id)

    @property
    def subscription_count(self) -> int:
        return len(self._observers)

    def _broadcast(self, notification: Notification) -> None:
        with self._lock:
            observers = list(self._observers.items())
        broadcast(observers, notification)

    # ─────────────────────────────────────────────────────────────────────────
    # Cleanup and shutdown
    # ─────────────────────────────────────────────────────────────────────────

    def remove_session(self, session_id: str) -> bool:
        """Stop tracking a terminal session.

        Returns:
            True if removed, False if not found.

        Raises:
            InvalidTransitionError: If the session is not terminal.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if not session.is_terminal:
                raise InvalidTransitionError(
                    session_id=session_id,
                    from_state=str(session.state),
                    event="remove",
                    message=f"Cannot remove session in {session.state} state. Abort it first.",
                )
            del self._sessions[session_id]
        log.info("session_removed", session_id=session_id)
        return True

    def cleanup_terminated(self) -> list[str]:
        """Stop tracking every terminal session.

        Returns:
            IDs of removed sessions.
        """
        with self._lock:
            removed = [sid for sid, s in self._sessions.items() if s.is_terminal]
            for session_id in removed:
                del self._sessions[session_id]
        if removed:
            log.info("sessions_cleaned_up", count=len(removed))
        return removed

    async def shutdown(self) -> ShutdownResult:
        """Abort every non-terminal session concurrently.

        Continues on individual failures so every session gets a chance
        to release its process and keys.
        """
        with self._lock:
            targets = [s for s in self._sessions.values() if not s.is_terminal]

        results = await asyncio.gather(*(s.abort() for s in targets), return_exceptions=True)

        aborted_ids: list[str] = []
        errors: list[str] = []
        for session, result in zip(targets, results):
            if isinstance(result, BaseException):
                log.error("session_abort_failed", session_id=session.session_id, error=str(result))
                errors.append(f"Abort failed for {session.session_id}: {result}")
            else:
                aborted_ids.append(session.session_id)

        log.info(
            "manager_shutdown_complete",
            aborted_count=len(aborted_ids),
            error_count=len(errors),
        )
        return ShutdownResult(aborted_ids=aborted_ids, errors=errors)
