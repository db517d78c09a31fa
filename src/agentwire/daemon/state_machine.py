"""Session State Machine.

This module defines the session lifecycle state machine. A session's state
only ever changes by firing an event that the transition table allows for
the current state; anything else raises InvalidTransitionError and leaves
the state untouched.

States:
    PENDING: Created, agent not yet launched
    ACTIVE: Agent running, events consumed and queued
    PAUSED: Agent suspended, consumption stopped, events held
    ENDED: Agent exited cleanly or session aborted (terminal)
    FAILED: Launch failed or agent exited non-zero (terminal)

Valid Transitions:
    PENDING --start--> ACTIVE
    PENDING --launch_failed--> FAILED
    ACTIVE --pause--> PAUSED
    PAUSED --resume--> ACTIVE
    ACTIVE/PAUSED --exited_ok--> ENDED
    ACTIVE/PAUSED --exited_error--> FAILED
    PENDING/ACTIVE/PAUSED --abort--> ENDED

Usage:
    from agentwire.daemon.state_machine import SessionEvent, SessionStateMachine

    sm = SessionStateMachine("sess-01")
    sm.fire(SessionEvent.START)   # PENDING -> ACTIVE
    sm.fire(SessionEvent.ABORT)   # ACTIVE -> ENDED
"""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Awaitable, Callable, Iterable, Optional, Union
import asyncio
import inspect
import structlog
from functools import partial

from agentwire.core.exceptions import InvalidTransitionError


log = structlog.get_logger()


class SessionState(StrEnum):
    """Session lifecycle states."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"
    FAILED = "FAILED"


class SessionEvent(StrEnum):
    """Events that drive session transitions."""

    START = "start"
    LAUNCH_FAILED = "launch_failed"
    PAUSE = "pause"
    RESUME = "resume"
    EXITED_OK = "exited_ok"
    EXITED_ERROR = "exited_error"
    ABORT = "abort"


TERMINAL_STATES: frozenset[SessionState] = frozenset([SessionState.ENDED, SessionState.FAILED])

TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.PENDING, SessionEvent.START): SessionState.ACTIVE,
    (SessionState.PENDING, SessionEvent.LAUNCH_FAILED): SessionState.FAILED,
    (SessionState.ACTIVE, SessionEvent.PAUSE): SessionState.PAUSED,
    (SessionState.PAUSED, SessionEvent.RESUME): SessionState.ACTIVE,
    (SessionState.ACTIVE, SessionEvent.EXITED_OK): SessionState.ENDED,
    (SessionState.PAUSED, SessionEvent.EXITED_OK): SessionState.ENDED,
    (SessionState.ACTIVE, SessionEvent.EXITED_ERROR): SessionState.FAILED,
    (SessionState.PAUSED, SessionEvent.EXITED_ERROR): SessionState.FAILED,
    (SessionState.PENDING, SessionEvent.ABORT): SessionState.ENDED,
    (SessionState.ACTIVE, SessionEvent.ABORT): SessionState.ENDED,
    (SessionState.PAUSED, SessionEvent.ABORT): SessionState.ENDED,
}


def next_state(state: SessionState, event: SessionEvent) -> Optional[SessionState]:
    """Return the state ``event`` leads to from ``state``, or None if not allowed."""
    return TRANSITIONS.get((state, event))


def is_valid_transition(state: SessionState, event: SessionEvent) -> bool:
    """Check if ``event`` is allowed in ``state``."""
    return (state, event) in TRANSITIONS


def get_valid_events(state: SessionState) -> set[SessionEvent]:
    """Get all events allowed in ``state``. Empty for terminal states."""
    return {event for (frm, event) in TRANSITIONS if frm == state}


def get_valid_targets(state: SessionState) -> set[SessionState]:
    """Get all states reachable in one transition from ``state``."""
    return {to for (frm, _), to in TRANSITIONS.items() if frm == state}


def fold_events(
    events: Iterable[SessionEvent],
    initial: SessionState = SessionState.PENDING,
) -> SessionState:
    """Fold an event history over the transition table.

    Events not allowed in the state reached so far are skipped, matching a
    machine that rejects them without mutation.
    """
    state = initial
    for event in events:
        state = TRANSITIONS.get((state, event), state)
    return state


# Type alias for state change listeners (sync or async)
StateChangeListener = Callable[[SessionState, SessionState], Union[None, Awaitable[None]]]


class SessionStateMachine:
    """Session lifecycle state machine.

    Attributes:
        session_id: Unique session identifier.
        current_state: Current session state (read-only).
        history: List of (state, timestamp) tuples (read-only copy).
        failure_cause: Human-readable cause once FAILED.
    """

    def __init__(self, session_id: str) -> None:
        """Initialize state machine in PENDING state.

        Args:
            session_id: Unique identifier for the session.
        """
        self._session_id = session_id
        self._current_state = SessionState.PENDING
        self._history: list[tuple[SessionState, datetime]] = [
            (SessionState.PENDING, datetime.now(timezone.utc))
        ]
        self._events: list[SessionEvent] = []
        self._failure_cause: Optional[str] = None
        self._listeners: list[StateChangeListener] = []

    @property
    def session_id(self) -> str:
        """Session identifier."""
        return self._session_id

    @property
    def current_state(self) -> SessionState:
        """Current session state."""
        return self._current_state

    @property
    def history(self) -> list[tuple[SessionState, datetime]]:
        """State transition history (read-only copy)."""
        return list(self._history)

    @property
    def accepted_events(self) -> list[SessionEvent]:
        """Events that caused a transition, in order (read-only copy)."""
        return list(self._events)

    @property
    def failure_cause(self) -> Optional[str]:
        return self._failure_cause

    @property
    def is_terminal(self) -> bool:
        return self._current_state in TERMINAL_STATES

    def add_listener(self, callback: StateChangeListener) -> None:
        """Add a state change listener.

        Args:
            callback: Function called with (old_state, new_state) on transitions.
                Can be sync or async function.
        """
        self._listeners.append(callback)

    def remove_listener(self, callback: StateChangeListener) -> None:
        """Remove a state change listener.

        Raises:
            ValueError: If callback is not registered.
        """
        self._listeners.remove(callback)

    def ensure_allowed(self, event: SessionEvent) -> SessionState:
        """Check ``event`` against the current state without firing it.

        Returns:
            The state the event would lead to.

        Raises:
            InvalidTransitionError: If the event is not allowed.
        """
        target = next_state(self._current_state, event)
        if target is None:
            raise InvalidTransitionError(
                session_id=self._session_id,
                from_state=str(self._current_state),
                event=str(event),
            )
        return target

    def fire(self, event: SessionEvent, cause: Optional[str] = None) -> SessionState:
        """Apply ``event`` to the machine.

        Args:
            event: Lifecycle event.
            cause: Failure cause recorded when the target state is FAILED.

        Returns:
            The new state.

        Raises:
            InvalidTransitionError: If the event is not allowed; the state
                is left unchanged.
        """
        from_state = self._current_state
        to_state = self.ensure_allowed(event)

        self._current_state = to_state
        self._history.append((to_state, datetime.now(timezone.utc)))
        self._events.append(event)
        if to_state == SessionState.FAILED:
            self._failure_cause = cause or "unknown failure"

        log.info(
            "session_state_changed",
            session_id=self._session_id,
            from_state=str(from_state),
            to_state=str(to_state),
            trigger=str(event),
            cause=cause,
        )

        self._notify_listeners(from_state, to_state)
        return to_state

    def _notify_listeners(
        self,
        from_state: SessionState,
        to_state: SessionState,
    ) -> None:
        """Notify all registered listeners of state change.

        Handles both sync and async listeners. Listener exceptions
        are caught and logged but do not propagate.
        """
        for listener in self._listeners:
            try:
                if inspect.iscoroutinefunction(listener):
                    try:
                        loop = asyncio.get_running_loop()
                        task = loop.create_task(listener(from_state, to_state))
                        task.add_done_callback(
                            partial(self._handle_async_exception, session_id=self._session_id)
                        )
                    except RuntimeError:
                        log.warning("async_listener_no_loop", session_id=self._session_id)
                else:
                    listener(from_state, to_state)
            except Exception as e:
                log.warning(
                    "state_listener_error",
                    session_id=self._session_id,
                    error=str(e),
                )

    @staticmethod
    def _handle_async_exception(task: asyncio.Task, session_id: str) -> None:
        """Callback to log exceptions from async listeners."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning(
                "state_listener_error",
                session_id=session_id,
                error=str(exc),
                async_task=True,
            )
