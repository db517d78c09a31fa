"""AgentWire Exception Hierarchy.

All custom exceptions inherit from AgentWireError so callers (CLI, relay,
service layers) can catch the whole family at one boundary.

Error categories:
- Caller misuse, recoverable: InvalidTransitionError, BackpressureError,
  ConcurrencyLimitExceeded, SessionNotFoundError, DuplicateSessionError
- Fatal to one session: LaunchError
- Fatal to one envelope: AuthenticationError
- Setup problems: ConfigurationError, KeyMaterialError

Usage:
    from agentwire.core.exceptions import InvalidTransitionError

    raise InvalidTransitionError(
        session_id="sess-01",
        from_state="ENDED",
        event="pause",
    )
"""

from typing import Any, Optional


class AgentWireError(Exception):
    """Base exception for all AgentWire errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: Optional[str] = None) -> None:
        """Initialize AgentWireError.

        Args:
            message: Optional custom message. Defaults to a generic message.
        """
        self.message = message or "An AgentWire error occurred."
        super().__init__(self.message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context dictionary for structured logging.

        Returns:
            dict: Key-value pairs of exception context.
        """
        return {}

    def __repr__(self) -> str:
        """Return debug representation."""
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(AgentWireError):
    """Configuration file or value is invalid.

    Attributes:
        config_path: Path to the configuration file.
        key: The configuration key that caused the error.
        expected_type: The expected type for the value.
    """

    def __init__(
        self,
        config_path: str,
        key: Optional[str] = None,
        expected_type: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.config_path = config_path
        self.key = key
        self.expected_type = expected_type

        if message is None:
            key_info = f" key '{key}'" if key else ""
            type_info = f" (expected {expected_type})" if expected_type else ""
            message = f"Configuration error in '{config_path}'{key_info}{type_info}."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for configuration error."""
        return {
            "config_path": self.config_path,
            "key": self.key,
            "expected_type": self.expected_type,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"ConfigurationError(config_path={self.config_path!r}, "
            f"key={self.key!r}, expected_type={self.expected_type!r})"
        )


class LaunchError(AgentWireError):
    """Agent subprocess could not be spawned.

    Fatal to the owning session: Pending moves to Failed.

    Attributes:
        command: Executable that failed to launch.
        reason: Why the launch failed (OS error text).
    """

    def __init__(
        self,
        command: str,
        reason: str,
        message: Optional[str] = None,
    ) -> None:
        """Initialize LaunchError.

        Args:
            command: Executable that failed to launch.
            reason: Why the launch failed.
            message: Optional custom message.
        """
        self.command = command
        self.reason = reason

        if message is None:
            message = f"Failed to launch '{command}': {reason}"

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for launch failure."""
        return {"command": self.command, "reason": self.reason}

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"LaunchError(command={self.command!r}, reason={self.reason!r})"


class InvalidTransitionError(AgentWireError):
    """Lifecycle event not allowed in the session's current state.

    The session state is left unchanged. Callers may retry with a
    command that is valid for the current state.

    Attributes:
        session_id: The session ID.
        from_state: State the session was in.
        event: Event or command that was rejected.
    """

    def __init__(
        self,
        session_id: str,
        from_state: str,
        event: str,
        message: Optional[str] = None,
    ) -> None:
        """Initialize InvalidTransitionError.

        Args:
            session_id: The session ID.
            from_state: Current state.
            event: Rejected event or command.
            message: Optional custom message.
        """
        self.session_id = session_id
        self.from_state = from_state
        self.event = event

        if message is None:
            message = (
                f"Invalid transition for session '{session_id}': "
                f"'{event}' not allowed in state {from_state}."
            )

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for invalid transition."""
        return {
            "session_id": self.session_id,
            "from_state": self.from_state,
            "event": self.event,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"InvalidTransitionError(session_id={self.session_id!r}, "
            f"from_state={self.from_state!r}, event={self.event!r})"
        )


class BackpressureError(AgentWireError):
    """Outbound queue in-flight bound reached.

    Callers should back off and retry once an ack frees capacity.

    Attributes:
        session_id: The session whose queue is full.
        in_flight: Current number of unacknowledged outbound envelopes.
        limit: Configured in-flight bound.
    """

    def __init__(
        self,
        session_id: str,
        in_flight: int,
        limit: int,
        message: Optional[str] = None,
    ) -> None:
        self.session_id = session_id
        self.in_flight = in_flight
        self.limit = limit

        if message is None:
            message = (
                f"Queue for session '{session_id}' has {in_flight} envelopes "
                f"in flight (limit: {limit}). Retry after an acknowledgement."
            )

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for backpressure."""
        return {
            "session_id": self.session_id,
            "in_flight": self.in_flight,
            "limit": self.limit,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"BackpressureError(session_id={self.session_id!r}, "
            f"in_flight={self.in_flight!r}, limit={self.limit!r})"
        )


class QueueClosedError(AgentWireError):
    """Enqueue attempted after the session's queue was closed."""

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        self.session_id = session_id
        super().__init__(message or f"Queue for session '{session_id}' is closed.")

    @property
    def context(self) -> dict[str, Any]:
        """Return context for closed queue."""
        return {"session_id": self.session_id}


class AuthenticationError(AgentWireError):
    """Ciphertext failed integrity verification.

    Fatal for the envelope concerned: retrying without a new key will
    not help, so the envelope is surfaced rather than retried.

    Attributes:
        reason: Description of why verification failed.
        session_id: Session the envelope belonged to, if known.
        sequence_number: Envelope sequence number, if known.
    """

    def __init__(
        self,
        reason: Optional[str] = None,
        session_id: Optional[str] = None,
        sequence_number: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        """Initialize AuthenticationError.

        Args:
            reason: Description of failure cause.
            session_id: Owning session, if known.
            sequence_number: Envelope sequence, if known.
            message: Optional custom message.
        """
        self.reason = reason
        self.session_id = session_id
        self.sequence_number = sequence_number

        if message is None:
            message = f"Authentication failed: {reason}" if reason else "Authentication failed."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for authentication failure."""
        return {
            "reason": self.reason,
            "session_id": self.session_id,
            "sequence_number": self.sequence_number,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"AuthenticationError(reason={self.reason!r}, "
            f"session_id={self.session_id!r}, sequence_number={self.sequence_number!r})"
        )


class KeyMaterialError(AgentWireError):
    """Key material is missing, malformed, or already discarded.

    Attributes:
        session_id: Session the key material belongs to.
        device_id: Device concerned, if any.
    """

    def __init__(
        self,
        session_id: str,
        device_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.session_id = session_id
        self.device_id = device_id

        if message is None:
            device_info = f" for device '{device_id}'" if device_id else ""
            message = f"Key material unavailable{device_info} in session '{session_id}'."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for key material error."""
        return {"session_id": self.session_id, "device_id": self.device_id}


class ConcurrencyLimitExceeded(AgentWireError):
    """Maximum number of non-terminal sessions reached.

    Recoverable: the caller waits for a session to end and retries.

    Attributes:
        current_value: Number of non-terminal sessions.
        max_value: Configured maximum.
    """

    def __init__(
        self,
        current_value: int,
        max_value: int,
        message: Optional[str] = None,
    ) -> None:
        self.current_value = current_value
        self.max_value = max_value

        if message is None:
            message = (
                f"Maximum concurrent sessions ({max_value}) reached. "
                "Wait for a session to end before creating a new one."
            )

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for concurrency limit."""
        return {"current_value": self.current_value, "max_value": self.max_value}

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"ConcurrencyLimitExceeded(current_value={self.current_value!r}, "
            f"max_value={self.max_value!r})"
        )


class SessionNotFoundError(AgentWireError):
    """Session identifier is unknown (never existed or already removed).

    Attributes:
        session_id: The session ID that was not found.
    """

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        """Initialize SessionNotFoundError.

        Args:
            session_id: The missing session ID.
            message: Optional custom message.
        """
        self.session_id = session_id
        super().__init__(message or f"Session not found: {session_id}")

    @property
    def context(self) -> dict[str, Any]:
        """Return context for missing session."""
        return {"session_id": self.session_id}

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"SessionNotFoundError(session_id={self.session_id!r})"


class DuplicateSessionError(AgentWireError):
    """A session with the same identifier is already tracked."""

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        self.session_id = session_id
        super().__init__(message or f"Session already exists: {session_id}")

    @property
    def context(self) -> dict[str, Any]:
        """Return context for duplicate session."""
        return {"session_id": self.session_id}
