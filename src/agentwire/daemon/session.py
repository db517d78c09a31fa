"""Supervised agent session.

A Session composes one ProcessWrapper, one SessionStateMachine, one
MessageQueue and one EncryptionManager. It owns a single consumer task
that reads the agent's event stream and turns every event into an
encrypted outbound envelope; inbound device commands are decrypted
through the queue and written to the agent's stdin.

Lifecycle commands (start, pause, resume, abort) are serialized by an
asyncio.Lock. Every state change goes through the state machine, whose
transitions are synchronous, so queue operations always observe either
the pre- or the post-transition state.

On reaching ENDED or FAILED the session drains its queue for a bounded
time, closes it (reporting whatever is still unacknowledged), discards
all key material and reaps the process.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from agentwire.core.config import AgentConfig, QueueConfig
from agentwire.core.exceptions import (
    AuthenticationError,
    BackpressureError,
    InvalidTransitionError,
    LaunchError,
    QueueClosedError,
)
from agentwire.daemon.encryption import CiphertextEnvelope, EncryptionManager
from agentwire.daemon.message_queue import (
    MessageEnvelope,
    MessageQueue,
    QueueStats,
    RetryPolicy,
)
from agentwire.daemon.notifications import DeliveryFailure
from agentwire.daemon.process import ProcessWrapper, SignalKind, describe_exit
from agentwire.daemon.state_machine import (
    SessionEvent,
    SessionState,
    SessionStateMachine,
    StateChangeListener,
)
from agentwire.daemon.streaming import (
    CompletionEvent,
    FaultEvent,
    StreamEvent,
    encode_stream_event,
)
from agentwire.protocols.secret_store import SecretStoreProtocol

log = structlog.get_logger()

ProcessFactory = Callable[..., ProcessWrapper]
FailureListener = Callable[[DeliveryFailure], None]


@dataclass
class SessionSpec:
    """What to run in a session.

    Attributes:
        command: Agent executable.
        args: Agent arguments.
        working_dir: Working directory of the agent.
        env: Extra environment variables.
        run_timeout: Seconds after which the agent is stopped.
        session_id: Caller-chosen identifier; generated when None.
        labels: Free-form metadata carried into summaries.
    """

    command: str
    args: list[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    run_timeout: Optional[float] = None
    session_id: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, agent: AgentConfig, **overrides: Any) -> "SessionSpec":
        """Build a spec from the agent config section, applying overrides."""
        values: dict[str, Any] = {
            "command": agent.command,
            "args": list(agent.args),
            "env": dict(agent.env),
            "run_timeout": agent.run_timeout,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class SessionSummary:
    """Immutable session snapshot for observers and persistence."""

    session_id: str
    state: SessionState
    command: str
    created_at: datetime
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    failure_cause: Optional[str] = None
    events_emitted: int = 0
    devices: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    queue: Optional[QueueStats] = None

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "session_id": self.session_id,
            "state": str(self.state),
            "command": self.command,
            "created_at": iso(self.created_at),
            "pid": self.pid,
            "started_at": iso(self.started_at),
            "ended_at": iso(self.ended_at),
            "exit_code": self.exit_code,
            "failure_cause": self.failure_cause,
            "events_emitted": self.events_emitted,
            "devices": list(self.devices),
            "labels": dict(self.labels),
            "queue": asdict(self.queue) if self.queue else None,
        }


class Session:
    """One supervised agent subprocess with its queue and keys."""

    def __init__(
        self,
        session_id: str,
        spec: SessionSpec,
        agent_config: Optional[AgentConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        secret_store: Optional[SecretStoreProtocol] = None,
        process_factory: ProcessFactory = ProcessWrapper,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize a PENDING session. A fresh session key is generated here.

        Args:
            session_id: Unique session identifier.
            spec: What to run.
            agent_config: Process supervision settings (timeouts, limits).
            queue_config: Delivery settings.
            secret_store: Where pairwise device keys are handed off, if anywhere.
            process_factory: Builds the ProcessWrapper (overridable in tests).
            clock: Monotonic clock for the queue.
        """
        self._session_id = session_id
        self._spec = spec
        self._agent_config = agent_config or AgentConfig()
        queue_config = queue_config or QueueConfig()
        self._drain_timeout = queue_config.drain_timeout
        self._secret_store = secret_store
        self._process_factory = process_factory

        self._machine = SessionStateMachine(session_id)
        self._encryption = EncryptionManager(session_id)
        self._queue = MessageQueue(
            session_id,
            self._encryption,
            max_in_flight=queue_config.max_in_flight,
            retry_policy=RetryPolicy.from_config(queue_config),
            max_retained=queue_config.max_retained,
            clock=clock,
            on_failure=self._on_delivery_failure,
        )

        self._wrapper: Optional[ProcessWrapper] = None
        self._consumer: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()
        self._running = asyncio.Event()
        self._finished = asyncio.Event()
        self._finalized = False
        self._events_emitted = 0
        self._failure_listeners: list[FailureListener] = []
        self.created_at = datetime.now(timezone.utc)

    # ─────────────────────────────────────────────────────────────────────────
    # Properties
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def spec(self) -> SessionSpec:
        return self._spec

    @property
    def state(self) -> SessionState:
        return self._machine.current_state

    @property
    def is_terminal(self) -> bool:
        return self._machine.is_terminal

    @property
    def failure_cause(self) -> Optional[str]:
        return self._machine.failure_cause

    @property
    def state_machine(self) -> SessionStateMachine:
        return self._machine

    @property
    def public_key(self) -> bytes:
        """Session identity public key for device pairing."""
        return self._encryption.public_key

    @property
    def pid(self) -> Optional[int]:
        return self._wrapper.pid if self._wrapper else None

    @property
    def events_emitted(self) -> int:
        return self._events_emitted

    @property
    def is_closed(self) -> bool:
        """True once no further envelope will be delivered."""
        return self._queue.is_closed

    @property
    def is_finished(self) -> bool:
        """True once the session is terminal and its resources are released."""
        return self._finished.is_set()

    def add_state_listener(self, callback: StateChangeListener) -> None:
        """Register a (old_state, new_state) listener; sync or async."""
        self._machine.add_listener(callback)

    def add_failure_listener(self, callback: FailureListener) -> None:
        """Register a listener for DeliveryFailure reports."""
        self._failure_listeners.append(callback)

    def _on_delivery_failure(self, failure: DeliveryFailure) -> None:
        for listener in self._failure_listeners:
            try:
                listener(failure)
            except Exception as e:
                log.warning(
                    "failure_listener_error",
                    session_id=self._session_id,
                    sequence_number=failure.sequence_number,
                    error=str(e),
                )

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle commands
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> SessionState:
        """Launch the agent: PENDING to ACTIVE, or FAILED on launch error.

        Raises:
            InvalidTransitionError: If the session is not PENDING.
            LaunchError: If the agent could not be spawned (session is FAILED).
        """
        async with self._lock:
            self._machine.ensure_allowed(SessionEvent.START)
            wrapper = self._process_factory(
                command=self._spec.command,
                args=list(self._spec.args),
                working_dir=self._spec.working_dir,
                env=dict(self._agent_config.env, **self._spec.env),
                run_timeout=self._spec.run_timeout or self._agent_config.run_timeout,
                graceful_timeout=self._agent_config.graceful_timeout,
                stream_limit=self._agent_config.stream_limit,
                line_buffer=self._agent_config.line_buffer,
            )
            try:
                await wrapper.start()
            except LaunchError as e:
                self._machine.fire(SessionEvent.LAUNCH_FAILED, cause=str(e))
                await self._finalize(drain=False, reason="Agent failed to launch")
                raise

            self._wrapper = wrapper
            self._running.set()
            self._machine.fire(SessionEvent.START)
            self._consumer = asyncio.create_task(
                self._consume(), name=f"session-consumer-{self._session_id}"
            )
            return self.state

    async def pause(self) -> SessionState:
        """Suspend the agent and stop consuming its events: ACTIVE to PAUSED.

        Raises:
            InvalidTransitionError: If not ACTIVE or the process can no
                longer be suspended.
        """
        async with self._lock:
            self._machine.ensure_allowed(SessionEvent.PAUSE)
            if self._wrapper is None or not self._wrapper.signal(SignalKind.SUSPEND):
                raise InvalidTransitionError(
                    session_id=self._session_id,
                    from_state=str(self.state),
                    event=str(SessionEvent.PAUSE),
                    message=f"Session '{self._session_id}' cannot be paused: process is not running.",
                )
            self._running.clear()
            return self._machine.fire(SessionEvent.PAUSE)

    async def resume(self) -> SessionState:
        """Continue the agent and its event consumption: PAUSED to ACTIVE.

        Raises:
            InvalidTransitionError: If not PAUSED or the process has died.
        """
        async with self._lock:
            self._machine.ensure_allowed(SessionEvent.RESUME)
            if self._wrapper is None or not self._wrapper.signal(SignalKind.CONTINUE):
                raise InvalidTransitionError(
                    session_id=self._session_id,
                    from_state=str(self.state),
                    event=str(SessionEvent.RESUME),
                    message=f"Session '{self._session_id}' cannot be resumed: process is not alive.",
                )
            self._running.set()
            return self._machine.fire(SessionEvent.RESUME)

    async def abort(self) -> SessionState:
        """Force the session to ENDED from PENDING, ACTIVE or PAUSED.

        The agent is killed, the consumer cancelled, and any blocked
        delivery wait is released by closing the queue.

        Raises:
            InvalidTransitionError: If the session is already terminal.
        """
        async with self._lock:
            self._machine.ensure_allowed(SessionEvent.ABORT)
            self._machine.fire(SessionEvent.ABORT)
            if self._wrapper is not None:
                self._wrapper.signal(SignalKind.KILL)
            if self._consumer is not None and not self._consumer.done():
                self._consumer.cancel()
                await asyncio.gather(self._consumer, return_exceptions=True)
        await self._finalize(drain=False, reason="Session aborted")
        return self.state

    async def wait(self, timeout: Optional[float] = None) -> SessionState:
        """Wait until the session is terminal and cleaned up."""
        await asyncio.wait_for(self._finished.wait(), timeout=timeout)
        return self.state

    # ─────────────────────────────────────────────────────────────────────────
    # Event consumption
    # ─────────────────────────────────────────────────────────────────────────

    async def _consume(self) -> None:
        assert self._wrapper is not None
        events = self._wrapper.events()
        try:
            async for event in events:
                await self._wait_until_running()
                if not await self._publish(event):
                    # Agent is gone and nobody frees room: stop publishing
                    if not event.is_terminal:
                        event = self._exit_event(await self._wrapper.wait())
                    log.warning(
                        "session_events_dropped",
                        session_id=self._session_id,
                        events_emitted=self._events_emitted,
                    )
                    await self._on_terminal(event)
                    return
                if event.is_terminal:
                    await self._on_terminal(event)
        except QueueClosedError:
            log.info("session_consumer_stopped", session_id=self._session_id)
        except Exception as e:
            log.error("session_consumer_failed", session_id=self._session_id, error=str(e))
            await self._fail(f"Event consumer failed: {e}")
        finally:
            await events.aclose()

    @staticmethod
    def _exit_event(exit_code: int) -> StreamEvent:
        if exit_code == 0:
            return CompletionEvent(exit_code=0)
        return FaultEvent(detail=describe_exit(exit_code), exit_code=exit_code)

    async def _race_exit(self, awaitable: Any) -> asyncio.Future[Any]:
        """Run ``awaitable`` until it finishes or the agent exits.

        Returns:
            The future wrapping ``awaitable``; cancelled if the agent exited first.
        """
        assert self._wrapper is not None
        waiter = asyncio.ensure_future(awaitable)
        exited = asyncio.ensure_future(self._wrapper.wait())
        try:
            await asyncio.wait({waiter, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (waiter, exited):
                task.cancel()
            await asyncio.gather(waiter, exited, return_exceptions=True)
        return waiter

    async def _wait_until_running(self) -> None:
        """Hold the current event while PAUSED, unless the agent has exited."""
        if self._running.is_set():
            return
        await self._race_exit(self._running.wait())

    async def _publish(self, event: StreamEvent) -> bool:
        """Queue one event, waiting for in-flight room.

        Returns:
            False if the agent has exited and no room freed up within the
            drain timeout; the event was not queued.

        Raises:
            QueueClosedError: If the queue was closed meanwhile.
        """
        payload = encode_stream_event(event)
        while True:
            try:
                self._queue.enqueue_outbound(payload)
            except BackpressureError:
                capacity = await self._race_exit(self._queue.wait_for_capacity())
                if capacity.cancelled():
                    if not await self._queue.wait_for_capacity(self._drain_timeout):
                        return False
                else:
                    capacity.result()
                continue
            self._events_emitted += 1
            return True

    async def _on_terminal(self, event: StreamEvent) -> None:
        async with self._lock:
            if self._machine.is_terminal:
                return
            if isinstance(event, CompletionEvent) and event.exit_code == 0:
                self._machine.fire(SessionEvent.EXITED_OK)
            else:
                cause = event.detail if isinstance(event, FaultEvent) else f"exit code {event.exit_code}"
                if self._wrapper is not None and self._wrapper.timed_out:
                    cause = f"{cause} (run timeout exceeded)"
                self._machine.fire(SessionEvent.EXITED_ERROR, cause=cause)
        await self._finalize(drain=True, reason="Session ended before acknowledgement")

    async def _fail(self, cause: str) -> None:
        async with self._lock:
            if self._machine.is_terminal:
                return
            if self._wrapper is not None:
                self._wrapper.signal(SignalKind.KILL)
            self._machine.fire(SessionEvent.EXITED_ERROR, cause=cause)
        await self._finalize(drain=False, reason=cause)

    async def _finalize(self, drain: bool, reason: str) -> None:
        if self._finalized:
            return
        self._finalized = True
        try:
            if drain and self._drain_timeout > 0:
                await self._queue.drain(self._drain_timeout)
            self._queue.close(reason)
            self._encryption.discard()
            if self._wrapper is not None:
                await self._wrapper.shutdown()
        finally:
            self._finished.set()
            log.info(
                "session_finalized",
                session_id=self._session_id,
                state=str(self.state),
                events_emitted=self._events_emitted,
                failure_cause=self.failure_cause,
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Messaging
    # ─────────────────────────────────────────────────────────────────────────

    def _require_live(self, operation: str) -> ProcessWrapper:
        if self.state not in (SessionState.ACTIVE, SessionState.PAUSED) or self._wrapper is None:
            raise InvalidTransitionError(
                session_id=self._session_id,
                from_state=str(self.state),
                event=operation,
            )
        return self._wrapper

    async def send_input(self, text: str) -> bool:
        """Write a plaintext line to the agent's stdin.

        Raises:
            InvalidTransitionError: If the session is not ACTIVE or PAUSED.
        """
        wrapper = self._require_live("send_input")
        return await wrapper.write_line(text)

    async def close_input(self) -> None:
        """Close the agent's stdin, signalling that no more input follows."""
        wrapper = self._require_live("close_input")
        await wrapper.close_stdin()

    async def receive_inbound(self, sequence_number: int, envelope: CiphertextEnvelope) -> int:
        """Decrypt an inbound device command and feed it to the agent in order.

        Returns:
            Number of lines written to the agent by this call.

        Raises:
            InvalidTransitionError: If the session is not ACTIVE or PAUSED.
            AuthenticationError: If the envelope does not authenticate.
            BackpressureError: If the sequence number is too far ahead.
        """
        wrapper = self._require_live("receive_inbound")
        try:
            plaintexts = self._queue.receive_inbound(sequence_number, envelope)
        except AuthenticationError:
            await self._write_inputs(wrapper, self._queue.release_inbound())
            raise
        return await self._write_inputs(wrapper, plaintexts)

    async def _write_inputs(self, wrapper: ProcessWrapper, plaintexts: list[bytes]) -> int:
        written = 0
        for plaintext in plaintexts:
            if await wrapper.write_line(plaintext.decode("utf-8", errors="replace")):
                written += 1
        return written

    def deliver_next(self) -> Optional[MessageEnvelope]:
        return self._queue.deliver_next()

    async def next_delivery(self, timeout: Optional[float] = None) -> Optional[MessageEnvelope]:
        return await self._queue.next_delivery(timeout)

    def acknowledge(self, sequence_number: int) -> bool:
        return self._queue.mark_acked(sequence_number)

    def enqueue_outbound(self, payload: bytes) -> int:
        """Queue an out-of-band payload (e.g. a status message) for devices."""
        return self._queue.enqueue_outbound(payload)

    # ─────────────────────────────────────────────────────────────────────────
    # Device pairing
    # ─────────────────────────────────────────────────────────────────────────

    async def pair_device(self, device_id: str, device_public_key: bytes) -> bool:
        """Pair a device and hand its pairwise key to the secret store.

        Returns:
            True if the key was persisted by the secret store.

        Raises:
            KeyMaterialError: If the public key is malformed or the session
                has released its keys.
        """
        key = self._encryption.pair_device(device_id, device_public_key)
        if self._secret_store is None:
            return False
        try:
            return await self._secret_store.store_device_key(self._session_id, device_id, key)
        except Exception as e:
            log.warning(
                "device_key_store_failed",
                session_id=self._session_id,
                device_id=device_id,
                error=str(e),
            )
            return False

    async def load_device(self, device_id: str) -> bool:
        """Restore a device's pairwise key from the secret store.

        Returns:
            False if there is no store or it holds no key for the device.
        """
        if self._secret_store is None:
            return False
        key = await self._secret_store.load_device_key(self._session_id, device_id)
        if key is None:
            return False
        self._encryption.register_device_key(device_id, key)
        return True

    async def unpair_device(self, device_id: str) -> bool:
        """Forget a device and remove its key from the secret store."""
        removed = self._encryption.unpair_device(device_id)
        if self._secret_store is not None:
            await self._secret_store.delete_device_key(self._session_id, device_id)
        return removed

    # ─────────────────────────────────────────────────────────────────────────
    # Snapshots
    # ─────────────────────────────────────────────────────────────────────────

    def summary(self) -> SessionSummary:
        handle = self._wrapper.handle if self._wrapper else None
        ended_at = self._machine.history[-1][1] if self.is_terminal else None
        return SessionSummary(
            session_id=self._session_id,
            state=self.state,
            command=self._spec.command,
            created_at=self.created_at,
            pid=handle.pid if handle else None,
            started_at=handle.started_at if handle else None,
            ended_at=ended_at,
            exit_code=handle.exit_code if handle else None,
            failure_cause=self.failure_cause,
            events_emitted=self._events_emitted,
            devices=tuple(self._encryption.device_ids),
            labels=dict(self._spec.labels),
            queue=self._queue.stats(),
        )
