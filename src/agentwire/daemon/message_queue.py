"""Ordered, acknowledged message queue for one session.

Outbound envelopes get strictly increasing sequence numbers starting at 1,
are encrypted at enqueue time, and are handed out by deliver_next() in
ascending sequence order. An envelope that is not acknowledged in time is
redelivered with exponential backoff until its attempt budget runs out,
then it becomes FAILED and is reported as a DeliveryFailure.

Inbound envelopes (device commands) pass through a reorder buffer: each
sequence number is decrypted at most once (again only after a failed
attempt), and plaintexts are released strictly in sequence order.

The queue is owned by a single session and used from one event loop, so
no operation is interleaved with another: every method below runs to
completion without awaiting, except the explicit waiting helpers.

Usage:
    queue = MessageQueue("sess-01", EncryptionManager("sess-01"), max_in_flight=2)
    seq = queue.enqueue_outbound(b"ping")   # 1
    envelope = queue.deliver_next()          # attempt 1 of seq 1
    queue.mark_acked(seq)
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import Callable, Optional

import structlog

from agentwire.core.config import QueueConfig
from agentwire.core.exceptions import (
    AuthenticationError,
    BackpressureError,
    QueueClosedError,
)
from agentwire.daemon.encryption import CiphertextEnvelope, EncryptionManager
from agentwire.daemon.notifications import DeliveryFailure

log = structlog.get_logger()


class Direction(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class AckStatus(StrEnum):
    PENDING = "pending"
    ACKED = "acked"
    FAILED = "failed"


def associated_data(session_id: str, direction: Direction, sequence_number: int) -> bytes:
    """Context bound into every ciphertext so it cannot be replayed elsewhere."""
    return f"{session_id}:{direction}:{sequence_number}".encode("utf-8")


@dataclass
class MessageEnvelope:
    """One sequenced, encrypted message.

    Attributes:
        session_id: Owning session.
        sequence_number: Position in the session's stream, from 1.
        direction: INBOUND (device to agent) or OUTBOUND (agent to devices).
        payload: Ciphertext under the session key.
        device_payloads: Per-device copies under pairwise keys.
        created_at: Enqueue time (UTC).
        ack_status: PENDING, ACKED or FAILED.
        attempt_count: Delivery (or decryption) attempts so far.
        last_attempt_at: Queue clock reading at the latest attempt.
        settled_at: Queue clock reading when it became ACKED or FAILED.
        failure_reason: Why it FAILED.
    """

    session_id: str
    sequence_number: int
    direction: Direction
    payload: CiphertextEnvelope
    device_payloads: dict[str, CiphertextEnvelope] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ack_status: AckStatus = AckStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[float] = None
    settled_at: Optional[float] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Redelivery schedule.

    After attempt ``n`` an envelope is redelivered once ``ack_timeout`` plus
    ``min(base_delay * 2 ** (n - 1), max_delay)`` seconds have passed
    without an ack. After ``max_attempts`` attempts it fails once
    ``ack_timeout`` has passed.
    """

    max_attempts: int = 5
    ack_timeout: float = 10.0
    base_delay: float = 1.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.ack_timeout < 0:
            raise ValueError("ack_timeout must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    @classmethod
    def from_config(cls, config: QueueConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            ack_timeout=config.ack_timeout,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the ``attempt``-th attempt (1-based)."""
        if attempt < 1:
            return 0.0
        # Cap the exponent so huge attempt counts cannot overflow
        return min(self.base_delay * (2 ** min(attempt - 1, 62)), self.max_delay)

    def next_due(self, envelope: MessageEnvelope) -> float:
        """Clock reading at which the envelope needs attention again."""
        if envelope.attempt_count == 0 or envelope.last_attempt_at is None:
            return float("-inf")
        if envelope.attempt_count >= self.max_attempts:
            return envelope.last_attempt_at + self.ack_timeout
        return envelope.last_attempt_at + self.ack_timeout + self.delay_for(envelope.attempt_count)


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time queue counters."""

    in_flight: int
    acked: int
    failed: int
    retained: int
    inbound_buffered: int
    next_sequence: int
    next_inbound_sequence: int
    redeliveries: int
    closed: bool


FailureCallback = Callable[[DeliveryFailure], None]


class MessageQueue:
    """Outbound and inbound envelopes of one session."""

    def __init__(
        self,
        session_id: str,
        encryption: EncryptionManager,
        max_in_flight: int = 64,
        retry_policy: Optional[RetryPolicy] = None,
        max_retained: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        """Initialize an empty queue.

        Args:
            session_id: Owning session.
            encryption: Encryption manager of the same session.
            max_in_flight: Maximum unacknowledged outbound envelopes, which
                is also the inbound reorder window.
            retry_policy: Redelivery schedule.
            max_retained: Settled envelopes kept for inspection.
            clock: Monotonic clock in seconds.
            on_failure: Called with every DeliveryFailure.
        """
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self._session_id = session_id
        self._encryption = encryption
        self._max_in_flight = max_in_flight
        self._policy = retry_policy or RetryPolicy()
        self._max_retained = max_retained
        self._clock = clock
        self._on_failure = on_failure

        self._next_sequence = 1
        self._outbound: dict[int, MessageEnvelope] = {}
        # Ordered set of PENDING outbound sequence numbers (ascending by construction)
        self._pending: dict[int, None] = {}
        self._settled: deque[int] = deque()
        self._acked_count = 0
        self._failed_count = 0
        self._redeliveries = 0

        self._next_inbound = 1
        self._inbound: dict[int, MessageEnvelope] = {}
        self._inbound_ready: dict[int, Optional[bytes]] = {}

        self._failures: list[DeliveryFailure] = []
        self._changed = asyncio.Event()
        self._closed = False

    # ─────────────────────────────────────────────────────────────────────────
    # Properties
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def in_flight(self) -> int:
        """Outbound envelopes still PENDING."""
        return len(self._pending)

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def failures(self) -> list[DeliveryFailure]:
        """Every failure reported so far (read-only copy)."""
        return list(self._failures)

    def set_failure_callback(self, callback: Optional[FailureCallback]) -> None:
        self._on_failure = callback

    def get(self, sequence_number: int) -> Optional[MessageEnvelope]:
        """Snapshot of a retained outbound envelope."""
        envelope = self._outbound.get(sequence_number)
        return replace(envelope) if envelope is not None else None

    def stats(self) -> QueueStats:
        return QueueStats(
            in_flight=len(self._pending),
            acked=self._acked_count,
            failed=self._failed_count,
            retained=len(self._outbound),
            inbound_buffered=sum(1 for v in self._inbound_ready.values() if v is not None),
            next_sequence=self._next_sequence,
            next_inbound_sequence=self._next_inbound,
            redeliveries=self._redeliveries,
            closed=self._closed,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    def enqueue_outbound(self, payload: bytes) -> int:
        """Encrypt and queue a payload for delivery.

        The payload is encrypted under the session key and once per paired
        device. A rejected enqueue does not consume a sequence number.

        Returns:
            The envelope's sequence number.

        Raises:
            BackpressureError: If ``max_in_flight`` envelopes are unacknowledged.
            QueueClosedError: If the queue was closed.
            KeyMaterialError: If the session's keys were discarded.
        """
        if self._closed:
            raise QueueClosedError(self._session_id)
        if len(self._pending) >= self._max_in_flight:
            raise BackpressureError(
                session_id=self._session_id,
                in_flight=len(self._pending),
                limit=self._max_in_flight,
            )

        sequence_number = self._next_sequence
        aad = associated_data(self._session_id, Direction.OUTBOUND, sequence_number)
        ciphertext = self._encryption.encrypt(self._session_id, payload, aad)
        device_payloads = self._encryption.fan_out(payload, aad)

        self._next_sequence += 1
        self._outbound[sequence_number] = MessageEnvelope(
            session_id=self._session_id,
            sequence_number=sequence_number,
            direction=Direction.OUTBOUND,
            payload=ciphertext,
            device_payloads=device_payloads,
        )
        self._pending[sequence_number] = None

        log.debug(
            "envelope_enqueued",
            session_id=self._session_id,
            sequence_number=sequence_number,
            size=len(payload),
            devices=len(device_payloads),
        )
        self._notify_changed()
        return sequence_number

    def deliver_next(self) -> Optional[MessageEnvelope]:
        """Return the next envelope to put on the wire, if any is due.

        Pending envelopes are scanned in ascending sequence order: the
        first one never attempted, or whose redelivery is due, is returned
        (as a snapshot) with its attempt recorded. Envelopes whose budget
        is exhausted and whose last ack window has passed become FAILED
        and are reported on the way.
        """
        now = self._clock()
        for sequence_number in list(self._pending):
            envelope = self._outbound[sequence_number]
            if envelope.attempt_count and now < self._policy.next_due(envelope):
                continue
            if envelope.attempt_count >= self._policy.max_attempts:
                self._fail(
                    envelope,
                    f"No acknowledgement after {envelope.attempt_count} attempts",
                )
                continue

            if envelope.attempt_count:
                self._redeliveries += 1
                log.info(
                    "envelope_redelivered",
                    session_id=self._session_id,
                    sequence_number=sequence_number,
                    attempt=envelope.attempt_count + 1,
                )
            envelope.attempt_count += 1
            envelope.last_attempt_at = now
            return replace(envelope)
        return None

    def seconds_until_due(self) -> Optional[float]:
        """Seconds until some pending envelope needs attention, None if none waits."""
        if not self._pending:
            return None
        now = self._clock()
        earliest = min(self._policy.next_due(self._outbound[seq]) for seq in self._pending)
        return max(0.0, earliest - now)

    def mark_acked(self, sequence_number: int) -> bool:
        """Acknowledge an outbound envelope.

        Idempotent: unknown, already-acked and failed sequence numbers are
        ignored. An ack for an envelope that was never delivered is ignored
        while a lower-numbered envelope is still undelivered.

        Returns:
            True if this call moved the envelope to ACKED.
        """
        envelope = self._outbound.get(sequence_number)
        if envelope is None or envelope.ack_status != AckStatus.PENDING:
            log.debug(
                "ack_ignored",
                session_id=self._session_id,
                sequence_number=sequence_number,
                status=str(envelope.ack_status) if envelope else None,
            )
            return False
        if envelope.attempt_count == 0 and self._has_undelivered_before(sequence_number):
            # The queue never serves N before every lower envelope was attempted
            log.warning(
                "ack_before_delivery",
                session_id=self._session_id,
                sequence_number=sequence_number,
            )
            return False

        envelope.ack_status = AckStatus.ACKED
        envelope.settled_at = self._clock()
        self._acked_count += 1
        self._settle(sequence_number)
        log.debug("envelope_acked", session_id=self._session_id, sequence_number=sequence_number)
        return True

    def _has_undelivered_before(self, sequence_number: int) -> bool:
        for seq in self._pending:
            if seq >= sequence_number:
                return False
            if self._outbound[seq].attempt_count == 0:
                return True
        return False

    def mark_failed(self, sequence_number: int, reason: str) -> bool:
        """Fail a pending outbound envelope and report it.

        Returns:
            True if the envelope was PENDING.
        """
        envelope = self._outbound.get(sequence_number)
        if envelope is None or envelope.ack_status != AckStatus.PENDING:
            return False
        self._fail(envelope, reason)
        return True

    def _fail(self, envelope: MessageEnvelope, reason: str) -> None:
        envelope.ack_status = AckStatus.FAILED
        envelope.failure_reason = reason
        envelope.settled_at = self._clock()
        self._failed_count += 1
        self._settle(envelope.sequence_number)
        log.warning(
            "envelope_failed",
            session_id=self._session_id,
            sequence_number=envelope.sequence_number,
            attempts=envelope.attempt_count,
            reason=reason,
        )
        self._report(
            DeliveryFailure(
                session_id=self._session_id,
                sequence_number=envelope.sequence_number,
                reason=reason,
                direction=str(Direction.OUTBOUND),
            )
        )

    def _settle(self, sequence_number: int) -> None:
        self._pending.pop(sequence_number, None)
        self._settled.append(sequence_number)
        while len(self._settled) > self._max_retained:
            self._outbound.pop(self._settled.popleft(), None)
        self._notify_changed()

    def prune_settled(self, max_age: float) -> int:
        """Drop settled envelopes older than ``max_age`` seconds.

        Returns:
            Number of envelopes dropped.
        """
        cutoff = self._clock() - max_age
        dropped = 0
        while self._settled:
            envelope = self._outbound.get(self._settled[0])
            if envelope is not None and (envelope.settled_at or 0.0) > cutoff:
                break
            self._settled.popleft()
            if envelope is not None:
                del self._outbound[envelope.sequence_number]
                dropped += 1
        return dropped

    def _report(self, failure: DeliveryFailure) -> None:
        self._failures.append(failure)
        if self._on_failure is None:
            return
        try:
            self._on_failure(failure)
        except Exception as e:
            log.warning(
                "failure_callback_error",
                session_id=self._session_id,
                sequence_number=failure.sequence_number,
                error=str(e),
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    def receive_inbound(
        self, sequence_number: int, envelope: CiphertextEnvelope
    ) -> list[bytes]:
        """Accept an inbound envelope and release whatever is now in order.

        Duplicates of sequence numbers already decrypted are ignored
        without touching the encryption manager.

        Returns:
            Plaintexts released by this call, in sequence order.

        Raises:
            AuthenticationError: If the envelope does not authenticate or is
                bound to another position. The sequence number is marked
                FAILED and reported; plaintexts it was holding back are
                released by the next receive_inbound() or release_inbound().
            BackpressureError: If the sequence number is beyond the reorder
                window.
            QueueClosedError: If the queue was closed.
        """
        if self._closed:
            raise QueueClosedError(self._session_id)
        if sequence_number < self._next_inbound:
            log.debug("inbound_duplicate", session_id=self._session_id, sequence_number=sequence_number)
            return []
        if sequence_number >= self._next_inbound + self._max_in_flight:
            raise BackpressureError(
                session_id=self._session_id,
                in_flight=sequence_number - self._next_inbound,
                limit=self._max_in_flight,
            )

        record = self._inbound.get(sequence_number)
        if record is not None and record.ack_status == AckStatus.ACKED:
            log.debug("inbound_duplicate", session_id=self._session_id, sequence_number=sequence_number)
            return []
        if record is None:
            record = MessageEnvelope(
                session_id=self._session_id,
                sequence_number=sequence_number,
                direction=Direction.INBOUND,
                payload=envelope,
            )
            self._inbound[sequence_number] = record
        record.payload = envelope
        record.attempt_count += 1
        record.last_attempt_at = self._clock()

        try:
            expected = associated_data(self._session_id, Direction.INBOUND, sequence_number)
            if envelope.associated_data != expected:
                raise AuthenticationError("associated data does not match sequence position")
            plaintext = self._encryption.decrypt(envelope)
        except AuthenticationError as e:
            record.ack_status = AckStatus.FAILED
            record.failure_reason = e.reason or e.message
            record.settled_at = self._clock()
            self._inbound_ready[sequence_number] = None
            self._report(
                DeliveryFailure(
                    session_id=self._session_id,
                    sequence_number=sequence_number,
                    reason=f"Authentication failed: {record.failure_reason}",
                    direction=str(Direction.INBOUND),
                )
            )
            raise AuthenticationError(
                e.reason,
                session_id=self._session_id,
                sequence_number=sequence_number,
            ) from e

        record.ack_status = AckStatus.ACKED
        record.failure_reason = None
        record.settled_at = self._clock()
        self._inbound_ready[sequence_number] = plaintext
        return self.release_inbound()

    def release_inbound(self) -> list[bytes]:
        """Release buffered inbound plaintexts that are now in order.

        Sequence numbers that failed authentication are skipped.
        """
        released: list[bytes] = []
        while self._next_inbound in self._inbound_ready:
            plaintext = self._inbound_ready.pop(self._next_inbound)
            self._inbound.pop(self._next_inbound, None)
            if plaintext is not None:
                released.append(plaintext)
            self._next_inbound += 1
        return released

    # ─────────────────────────────────────────────────────────────────────────
    # Waiting and shutdown
    # ─────────────────────────────────────────────────────────────────────────

    def _notify_changed(self) -> None:
        self._changed.set()

    async def next_delivery(self, timeout: Optional[float] = None) -> Optional[MessageEnvelope]:
        """Wait until an envelope is due and return it.

        Returns:
            The envelope, or None if the timeout elapsed or the queue closed.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            self._changed.clear()
            envelope = self.deliver_next()
            if envelope is not None:
                return envelope
            if self._closed:
                return None

            waits = [w for w in (self.seconds_until_due(),) if w is not None]
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                waits.append(remaining)
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=min(waits) if waits else None)
            except asyncio.TimeoutError:
                pass

    async def wait_for_capacity(self, timeout: Optional[float] = None) -> bool:
        """Wait until an enqueue would not hit the in-flight bound.

        Returns:
            False if the timeout elapsed first.

        Raises:
            QueueClosedError: If the queue is (or becomes) closed.
        """
        try:
            await asyncio.wait_for(self._await_capacity(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _await_capacity(self) -> None:
        while True:
            self._changed.clear()
            if self._closed:
                raise QueueClosedError(self._session_id)
            if len(self._pending) < self._max_in_flight:
                return
            await self._changed.wait()

    async def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for every outbound envelope to settle.

        Returns:
            True if nothing is pending any more.
        """

        async def _settled() -> None:
            while self._pending and not self._closed:
                self._changed.clear()
                await self._changed.wait()

        try:
            await asyncio.wait_for(_settled(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return not self._pending

    def close(self, reason: str = "Session ended before acknowledgement") -> list[DeliveryFailure]:
        """Close the queue, failing and reporting every pending envelope.

        Idempotent. Waiters are woken.

        Returns:
            Failures produced by this call.
        """
        if self._closed:
            return []
        produced: list[DeliveryFailure] = []
        for sequence_number in list(self._pending):
            self._fail(self._outbound[sequence_number], reason)
            produced.append(self._failures[-1])
        self._closed = True
        self._notify_changed()
        log.info(
            "queue_closed",
            session_id=self._session_id,
            failed=len(produced),
            acked=self._acked_count,
        )
        return produced
