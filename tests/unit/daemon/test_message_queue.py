"""Unit tests for the ordered, acknowledged MessageQueue.

Tests cover:
- Sequence numbering and ascending delivery
- Acknowledgement (idempotence, ordering rule)
- Backpressure at the in-flight bound
- Redelivery schedule and exhaustion (fake clock)
- Inbound reorder buffer, duplicates and authentication failures
- Waiting helpers, drain and close
"""

import asyncio
from dataclasses import replace
from unittest.mock import patch

import pytest

from agentwire.core.config import QueueConfig
from agentwire.core.exceptions import (
    AuthenticationError,
    BackpressureError,
    QueueClosedError,
)
from agentwire.core.keystore import generate_device_keypair
from agentwire.daemon.encryption import (
    EncryptionManager,
    open_device_envelope,
    seal_device_envelope,
)
from agentwire.daemon.message_queue import (
    AckStatus,
    Direction,
    MessageQueue,
    RetryPolicy,
    associated_data,
)


SESSION = "sess-q"


@pytest.fixture
def encryption() -> EncryptionManager:
    return EncryptionManager(SESSION)


@pytest.fixture
def queue(encryption: EncryptionManager, fake_clock) -> MessageQueue:
    return MessageQueue(
        SESSION,
        encryption,
        max_in_flight=4,
        retry_policy=RetryPolicy(max_attempts=3, ack_timeout=10.0, base_delay=1.0, max_delay=60.0),
        clock=fake_clock,
    )


def _inbound(encryption: EncryptionManager, seq: int, text: str):
    aad = associated_data(SESSION, Direction.INBOUND, seq)
    return encryption.encrypt(SESSION, text.encode("utf-8"), aad)


@pytest.mark.unit
class TestRetryPolicy:
    """Tests for the redelivery schedule."""

    def test_delay_doubles_then_caps(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
        assert [policy.delay_for(n) for n in range(1, 9)] == [1, 2, 4, 8, 16, 32, 60, 60]
        assert policy.delay_for(0) == 0.0
        assert policy.delay_for(10_000) == 60.0

    def test_from_config(self) -> None:
        policy = RetryPolicy.from_config(QueueConfig(max_attempts=7, ack_timeout=3))
        assert policy.max_attempts == 7
        assert policy.ack_timeout == 3

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"ack_timeout": -1},
            {"base_delay": -1},
            {"base_delay": 10, "max_delay": 5},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


@pytest.mark.unit
class TestOutbound:
    """Tests for enqueue, delivery and acknowledgement."""

    def test_sequence_numbers_start_at_one(self, queue: MessageQueue) -> None:
        assert [queue.enqueue_outbound(b"a"), queue.enqueue_outbound(b"b")] == [1, 2]

    def test_payload_encrypted_with_position(
        self, queue: MessageQueue, encryption: EncryptionManager
    ) -> None:
        seq = queue.enqueue_outbound(b"ping")
        envelope = queue.deliver_next()
        assert envelope is not None
        assert envelope.sequence_number == seq
        assert envelope.direction == Direction.OUTBOUND
        assert envelope.payload.associated_data == b"sess-q:outbound:1"
        assert encryption.decrypt(envelope.payload) == b"ping"

    def test_device_copies(self, queue: MessageQueue, encryption: EncryptionManager) -> None:
        private, public = generate_device_keypair()
        encryption.pair_device("phone", public)
        queue.enqueue_outbound(b"ping")

        envelope = queue.deliver_next()
        copy = envelope.device_payloads["phone"]
        assert open_device_envelope(copy, private, encryption.public_key) == b"ping"

    def test_delivery_in_ascending_order(self, queue: MessageQueue) -> None:
        for payload in (b"a", b"b", b"c"):
            queue.enqueue_outbound(payload)
        delivered = [queue.deliver_next().sequence_number for _ in range(3)]
        assert delivered == [1, 2, 3]
        assert queue.deliver_next() is None

    def test_deliver_next_returns_snapshot(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"a")
        envelope = queue.deliver_next()
        envelope.attempt_count = 99
        assert queue.get(1).attempt_count == 1

    def test_mark_acked(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"ping")
        queue.deliver_next()
        assert queue.mark_acked(1) is True
        assert queue.get(1).ack_status == AckStatus.ACKED
        assert queue.in_flight == 0

    def test_mark_acked_idempotent(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"ping")
        queue.deliver_next()
        queue.mark_acked(1)
        before = queue.stats()
        assert queue.mark_acked(1) is False
        assert queue.stats() == before

    def test_unknown_ack_ignored(self, queue: MessageQueue) -> None:
        assert queue.mark_acked(42) is False

    def test_ack_before_lower_delivery_ignored(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"a")
        queue.enqueue_outbound(b"b")
        assert queue.mark_acked(2) is False
        assert queue.get(2).ack_status == AckStatus.PENDING

    def test_acked_implies_lower_attempted(self, queue: MessageQueue) -> None:
        for payload in (b"a", b"b", b"c"):
            queue.enqueue_outbound(payload)
        queue.deliver_next()
        assert queue.mark_acked(3) is False
        assert queue.mark_acked(2) is True
        assert queue.get(1).attempt_count == 1
        assert queue.mark_acked(3) is True

    def test_mark_failed(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"a")
        assert queue.mark_failed(1, "relay rejected") is True
        assert queue.mark_failed(1, "again") is False
        assert queue.get(1).failure_reason == "relay rejected"
        assert queue.failures[0].reason == "relay rejected"


@pytest.mark.unit
class TestBackpressure:
    """Tests for the in-flight bound."""

    def test_third_enqueue_rejected_until_ack(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption, max_in_flight=2)
        assert queue.enqueue_outbound(b"1") == 1
        assert queue.enqueue_outbound(b"2") == 2

        with pytest.raises(BackpressureError) as exc_info:
            queue.enqueue_outbound(b"3")
        assert exc_info.value.limit == 2

        assert queue.mark_acked(1) is True
        assert queue.enqueue_outbound(b"3") == 3

    def test_invalid_bound(self, encryption: EncryptionManager) -> None:
        with pytest.raises(ValueError):
            MessageQueue(SESSION, encryption, max_in_flight=0)


@pytest.mark.unit
class TestRedelivery:
    """Tests for retry timing (fake clock)."""

    def test_redelivered_after_timeout_and_backoff(self, queue: MessageQueue, fake_clock) -> None:
        queue.enqueue_outbound(b"a")
        assert queue.deliver_next().attempt_count == 1

        fake_clock.advance(10.5)
        assert queue.deliver_next() is None
        assert queue.seconds_until_due() == pytest.approx(0.5)

        fake_clock.advance(0.5)
        second = queue.deliver_next()
        assert second.attempt_count == 2
        assert queue.stats().redeliveries == 1

        fake_clock.advance(11.5)
        assert queue.deliver_next() is None
        fake_clock.advance(0.5)
        assert queue.deliver_next().attempt_count == 3

    def test_fails_after_max_attempts(self, queue: MessageQueue, fake_clock) -> None:
        failures = []
        queue.set_failure_callback(failures.append)
        queue.enqueue_outbound(b"a")
        queue.deliver_next()
        fake_clock.advance(11)
        queue.deliver_next()
        fake_clock.advance(12)
        queue.deliver_next()

        fake_clock.advance(9.5)
        assert queue.deliver_next() is None
        assert queue.get(1).ack_status == AckStatus.PENDING

        fake_clock.advance(0.5)
        assert queue.deliver_next() is None
        assert queue.get(1).ack_status == AckStatus.FAILED
        assert len(failures) == 1
        assert failures[0].sequence_number == 1
        assert failures[0].reason == "No acknowledgement after 3 attempts"
        assert queue.in_flight == 0

    def test_later_envelope_served_while_earlier_waits(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"a")
        queue.deliver_next()
        queue.enqueue_outbound(b"b")
        assert queue.deliver_next().sequence_number == 2

    def test_callback_errors_contained(self, queue: MessageQueue) -> None:
        def broken(failure) -> None:
            raise RuntimeError("callback broke")

        queue.set_failure_callback(broken)
        queue.enqueue_outbound(b"a")
        assert queue.mark_failed(1, "x") is True
        assert len(queue.failures) == 1


@pytest.mark.unit
class TestRetention:
    """Tests for settled envelope retention."""

    def test_retention_bound(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption, max_in_flight=8, max_retained=2)
        for _ in range(3):
            seq = queue.enqueue_outbound(b"x")
            queue.deliver_next()
            queue.mark_acked(seq)
        assert queue.get(1) is None
        assert queue.get(3) is not None
        assert queue.stats().acked == 3

    def test_prune_settled(self, queue: MessageQueue, fake_clock) -> None:
        queue.enqueue_outbound(b"a")
        queue.deliver_next()
        queue.mark_acked(1)
        fake_clock.advance(30)
        queue.enqueue_outbound(b"b")
        queue.deliver_next()
        queue.mark_acked(2)

        assert queue.prune_settled(max_age=10) == 1
        assert queue.get(1) is None
        assert queue.get(2) is not None


@pytest.mark.unit
class TestInbound:
    """Tests for the inbound reorder buffer."""

    def test_in_order(self, queue: MessageQueue, encryption: EncryptionManager) -> None:
        assert queue.receive_inbound(1, _inbound(encryption, 1, "one")) == [b"one"]
        assert queue.receive_inbound(2, _inbound(encryption, 2, "two")) == [b"two"]

    def test_out_of_order_released_together(
        self, queue: MessageQueue, encryption: EncryptionManager
    ) -> None:
        assert queue.receive_inbound(2, _inbound(encryption, 2, "two")) == []
        assert queue.stats().inbound_buffered == 1
        assert queue.receive_inbound(1, _inbound(encryption, 1, "one")) == [b"one", b"two"]
        assert queue.stats().next_inbound_sequence == 3

    def test_duplicates_ignored(self, queue: MessageQueue, encryption: EncryptionManager) -> None:
        envelope = _inbound(encryption, 1, "one")
        buffered = _inbound(encryption, 3, "three")

        with patch.object(encryption, "decrypt", wraps=encryption.decrypt) as decrypt:
            assert queue.receive_inbound(1, envelope) == [b"one"]
            assert queue.receive_inbound(1, envelope) == []
            assert decrypt.call_count == 1

            assert queue.receive_inbound(3, buffered) == []
            assert queue.receive_inbound(3, buffered) == []
            assert decrypt.call_count == 2

    def test_resend_after_authentication_failure(
        self, queue: MessageQueue, encryption: EncryptionManager
    ) -> None:
        good = _inbound(encryption, 2, "two")
        tampered = replace(good, ciphertext=bytes([good.ciphertext[0] ^ 1]) + good.ciphertext[1:])

        with patch.object(encryption, "decrypt", wraps=encryption.decrypt) as decrypt:
            with pytest.raises(AuthenticationError):
                queue.receive_inbound(2, tampered)
            assert queue.receive_inbound(2, good) == []
            assert decrypt.call_count == 2

            assert queue.receive_inbound(1, _inbound(encryption, 1, "one")) == [b"one", b"two"]
            assert decrypt.call_count == 3

        assert len(queue.failures) == 1
        assert queue.stats().next_inbound_sequence == 3

    def test_device_sealed_inbound(self, queue: MessageQueue, encryption: EncryptionManager) -> None:
        private, public = generate_device_keypair()
        encryption.pair_device("phone", public)
        envelope = seal_device_envelope(
            SESSION,
            "phone",
            b"continue",
            private,
            encryption.public_key,
            associated_data(SESSION, Direction.INBOUND, 1),
        )
        assert queue.receive_inbound(1, envelope) == [b"continue"]

    def test_replayed_position_rejected(
        self, queue: MessageQueue, encryption: EncryptionManager
    ) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            queue.receive_inbound(1, _inbound(encryption, 2, "two"))
        assert exc_info.value.sequence_number == 1
        assert exc_info.value.session_id == SESSION
        assert queue.failures[0].direction == "inbound"

    def test_tampered_inbound_does_not_block_later(
        self, queue: MessageQueue, encryption: EncryptionManager
    ) -> None:
        assert queue.receive_inbound(2, _inbound(encryption, 2, "two")) == []

        good = _inbound(encryption, 1, "one")
        tampered = replace(good, ciphertext=bytes([good.ciphertext[0] ^ 1]) + good.ciphertext[1:])
        with pytest.raises(AuthenticationError):
            queue.receive_inbound(1, tampered)

        assert queue.release_inbound() == [b"two"]
        assert queue.stats().next_inbound_sequence == 3

    def test_beyond_window(self, queue: MessageQueue, encryption: EncryptionManager) -> None:
        with pytest.raises(BackpressureError):
            queue.receive_inbound(5, _inbound(encryption, 5, "five"))


@pytest.mark.unit
class TestWaitingAndClose:
    """Tests for async waiting helpers, drain and close."""

    @pytest.mark.asyncio
    async def test_next_delivery_wakes_on_enqueue(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption)
        waiter = asyncio.create_task(queue.next_delivery(timeout=1.0))
        await asyncio.sleep(0)
        queue.enqueue_outbound(b"ping")
        envelope = await waiter
        assert envelope.sequence_number == 1

    @pytest.mark.asyncio
    async def test_next_delivery_timeout(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption)
        assert await queue.next_delivery(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_next_delivery_returns_none_on_close(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption)
        waiter = asyncio.create_task(queue.next_delivery())
        await asyncio.sleep(0)
        queue.close()
        assert await asyncio.wait_for(waiter, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_wait_for_capacity(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption, max_in_flight=1)
        queue.enqueue_outbound(b"a")
        queue.deliver_next()
        assert await queue.wait_for_capacity(timeout=0.01) is False

        waiter = asyncio.create_task(queue.wait_for_capacity(timeout=1.0))
        await asyncio.sleep(0)
        queue.mark_acked(1)
        assert await waiter is True

    @pytest.mark.asyncio
    async def test_wait_for_capacity_closed(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption, max_in_flight=1)
        queue.enqueue_outbound(b"a")
        queue.close()
        with pytest.raises(QueueClosedError):
            await queue.wait_for_capacity(timeout=1.0)

    @pytest.mark.asyncio
    async def test_drain(self, encryption: EncryptionManager) -> None:
        queue = MessageQueue(SESSION, encryption)
        queue.enqueue_outbound(b"a")
        assert await queue.drain(0.01) is False

        queue.deliver_next()
        drainer = asyncio.create_task(queue.drain(1.0))
        await asyncio.sleep(0)
        queue.mark_acked(1)
        assert await drainer is True

    def test_close_fails_pending(self, queue: MessageQueue) -> None:
        queue.enqueue_outbound(b"a")
        queue.enqueue_outbound(b"b")
        queue.deliver_next()
        queue.mark_acked(1)

        produced = queue.close("Session ended before acknowledgement")
        assert [f.sequence_number for f in produced] == [2]
        assert queue.get(2).ack_status == AckStatus.FAILED
        assert queue.is_closed
        assert queue.close() == []

    def test_closed_queue_rejects(self, queue: MessageQueue, encryption: EncryptionManager) -> None:
        queue.close()
        with pytest.raises(QueueClosedError):
            queue.enqueue_outbound(b"a")
        with pytest.raises(QueueClosedError):
            queue.receive_inbound(1, _inbound(encryption, 1, "one"))
