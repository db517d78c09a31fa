"""Observer notifications.

Notifications the session manager broadcasts to its observers (the relay /
notification layer), and the fire-and-forget dispatcher that delivers them.

Notification Types:
- LifecycleChange: a session changed state (previous_state is None on creation)
- DeliveryFailure: an envelope exhausted its retries or failed authentication

Dispatch never raises and never blocks the caller: sync observers run
inline inside a try/except, async observers are scheduled as tasks whose
failures are logged from a done-callback.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from agentwire.daemon.state_machine import SessionState

log = structlog.get_logger()


@dataclass(frozen=True)
class LifecycleChange:
    """A session state transition."""

    session_id: str
    previous_state: Optional[SessionState]
    new_state: SessionState
    cause: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "lifecycle_change",
            "session_id": self.session_id,
            "previous_state": str(self.previous_state) if self.previous_state else None,
            "new_state": str(self.new_state),
            "cause": self.cause,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class DeliveryFailure:
    """An envelope that will not be delivered."""

    session_id: str
    sequence_number: int
    reason: str
    direction: str = "outbound"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "delivery_failure",
            "session_id": self.session_id,
            "sequence_number": self.sequence_number,
            "reason": self.reason,
            "direction": self.direction,
            "timestamp": self.timestamp.isoformat(),
        }


Notification = Union[LifecycleChange, DeliveryFailure]
Observer = Callable[[Notification], Union[None, Awaitable[None]]]


def _log_async_failure(task: asyncio.Task, subscription_id: Optional[str]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning(
            "observer_error",
            subscription_id=subscription_id,
            error=str(exc),
            async_task=True,
        )


def notify(
    observer: Observer,
    notification: Notification,
    subscription_id: Optional[str] = None,
) -> bool:
    """Deliver one notification to one observer.

    Returns:
        False if a sync observer raised or an async observer could not be
        scheduled; the failure is logged, never propagated.
    """
    try:
        result = observer(notification)
        if inspect.isawaitable(result):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                if inspect.iscoroutine(result):
                    result.close()
                log.warning("async_observer_no_loop", subscription_id=subscription_id)
                return False
            task = asyncio.ensure_future(result)
            task.add_done_callback(partial(_log_async_failure, subscription_id=subscription_id))
        return True
    except Exception as e:
        log.warning(
            "observer_error",
            subscription_id=subscription_id,
            notification=type(notification).__name__,
            error=str(e),
        )
        return False


def broadcast(
    observers: Iterable[tuple[str, Observer]],
    notification: Notification,
) -> int:
    """Deliver a notification to every (subscription_id, observer) pair.

    Returns:
        Number of observers notified without error.
    """
    return sum(
        1 for sub_id, observer in observers if notify(observer, notification, sub_id)
    )
