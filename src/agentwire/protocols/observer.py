"""Observer protocol for AgentWire.

The relay / notification layer subscribes to the session manager and
receives lifecycle changes and delivery failures. Observers are plain
callables or coroutine functions; a failing observer never affects the
transition that triggered it.

Usage:
    from agentwire.protocols import SessionObserverProtocol

    async def relay(notification) -> None:
        await channel.publish(notification.to_dict())

    assert isinstance(relay, SessionObserverProtocol)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Optional, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from agentwire.daemon.notifications import Notification


@runtime_checkable
class SessionObserverProtocol(Protocol):
    """Callable receiving session notifications.

    The return value is ignored. Coroutine results are scheduled on the
    running event loop and never awaited by the dispatcher.
    """

    def __call__(self, notification: "Notification") -> Optional[Union[Awaitable[Any], Any]]:
        ...
