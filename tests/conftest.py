"""
AgentWire Test Configuration

Shared pytest fixtures and configuration for all test types.
"""

import asyncio
import sys
import textwrap
from typing import Any, Generator, Optional

import pytest

from agentwire.core.config import AgentConfig, QueueConfig, reset_settings
from agentwire.core.exceptions import LaunchError
from agentwire.daemon.process import SignalKind
from agentwire.daemon.session import SessionSpec


# Configure pytest collection
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "subprocess: Tests that spawn real child processes")


@pytest.fixture(autouse=True)
def _reset_settings_singleton() -> Generator[None, None, None]:
    """Keep the settings singleton from leaking between tests."""
    reset_settings()
    yield
    reset_settings()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced clock for queue timing tests."""
    return FakeClock()


@pytest.fixture
def python_script():
    """Build ``(command, args)`` running an inline Python script."""

    def _build(source: str) -> tuple[str, list[str]]:
        return sys.executable, ["-u", "-c", textwrap.dedent(source)]

    return _build


@pytest.fixture
def script_spec(python_script):
    """Build a SessionSpec running an inline Python script."""

    def _build(source: str, **kwargs: Any) -> SessionSpec:
        command, args = python_script(source)
        return SessionSpec(command=command, args=args, **kwargs)

    return _build


@pytest.fixture
def fast_queue_config() -> QueueConfig:
    """Queue settings with short timeouts for session tests."""
    return QueueConfig(
        max_in_flight=8,
        max_attempts=3,
        ack_timeout=0.05,
        base_delay=0.01,
        max_delay=0.05,
        drain_timeout=0.1,
    )


@pytest.fixture
def fast_agent_config() -> AgentConfig:
    """Agent settings with a short graceful timeout."""
    return AgentConfig(graceful_timeout=1.0)


class FakeProcess:
    """Scripted stand-in for ProcessWrapper.

    Tests push StreamEvents (or an exception to raise) onto ``feed``; the
    event sequence ends after the first terminal event.
    """

    def __init__(self, launch_error: Optional[LaunchError] = None, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.launch_error = launch_error
        self.feed: asyncio.Queue = asyncio.Queue()
        self.signals: list[SignalKind] = []
        self.lines: list[str] = []
        self.stdin_closed = False
        self.shutdown_called = False
        self.timed_out = False
        self.handle = None
        self.exit_code = 0
        self.events_closed = False
        self._exited = asyncio.Event()

    @property
    def pid(self) -> int:
        return 4242

    async def start(self) -> None:
        if self.launch_error is not None:
            raise self.launch_error

    def events(self):
        return self._iterate()

    async def _iterate(self):
        try:
            while True:
                item = await self.feed.get()
                if isinstance(item, BaseException):
                    raise item
                if item.is_terminal:
                    self._exited.set()
                    yield item
                    return
                yield item
        finally:
            self.events_closed = True

    def signal(self, kind: SignalKind) -> bool:
        if self._exited.is_set():
            return False
        self.signals.append(kind)
        if kind == SignalKind.KILL:
            self._exited.set()
        return True

    def mark_exited(self, exit_code: int = 0) -> None:
        """Simulate the agent exiting without a terminal event being read yet."""
        self.exit_code = exit_code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.exit_code

    async def write_line(self, text: str) -> bool:
        self.lines.append(text)
        return True

    async def close_stdin(self) -> None:
        self.stdin_closed = True

    async def shutdown(self, graceful_timeout: Optional[float] = None) -> int:
        self.shutdown_called = True
        self._exited.set()
        return self.exit_code


@pytest.fixture
def fake_factory():
    """Process factory recording every FakeProcess it builds.

    Set ``fake_factory.launch_error`` to make the next start() fail.
    """
    created: list[FakeProcess] = []

    def factory(**kwargs: Any) -> FakeProcess:
        process = FakeProcess(launch_error=factory.launch_error, **kwargs)
        created.append(process)
        return process

    factory.created = created  # type: ignore[attr-defined]
    factory.launch_error = None  # type: ignore[attr-defined]
    return factory
