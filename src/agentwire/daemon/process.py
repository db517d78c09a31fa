"""Agent subprocess wrapper.

Owns exactly one OS subprocess and turns its stdout/stderr into a lazy,
single-pass sequence of StreamEvents. The sequence ends after one terminal
event: a CompletionEvent when the process exits 0, otherwise a FaultEvent
carrying the exit code (or killing signal).

Lifecycle controls:
- start(): spawn the process in its own process group
- signal(kind): graceful stop, force kill, suspend or continue; a no-op
  once the process has exited
- shutdown(): SIGTERM, wait, SIGKILL, reap; idempotent
- async context manager: exit always shuts down and reaps, including on
  cancellation

Usage:
    async with ProcessWrapper("claude", ["--print", "hello"]) as proc:
        async for event in proc.events():
            print(event.to_dict())
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal as _signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, AsyncGenerator, Optional

import structlog

from agentwire.core.exceptions import LaunchError
from agentwire.daemon.streaming import (
    CompletionEvent,
    FaultEvent,
    StderrEvent,
    StreamEvent,
    classify_line,
)

log = structlog.get_logger()

DEFAULT_GRACEFUL_TIMEOUT = 5.0
DEFAULT_STREAM_LIMIT = 16 * 1024 * 1024
DEFAULT_LINE_BUFFER = 256

_STDOUT = "stdout"
_STDERR = "stderr"
_EOF = object()


class SignalKind(StrEnum):
    """Control signals a session may send to its agent."""

    GRACEFUL = "graceful"
    KILL = "kill"
    SUSPEND = "suspend"
    CONTINUE = "continue"


SIGNALS: dict[SignalKind, _signal.Signals] = {
    SignalKind.GRACEFUL: _signal.SIGTERM,
    SignalKind.KILL: _signal.SIGKILL,
    SignalKind.SUSPEND: _signal.SIGSTOP,
    SignalKind.CONTINUE: _signal.SIGCONT,
}


@dataclass
class ProcessHandle:
    """One live (or finished) subprocess.

    Attributes:
        pid: OS process id.
        command: Executable that was launched.
        args: Arguments passed to it.
        working_dir: Working directory, None for the parent's.
        started_at: Spawn time (UTC).
        exit_code: Exit status, None while running. Negative values are
            the number of the killing signal.
        ended_at: Exit time (UTC), None while running.
    """

    pid: int
    command: str
    args: list[str]
    working_dir: Optional[str]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exit_code: Optional[int] = None
    ended_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        """True until the process has been reaped."""
        return self.exit_code is None


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of probing for an agent executable."""

    installed: bool
    path: Optional[str] = None
    version: Optional[str] = None


def describe_exit(exit_code: int) -> str:
    """Human-readable cause for a non-zero exit status."""
    if exit_code < 0:
        try:
            name = _signal.Signals(-exit_code).name
        except ValueError:
            name = str(-exit_code)
        return f"Process killed by signal {name}"
    return f"Process exited with code {exit_code}"


class ProcessWrapper:
    """Supervises one agent subprocess.

    Output lines are pumped into a bounded in-memory buffer, so a consumer
    that stops iterating (a paused session) never loses events; they are
    yielded once iteration continues. While the buffer is full the pumps
    stop reading and the agent blocks on its own pipe.
    """

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        working_dir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        run_timeout: Optional[float] = None,
        graceful_timeout: float = DEFAULT_GRACEFUL_TIMEOUT,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
        line_buffer: int = DEFAULT_LINE_BUFFER,
    ) -> None:
        """Initialize the wrapper. Nothing is spawned until start().

        Args:
            command: Executable name or path.
            args: Command-line arguments.
            working_dir: Working directory for the process.
            env: Variables merged over the parent environment.
            run_timeout: Seconds after which a graceful stop is sent.
            graceful_timeout: Seconds between SIGTERM and SIGKILL.
            stream_limit: Maximum bytes in one output line.
            line_buffer: Maximum output lines held before reading pauses.
        """
        self._command = command
        self._args = list(args or [])
        self._working_dir = working_dir
        self._env = dict(env or {})
        self._run_timeout = run_timeout
        self._graceful_timeout = graceful_timeout
        self._stream_limit = stream_limit

        self._process: Optional[asyncio.subprocess.Process] = None
        self._handle: Optional[ProcessHandle] = None
        self._lines: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=line_buffer)
        self._closed_streams = 0
        self._pumps: list[asyncio.Task[None]] = []
        self._reaper: Optional[asyncio.Task[None]] = None
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._exited = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()
        self._events_claimed = False
        self._suspended = False
        self.timed_out = False

    @property
    def handle(self) -> Optional[ProcessHandle]:
        """Handle of the spawned process, None before start()."""
        return self._handle

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    @property
    def exit_code(self) -> Optional[int]:
        return self._handle.exit_code if self._handle else None

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def is_suspended(self) -> bool:
        return self._suspended

    async def start(self) -> ProcessHandle:
        """Spawn the subprocess.

        Returns:
            ProcessHandle for the new process.

        Raises:
            LaunchError: If the executable cannot be spawned.
            RuntimeError: If the wrapper was already started.
        """
        if self._process is not None:
            raise RuntimeError("Process already started")

        try:
            self._process = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                cwd=self._working_dir,
                env={**os.environ, **self._env},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._stream_limit,
                start_new_session=True,
            )
        except OSError as e:
            log.warning("process_launch_failed", command=self._command, error=str(e))
            raise LaunchError(self._command, e.strerror or str(e)) from e

        self._handle = ProcessHandle(
            pid=self._process.pid,
            command=self._command,
            args=list(self._args),
            working_dir=self._working_dir,
        )

        assert self._process.stdout is not None and self._process.stderr is not None
        self._pumps = [
            asyncio.create_task(self._pump(self._process.stdout, _STDOUT)),
            asyncio.create_task(self._pump(self._process.stderr, _STDERR)),
        ]
        self._reaper = asyncio.create_task(self._reap())
        if self._run_timeout is not None:
            self._watchdog = asyncio.create_task(self._enforce_run_timeout())

        log.info(
            "process_started",
            pid=self._handle.pid,
            command=self._command,
            working_dir=self._working_dir,
        )
        return self._handle

    async def _pump(self, stream: asyncio.StreamReader, source: str) -> None:
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError as e:
                    # Line exceeded stream_limit; the reader has discarded it
                    log.warning("process_line_too_long", pid=self.pid, source=source, error=str(e))
                    continue
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if text.strip():
                    await self._lines.put((source, text))
        except Exception as e:
            log.warning("process_stream_read_failed", pid=self.pid, source=source, error=str(e))
        finally:
            self._closed_streams += 1
            try:
                self._lines.put_nowait((source, _EOF))
            except asyncio.QueueFull:
                # Consumer is behind; it sees _closed_streams once the buffer empties
                pass

    async def _reap(self) -> None:
        assert self._process is not None and self._handle is not None
        exit_code = await self._process.wait()
        self._handle.exit_code = exit_code
        self._handle.ended_at = datetime.now(timezone.utc)
        self._suspended = False
        self._exited.set()
        log.info("process_exited", pid=self._handle.pid, exit_code=exit_code)

    async def _enforce_run_timeout(self) -> None:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self._run_timeout)
            return
        except asyncio.TimeoutError:
            pass

        self.timed_out = True
        log.warning("process_run_timeout", pid=self.pid, run_timeout=self._run_timeout)
        self._request_stop()
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self._graceful_timeout)
        except asyncio.TimeoutError:
            self.signal(SignalKind.KILL)

    def _request_stop(self) -> None:
        self.signal(SignalKind.GRACEFUL)
        # A stopped process only acts on SIGTERM once continued
        if self._suspended:
            self.signal(SignalKind.CONTINUE)

    def events(self) -> AsyncGenerator[StreamEvent, None]:
        """Return the process's event sequence.

        The sequence is single-pass: it may be requested once per wrapper.
        It ends after yielding a terminal CompletionEvent or FaultEvent.

        Raises:
            RuntimeError: If the process was not started or the sequence
                was already requested.
        """
        if self._process is None:
            raise RuntimeError("Process not started")
        if self._events_claimed:
            raise RuntimeError("Event sequence already consumed")
        self._events_claimed = True
        return self._iterate_events()

    async def _iterate_events(self) -> AsyncGenerator[StreamEvent, None]:
        last_result: Optional[CompletionEvent] = None

        while not (self._closed_streams == len(self._pumps) and self._lines.empty()):
            source, item = await self._lines.get()
            if item is _EOF:
                continue
            if source == _STDERR:
                yield StderrEvent(text=item)
                continue
            for event in classify_line(item):
                if isinstance(event, CompletionEvent):
                    # Only the terminal event may complete the sequence
                    last_result = event
                    continue
                yield event

        exit_code = await self.wait()
        yield self._terminal_event(exit_code, last_result)

    @staticmethod
    def _terminal_event(
        exit_code: int, last_result: Optional[CompletionEvent]
    ) -> StreamEvent:
        raw = last_result.raw if last_result else None
        if exit_code == 0:
            return CompletionEvent(
                result=last_result.result if last_result else None,
                is_error=last_result.is_error if last_result else False,
                raw=raw,
                exit_code=0,
            )

        detail = describe_exit(exit_code)
        if last_result is not None and last_result.is_error and last_result.result:
            detail = f"{detail}: {last_result.result}"
        return FaultEvent(detail=detail, raw=raw, exit_code=exit_code)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        if self._process is None:
            raise RuntimeError("Process not started")
        await self._exited.wait()
        assert self._handle is not None and self._handle.exit_code is not None
        return self._handle.exit_code

    def signal(self, kind: SignalKind) -> bool:
        """Send a control signal to the process group.

        Returns:
            True if the signal was delivered, False if the process is not
            running (never started or already exited).
        """
        if self._process is None or self._exited.is_set() or self._process.returncode is not None:
            log.debug("process_signal_skipped", pid=self.pid, signal=kind.value)
            return False

        try:
            os.killpg(self._process.pid, SIGNALS[kind])
        except ProcessLookupError:
            log.debug("process_signal_skipped", pid=self.pid, signal=kind.value)
            return False

        if kind == SignalKind.SUSPEND:
            self._suspended = True
        elif kind == SignalKind.CONTINUE:
            self._suspended = False
        log.info("process_signaled", pid=self.pid, signal=kind.value)
        return True

    async def write_line(self, text: str) -> bool:
        """Write one line to the process's stdin.

        Returns:
            False if stdin is closed or the process has exited.
        """
        stdin = self._process.stdin if self._process else None
        if stdin is None or stdin.is_closing() or self._exited.is_set():
            return False
        try:
            stdin.write(text.encode("utf-8") + b"\n")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            log.warning("process_stdin_write_failed", pid=self.pid, error=str(e))
            return False
        return True

    async def close_stdin(self) -> None:
        """Close the process's stdin, signalling end of input."""
        stdin = self._process.stdin if self._process else None
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            log.debug("process_stdin_close_failed", pid=self.pid, error=str(e))

    async def shutdown(self, graceful_timeout: Optional[float] = None) -> Optional[int]:
        """Stop and reap the process.

        Sends SIGTERM, waits up to ``graceful_timeout`` seconds, then sends
        SIGKILL. Safe to call repeatedly and after the process has exited.

        Returns:
            Exit code, or None if the process was never started.
        """
        if self._process is None:
            return None
        timeout = self._graceful_timeout if graceful_timeout is None else graceful_timeout

        async with self._shutdown_lock:
            if not self._exited.is_set():
                self._request_stop()
                try:
                    await asyncio.wait_for(self._exited.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    log.warning("process_kill_after_timeout", pid=self.pid, timeout=timeout)
                    self.signal(SignalKind.KILL)
                    await self._exited.wait()
                except asyncio.CancelledError:
                    self.signal(SignalKind.KILL)
                    raise

            await self._stop_tasks(timeout)

        return self.exit_code

    async def _stop_tasks(self, timeout: float) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
        pending = [task for task in self._pumps if not task.done()]
        if pending:
            # Pipes may stay open in grandchildren after the agent exits
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

    async def __aenter__(self) -> "ProcessWrapper":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.shutdown()


async def probe_agent(command: str = "claude", timeout: float = 5.0) -> ProbeResult:
    """Check whether an agent executable is installed.

    Args:
        command: Executable name or path.
        timeout: Seconds to wait for ``--version``.

    Returns:
        ProbeResult with the resolved path and version output, if any.
    """
    path = shutil.which(command)
    if path is None:
        return ProbeResult(installed=False)

    try:
        proc = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log.warning("agent_probe_failed", command=command, error=str(e))
        return ProbeResult(installed=False, path=path)

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        log.warning("agent_probe_timeout", command=command, timeout=timeout)
        return ProbeResult(installed=True, path=path)

    version = stdout.decode("utf-8", errors="replace").strip() if proc.returncode == 0 else ""
    return ProbeResult(installed=True, path=path, version=version or None)
