"""AgentWire CLI Entry Point.

Local controller for the session runtime: runs an agent session in the
foreground, acting as a paired device that decrypts and acknowledges every
event the session emits.
"""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import List, Optional

import structlog
import typer

from agentwire.core.config import ConfigurationError, get_settings
from agentwire.core.exceptions import AgentWireError, LaunchError
from agentwire.core.keystore import generate_device_keypair
from agentwire.core.logging_setup import configure_logging
from agentwire.daemon.encryption import open_device_envelope, seal_device_envelope
from agentwire.daemon.message_queue import Direction, associated_data
from agentwire.daemon.process import probe_agent
from agentwire.daemon.session import SessionSpec
from agentwire.daemon.session_manager import SessionManager
from agentwire.daemon.state_machine import SessionState
from agentwire.daemon.streaming import (
    CompletionEvent,
    FaultEvent,
    StderrEvent,
    StdoutEvent,
    StreamEvent,
    ToolInvocationEvent,
    decode_stream_event,
)

log = structlog.get_logger()

CLI_DEVICE_ID = "cli"

app = typer.Typer(
    name="agentwire",
    help="AgentWire - supervise coding-agent sessions with encrypted, acknowledged delivery",
    no_args_is_help=True,
)


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file", is_eager=True
    ),
) -> None:
    """Load configuration and configure logging."""
    if config:
        if not config.exists():
            typer.echo(f"Error: Config file '{config}' not found", err=True)
            raise typer.Exit(code=1)
        try:
            get_settings(force_reload=True, system_config_path=config)
        except ConfigurationError as e:
            typer.echo(f"Error: {e.message}", err=True)
            raise typer.Exit(code=1)

    configure_logging(get_settings().logging)
    if config:
        log.info("config_loaded", path=str(config))


def _print_event(event: StreamEvent) -> None:
    if isinstance(event, StdoutEvent):
        typer.echo(event.text)
    elif isinstance(event, StderrEvent):
        typer.echo(event.text, err=True)
    elif isinstance(event, ToolInvocationEvent):
        typer.echo(f"[tool] {event.name} {json.dumps(event.args)}")
    elif isinstance(event, CompletionEvent):
        if event.result:
            typer.echo(event.result)
    elif isinstance(event, FaultEvent):
        typer.echo(f"[fault] {event.detail}", err=True)


async def _run_session(spec: SessionSpec, input_lines: List[str]) -> int:
    manager = SessionManager.from_settings(get_settings())
    session_id = manager.create_session(spec)
    session = manager.get_session_or_raise(session_id)
    session_public_key = session.public_key

    device_private, device_public = generate_device_keypair()
    await manager.pair_device(session_id, CLI_DEVICE_ID, device_public)

    try:
        try:
            await manager.start_session(session_id)
        except LaunchError as e:
            typer.echo(f"Error: {e.message}", err=True)
            return 1

        for sequence_number, line in enumerate(input_lines, start=1):
            envelope = seal_device_envelope(
                session_id,
                CLI_DEVICE_ID,
                line.encode("utf-8"),
                device_private,
                session_public_key,
                associated_data(session_id, Direction.INBOUND, sequence_number),
            )
            await manager.receive_inbound(session_id, sequence_number, envelope)
        if not session.is_terminal:
            await session.close_input()

        while True:
            envelope = await manager.next_delivery(session_id, timeout=0.5)
            if envelope is None:
                if session.is_closed:
                    await session.wait()
                    break
                continue
            payload = open_device_envelope(
                envelope.device_payloads[CLI_DEVICE_ID], device_private, session_public_key
            )
            _print_event(decode_stream_event(payload))
            manager.acknowledge(session_id, envelope.sequence_number)
    finally:
        await manager.shutdown()

    if session.state == SessionState.FAILED:
        typer.echo(f"Session failed: {session.failure_cause}", err=True)
        return 1
    return 0


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    command: Optional[str] = typer.Argument(None, help="Agent executable (default from config)"),
    args: Optional[List[str]] = typer.Argument(None, help="Agent arguments"),
    working_dir: Optional[Path] = typer.Option(None, "--cwd", help="Working directory for the agent"),
    input_lines: Optional[List[str]] = typer.Option(
        None, "--input", "-i", help="Line sent (encrypted) to the agent's stdin; repeatable"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Run timeout in seconds"),
) -> None:
    """Run one agent session in the foreground and print its events."""
    agent_config = get_settings().agent
    spec = SessionSpec.from_config(
        agent_config,
        command=command,
        working_dir=str(working_dir) if working_dir else None,
        run_timeout=timeout,
    )
    if command is not None:
        spec.args = list(args or [])

    try:
        exit_code = asyncio.run(_run_session(spec, list(input_lines or [])))
    except AgentWireError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)
    raise typer.Exit(code=exit_code)


@app.command()
def probe() -> None:
    """Report whether the configured agent executable is installed."""
    command = get_settings().agent.command
    result = asyncio.run(probe_agent(command))
    if not result.installed:
        typer.echo(f"{command}: not installed")
        raise typer.Exit(code=1)
    typer.echo(f"{command}: {result.path}")
    if result.version:
        typer.echo(f"version: {result.version}")


@app.command()
def keygen() -> None:
    """Print a fresh X25519 device keypair (base64)."""
    private_key, public_key = generate_device_keypair()
    typer.echo(f"private: {base64.b64encode(private_key).decode('ascii')}")
    typer.echo(f"public:  {base64.b64encode(public_key).decode('ascii')}")


if __name__ == "__main__":
    app()
