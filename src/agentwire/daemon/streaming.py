"""Stream events produced from agent subprocess output.

This module defines the structured events a ProcessWrapper yields and the
line classifier that turns raw stdout lines into them. Agent CLIs speak
stream-json (one JSON object per line, discriminated by ``type``); plain
text output is equally valid and simply becomes Stdout events.

Event Types:
- STDOUT: Plain text (or assistant text) written by the agent
- STDERR: Diagnostic output
- TOOL_INVOCATION: The agent invoked a tool (name + arguments)
- COMPLETION: Final result; only ever yielded as the terminal event
- FAULT: The agent reported an error, or the process failed

Classification never raises: malformed JSON, non-object JSON and unknown
discriminators all fall back to a Stdout event carrying the raw line.

Usage:
    from agentwire.daemon.streaming import classify_line, encode_stream_event

    for event in classify_line('{"type": "result", "result": "done"}'):
        wire = encode_stream_event(event)
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, ClassVar, List, Optional, Union
import json


class StreamEventType(StrEnum):
    """Stream event kind constants, used as the ``kind`` discriminator."""

    STDOUT = "stdout"
    STDERR = "stderr"
    TOOL_INVOCATION = "tool_invocation"
    COMPLETION = "completion"
    FAULT = "fault"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, kw_only=True)
class _EventBase:
    """Fields shared by every event variant.

    Attributes:
        raw: Decoded JSON object the event came from, if any.
        exit_code: Process exit status; set on terminal events only.
        timestamp: ISO-formatted UTC timestamp.
    """

    kind: ClassVar[StreamEventType]

    raw: Optional[dict[str, Any]] = None
    exit_code: Optional[int] = None
    timestamp: str = field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        """True when this event carries the process exit status."""
        return self.exit_code is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict with a ``kind`` field."""
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class StdoutEvent(_EventBase):
    """Text written to stdout."""

    kind: ClassVar[StreamEventType] = StreamEventType.STDOUT
    text: str


@dataclass(frozen=True)
class StderrEvent(_EventBase):
    """Text written to stderr."""

    kind: ClassVar[StreamEventType] = StreamEventType.STDERR
    text: str


@dataclass(frozen=True)
class ToolInvocationEvent(_EventBase):
    """The agent invoked a tool."""

    kind: ClassVar[StreamEventType] = StreamEventType.TOOL_INVOCATION
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionEvent(_EventBase):
    """The agent finished; ``result`` is its final answer, if reported."""

    kind: ClassVar[StreamEventType] = StreamEventType.COMPLETION
    result: Optional[str] = None
    is_error: bool = False


@dataclass(frozen=True)
class FaultEvent(_EventBase):
    """The agent reported an error or the process ended abnormally."""

    kind: ClassVar[StreamEventType] = StreamEventType.FAULT
    detail: str


StreamEvent = Union[StdoutEvent, StderrEvent, ToolInvocationEvent, CompletionEvent, FaultEvent]

_EVENT_CLASSES: dict[str, type] = {
    StreamEventType.STDOUT.value: StdoutEvent,
    StreamEventType.STDERR.value: StderrEvent,
    StreamEventType.TOOL_INVOCATION.value: ToolInvocationEvent,
    StreamEventType.COMPLETION.value: CompletionEvent,
    StreamEventType.FAULT.value: FaultEvent,
}


def _tool_args(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if value is None:
        return {}
    return {"value": value}


def _error_detail(obj: dict[str, Any]) -> str:
    error = obj.get("error", obj.get("message"))
    if isinstance(error, dict):
        error = error.get("message") or json.dumps(error)
    return str(error) if error else "unknown error"


def _classify_assistant(line: str, obj: dict[str, Any]) -> List[StreamEvent]:
    message = obj.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return [StdoutEvent(text=content, raw=obj)]
    if not isinstance(content, list):
        return [StdoutEvent(text=line, raw=obj)]

    events: List[StreamEvent] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and isinstance(block.get("text"), str):
            events.append(StdoutEvent(text=block["text"], raw=obj))
        elif block_type == "tool_use":
            events.append(
                ToolInvocationEvent(
                    name=str(block.get("name", "")),
                    args=_tool_args(block.get("input")),
                    raw=obj,
                )
            )
    return events or [StdoutEvent(text=line, raw=obj)]


def classify_line(line: str) -> List[StreamEvent]:
    """Classify one stdout line into stream events.

    A stream-json ``assistant`` line may carry several content blocks, so
    the result is a list; every other shape yields exactly one event.

    Args:
        line: One line of stdout, without its trailing newline.

    Returns:
        Events in emission order, never empty.
    """
    try:
        obj = json.loads(line)
    except ValueError:
        return [StdoutEvent(text=line)]

    if not isinstance(obj, dict):
        return [StdoutEvent(text=line)]

    event_type = obj.get("type")
    if event_type == "assistant":
        return _classify_assistant(line, obj)
    if event_type == "tool_use":
        return [
            ToolInvocationEvent(
                name=str(obj.get("name", "")),
                args=_tool_args(obj.get("input", obj.get("args"))),
                raw=obj,
            )
        ]
    if event_type == "result":
        result = obj.get("result")
        subtype = str(obj.get("subtype", ""))
        return [
            CompletionEvent(
                result=result if result is None else str(result),
                is_error=bool(obj.get("is_error")) or subtype.startswith("error"),
                raw=obj,
            )
        ]
    if event_type == "error":
        return [FaultEvent(detail=_error_detail(obj), raw=obj)]
    return [StdoutEvent(text=line, raw=obj)]


def event_from_dict(data: dict[str, Any]) -> StreamEvent:
    """Rebuild an event from :meth:`to_dict` output.

    Raises:
        ValueError: If ``kind`` is missing or unknown.
    """
    kind = data.get("kind")
    cls = _EVENT_CLASSES.get(str(kind))
    if cls is None:
        valid_kinds = [k.value for k in StreamEventType]
        raise ValueError(f"Invalid event kind: '{kind}'. Valid kinds: {valid_kinds}")

    # Forward compatibility: ignore unknown fields
    known_fields = set(cls.__dataclass_fields__) - {"kind"}
    return cls(**{k: v for k, v in data.items() if k in known_fields})


def encode_stream_event(event: StreamEvent) -> bytes:
    """Encode an event as UTF-8 JSON, the outbound message payload."""
    return event.to_json().encode("utf-8")


def decode_stream_event(data: bytes) -> StreamEvent:
    """Decode an event produced by :func:`encode_stream_event`.

    Raises:
        ValueError: If the payload is not a JSON event object.
    """
    try:
        parsed = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to decode stream event: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Stream event payload must be a JSON object")
    return event_from_dict(parsed)
