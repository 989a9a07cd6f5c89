"""Unified event model.

The closed vocabulary every backend is translated into. Downstream
consumers (sessions, recorder, relay, UIs) only ever see these types.
Each event serializes to a plain dict keyed by ``type`` so it can be
written to a tape or shipped to a browser unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any


@dataclass
class Usage:
    """Token counters for one turn or a running session total."""
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += max(0, other.input_tokens)
        self.output_tokens += max(0, other.output_tokens)
        self.cached_tokens += max(0, other.cached_tokens)
        self.total_tokens += max(0, other.total_tokens)

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cached_tokens": self.cached_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Usage:
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens", 0) or 0),
            output_tokens=int(data.get("output_tokens", 0) or 0),
            cached_tokens=int(data.get("cached_tokens", 0) or 0),
            total_tokens=int(data.get("total_tokens", 0) or 0),
        )


@dataclass
class UnifiedEvent:
    """Base event."""
    event_type: str = ""


@dataclass
class SessionInit(UnifiedEvent):
    event_type: str = "SessionInit"
    session_id: str = ""
    model: str | None = None


@dataclass
class AssistantMessage(UnifiedEvent):
    event_type: str = "AssistantMessage"
    text: str = ""
    is_final: bool = True


@dataclass
class AssistantReasoning(UnifiedEvent):
    event_type: str = "AssistantReasoning"
    text: str = ""


@dataclass
class ToolStarted(UnifiedEvent):
    event_type: str = "ToolStarted"
    tool_id: str = ""
    tool_name: str = ""
    arguments: Any = field(default_factory=dict)


@dataclass
class ToolCompleted(UnifiedEvent):
    event_type: str = "ToolCompleted"
    tool_id: str = ""
    success: bool = True
    result: str | None = None
    error: str | None = None
    tool_name: str | None = None
    # Set by the session when no ToolStarted with this id is open.
    orphan: bool = False


@dataclass
class FileChanged(UnifiedEvent):
    """A file was created, modified, deleted or renamed by the agent."""
    event_type: str = "FileChanged"
    path: str = ""
    operation: str = ""  # "create", "modify", "delete", "rename"
    tool_id: str | None = None


@dataclass
class CommandOutput(UnifiedEvent):
    """Shell command output.

    While ``is_streaming`` is set, ``output`` is everything the command
    has printed so far, not a delta. Each streaming event supersedes the
    previous one with the same ``tool_id``.
    """
    event_type: str = "CommandOutput"
    command: str = ""
    output: str = ""
    exit_code: int | None = None
    is_streaming: bool = False
    tool_id: str | None = None


@dataclass
class TokenUsage(UnifiedEvent):
    event_type: str = "TokenUsage"
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0

    def as_usage(self) -> Usage:
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cached_tokens=self.cached_tokens,
            total_tokens=self.total_tokens,
        )


@dataclass
class TurnStarted(UnifiedEvent):
    event_type: str = "TurnStarted"


@dataclass
class TurnCompleted(UnifiedEvent):
    event_type: str = "TurnCompleted"
    usage: Usage | None = None


@dataclass
class Error(UnifiedEvent):
    event_type: str = "Error"
    message: str = ""
    is_fatal: bool = False
    payload: Any = None


@dataclass
class ControlRequest(UnifiedEvent):
    """Backend asks the user to approve a tool call."""
    event_type: str = "ControlRequest"
    request_id: str = ""
    tool_name: str = ""
    arguments: Any = field(default_factory=dict)


@dataclass
class Raw(UnifiedEvent):
    """Untranslatable backend data, preserved for audit."""
    event_type: str = "Raw"
    backend_payload: Any = None
    agent_type: str | None = None


_EVENT_MAP: dict[str, type[UnifiedEvent]] = {
    "SessionInit": SessionInit,
    "AssistantMessage": AssistantMessage,
    "AssistantReasoning": AssistantReasoning,
    "ToolStarted": ToolStarted,
    "ToolCompleted": ToolCompleted,
    "FileChanged": FileChanged,
    "CommandOutput": CommandOutput,
    "TokenUsage": TokenUsage,
    "TurnStarted": TurnStarted,
    "TurnCompleted": TurnCompleted,
    "Error": Error,
    "ControlRequest": ControlRequest,
    "Raw": Raw,
}

def is_terminal(event: UnifiedEvent) -> bool:
    """True for events that end a running turn."""
    if isinstance(event, TurnCompleted):
        return True
    return isinstance(event, Error) and event.is_fatal


def event_to_dict(event: UnifiedEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {"type": event.event_type}
    for f in fields(event):
        if f.name == "event_type":
            continue
        val = getattr(event, f.name)
        if val is None:
            continue
        if isinstance(val, Usage):
            val = val.to_dict()
        d[f.name] = val
    return d


def dict_to_event(data: dict[str, Any]) -> UnifiedEvent:
    """Rebuild a typed event from ``event_to_dict`` output.

    Unknown types come back as ``Raw`` so a tape written by a newer
    version still replays.
    """
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type)
    if cls is None:
        return Raw(backend_payload=data)
    valid_fields = {f.name for f in fields(cls)} - {"event_type"}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if cls is TurnCompleted and isinstance(filtered.get("usage"), dict):
        filtered["usage"] = Usage.from_dict(filtered["usage"])
    return cls(**filtered)
