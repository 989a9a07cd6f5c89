"""Core data models for the orchestration layer.

Dataclasses and enums shared by adapters, the supervisor, sessions
and the repro subsystem. Kept in one module to avoid circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TurnState(str, Enum):
    """Per-session turn state. See lifecycle.py for transition rules."""
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOL = "executing_tool"
    DRAINING = "draining"

    @property
    def is_running(self) -> bool:
        return self is not TurnState.IDLE


class SessionLifecycle(str, Enum):
    LIVE = "live"
    REPLAYING = "replaying"
    TERMINATED = "terminated"


class ReproMode(str, Enum):
    """Environment/flag-level switch for recording and replay."""
    OFF = "off"
    RECORD = "record"
    REPLAY = "replay"
    REPLAY_THEN_LIVE = "replay-then-continue-live"

    @classmethod
    def parse(cls, value: str | None) -> ReproMode:
        if not value:
            return cls.OFF
        normalized = value.strip().lower().replace("_", "-")
        if normalized in {"replay-continue", "continue-live"}:
            return cls.REPLAY_THEN_LIVE
        return cls(normalized)

    @property
    def is_replay(self) -> bool:
        return self in (ReproMode.REPLAY, ReproMode.REPLAY_THEN_LIVE)


class AgentType(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


@dataclass
class AdapterCapabilities:
    """What a backend can do. Sessions and the orchestrator consult this
    instead of branching on the backend name."""
    supports_resume: bool = False
    supports_images: bool = False
    supports_plan_mode: bool = False
    supports_tool_approval: bool = False
    # True when one process serves many turns (follow-ups over stdin).
    persistent_process: bool = False


@dataclass
class SessionContext:
    """Everything an adapter needs to build one backend invocation."""
    working_dir: str
    prompt: str
    model: str | None = None
    resume_id: str | None = None
    images: list[str] = field(default_factory=list)
    plan_mode: bool = False
    tool_approval: bool = False


@dataclass
class ProcessSpec:
    """A fully resolved subprocess invocation."""
    executable: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    # Written to stdin right after spawn.
    stdin_payload: bytes | None = None
    # Close stdin after the initial payload (one-shot backends).
    close_stdin: bool = False

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]


@dataclass
class ToolInvocation:
    """An open tool call, keyed by tool_id."""
    tool_id: str
    tool_name: str
    arguments: Any = None
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class AgentInput:
    """Something the system sends to a backend (recorded on the tape)."""
    action: str  # "start", "input", "control_response", "stop"
    text: str = ""
    request_id: str | None = None
    allow: bool | None = None
    working_dir: str | None = None
    agent_type: str | None = None
    model: str | None = None
    resume_id: str | None = None
    images: list[str] = field(default_factory=list)
    plan_mode: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"action": self.action}
        for key in (
            "text", "request_id", "allow", "working_dir",
            "agent_type", "model", "resume_id",
        ):
            val = getattr(self, key)
            if val is None or (key == "text" and val == "" and self.action != "input"):
                continue
            d[key] = val
        if self.images:
            d["images"] = list(self.images)
        if self.plan_mode:
            d["plan_mode"] = True
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentInput:
        return cls(
            action=str(data.get("action", "")),
            text=str(data.get("text", "") or ""),
            request_id=data.get("request_id"),
            allow=data.get("allow"),
            working_dir=data.get("working_dir"),
            agent_type=data.get("agent_type"),
            model=data.get("model"),
            resume_id=data.get("resume_id"),
            images=[str(p) for p in data.get("images") or ()],
            plan_mode=bool(data.get("plan_mode", False)),
        )


def new_session_id() -> str:
    return str(uuid.uuid4())
