"""Gemini CLI adapter.

Runs ``gemini --output-format stream-json -p <prompt>``, one process
per turn. Follow-ups start a new process with ``--resume``.
"""
from __future__ import annotations

import logging
from typing import Any

from ..events import (
    AssistantMessage,
    Error,
    SessionInit,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    UnifiedEvent,
    Usage,
)
from ..models import AdapterCapabilities, ProcessSpec, SessionContext
from .base import AgentAdapter, text_of

logger = logging.getLogger(__name__)


class GeminiAdapter(AgentAdapter):
    """Adapter for the Gemini CLI stream-json output."""

    DEFAULT_COMMAND = "gemini"
    KNOWN_MODELS = (
        "gemini-3-pro-preview",
        "gemini-2.5-pro",
        "gemini-2.5-flash",
        "gemini-2.5-flash-lite",
    )

    @property
    def name(self) -> str:
        return "gemini"

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_resume=True,
            supports_images=False,
            supports_plan_mode=False,
            supports_tool_approval=False,
            persistent_process=False,
        )

    def build_invocation(self, ctx: SessionContext) -> ProcessSpec:
        args = ["--output-format", "stream-json", "--approval-mode", "yolo"]
        model = self.resolve_model(ctx.model)
        if model:
            args += ["-m", model]
        if ctx.resume_id:
            args += ["--resume", ctx.resume_id]
        args += self.extra_args
        args += ["-p", ctx.prompt]

        return ProcessSpec(
            executable=self.command,
            args=args,
            env=self.env or None,
            cwd=ctx.working_dir,
            close_stdin=True,
        )

    def _translate(self, data: dict[str, Any]) -> UnifiedEvent | None:
        msg_type = data.get("type")

        if msg_type == "init":
            return SessionInit(
                session_id=str(data.get("session_id", "")),
                model=data.get("model"),
            )

        if msg_type == "message":
            if data.get("role") != "assistant":
                return self.drop(data, f"{data.get('role')} message echo")
            return AssistantMessage(
                text=text_of(data.get("content")),
                is_final=not data.get("delta", False),
            )

        if msg_type == "tool_use":
            return ToolStarted(
                tool_id=str(data.get("tool_id", "")),
                tool_name=str(data.get("tool_name", "")),
                arguments=data.get("parameters") or {},
            )

        if msg_type == "tool_result":
            success = data.get("status") == "success"
            error = data.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            return ToolCompleted(
                tool_id=str(data.get("tool_id", "")),
                success=success,
                result=text_of(data.get("output")) if success else None,
                error=None if success else str(error or data.get("output") or "tool failed"),
            )

        if msg_type == "error":
            return Error(
                message=str(data.get("message", "")),
                is_fatal=False,
                payload=data,
            )

        if msg_type == "result":
            if data.get("status") not in (None, "success"):
                error = data.get("error") or {}
                message = error.get("message") if isinstance(error, dict) else error
                return Error(
                    message=str(message or data.get("status")),
                    is_fatal=True,
                    payload=data,
                )
            return TurnCompleted(usage=self._usage(data.get("stats")))

        return self.unknown(data)

    @staticmethod
    def _usage(stats: dict[str, Any] | None) -> Usage | None:
        if not stats:
            return None
        input_tokens = int(stats.get("input_tokens", 0) or 0)
        output_tokens = int(stats.get("output_tokens", 0) or 0)
        total = int(stats.get("total_tokens", 0) or 0) or input_tokens + output_tokens
        return Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_tokens=int(stats.get("cached", 0) or 0),
            total_tokens=total,
        )
