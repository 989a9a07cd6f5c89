"""Claude Code CLI adapter.

Runs ``claude -p`` in stream-json mode as one long-lived process per
session: the first prompt, follow-up messages and tool-approval answers
all go over stdin as JSON lines, and the process keeps running between
turns.

Output message types handled:
    system/init     -> SessionInit
    assistant       -> AssistantMessage / AssistantReasoning / ToolStarted
                       (one per content block)
    user            -> ToolCompleted (tool_result blocks)
    stream_event    -> partial AssistantMessage / AssistantReasoning
    result          -> TurnCompleted, or fatal Error when is_error
    control_request -> ControlRequest (can_use_tool)
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ..events import (
    AssistantMessage,
    AssistantReasoning,
    ControlRequest,
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


class ClaudeAdapter(AgentAdapter):
    """Adapter for the Claude Code CLI (stream-json protocol)."""

    DEFAULT_COMMAND = "claude"
    KNOWN_MODELS = (
        "opus",
        "sonnet",
        "haiku",
        "claude-opus-4-6",
        "claude-opus-4-5",
        "claude-sonnet-4-5",
        "claude-sonnet-4-5-20250929",
        "claude-haiku-4-5",
    )

    @property
    def name(self) -> str:
        return "claude"

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_resume=True,
            supports_images=True,
            supports_plan_mode=True,
            supports_tool_approval=True,
            persistent_process=True,
        )

    def build_invocation(self, ctx: SessionContext) -> ProcessSpec:
        args = [
            "-p",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
        ]
        model = self.resolve_model(ctx.model)
        if model:
            args += ["--model", model]
        if ctx.resume_id:
            args += ["--resume", ctx.resume_id]
        if ctx.plan_mode:
            args += ["--permission-mode", "plan"]
        if ctx.tool_approval:
            args += ["--permission-prompt-tool", "stdio"]
        args += self.extra_args

        return ProcessSpec(
            executable=self.command,
            args=args,
            env=self.env or None,
            cwd=ctx.working_dir,
            stdin_payload=self._user_message(ctx.prompt, ctx.images),
            close_stdin=False,
        )

    def format_input(self, text: str, images: list[str] | None = None) -> bytes:
        return self._user_message(text, images)

    def format_control_response(self, request_id: str, allow: bool) -> bytes:
        if allow:
            decision: dict[str, Any] = {"behavior": "allow", "updatedInput": {}}
        else:
            decision = {"behavior": "deny", "message": "Denied by user"}
        payload = {
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": request_id,
                "response": decision,
            },
        }
        return (json.dumps(payload) + "\n").encode("utf-8")

    @staticmethod
    def _user_message(text: str, images: list[str] | None = None) -> bytes:
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        for path in images or []:
            content.append({
                "type": "image",
                "source": {"type": "file", "path": path},
            })
        payload = {
            "type": "user",
            "message": {"role": "user", "content": content},
        }
        return (json.dumps(payload) + "\n").encode("utf-8")

    def explode(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Split assistant/user messages into one message per content block."""
        if data.get("type") not in ("assistant", "user"):
            return [data]
        message = data.get("message")
        if not isinstance(message, dict):
            return [data]
        content = message.get("content")
        if not isinstance(content, list) or len(content) <= 1:
            return [data]
        parts = []
        for block in content:
            part = dict(data)
            part["message"] = {**message, "content": [block]}
            parts.append(part)
        return parts

    def _translate(self, data: dict[str, Any]) -> UnifiedEvent | None:
        msg_type = data.get("type")

        if msg_type == "system":
            if data.get("subtype") == "init":
                return SessionInit(
                    session_id=str(data.get("session_id", "")),
                    model=data.get("model"),
                )
            return self.drop(data, f"system subtype {data.get('subtype')!r} not surfaced")

        if msg_type == "assistant":
            block = self._single_block(data)
            if block is None:
                return self.drop(data, "assistant message without content")
            return self._assistant_block(data, block)

        if msg_type == "user":
            block = self._single_block(data)
            if block is None or block.get("type") != "tool_result":
                return self.drop(data, "user message echo")
            is_error = bool(block.get("is_error"))
            text = text_of(block.get("content"))
            return ToolCompleted(
                tool_id=str(block.get("tool_use_id", "")),
                success=not is_error,
                result=None if is_error else text,
                error=text if is_error else None,
            )

        if msg_type == "tool_use":
            # Bare tool_use lines, emitted by older CLI builds.
            return ToolStarted(
                tool_id=str(data.get("id") or data.get("tool_use_id") or ""),
                tool_name=str(data.get("name", "")),
                arguments=data.get("input") or {},
            )

        if msg_type == "stream_event":
            return self._stream_event(data)

        if msg_type == "result":
            if data.get("is_error") or str(data.get("subtype", "")).startswith("error"):
                message = data.get("result") or data.get("subtype") or "turn failed"
                return Error(message=str(message), is_fatal=True, payload=data)
            return TurnCompleted(usage=self._usage(data.get("usage")))

        if msg_type == "control_request":
            request = data.get("request") or {}
            if request.get("subtype") != "can_use_tool":
                return self.drop(
                    data, f"control subtype {request.get('subtype')!r} handled by CLI",
                )
            return ControlRequest(
                request_id=str(data.get("request_id", "")),
                tool_name=str(request.get("tool_name", "")),
                arguments=request.get("input") or {},
            )

        if msg_type == "control_response":
            return self.drop(data, "acknowledgement of our own control message")

        if msg_type == "error":
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            return Error(message=str(message or data.get("message", "")), payload=data)

        return self.unknown(data)

    @staticmethod
    def _single_block(data: dict[str, Any]) -> dict[str, Any] | None:
        content = (data.get("message") or {}).get("content")
        if isinstance(content, str):
            return {"type": "text", "text": content}
        if isinstance(content, list) and content and isinstance(content[0], dict):
            return content[0]
        return None

    def _assistant_block(
        self, data: dict[str, Any], block: dict[str, Any],
    ) -> UnifiedEvent | None:
        block_type = block.get("type")
        if block_type == "text":
            return AssistantMessage(text=str(block.get("text", "")), is_final=True)
        if block_type == "thinking":
            return AssistantReasoning(text=str(block.get("thinking", "")))
        if block_type == "redacted_thinking":
            return self.drop(data, "redacted thinking block")
        if block_type in ("tool_use", "server_tool_use"):
            return ToolStarted(
                tool_id=str(block.get("id", "")),
                tool_name=str(block.get("name", "")),
                arguments=block.get("input") or {},
            )
        return self.unknown(data)

    def _stream_event(self, data: dict[str, Any]) -> UnifiedEvent | None:
        event = data.get("event") or {}
        if event.get("type") != "content_block_delta":
            return self.drop(data, f"stream event {event.get('type')!r} carries no content")
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta":
            return AssistantMessage(text=str(delta.get("text", "")), is_final=False)
        if delta.get("type") == "thinking_delta":
            return AssistantReasoning(text=str(delta.get("thinking", "")))
        return self.drop(data, f"delta {delta.get('type')!r} is repeated in the full message")

    @staticmethod
    def _usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        input_tokens = int(raw.get("input_tokens", 0) or 0)
        output_tokens = int(raw.get("output_tokens", 0) or 0)
        cached = int(raw.get("cache_read_input_tokens", 0) or 0)
        return Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_tokens=cached,
            total_tokens=input_tokens + output_tokens,
        )
