"""OpenAI Codex CLI adapter.

Uses ``codex exec --json``, one process per turn. The prompt is passed
on stdin (``-`` argument) and stdin is closed right after. Follow-up
turns start a new process with ``resume <thread_id>``.

Codex emits thread/turn lifecycle events plus ``item.*`` events whose
``item.type`` says what happened (agent_message, reasoning,
command_execution, file_change, mcp_tool_call, web_search, error).
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ..events import (
    AssistantMessage,
    AssistantReasoning,
    CommandOutput,
    Error,
    FileChanged,
    SessionInit,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    UnifiedEvent,
    Usage,
)
from ..models import AdapterCapabilities, ProcessSpec, SessionContext
from .base import AgentAdapter

logger = logging.getLogger(__name__)

# Internal marker for the final output of a finished command, split off
# a completed command_execution item by explode().
_COMMAND_RESULT = "conduit.command_result"

_CHANGE_KINDS = {
    "add": "create",
    "create": "create",
    "update": "modify",
    "modify": "modify",
    "delete": "delete",
    "remove": "delete",
    "rename": "rename",
    "move": "rename",
}


class CodexAdapter(AgentAdapter):
    """Adapter for ``codex exec --json``."""

    DEFAULT_COMMAND = "codex"
    KNOWN_MODELS = (
        "gpt-5.3-codex",
        "gpt-5.2-codex",
        "gpt-5.1-codex",
        "gpt-5-codex",
        "gpt-5",
        "o3",
        "o4-mini",
    )

    @property
    def name(self) -> str:
        return "codex"

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_resume=True,
            supports_images=True,
            supports_plan_mode=False,
            supports_tool_approval=False,
            persistent_process=False,
        )

    def build_invocation(self, ctx: SessionContext) -> ProcessSpec:
        args = ["exec", "--json", "--skip-git-repo-check", "--full-auto"]
        args += ["-C", ctx.working_dir]
        model = self.resolve_model(ctx.model)
        if model:
            args += ["-m", model]
        for image in ctx.images:
            args += ["-i", image]
        args += self.extra_args
        if ctx.resume_id:
            args += ["resume", ctx.resume_id]
        args.append("-")

        return ProcessSpec(
            executable=self.command,
            args=args,
            env=self.env or None,
            cwd=ctx.working_dir,
            stdin_payload=ctx.prompt.encode("utf-8"),
            close_stdin=True,
        )

    def explode(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        if data.get("type") != "item.completed":
            return [data]
        item = data.get("item") or {}
        item_type = item.get("type")

        if item_type == "command_execution":
            return [{"type": _COMMAND_RESULT, "item": item}, data]

        if item_type == "file_change":
            changes = item.get("changes") or []
            if len(changes) <= 1:
                return [data]
            return [
                {**data, "item": {**item, "changes": [change]}}
                for change in changes
            ]
        return [data]

    def _translate(self, data: dict[str, Any]) -> UnifiedEvent | None:
        msg_type = data.get("type", "")

        if msg_type == "thread.started":
            return SessionInit(session_id=str(data.get("thread_id", "")))

        if msg_type == "turn.started":
            return self.drop(data, "turn start is emitted by the session")

        if msg_type == "turn.completed":
            return TurnCompleted(usage=self._usage(data.get("usage")))

        if msg_type == "turn.failed":
            error = data.get("error") or {}
            return Error(
                message=str(error.get("message", "turn failed")),
                is_fatal=True,
                payload=data,
            )

        if msg_type == "error":
            return Error(message=str(data.get("message", "")), payload=data)

        if msg_type == _COMMAND_RESULT:
            item = data["item"]
            return CommandOutput(
                command=str(item.get("command", "")),
                output=str(item.get("aggregated_output", "")),
                exit_code=item.get("exit_code"),
                is_streaming=False,
                tool_id=item.get("id"),
            )

        if msg_type.startswith("item."):
            return self._item(data, msg_type.split(".", 1)[1])

        return self.unknown(data)

    def _item(self, data: dict[str, Any], phase: str) -> UnifiedEvent | None:
        item = data.get("item") or {}
        item_type = item.get("type")
        item_id = str(item.get("id", ""))

        if item_type == "agent_message":
            text = str(item.get("text", ""))
            if phase == "completed":
                return AssistantMessage(text=text, is_final=True)
            if not text:
                return self.drop(data, "empty partial message")
            return AssistantMessage(text=text, is_final=False)

        if item_type == "reasoning":
            if phase != "completed":
                return self.drop(data, "partial reasoning, full text follows")
            return AssistantReasoning(text=str(item.get("text", "")))

        if item_type == "command_execution":
            command = str(item.get("command", ""))
            if phase == "started":
                return ToolStarted(
                    tool_id=item_id,
                    tool_name="shell",
                    arguments={"command": command},
                )
            if phase == "updated":
                return CommandOutput(
                    command=command,
                    output=str(item.get("aggregated_output", "")),
                    is_streaming=True,
                    tool_id=item_id,
                )
            exit_code = item.get("exit_code")
            success = item.get("status") != "failed" and exit_code in (0, None)
            output = str(item.get("aggregated_output", ""))
            return ToolCompleted(
                tool_id=item_id,
                success=success,
                result=output if success else None,
                error=None if success else (output or f"exit code {exit_code}"),
                tool_name="shell",
            )

        if item_type == "file_change":
            if phase != "completed":
                return self.drop(data, "file changes are reported on completion")
            changes = item.get("changes") or []
            if not changes:
                return self.drop(data, "file_change without changes")
            change = changes[0]
            kind = str(change.get("kind", ""))
            return FileChanged(
                path=str(change.get("path", "")),
                operation=_CHANGE_KINDS.get(kind, kind),
                tool_id=item_id or None,
            )

        if item_type == "mcp_tool_call":
            tool_name = f"{item.get('server', '')}.{item.get('tool', '')}".strip(".")
            if phase == "started":
                return ToolStarted(
                    tool_id=item_id,
                    tool_name=tool_name,
                    arguments=item.get("arguments") or {},
                )
            if phase == "updated":
                return self.drop(data, "mcp progress update")
            error = item.get("error")
            success = item.get("status") != "failed" and not error
            result = item.get("result")
            return ToolCompleted(
                tool_id=item_id,
                success=success,
                result=None if result is None else _as_text(result),
                error=_error_text(error) if error else None,
                tool_name=tool_name,
            )

        if item_type == "web_search":
            if phase == "started":
                return ToolStarted(
                    tool_id=item_id,
                    tool_name="web_search",
                    arguments={"query": item.get("query", "")},
                )
            if phase == "updated":
                return self.drop(data, "web search progress update")
            return ToolCompleted(
                tool_id=item_id,
                success=True,
                result=str(item.get("query", "")),
                tool_name="web_search",
            )

        if item_type == "error":
            return Error(message=str(item.get("message", "")), payload=data)

        return self.unknown(data)

    @staticmethod
    def _usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        input_tokens = int(raw.get("input_tokens", 0) or 0)
        output_tokens = int(raw.get("output_tokens", 0) or 0)
        return Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_tokens=int(raw.get("cached_input_tokens", 0) or 0),
            total_tokens=input_tokens + output_tokens,
        )


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)
