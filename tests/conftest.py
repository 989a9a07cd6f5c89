"""Shared helpers for live-path tests.

Live sessions run real subprocesses: ``sys.executable -c <script>``
printing canned Claude stream-json, wrapped by adapters that reuse the
Claude translation.
"""
from __future__ import annotations

import asyncio
import sys
from typing import Callable

import pytest

from conduit.bridge.event_bus import Subscription
from conduit.engine.adapters.claude_adapter import ClaudeAdapter
from conduit.engine.adapters.registry import AdapterRegistry
from conduit.engine.config import EngineConfig
from conduit.engine.events import UnifiedEvent, is_terminal
from conduit.engine.models import AdapterCapabilities, ProcessSpec, ReproMode, SessionContext
from conduit.engine.orchestrator import Orchestrator


# Persistent backend: one init, then one turn per stdin message.
#   "approve me" -> tool_use + control_request, finishes after the answer
#   "hang"       -> never finishes the turn
#   "crash"      -> exits with code 3
#   "read, die"  -> tool_use, then exits with code 1
#   anything     -> echo + result
PERSISTENT_SCRIPT = r'''
import json, sys

def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()

emit({"type": "system", "subtype": "init", "session_id": "backend-1", "model": "sonnet"})
for line in sys.stdin:
    if not line.strip():
        continue
    msg = json.loads(line)
    if msg.get("type") == "control_response":
        decision = msg["response"]["response"]["behavior"]
        emit({"type": "user", "message": {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "tool-1", "content": decision}]}})
        emit({"type": "result", "subtype": "success",
              "usage": {"input_tokens": 5, "output_tokens": 7}})
        continue
    text = msg["message"]["content"][0]["text"]
    if text == "approve me":
        emit({"type": "assistant", "message": {"content": [
            {"type": "tool_use", "id": "tool-1", "name": "Bash", "input": {"command": "ls"}}]}})
        emit({"type": "control_request", "request_id": "req-1", "request": {
            "subtype": "can_use_tool", "tool_name": "Bash", "input": {"command": "ls"}}})
        continue
    if text == "hang":
        continue
    if text == "read, die":
        emit({"type": "assistant", "message": {"content": [
            {"type": "tool_use", "id": "tool-9", "name": "Read", "input": {"file_path": "a.txt"}}]}})
        sys.exit(1)
    if text == "crash":
        sys.stderr.write("boom\n")
        sys.stderr.flush()
        sys.exit(3)
    emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "echo: " + text}]}})
    emit({"type": "result", "subtype": "success",
          "usage": {"input_tokens": 10, "output_tokens": 20}})
'''

# One-shot backend: prompt in argv, one turn, exit.
ONESHOT_SCRIPT = r'''
import json, sys

def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()

prompt = sys.argv[1]
emit({"type": "system", "subtype": "init", "session_id": "oneshot-1"})
print("warning: not json")
sys.stdout.flush()
emit({"type": "assistant", "message": {"content": [
    {"type": "text", "text": "working on " + prompt},
    {"type": "tool_use", "id": "t1", "name": "Read", "input": {"path": "a.txt"}},
]}})
emit({"type": "user", "message": {"content": [
    {"type": "tool_result", "tool_use_id": "t1", "content": "contents"}]}})
emit({"type": "result", "subtype": "success",
      "usage": {"input_tokens": 1, "output_tokens": 2}})
'''


class ScriptedClaudeAdapter(ClaudeAdapter):
    """Claude protocol served by a local Python script."""

    def __init__(self, script: str = PERSISTENT_SCRIPT, persistent: bool = True, **kwargs):
        super().__init__(command=sys.executable, **kwargs)
        self.script = script
        self.persistent = persistent
        self.invocations: list[SessionContext] = []

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_resume=True,
            supports_tool_approval=True,
            persistent_process=self.persistent,
        )

    def build_invocation(self, ctx: SessionContext) -> ProcessSpec:
        self.invocations.append(ctx)
        if self.persistent:
            spec = super().build_invocation(ctx)
            spec.executable = sys.executable
            spec.args = ["-c", self.script]
            return spec
        return ProcessSpec(
            executable=sys.executable,
            args=["-c", self.script, ctx.prompt],
            cwd=ctx.working_dir,
            close_stdin=True,
        )


class MissingBinaryAdapter(ClaudeAdapter):
    def build_invocation(self, ctx: SessionContext) -> ProcessSpec:
        return ProcessSpec(executable="/nonexistent/bin/agent-cli", cwd=ctx.working_dir)


def make_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register("fake", ScriptedClaudeAdapter())
    registry.register("oneshot", ScriptedClaudeAdapter(ONESHOT_SCRIPT, persistent=False))
    registry.register("missing", MissingBinaryAdapter())
    return registry


def make_config(data_dir, repro_mode: ReproMode = ReproMode.OFF, **kwargs) -> EngineConfig:
    kwargs.setdefault("terminate_grace_seconds", 2.0)
    return EngineConfig(
        data_dir=str(data_dir),
        default_agent="fake",
        repro_mode=repro_mode,
        **kwargs,
    )


def make_orchestrator(data_dir, repro_mode: ReproMode = ReproMode.OFF, **kwargs) -> Orchestrator:
    return Orchestrator.build(make_config(data_dir, repro_mode, **kwargs), make_registry())


async def collect_until(
    sub: Subscription,
    predicate: Callable[[UnifiedEvent], bool] = is_terminal,
    timeout: float = 15.0,
) -> list[UnifiedEvent]:
    """Events from ``sub`` up to and including the first matching one."""
    events: list[UnifiedEvent] = []

    async def _run() -> None:
        async for event in sub:
            events.append(event)
            if predicate(event):
                return

    await asyncio.wait_for(_run(), timeout)
    return events


async def collect_all(sub: Subscription, timeout: float = 15.0) -> list[UnifiedEvent]:
    """Events from ``sub`` until the stream ends."""
    events: list[UnifiedEvent] = []

    async def _run() -> None:
        async for event in sub:
            events.append(event)

    await asyncio.wait_for(_run(), timeout)
    return events


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path
