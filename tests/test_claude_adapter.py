"""Unit tests for Claude stream-json translation."""
from __future__ import annotations

import json
import logging

from conduit.engine.adapters.claude_adapter import ClaudeAdapter
from conduit.engine.events import (
    AssistantMessage,
    AssistantReasoning,
    ControlRequest,
    Error,
    Raw,
    SessionInit,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    Usage,
)
from conduit.engine.models import SessionContext
from conduit.engine.stream_decoder import RawEvent


def _line(data) -> RawEvent:
    return RawEvent(line_no=1, data=data)


def test_invocation_args_include_model_resume_and_approval() -> None:
    adapter = ClaudeAdapter(command="claude-test-binary")
    spec = adapter.build_invocation(SessionContext(
        working_dir="/tmp/w",
        prompt="hello",
        model="sonnet",
        resume_id="abc",
        tool_approval=True,
    ))
    assert spec.executable == "claude-test-binary"
    assert spec.args[:2] == ["-p", "--output-format"]
    assert "--input-format" in spec.args
    assert spec.args[spec.args.index("--model") + 1] == "sonnet"
    assert spec.args[spec.args.index("--resume") + 1] == "abc"
    assert spec.args[spec.args.index("--permission-prompt-tool") + 1] == "stdio"
    assert spec.cwd == "/tmp/w"
    assert spec.close_stdin is False
    first = json.loads(spec.stdin_payload.decode())
    assert first["type"] == "user"
    assert first["message"]["content"][0] == {"type": "text", "text": "hello"}


def test_plan_mode_and_images_reach_the_invocation() -> None:
    adapter = ClaudeAdapter(command="claude-test-binary")
    spec = adapter.build_invocation(SessionContext(
        working_dir="/tmp/w", prompt="look", images=["/tmp/w/shot.png"], plan_mode=True,
    ))
    assert spec.args[spec.args.index("--permission-mode") + 1] == "plan"
    content = json.loads(spec.stdin_payload.decode())["message"]["content"]
    assert content[1] == {"type": "image", "source": {"type": "file", "path": "/tmp/w/shot.png"}}

    plain = adapter.build_invocation(SessionContext(working_dir="/tmp/w", prompt="x"))
    assert "--permission-mode" not in plain.args
    follow_up = json.loads(adapter.format_input("and this", ["/tmp/b.png"]).decode())
    assert [block["type"] for block in follow_up["message"]["content"]] == ["text", "image"]


def test_unknown_model_is_passed_through_with_warning(caplog) -> None:
    adapter = ClaudeAdapter(command="claude-test-binary")
    with caplog.at_level(logging.WARNING):
        spec = adapter.build_invocation(SessionContext(
            working_dir="/tmp", prompt="x", model="claude-unknown-9",
        ))
    assert spec.args[spec.args.index("--model") + 1] == "claude-unknown-9"
    assert "not a known claude model" in caplog.text


def test_multi_block_assistant_message_explodes_in_order() -> None:
    adapter = ClaudeAdapter()
    events = adapter.translate_line(_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Let me look"},
            {"type": "tool_use", "id": "t1", "name": "Read", "input": {"path": "a"}},
        ]},
    }))
    assert events == [
        AssistantReasoning(text="hmm"),
        AssistantMessage(text="Let me look", is_final=True),
        ToolStarted(tool_id="t1", tool_name="Read", arguments={"path": "a"}),
    ]


def test_tool_result_maps_to_tool_completed() -> None:
    adapter = ClaudeAdapter()
    ok = adapter.translate({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "t1",
         "content": [{"type": "text", "text": "line1"}, {"type": "text", "text": "line2"}]},
    ]}})
    assert ok == ToolCompleted(tool_id="t1", success=True, result="line1\nline2")

    failed = adapter.translate({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "t2", "content": "denied", "is_error": True},
    ]}})
    assert failed == ToolCompleted(tool_id="t2", success=False, error="denied")


def test_result_usage() -> None:
    event = ClaudeAdapter().translate({
        "type": "result",
        "subtype": "success",
        "usage": {"input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 3},
    })
    assert event == TurnCompleted(usage=Usage(
        input_tokens=10, output_tokens=5, cached_tokens=3, total_tokens=15,
    ))


def test_error_result_is_fatal() -> None:
    event = ClaudeAdapter().translate({
        "type": "result", "subtype": "error_max_turns", "is_error": True,
    })
    assert isinstance(event, Error)
    assert event.is_fatal
    assert event.message == "error_max_turns"


def test_malformed_usage_becomes_non_fatal_error() -> None:
    data = {"type": "result", "usage": {"input_tokens": "lots"}}
    event = ClaudeAdapter().translate(data)
    assert isinstance(event, Error)
    assert not event.is_fatal
    assert event.payload == data


def test_control_request() -> None:
    event = ClaudeAdapter().translate({
        "type": "control_request",
        "request_id": "req-9",
        "request": {"subtype": "can_use_tool", "tool_name": "Bash", "input": {"command": "rm"}},
    })
    assert event == ControlRequest(
        request_id="req-9", tool_name="Bash", arguments={"command": "rm"},
    )


def test_control_response_format() -> None:
    adapter = ClaudeAdapter()
    allow = json.loads(adapter.format_control_response("req-1", True))
    assert allow["type"] == "control_response"
    assert allow["response"]["request_id"] == "req-1"
    assert allow["response"]["response"]["behavior"] == "allow"
    deny = json.loads(adapter.format_control_response("req-1", False))
    assert deny["response"]["response"]["behavior"] == "deny"


def test_init_and_stream_deltas() -> None:
    adapter = ClaudeAdapter()
    assert adapter.translate({
        "type": "system", "subtype": "init", "session_id": "s-1", "model": "opus",
    }) == SessionInit(session_id="s-1", model="opus")
    assert adapter.translate({"type": "stream_event", "event": {
        "type": "content_block_delta", "delta": {"type": "text_delta", "text": "par"},
    }}) == AssistantMessage(text="par", is_final=False)
    assert adapter.translate({"type": "stream_event", "event": {"type": "message_start"}}) is None


def test_diagnostic_line_becomes_raw() -> None:
    adapter = ClaudeAdapter()
    events = adapter.translate_line(RawEvent(line_no=4, diagnostic="Update available!"))
    assert len(events) == 1
    assert isinstance(events[0], Raw)
    assert events[0].backend_payload["diagnostic"] == "Update available!"
    assert events[0].agent_type == "claude"


def test_unknown_message_type_is_preserved() -> None:
    event = ClaudeAdapter().translate({"type": "brand_new", "x": 1})
    assert isinstance(event, Raw)
    assert event.backend_payload == {"type": "brand_new", "x": 1}


def test_exit_without_result() -> None:
    adapter = ClaudeAdapter()
    assert adapter.terminal_event_on_exit(0) == TurnCompleted(usage=None)
    err = adapter.terminal_event_on_exit(3, "boom\n")
    assert isinstance(err, Error)
    assert err.is_fatal
    assert "code 3" in err.message
    assert err.message.endswith("boom")
