"""Turn state machine tests.

Sessions here are driven through the replay entry points, which run
the same state/apply path as live output without a subprocess.
"""
from __future__ import annotations

import pytest

from conduit.bridge.event_bus import EventHub
from conduit.engine.adapters.claude_adapter import ClaudeAdapter
from conduit.engine.errors import SessionNotRunningError
from conduit.engine.events import (
    AssistantMessage,
    CommandOutput,
    ControlRequest,
    Error,
    SessionInit,
    TokenUsage,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    Usage,
)
from conduit.engine.models import AgentInput, SessionLifecycle, TurnState
from conduit.engine.session import AgentSession


def _session(hub: EventHub, **kwargs) -> AgentSession:
    session = AgentSession(
        "sess-state",
        "claude",
        ClaudeAdapter(),
        "/tmp",
        supervisor=None,
        hub=hub,
        lifecycle=SessionLifecycle.REPLAYING,
        **kwargs,
    )
    session.begin()
    return session


def _drain(sub) -> list:
    events = []
    while True:
        event = sub.get_nowait()
        if event is None:
            return events
        events.append(event)


@pytest.mark.asyncio
async def test_multiple_open_tools_and_orphan_completion() -> None:
    hub = EventHub()
    session = _session(hub)
    sub = hub.subscribe(session.session_id)

    await session.replay_input(AgentInput(action="start", text="go"))
    assert session.state is TurnState.AWAITING_MODEL

    await session.replay_event(ToolStarted(tool_id="a", tool_name="Read"))
    await session.replay_event(ToolStarted(tool_id="b", tool_name="Grep"))
    assert session.state is TurnState.EXECUTING_TOOL
    assert set(session.open_tools) == {"a", "b"}

    await session.replay_event(ToolCompleted(tool_id="a"))
    assert session.state is TurnState.EXECUTING_TOOL
    await session.replay_event(ToolCompleted(tool_id="zzz"))
    assert session.state is TurnState.EXECUTING_TOOL
    await session.replay_event(ToolCompleted(tool_id="b"))
    assert session.state is TurnState.AWAITING_MODEL
    assert session.open_tools == {}

    events = _drain(sub)
    completed = [e for e in events if isinstance(e, ToolCompleted)]
    assert [(e.tool_id, e.orphan, e.tool_name) for e in completed] == [
        ("a", False, "Read"),
        ("zzz", True, None),
        ("b", False, "Grep"),
    ]
    await session.shutdown()


@pytest.mark.asyncio
async def test_terminal_event_clears_open_tools_and_controls() -> None:
    hub = EventHub()
    session = _session(hub)
    await session.replay_input(AgentInput(action="start", text="go"))
    await session.replay_event(ToolStarted(tool_id="a", tool_name="Bash"))
    await session.replay_event(ControlRequest(request_id="r1", tool_name="Bash"))
    assert "r1" in session.pending_controls

    await session.replay_event(Error(message="backend died", is_fatal=True))
    assert session.state is TurnState.IDLE
    assert session.open_tools == {}
    assert session.pending_controls == {}
    await session.shutdown()


@pytest.mark.asyncio
async def test_events_while_idle_do_not_start_a_turn() -> None:
    hub = EventHub()
    session = _session(hub)
    sub = hub.subscribe(session.session_id)
    await session.replay_event(AssistantMessage(text="late chatter"))
    await session.replay_event(ToolStarted(tool_id="x"))
    assert session.state is TurnState.IDLE
    assert [type(e) for e in _drain(sub)] == [AssistantMessage, ToolStarted]
    await session.shutdown()


@pytest.mark.asyncio
async def test_duplicate_session_init_is_published_once() -> None:
    hub = EventHub()
    session = _session(hub, model="sonnet")
    sub = hub.subscribe(session.session_id)
    await session.replay_event(SessionInit(session_id="backend-1"))
    await session.replay_event(SessionInit(session_id="backend-1"))
    await session.replay_event(SessionInit(session_id="backend-2", model="opus"))

    inits = _drain(sub)
    assert inits == [
        SessionInit(session_id="backend-1", model="sonnet"),
        SessionInit(session_id="backend-2", model="opus"),
    ]
    assert session.agent_session_id == "backend-2"
    assert session.model == "opus"
    await session.shutdown()


@pytest.mark.asyncio
async def test_usage_accumulates_across_turns() -> None:
    hub = EventHub()
    session = _session(hub)
    for tokens in (10, 25):
        await session.replay_input(AgentInput(action="input", text="again"))
        await session.replay_event(TokenUsage(input_tokens=999))
        await session.replay_event(TurnCompleted(usage=Usage(
            input_tokens=tokens, output_tokens=1, total_tokens=tokens + 1,
        )))
    assert session.turn_count == 2
    assert session.usage == Usage(input_tokens=35, output_tokens=2, total_tokens=37)
    assert session.last_turn_usage.input_tokens == 25
    await session.shutdown()


@pytest.mark.asyncio
async def test_streaming_command_output_is_coalesced_in_log() -> None:
    hub = EventHub()
    session = _session(hub)
    sub = hub.subscribe(session.session_id)
    await session.replay_input(AgentInput(action="start", text="build"))
    await session.replay_event(CommandOutput(command="make", output="a\n", is_streaming=True, tool_id="c1"))
    await session.replay_event(CommandOutput(command="make", output="a\nb\n", is_streaming=True, tool_id="c1"))
    await session.replay_event(CommandOutput(command="make", output="a\nb\n", exit_code=0, tool_id="c1"))

    outputs = [e for e in session.event_log if isinstance(e, CommandOutput)]
    assert [(e.output, e.is_streaming) for e in outputs] == [
        ("a\nb\n", True),
        ("a\nb\n", False),
    ]
    assert len(_drain(sub)) == 3
    await session.shutdown()


@pytest.mark.asyncio
async def test_streaming_command_output_replaces_the_live_snapshot() -> None:
    hub = EventHub()
    session = _session(hub)
    await session.replay_input(AgentInput(action="start", text="poll"))
    for _ in range(3):
        await session.replay_event(CommandOutput(command="tail", output="ok\n", is_streaming=True, tool_id="c1"))
    await session.replay_event(CommandOutput(command="tail", output="reset\n", is_streaming=True, tool_id="c1"))

    outputs = [e for e in session.event_log if isinstance(e, CommandOutput)]
    assert [e.output for e in outputs] == ["reset\n"]
    await session.shutdown()


@pytest.mark.asyncio
async def test_replayed_stop_mid_turn_closes_after_terminal_event() -> None:
    hub = EventHub()
    session = _session(hub)
    sub = hub.subscribe(session.session_id)
    await session.replay_input(AgentInput(action="start", text="go"))
    await session.replay_input(AgentInput(action="stop"))
    assert session.state is TurnState.DRAINING
    assert not session.is_terminated

    await session.replay_event(Error(message="turn interrupted: session stopped", is_fatal=True))
    await session.wait_closed()
    assert session.is_terminated
    assert session.state is TurnState.IDLE
    events = _drain(sub)
    assert isinstance(events[-1], Error)
    assert sub.ended

    with pytest.raises(SessionNotRunningError):
        await session.replay_event(AssistantMessage(text="too late"))


@pytest.mark.asyncio
async def test_replayed_stop_while_idle_closes_immediately() -> None:
    hub = EventHub()
    session = _session(hub)
    sub = hub.subscribe(session.session_id)
    await session.replay_input(AgentInput(action="stop"))
    await session.wait_closed()
    assert session.is_terminated
    assert await sub.get() is None
    # Stopping a closed session is a no-op.
    await session.stop()


@pytest.mark.asyncio
async def test_handoff_mid_turn_emits_fatal_error() -> None:
    hub = EventHub()
    session = _session(hub)
    sub = hub.subscribe(session.session_id)
    await session.replay_input(AgentInput(action="start", text="go"))
    await session.go_live()
    assert session.lifecycle is SessionLifecycle.LIVE
    assert session.state is TurnState.IDLE
    [event] = _drain(sub)
    assert event == Error(message="tape ended mid-turn", is_fatal=True)
    await session.shutdown()


def test_status_snapshot() -> None:
    session = AgentSession(
        "sess-status", "codex", ClaudeAdapter(), "/w",
        supervisor=None, hub=EventHub(), model="o3",
    )
    status = session.status()
    assert status["session_id"] == "sess-status"
    assert status["lifecycle"] == "live"
    assert status["state"] == "idle"
    assert status["usage"]["total_tokens"] == 0
    assert status["pid"] is None
