"""Agent session: one conversation bound to one workspace.

Runs the turn state machine for a single session as one asyncio task.
Everything that mutates the session (control actions, decoded backend
lines, process exits, replayed tape entries) arrives as a message on
the session's inbox and is applied strictly in order, so session state
is never touched concurrently.

Every unified event goes through ``_apply`` in the same three steps,
live or replayed:

    1. session state update (tool table, usage, turn state)
    2. tape append (live only, when a recorder is attached)
    3. fan-out to subscribers

In replay the supervisor, decoder and adapter are bypassed and the
replayer feeds tape entries straight into step 1.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .adapters.base import AgentAdapter
from .errors import (
    NotSupportedError,
    SessionNotRunningError,
    UnknownControlRequestError,
)
from .events import (
    CommandOutput,
    ControlRequest,
    Error,
    SessionInit,
    TokenUsage,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    TurnStarted,
    UnifiedEvent,
    Usage,
    is_terminal,
)
from .lifecycle import next_state, validate_transition
from .models import (
    AgentInput,
    SessionContext,
    SessionLifecycle,
    ToolInvocation,
    TurnState,
)
from .supervisor import ProcessExit, ProcessHandle, ProcessSupervisor
from .stream_decoder import RawEvent

if TYPE_CHECKING:
    from ..bridge.event_bus import EventHub
    from ..repro.recorder import Recorder
    from ..shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)


# ── Inbox messages ──────────────────────────────────────────────


@dataclass
class _Input:
    action: str  # "start" or "input"
    text: str
    future: asyncio.Future
    images: list[str] = field(default_factory=list)
    plan_mode: bool = False


@dataclass
class _Control:
    request_id: str
    allow: bool
    future: asyncio.Future


@dataclass
class _Stop:
    future: asyncio.Future


@dataclass
class _ProcessItem:
    generation: int
    item: RawEvent | ProcessExit


@dataclass
class _ReplayInput:
    entry: AgentInput
    future: asyncio.Future


@dataclass
class _ReplayEvent:
    event: UnifiedEvent
    future: asyncio.Future


@dataclass
class _Handoff:
    future: asyncio.Future


@dataclass
class _Shutdown:
    pass


@dataclass
class _PendingInput:
    text: str
    images: list[str] = field(default_factory=list)
    plan_mode: bool = False
    queued_at: float = field(default_factory=time.monotonic)


class AgentSession:
    """A single agent session and its serialized event loop.

    Public coroutines (``start``, ``send_input``, ``respond_to_control``,
    ``stop``) enqueue a message and wait until the loop has handled it,
    so typed errors such as ``SpawnFailureError`` reach the caller.
    """

    def __init__(
        self,
        session_id: str,
        agent_type: str,
        adapter: AgentAdapter,
        working_dir: str,
        *,
        supervisor: ProcessSupervisor | None,
        hub: EventHub,
        recorder: Recorder | None = None,
        store: SessionStore | None = None,
        model: str | None = None,
        resume_id: str | None = None,
        tool_approval: bool = False,
        max_log_events: int = 2000,
        inbox_size: int = 1000,
        lifecycle: SessionLifecycle = SessionLifecycle.LIVE,
        tab_index: int = 0,
    ) -> None:
        self.session_id = session_id
        self.agent_type = agent_type
        self.adapter = adapter
        self.working_dir = working_dir
        self.model = model
        self.tab_index = tab_index
        self.tool_approval = tool_approval
        self.lifecycle = lifecycle
        self.state = TurnState.IDLE

        # Backend conversation id (resume handle), learned from SessionInit.
        self.agent_session_id: str | None = resume_id
        self.usage = Usage()
        self.turn_count = 0
        self.last_turn_usage: Usage | None = None
        self.event_log: deque[UnifiedEvent] = deque(maxlen=max_log_events)
        self.open_tools: dict[str, ToolInvocation] = {}
        self.pending_controls: dict[str, ControlRequest] = {}
        self.pending_inputs: deque[_PendingInput] = deque()

        self._supervisor = supervisor
        self._hub = hub
        self._recorder = recorder
        self._store = store
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=inbox_size)
        self._handle: ProcessHandle | None = None
        self._generation = 0
        self._forwarder: asyncio.Task | None = None
        self._terminate_task: asyncio.Task | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._stop_waiters: list[asyncio.Future] = []
        # Streaming CommandOutput entries in event_log, by coalescing key.
        self._live_outputs: dict[str, CommandOutput] = {}
        self._saw_init = False
        self._tape_failure: OSError | None = None
        # Plan mode the current backend process was started with.
        self._process_plan_mode = False
        self._closed = asyncio.Event()

    # ── Public surface ──────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def is_replaying(self) -> bool:
        return self.lifecycle is SessionLifecycle.REPLAYING

    @property
    def is_terminated(self) -> bool:
        return self.lifecycle is SessionLifecycle.TERMINATED

    @property
    def pid(self) -> int | None:
        return self._handle.pid if self._handle is not None else None

    def begin(self) -> None:
        """Start the session's event loop task."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"session-{self.session_id[:8]}",
            )

    def check_turn_options(self, images: list[str] | None, plan_mode: bool) -> None:
        """Raise NotSupportedError for turn options the backend lacks."""
        caps = self.adapter.capabilities()
        if images and not caps.supports_images:
            raise NotSupportedError(self.agent_type, "image attachments")
        if plan_mode and not caps.supports_plan_mode:
            raise NotSupportedError(self.agent_type, "plan mode")

    async def start(
        self, prompt: str, *, images: list[str] | None = None, plan_mode: bool = False,
    ) -> None:
        self.check_turn_options(images, plan_mode)
        await self._call(lambda fut: _Input("start", prompt, fut, list(images or ()), plan_mode))

    async def send_input(
        self, text: str, *, images: list[str] | None = None, plan_mode: bool = False,
    ) -> None:
        self.check_turn_options(images, plan_mode)
        await self._call(lambda fut: _Input("input", text, fut, list(images or ()), plan_mode))

    async def respond_to_control(self, request_id: str, allow: bool) -> None:
        await self._call(lambda fut: _Control(request_id, allow, fut))

    async def stop(self) -> None:
        """Stop the session. Returns once the backend process is reaped."""
        if self.is_terminated:
            return
        await self._call(_Stop)

    async def replay_input(self, entry: AgentInput) -> None:
        await self._call(lambda fut: _ReplayInput(entry, fut))

    async def replay_event(self, event: UnifiedEvent) -> None:
        await self._call(lambda fut: _ReplayEvent(event, fut))

    async def go_live(self) -> None:
        """Hand a replayed session over to the live process path."""
        await self._call(_Handoff)

    async def shutdown(self) -> None:
        """Stop the loop without recording anything (process exit)."""
        if self._task is None:
            return
        await self._reap()
        if self._task.done():
            return
        await self._inbox.put(_Shutdown())
        await self._task

    async def _reap(self) -> None:
        if self._terminate_task is not None:
            await asyncio.gather(self._terminate_task, return_exceptions=True)
        if self._handle is not None and self._supervisor is not None:
            await self._supervisor.terminate(self._handle)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def status(self) -> dict[str, Any]:
        """Snapshot for status queries. Read-only."""
        return {
            "session_id": self.session_id,
            "agent_type": self.agent_type,
            "working_dir": self.working_dir,
            "model": self.model,
            "agent_session_id": self.agent_session_id,
            "lifecycle": self.lifecycle.value,
            "state": self.state.value,
            "turn_count": self.turn_count,
            "usage": self.usage.to_dict(),
            "open_tools": sorted(self.open_tools),
            "pending_controls": sorted(self.pending_controls),
            "queued_inputs": len(self.pending_inputs),
            "pid": self.pid,
        }

    async def _call(self, make_msg) -> Any:
        if self._task is None:
            self.begin()
        elif self._task.done():
            raise SessionNotRunningError(self.session_id, self.lifecycle.value)
        fut = asyncio.get_running_loop().create_future()
        await self._inbox.put(make_msg(fut))
        return await fut

    # ── Event loop ──────────────────────────────────────────────

    async def _run(self) -> None:
        logger.info(
            "Session %s loop started (agent=%s, lifecycle=%s)",
            self.session_id[:8], self.agent_type, self.lifecycle.value,
        )
        try:
            while not self._closed.is_set():
                msg = await self._inbox.get()
                if isinstance(msg, _Shutdown):
                    break
                await self._dispatch(msg)
        except asyncio.CancelledError:
            logger.info("Session %s loop cancelled", self.session_id[:8])
            raise
        except Exception as exc:
            logger.exception("Session %s loop crashed", self.session_id[:8])
            if not self.is_terminated:
                self._hub.publish(
                    self.session_id, Error(message=f"session failed: {exc}", is_fatal=True),
                )
            self._finalize_sync("failed")
            await self._reap()
        finally:
            self._fail_waiting()
        logger.info("Session %s loop finished", self.session_id[:8])

    async def _dispatch(self, msg: Any) -> None:
        if isinstance(msg, _ProcessItem):
            await self._on_process_item(msg)
            return

        fut = msg.future
        try:
            if isinstance(msg, _Input):
                result = await self._on_input(msg)
            elif isinstance(msg, _Control):
                result = await self._on_control(msg)
            elif isinstance(msg, _Stop):
                self._stop_waiters.append(fut)
                await self._on_stop()
                return
            elif isinstance(msg, _ReplayInput):
                result = await self._on_replay_input(msg.entry)
            elif isinstance(msg, _ReplayEvent):
                result = await self._apply(msg.event)
            elif isinstance(msg, _Handoff):
                result = await self._on_handoff()
            else:
                raise TypeError(f"unexpected inbox message {type(msg).__name__}")
        except Exception as exc:
            if not fut.done():
                fut.set_exception(exc)
            return
        if not fut.done():
            fut.set_result(result)

    # ── Control actions ─────────────────────────────────────────

    async def _on_input(self, msg: _Input) -> None:
        if self.is_terminated or self._stopping:
            raise SessionNotRunningError(self.session_id, self.lifecycle.value)
        if self.state.is_running:
            self.pending_inputs.append(_PendingInput(msg.text, msg.images, msg.plan_mode))
            logger.info(
                "Session %s: input queued while %s (%d waiting)",
                self.session_id[:8], self.state.value, len(self.pending_inputs),
            )
            return
        await self._begin_turn(msg.action, msg.text, msg.images, msg.plan_mode)

    async def _begin_turn(
        self,
        action: str,
        text: str,
        images: list[str] | None = None,
        plan_mode: bool = False,
    ) -> None:
        """Forward input to the backend and start a turn.

        Spawns a process when none is usable. Plan mode is fixed when a
        backend starts, so a turn that changes it gets a fresh process
        resuming the same conversation. Raises SpawnFailureError
        without touching session state when the spawn fails.
        """
        images = list(images or ())
        caps = self.adapter.capabilities()
        handle = self._handle if self._handle is not None and self._handle.is_alive else None
        reusable = caps.persistent_process and plan_mode == self._process_plan_mode

        if handle is not None and reusable:
            try:
                await self._supervisor.send_input(
                    handle, self.adapter.format_input(text, images),
                )
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.warning(
                    "Session %s: pid=%s stdin gone (%s), respawning",
                    self.session_id[:8], handle.pid, exc,
                )
                await self._supervisor.terminate(handle)
                self._handle = None
                handle = None
        if handle is None or not reusable:
            if handle is not None:
                # One-shot backends get a fresh process per turn.
                logger.info(
                    "Session %s: retiring pid=%s before new turn (plan_mode=%s)",
                    self.session_id[:8], handle.pid, plan_mode,
                )
                await self._supervisor.terminate(handle)
                self._handle = None
            ctx = SessionContext(
                working_dir=self.working_dir,
                prompt=text,
                model=self.model,
                resume_id=self.agent_session_id,
                images=images,
                plan_mode=plan_mode,
                tool_approval=self.tool_approval and caps.supports_tool_approval,
            )
            spec = self.adapter.build_invocation(ctx)
            new_handle = await self._supervisor.spawn(spec, self.agent_type)
            self._attach(new_handle)
            self._process_plan_mode = plan_mode

        entry = AgentInput(
            action=action,
            text=text,
            working_dir=self.working_dir if action == "start" else None,
            agent_type=self.agent_type if action == "start" else None,
            model=self.model if action == "start" else None,
            resume_id=self.agent_session_id if action == "start" else None,
            images=images,
            plan_mode=plan_mode,
        )
        self._record_input(entry)
        self._transition(TurnState.AWAITING_MODEL)
        await self._apply(TurnStarted())

    def _attach(self, handle: ProcessHandle) -> None:
        self._generation += 1
        self._handle = handle
        generation = self._generation
        self._forwarder = asyncio.create_task(
            self._forward(handle, generation),
            name=f"session-{self.session_id[:8]}-pump-{generation}",
        )

    async def _forward(self, handle: ProcessHandle, generation: int) -> None:
        async for item in handle.stream():
            if self._closed.is_set():
                continue
            await self._inbox.put(_ProcessItem(generation, item))

    async def _on_control(self, msg: _Control) -> None:
        if self.is_terminated:
            raise SessionNotRunningError(self.session_id, self.lifecycle.value)
        if msg.request_id not in self.pending_controls:
            raise UnknownControlRequestError(self.session_id, msg.request_id)
        payload = self.adapter.format_control_response(msg.request_id, msg.allow)
        if self._handle is None or not self._handle.is_alive:
            raise SessionNotRunningError(self.session_id, self.state.value)
        await self._supervisor.send_input(self._handle, payload)
        del self.pending_controls[msg.request_id]
        self._record_input(AgentInput(
            action="control_response", request_id=msg.request_id, allow=msg.allow,
        ))
        logger.info(
            "Session %s: control request %s %s",
            self.session_id[:8], msg.request_id, "allowed" if msg.allow else "denied",
        )

    async def _on_stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self.pending_inputs.clear()
        self._record_input(AgentInput(action="stop"))
        logger.info(
            "Session %s: stop requested (state=%s)", self.session_id[:8], self.state.value,
        )
        handle = self._handle
        if handle is not None and handle.returncode is None and self._supervisor is not None:
            self._terminate_task = asyncio.create_task(self._supervisor.terminate(handle))
        if not self.state.is_running or handle is None:
            if self.state.is_running:
                await self._apply(Error(message="turn interrupted: session stopped", is_fatal=True))
                return
            await self._finalize("completed")
            return
        self._transition(TurnState.DRAINING)

    # ── Process output ──────────────────────────────────────────

    async def _on_process_item(self, msg: _ProcessItem) -> None:
        item = msg.item
        if msg.generation != self._generation:
            if isinstance(item, RawEvent):
                logger.debug(
                    "Session %s: dropped line %d from retired process",
                    self.session_id[:8], item.line_no,
                )
            return

        if isinstance(item, ProcessExit):
            await self._on_process_exit(item)
            return

        if self.is_terminated:
            logger.debug(
                "Session %s: dropped line %d after close", self.session_id[:8], item.line_no,
            )
            return
        for event in self.adapter.translate_line(item):
            await self._apply(event)

    async def _on_process_exit(self, exit_info: ProcessExit) -> None:
        self._handle = None
        logger.info(
            "Session %s: backend exited code=%s terminated=%s state=%s",
            self.session_id[:8], exit_info.exit_code,
            exit_info.terminated, self.state.value,
        )
        if self.state.is_running:
            if self.state is not TurnState.DRAINING:
                self._transition(TurnState.DRAINING)
            if self._stopping:
                event: UnifiedEvent = Error(
                    message="turn interrupted: session stopped", is_fatal=True,
                )
            else:
                event = self.adapter.terminal_event_on_exit(
                    exit_info.exit_code, exit_info.stderr_tail,
                )
            await self._apply(event)
        elif self._stopping and not self.is_terminated:
            await self._finalize("completed")

    # ── Replay ──────────────────────────────────────────────────

    async def _on_replay_input(self, entry: AgentInput) -> None:
        if entry.action in ("start", "input"):
            if self.state.is_running:
                logger.warning(
                    "Session %s: replayed %s while %s",
                    self.session_id[:8], entry.action, self.state.value,
                )
                return
            self._transition(TurnState.AWAITING_MODEL)
        elif entry.action == "control_response":
            self.pending_controls.pop(entry.request_id or "", None)
        elif entry.action == "stop":
            self._stopping = True
            if not self.state.is_running:
                await self._finalize("completed")
            else:
                self._transition(TurnState.DRAINING)

    async def _on_handoff(self) -> None:
        if self.lifecycle is not SessionLifecycle.REPLAYING:
            return
        if self.state.is_running:
            await self._apply(Error(message="tape ended mid-turn", is_fatal=True))
        self.lifecycle = SessionLifecycle.LIVE
        logger.info("Session %s: handed off to live", self.session_id[:8])

    # ── Apply path ──────────────────────────────────────────────

    async def _apply(self, event: UnifiedEvent) -> None:
        """State update, then tape append, then fan-out."""
        if self.is_terminated:
            logger.debug(
                "Session %s: dropped %s after close", self.session_id[:8], event.event_type,
            )
            return

        event = self._update_state(event)
        if event is None:
            return

        if self.lifecycle is SessionLifecycle.LIVE and self._recorder is not None:
            self._write_tape(self._recorder.record_event, self.session_id, event)

        self._log_event(event)
        self._hub.publish(self.session_id, event)

        if self._tape_failure is not None:
            exc, self._tape_failure = self._tape_failure, None
            await self._on_tape_failure(exc)
        if is_terminal(event) and not self.state.is_running:
            await self._after_turn()

    def _update_state(self, event: UnifiedEvent) -> UnifiedEvent | None:
        """Apply ``event`` to session state.

        Returns the event as it should be recorded and published (it may
        be annotated), or None when it is dropped.
        """
        if isinstance(event, SessionInit):
            # Resumed and follow-up processes re-announce the same backend
            # session; subscribers see it once.
            if self._saw_init and event.session_id == self.agent_session_id:
                logger.debug(
                    "Session %s: dropped duplicate SessionInit %s",
                    self.session_id[:8], event.session_id,
                )
                return None
            self._saw_init = True
            if event.model is None and self.model:
                event = dataclasses.replace(event, model=self.model)
            if event.session_id:
                self.agent_session_id = event.session_id
            if event.model:
                self.model = event.model
            self._store_update(agent_session_id=self.agent_session_id, model=self.model)

        elif isinstance(event, ToolStarted):
            if event.tool_id in self.open_tools:
                logger.warning(
                    "Session %s: tool %s started twice", self.session_id[:8], event.tool_id,
                )
            self.open_tools[event.tool_id] = ToolInvocation(
                tool_id=event.tool_id,
                tool_name=event.tool_name,
                arguments=event.arguments,
            )

        elif isinstance(event, ToolCompleted):
            invocation = self.open_tools.pop(event.tool_id, None)
            if invocation is None:
                if not event.orphan:
                    logger.warning(
                        "Session %s: ToolCompleted for unknown tool_id %s (orphan)",
                        self.session_id[:8], event.tool_id,
                    )
                    event = dataclasses.replace(event, orphan=True)
            elif event.tool_name is None:
                event = dataclasses.replace(event, tool_name=invocation.tool_name)

        elif isinstance(event, ControlRequest):
            self.pending_controls[event.request_id] = event

        elif isinstance(event, TokenUsage):
            self.last_turn_usage = event.as_usage()

        elif isinstance(event, TurnCompleted):
            if event.usage is not None:
                self.usage.add(event.usage)
                self.last_turn_usage = event.usage
            self.turn_count += 1

        if is_terminal(event):
            if self.open_tools:
                logger.warning(
                    "Session %s: turn ended with open tools: %s",
                    self.session_id[:8], ", ".join(sorted(self.open_tools)),
                )
                self.open_tools.clear()
            self.pending_controls.clear()

        target = next_state(self.state, event, len(self.open_tools))
        if target is not self.state:
            self._transition(target)
        return event

    def _transition(self, target: TurnState) -> None:
        validate_transition(self.state, target)
        old = self.state
        self.state = target
        if old is not target:
            logger.debug(
                "Session %s: %s -> %s", self.session_id[:8], old.value, target.value,
            )

    def _log_event(self, event: UnifiedEvent) -> None:
        if isinstance(event, CommandOutput):
            key = event.tool_id or event.command
            if event.is_streaming:
                live = self._live_outputs.get(key)
                if live is not None and any(e is live for e in self.event_log):
                    live.output = event.output
                    return
                live = dataclasses.replace(event)
                self._live_outputs[key] = live
                self.event_log.append(live)
                return
            self._live_outputs.pop(key, None)
        self.event_log.append(event)

    async def _after_turn(self) -> None:
        self._store_update(
            total_tokens=self.usage.total_tokens,
            turn_count=self.turn_count,
            touch=True,
        )
        if self._stopping:
            await self._finalize("completed")
            return
        if self.lifecycle is not SessionLifecycle.LIVE:
            return
        while self.pending_inputs and not self.state.is_running:
            pending = self.pending_inputs.popleft()
            try:
                await self._begin_turn(
                    "input", pending.text, pending.images, pending.plan_mode,
                )
            except Exception as exc:
                logger.error(
                    "Session %s: queued input could not be delivered: %s",
                    self.session_id[:8], exc,
                )
                await self._apply(Error(message=str(exc), is_fatal=True))

    # ── Teardown ────────────────────────────────────────────────

    async def _finalize(self, status: str) -> None:
        self._finalize_sync(status)
        if self._terminate_task is not None:
            await self._terminate_task
        waiters, self._stop_waiters = self._stop_waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(None)

    def _finalize_sync(self, status: str) -> None:
        if self.is_terminated:
            return
        self._store_update(status=status, touch=True)
        self.lifecycle = SessionLifecycle.TERMINATED
        self.state = TurnState.IDLE
        self._hub.close(self.session_id)
        self._closed.set()
        logger.info(
            "Session %s closed (%s): turns=%d tokens=%d",
            self.session_id[:8], status, self.turn_count, self.usage.total_tokens,
        )

    def _fail_waiting(self) -> None:
        """Resolve anything still waiting on a loop that has ended."""
        # Stopping a closed session is a no-op; anything else is an error.
        stops = list(self._stop_waiters)
        others = []
        self._stop_waiters.clear()
        while not self._inbox.empty():
            msg = self._inbox.get_nowait()
            if isinstance(msg, _Stop):
                stops.append(msg.future)
            elif hasattr(msg, "future"):
                others.append(msg.future)
        for fut in stops:
            if not fut.done():
                fut.set_result(None)
        for fut in others:
            if not fut.done():
                fut.set_exception(
                    SessionNotRunningError(self.session_id, self.lifecycle.value)
                )

    # ── Side channels ───────────────────────────────────────────

    def _record_input(self, entry: AgentInput) -> None:
        if self.lifecycle is SessionLifecycle.LIVE and self._recorder is not None:
            self._write_tape(self._recorder.record_input, self.session_id, entry)

    def _write_tape(self, write, *args: Any) -> None:
        try:
            write(*args)
        except OSError as exc:
            logger.error(
                "Session %s: tape write failed, recording stopped for this session: %s",
                self.session_id[:8], exc,
            )
            self._recorder = None
            self._tape_failure = exc

    async def _on_tape_failure(self, exc: OSError) -> None:
        """The tape can no longer be trusted: end the turn in progress."""
        message = f"tape write failed: {exc}"
        if not self.state.is_running:
            await self._apply(Error(message=message))
            return
        handle = self._handle
        if handle is not None and self._supervisor is not None:
            # Output still in flight from this process is dropped.
            self._generation += 1
            self._handle = None
            self._terminate_task = asyncio.create_task(self._supervisor.terminate(handle))
        await self._apply(Error(message=message, is_fatal=True))

    def _store_update(self, touch: bool = False, **fields_: Any) -> None:
        if self._store is None or self.lifecycle is not SessionLifecycle.LIVE:
            return
        try:
            self._store.update(self.session_id, touch=touch, **fields_)
        except Exception:
            logger.error(
                "Session %s: session store update failed", self.session_id[:8],
                exc_info=True,
            )
