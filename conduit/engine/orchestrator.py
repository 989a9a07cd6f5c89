"""Session orchestrator: the registry of concurrent sessions.

Owns the mapping from external session ids to AgentSession objects and
routes control actions to them. Constructed once per process and passed
to every entry point (CLI, relay, replayer); nothing reaches it through
module globals.

Control actions against unknown sessions raise SessionNotFoundError,
against closed sessions SessionNotRunningError, and against replaying
sessions ReplayViolationError, before anything reaches the session.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from ..bridge.event_bus import EventHub, Subscription
from .adapters.registry import AdapterRegistry
from .config import EngineConfig
from .errors import (
    ConfigError,
    ReplayViolationError,
    SessionExistsError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .models import ReproMode, SessionLifecycle, new_session_id
from .session import AgentSession
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class Orchestrator:
    """Registry and router for agent sessions."""

    def __init__(
        self,
        config: EngineConfig,
        adapters: AdapterRegistry,
        *,
        supervisor: ProcessSupervisor | None = None,
        hub: EventHub | None = None,
        recorder: Any = None,
        store: Any = None,
    ) -> None:
        self.config = config
        self.adapters = adapters
        self.supervisor = supervisor or ProcessSupervisor(
            max_line_bytes=config.max_line_bytes,
            queue_size=config.process_queue_size,
            grace_seconds=config.terminate_grace_seconds,
        )
        self.hub = hub or EventHub(queue_size=config.subscriber_queue_size)
        self.recorder = recorder
        self.store = store
        self._sessions: dict[str, AgentSession] = {}
        # True while a tape is the source of truth (replay modes).
        self._read_only = config.repro_mode.is_replay
        self._next_tab = 0

    @classmethod
    def build(cls, config: EngineConfig, adapters: AdapterRegistry) -> Orchestrator:
        """Wire recorder and session store according to the repro mode."""
        from ..repro.recorder import Recorder
        from ..shared.services.session_store import SessionStore

        recorder = None
        store = None
        if not config.repro_mode.is_replay:
            store = SessionStore(config.db_path)
            abandoned = store.mark_abandoned()
            if abandoned:
                logger.info("Marked %d sessions from a previous run as abandoned", abandoned)
        if config.repro_mode is ReproMode.RECORD:
            recorder = Recorder(config.data_dir).open()
        return cls(config, adapters, recorder=recorder, store=store)

    # ── Lookup ──────────────────────────────────────────────────

    def get_session(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> list[AgentSession]:
        return list(self._sessions.values())

    @property
    def read_only(self) -> bool:
        return self._read_only

    def _live_session(self, session_id: str, action: str) -> AgentSession:
        session = self.get_session(session_id)
        # Every session is read-only while a tape is the source of truth,
        # including replayed sessions that have already closed.
        if self._read_only or session.is_replaying:
            raise ReplayViolationError(session_id, action)
        if session.is_terminated:
            raise SessionNotRunningError(session_id, session.lifecycle.value)
        return session

    def _new_session(
        self,
        session_id: str,
        agent_type: str,
        working_dir: str,
        model: str | None,
        resume_id: str | None,
        lifecycle: SessionLifecycle,
    ) -> AgentSession:
        try:
            adapter = self.adapters.get_or_raise(agent_type)
        except KeyError as exc:
            raise ConfigError(str(exc.args[0])) from exc
        live = lifecycle is SessionLifecycle.LIVE
        tab_index = self._next_tab
        self._next_tab += 1
        return AgentSession(
            session_id,
            agent_type,
            adapter,
            working_dir,
            supervisor=self.supervisor,
            hub=self.hub,
            recorder=self.recorder if live else None,
            store=self.store if live else None,
            model=model or adapter.default_model or self.config.default_model,
            resume_id=resume_id,
            tool_approval=self.config.tool_approval,
            max_log_events=self.config.max_log_events,
            inbox_size=self.config.process_queue_size,
            lifecycle=lifecycle,
            tab_index=tab_index,
        )

    # ── Control actions ─────────────────────────────────────────

    async def start_session(
        self,
        prompt: str,
        working_dir: str,
        *,
        session_id: str | None = None,
        agent_type: str | None = None,
        model: str | None = None,
        resume_id: str | None = None,
        images: list[str] | None = None,
        plan_mode: bool = False,
    ) -> AgentSession:
        """Create a session and run its first turn.

        Raises SpawnFailureError if the backend cannot be started and
        NotSupportedError if it cannot take ``images`` or ``plan_mode``;
        the session is then not registered.
        """
        session_id = session_id or new_session_id()
        if self._read_only:
            raise ReplayViolationError(session_id, "start")
        if session_id in self._sessions:
            raise SessionExistsError(session_id)
        agent_type = agent_type or self.config.default_agent
        working_dir = os.path.abspath(os.path.expanduser(working_dir))

        session = self._new_session(
            session_id, agent_type, working_dir, model, resume_id,
            SessionLifecycle.LIVE,
        )
        session.check_turn_options(images, plan_mode)
        self._sessions[session_id] = session
        # The row must exist before the backend can announce its session id.
        created = False
        if self.store is not None:
            created = self.store.get(session_id) is None
            self.store.create(
                session_id, agent_type, working_dir, model=session.model,
                tab_index=session.tab_index, agent_session_id=resume_id,
            )
        session.begin()
        try:
            await session.start(prompt, images=images, plan_mode=plan_mode)
        except Exception:
            self._sessions.pop(session_id, None)
            await session.shutdown()
            if self.store is not None:
                if created:
                    self.store.delete(session_id)
                else:
                    self.store.update(session_id, status="failed")
            raise

        logger.info(
            "Session %s started: agent=%s cwd=%s model=%s",
            session_id[:8], agent_type, working_dir, session.model,
        )
        return session

    async def resume_session(
        self,
        session_id: str,
        prompt: str,
        *,
        images: list[str] | None = None,
        plan_mode: bool = False,
    ) -> AgentSession:
        """Reopen a stored session, reattaching its backend conversation."""
        if self.store is None:
            raise ReplayViolationError(session_id, "resume")
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        existing = self._sessions.get(session_id)
        if existing is not None and not existing.is_terminated:
            raise SessionExistsError(session_id)
        if existing is not None:
            del self._sessions[session_id]
        return await self.start_session(
            prompt,
            record.working_dir,
            session_id=session_id,
            agent_type=record.agent_type,
            model=record.model,
            resume_id=record.agent_session_id,
            images=images,
            plan_mode=plan_mode,
        )

    async def send_input(
        self,
        session_id: str,
        text: str,
        *,
        images: list[str] | None = None,
        plan_mode: bool = False,
    ) -> None:
        session = self._live_session(session_id, "send_input")
        await session.send_input(text, images=images, plan_mode=plan_mode)

    async def respond_to_control(
        self, session_id: str, request_id: str, allow: bool,
    ) -> None:
        session = self._live_session(session_id, "respond_to_control")
        await session.respond_to_control(request_id, allow)

    async def stop_session(self, session_id: str) -> None:
        """Stop a session. Stopping a closed session is a no-op."""
        session = self.get_session(session_id)
        if session.is_terminated:
            logger.debug("stop_session: %s already closed", session_id[:8])
            return
        if session.is_replaying:
            raise ReplayViolationError(session_id, "stop")
        await session.stop()

    # ── Subscription ────────────────────────────────────────────

    def subscribe(self, session_id: str) -> Subscription:
        """Live events of ``session_id`` from now on."""
        session = self.get_session(session_id)
        if session.is_terminated:
            raise SessionNotRunningError(session_id, session.lifecycle.value)
        return self.hub.subscribe(session_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    # ── Replay ──────────────────────────────────────────────────

    def create_replay_session(
        self,
        session_id: str,
        *,
        agent_type: str | None = None,
        working_dir: str | None = None,
        model: str | None = None,
        resume_id: str | None = None,
    ) -> AgentSession:
        """Register a read-only session driven by the replayer."""
        if session_id in self._sessions:
            raise SessionExistsError(session_id)
        session = self._new_session(
            session_id,
            agent_type or self.config.default_agent,
            working_dir or os.getcwd(),
            model,
            resume_id,
            SessionLifecycle.REPLAYING,
        )
        self._sessions[session_id] = session
        session.begin()
        return session

    async def hand_off_to_live(self) -> None:
        """End replay: replaying sessions become live sessions."""
        if self.config.repro_mode is not ReproMode.REPLAY_THEN_LIVE:
            raise ConfigError(
                "continue-live requires repro mode replay-then-continue-live"
            )
        for session in self.list_sessions():
            if session.is_replaying:
                await session.go_live()
        self._read_only = False
        logger.info("Replay handed off to live (%d sessions)", len(self._sessions))

    # ── Teardown ────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Terminate every backend process and stop every session loop."""
        sessions = self.list_sessions()
        if sessions:
            await asyncio.gather(
                *(s.shutdown() for s in sessions), return_exceptions=True,
            )
        for session in sessions:
            if not session.is_terminated and self.store is not None and not session.is_replaying:
                try:
                    self.store.update(session.session_id, status="abandoned", touch=True)
                except Exception:
                    logger.error("Could not mark %s abandoned", session.session_id[:8],
                                 exc_info=True)
            self.hub.close(session.session_id)
        if self.recorder is not None:
            self.recorder.close()
        logger.info("Orchestrator shut down (%d sessions)", len(sessions))
