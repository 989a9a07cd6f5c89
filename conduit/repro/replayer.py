"""Tape replayer.

Drives recorded sessions from a tape instead of live processes. Each
entry is fed into the owning session's normal event path after the
recorded inter-entry delay (divided by ``speed``; 0 disables delays),
so subscribers observe the same events in the same order as the
original run.

Replaying sessions are read-only: the orchestrator rejects every
control action against them. In continue-live mode the sessions are
handed back to the live path once the tape is drained.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ..engine.errors import TapeCorruptionError
from .tape import TapeEntry, TapeReadResult, read_tape

if TYPE_CHECKING:
    from ..engine.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


@dataclass
class ReplayReport:
    """Outcome of a replay run."""
    tape_path: Path
    total: int = 0
    recovered: int = 0
    replayed: int = 0
    sessions: list[str] = field(default_factory=list)
    corruption: TapeCorruptionError | None = None
    handed_off: bool = False

    @property
    def ok(self) -> bool:
        return self.corruption is None


class Replayer:
    """Feeds a tape through an orchestrator's replay sessions."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        tape_path: str | Path,
        speed: float = 1.0,
        continue_live: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if speed < 0:
            raise ValueError("speed must be >= 0")
        self.orchestrator = orchestrator
        self.tape_path = Path(tape_path)
        self.speed = speed
        self.continue_live = continue_live
        self._sleep = sleep
        self._tape: TapeReadResult | None = None

    @property
    def session_ids(self) -> list[str]:
        if self._tape is None:
            return []
        seen: dict[str, None] = {}
        for entry in self._tape.entries:
            seen.setdefault(entry.session_id, None)
        return list(seen)

    def load(self) -> TapeReadResult:
        """Read the tape and register one replay session per recorded
        session, so subscribers can attach before ``run``."""
        self._tape = read_tape(self.tape_path)
        starts: dict[str, TapeEntry] = {}
        for entry in self._tape.entries:
            if entry.is_input and entry.payload.get("action") == "start":
                starts.setdefault(entry.session_id, entry)

        for session_id in self.session_ids:
            start = starts.get(session_id)
            info = start.as_input() if start is not None else None
            if info is None:
                logger.warning(
                    "Tape has no start entry for session %s; replaying with defaults",
                    session_id[:8],
                )
            self.orchestrator.create_replay_session(
                session_id,
                agent_type=(info.agent_type if info else None),
                working_dir=(info.working_dir if info else None),
                model=(info.model if info else None),
                resume_id=(info.resume_id if info else None),
            )
        logger.info(
            "Loaded tape %s: %d entries, %d sessions",
            self.tape_path, self._tape.recovered, len(self.session_ids),
        )
        return self._tape

    async def run(self) -> ReplayReport:
        """Replay every readable entry, then report."""
        if self._tape is None:
            self.load()
        tape = self._tape
        report = ReplayReport(
            tape_path=self.tape_path,
            total=tape.total,
            recovered=tape.recovered,
            sessions=self.session_ids,
        )

        previous_at = tape.entries[0].at if tape.entries else 0.0
        for entry in tape.entries:
            delay = entry.at - previous_at
            previous_at = entry.at
            if self.speed > 0 and delay > 0:
                await self._sleep(delay / self.speed)
            await self._feed(entry)
            report.replayed += 1

        if tape.is_corrupt:
            report.corruption = tape.error()
            logger.error(
                "Replay halted at line %s of %s: recovered %d of %d entries",
                tape.corrupt_line, self.tape_path, tape.recovered, tape.total,
            )
        else:
            logger.info(
                "Replay finished: %d entries across %d sessions",
                report.replayed, len(report.sessions),
            )

        if self.continue_live:
            if report.corruption is not None:
                logger.error("Not continuing live: tape is corrupt")
            else:
                await self.orchestrator.hand_off_to_live()
                report.handed_off = True
        return report

    async def _feed(self, entry: TapeEntry) -> None:
        session = self.orchestrator.get_session(entry.session_id)
        if session.is_terminated:
            logger.debug(
                "Skipping seq=%d for closed session %s", entry.seq, entry.session_id[:8],
            )
            return
        if entry.is_input:
            await session.replay_input(entry.as_input())
        else:
            await session.replay_event(entry.as_event())
