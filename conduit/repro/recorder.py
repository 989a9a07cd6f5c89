"""Tape recorder.

Appends every AgentInput sent and every unified event emitted, for all
sessions, to ``<data_dir>/repro/tape.jsonl``. One recorder per data
directory: an exclusive flock on ``<data_dir>/repro/tape.lock`` is held
for the recorder's lifetime.

Each entry is one newline-terminated line written straight to the file
without buffering. A write that fails part-way is truncated back off the
tape before the error propagates, so a failure never leaves a partial
entry in front of later ones. A crash can at worst leave one incomplete
trailing line, which readers ignore and the next open removes.
"""
from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from ..engine.errors import TapeLockedError
from ..engine.events import UnifiedEvent, event_to_dict
from ..engine.models import AgentInput
from .tape import (
    KIND_EVENT,
    KIND_INPUT,
    SCHEMA_VERSION,
    TapeEntry,
    TapeHeader,
    encode_line,
    read_tape,
)

logger = logging.getLogger(__name__)


class Recorder:
    """Single writer for a data directory's tape."""

    def __init__(
        self,
        data_dir: str | Path,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.repro_dir = self.data_dir / "repro"
        self.tape_path = self.repro_dir / "tape.jsonl"
        self.lock_path = self.repro_dir / "tape.lock"
        self._clock = clock
        self._lock_fh: IO | None = None
        self._fh: IO[bytes] | None = None
        self._origin = 0.0
        self._offset_at = 0.0
        self._last_at = 0.0
        self._seq = 0
        self._damaged = False
        self.entries_written = 0
        self.header: TapeHeader | None = None

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def open(self) -> Recorder:
        """Take the lock and open the tape for appending.

        Raises TapeLockedError if another recorder owns the directory,
        and TapeCorruptionError if an existing tape cannot be extended.
        """
        if self._fh is not None:
            return self
        self.repro_dir.mkdir(parents=True, exist_ok=True)

        lock_fh = open(self.lock_path, "a+")
        try:
            fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_fh.close()
            raise TapeLockedError(str(self.tape_path)) from None
        self._lock_fh = lock_fh

        try:
            self._resume_or_create()
        except BaseException:
            self._release_lock()
            raise
        logger.info(
            "Recorder open: %s (started_at=%s, seq=%d)",
            self.tape_path, self.header.started_at, self._seq,
        )
        return self

    def _resume_or_create(self) -> None:
        if self.tape_path.exists() and self.tape_path.stat().st_size > 0:
            self._drop_incomplete_tail()
        if self.tape_path.exists() and self.tape_path.stat().st_size > 0:
            existing = read_tape(self.tape_path)
            existing.raise_for_corruption()
            self.header = existing.header
            if existing.entries:
                last = existing.entries[-1]
                self._seq = last.seq
                self._last_at = last.at
            self._offset_at = self._last_at
            self._fh = open(self.tape_path, "ab", buffering=0)
        else:
            self.header = TapeHeader(
                schema_version=SCHEMA_VERSION,
                started_at=datetime.now(timezone.utc).isoformat(),
            )
            self._fh = open(self.tape_path, "ab", buffering=0)
            self._write_all(encode_line(self.header.to_dict()))
        self._origin = self._clock()

    def _drop_incomplete_tail(self) -> None:
        """Cut a trailing partial line left by an interrupted append."""
        with open(self.tape_path, "r+b") as f:
            data = f.read()
            end = data.rfind(b"\n") + 1
            if end == len(data):
                return
            logger.warning(
                "Tape %s: discarding %d bytes of an incomplete final entry",
                self.tape_path, len(data) - end,
            )
            f.truncate(end)

    def record_input(self, session_id: str, entry: AgentInput) -> None:
        self._append(session_id, KIND_INPUT, entry.to_dict())

    def record_event(self, session_id: str, event: UnifiedEvent) -> None:
        self._append(session_id, KIND_EVENT, event_to_dict(event))

    def _append(self, session_id: str, kind: str, payload: dict) -> None:
        """Write one entry or nothing: a failed write is cut back off the tape."""
        if self._fh is None:
            raise RuntimeError("Recorder is not open")
        if self._damaged:
            raise OSError(f"Tape {self.tape_path} ends in a partial entry; not appending")
        at = round(self._offset_at + (self._clock() - self._origin), 6)
        at = max(at, self._last_at)
        entry = TapeEntry(
            seq=self._seq + 1, at=at, session_id=session_id, kind=kind, payload=payload,
        )
        line = encode_line(entry.to_dict())
        start = self._fh.tell()
        try:
            self._write_all(line)
        except BaseException:
            self._cut_back(start)
            raise
        self._seq = entry.seq
        self._last_at = at
        self.entries_written += 1

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = self._fh.write(view)
            view = view[written:]

    def _cut_back(self, size: int) -> None:
        try:
            os.ftruncate(self._fh.fileno(), size)
        except OSError:
            self._damaged = True
            logger.error(
                "Tape %s: could not remove a partial entry at byte %d",
                self.tape_path, size, exc_info=True,
            )

    def sync(self) -> None:
        if self._fh is not None:
            self._fh.flush()
            os.fsync(self._fh.fileno())

    def close(self) -> None:
        if self._fh is not None:
            try:
                self.sync()
            finally:
                self._fh.close()
                self._fh = None
            logger.info(
                "Recorder closed: %s (%d entries this run)",
                self.tape_path, self.entries_written,
            )
        self._release_lock()

    def _release_lock(self) -> None:
        if self._lock_fh is not None:
            try:
                fcntl.flock(self._lock_fh.fileno(), fcntl.LOCK_UN)
            finally:
                self._lock_fh.close()
                self._lock_fh = None

    def __enter__(self) -> Recorder:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()
