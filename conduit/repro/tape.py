"""Tape file format and readers.

A tape is newline-delimited JSON. The first line is a header, every
following line is one entry:

    {"type":"header","schema_version":1,"started_at":"2026-01-01T00:00:00+00:00"}
    {"type":"entry","seq":1,"at":0.0,"session_id":"...","kind":"AgentInput","payload":{...}}
    {"type":"entry","seq":2,"at":0.012,"session_id":"...","kind":"AgentEvent","payload":{...}}

``at`` is seconds since ``started_at``. ``seq`` and ``at`` never
decrease. Readers only consume complete, newline-terminated lines, so
reading while a recorder is appending is safe.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..engine.errors import TapeCorruptionError
from ..engine.events import UnifiedEvent, dict_to_event
from ..engine.models import AgentInput

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
KIND_INPUT = "AgentInput"
KIND_EVENT = "AgentEvent"
_KINDS = (KIND_INPUT, KIND_EVENT)


def encode_line(record: dict[str, Any]) -> bytes:
    """Canonical encoding of one tape record, newline included."""
    return (
        json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        + "\n"
    ).encode("utf-8")


@dataclass
class TapeHeader:
    schema_version: int
    started_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "header",
            "schema_version": self.schema_version,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TapeHeader:
        if not isinstance(data, dict) or data.get("type") != "header":
            raise ValueError("first line is not a tape header")
        version = data.get("schema_version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise ValueError("header schema_version must be an integer")
        if version > SCHEMA_VERSION:
            raise ValueError(f"unsupported tape schema_version {version}")
        started_at = data.get("started_at")
        if not isinstance(started_at, str) or not started_at:
            raise ValueError("header started_at missing")
        return cls(schema_version=version, started_at=started_at)


@dataclass
class TapeEntry:
    seq: int
    at: float
    session_id: str
    kind: str
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "entry",
            "seq": self.seq,
            "at": self.at,
            "session_id": self.session_id,
            "kind": self.kind,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TapeEntry:
        if not isinstance(data, dict) or data.get("type") != "entry":
            raise ValueError("not a tape entry")
        seq = data.get("seq")
        at = data.get("at")
        session_id = data.get("session_id")
        kind = data.get("kind")
        payload = data.get("payload")
        if not isinstance(seq, int) or isinstance(seq, bool):
            raise ValueError("entry seq must be an integer")
        if not isinstance(at, (int, float)) or isinstance(at, bool) or at < 0:
            raise ValueError("entry at must be a non-negative number")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("entry session_id missing")
        if kind not in _KINDS:
            raise ValueError(f"unknown entry kind {kind!r}")
        if not isinstance(payload, dict):
            raise ValueError("entry payload must be an object")
        return cls(seq=seq, at=float(at), session_id=session_id, kind=kind, payload=payload)

    @property
    def is_input(self) -> bool:
        return self.kind == KIND_INPUT

    def as_input(self) -> AgentInput:
        return AgentInput.from_dict(self.payload)

    def as_event(self) -> UnifiedEvent:
        return dict_to_event(self.payload)


@dataclass
class TapeReadResult:
    """Everything readable from a tape, plus a corruption report."""
    path: Path
    header: TapeHeader | None
    entries: list[TapeEntry] = field(default_factory=list)
    # Complete entry lines present in the file, readable or not.
    total: int = 0
    # 1-based file line number of the first unreadable entry.
    corrupt_line: int | None = None
    corrupt_reason: str | None = None

    @property
    def recovered(self) -> int:
        return len(self.entries)

    @property
    def is_corrupt(self) -> bool:
        return self.corrupt_line is not None

    def error(self) -> TapeCorruptionError | None:
        if self.corrupt_line is None:
            return None
        return TapeCorruptionError(
            str(self.path), self.recovered, self.total, self.corrupt_line,
        )

    def raise_for_corruption(self) -> None:
        err = self.error()
        if err is not None:
            raise err


class TapeReader:
    """Incremental tape reader with its own byte-offset cursor.

    Each reader tracks how far it has consumed; it never writes to the
    file and never shares its position with other readers.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.offset = 0
        self.line_no = 0
        self.header: TapeHeader | None = None
        self.total = 0
        self.corrupt_line: int | None = None
        self.corrupt_reason: str | None = None
        self._last_seq = 0
        self._last_at = 0.0

    def read_new(self) -> list[TapeEntry]:
        """Return the entries appended since the last call.

        Stops for good at the first unreadable entry; the position of
        the problem is kept in ``corrupt_line``.
        """
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                data = f.read()
        except FileNotFoundError:
            return []

        end = data.rfind(b"\n")
        if end < 0:
            return []
        complete = data[: end + 1]
        self.offset += len(complete)

        entries: list[TapeEntry] = []
        for raw_line in complete.split(b"\n")[:-1]:
            self.line_no += 1
            if not raw_line.strip():
                continue
            if self.header is None:
                try:
                    self.header = TapeHeader.from_dict(json.loads(raw_line))
                except ValueError as exc:
                    # json.JSONDecodeError is a ValueError too.
                    raise TapeCorruptionError(
                        str(self.path), 0, 0, self.line_no,
                    ) from exc
                continue
            self.total += 1
            if self.corrupt_line is not None:
                continue
            try:
                entry = TapeEntry.from_dict(json.loads(raw_line))
                if entry.seq <= self._last_seq:
                    raise ValueError(f"seq {entry.seq} after {self._last_seq}")
                if entry.at < self._last_at:
                    raise ValueError(f"at {entry.at} after {self._last_at}")
            except (ValueError, UnicodeDecodeError) as exc:
                self.corrupt_line = self.line_no
                self.corrupt_reason = str(exc)
                logger.error(
                    "Tape %s: unreadable entry at line %d: %s",
                    self.path, self.line_no, exc,
                )
                continue
            self._last_seq = entry.seq
            self._last_at = entry.at
            entries.append(entry)
        return entries


def read_tape(path: str | Path) -> TapeReadResult:
    """Read a whole tape.

    Raises TapeCorruptionError when the header itself is unreadable
    (nothing can be recovered). Mid-tape corruption is reported in the
    result instead.
    """
    reader = TapeReader(path)
    entries = reader.read_new()
    if reader.header is None and reader.line_no > 0:
        raise TapeCorruptionError(str(reader.path), 0, reader.total, 1)
    result = TapeReadResult(
        path=reader.path,
        header=reader.header,
        entries=entries,
        total=reader.total,
        corrupt_line=reader.corrupt_line,
        corrupt_reason=reader.corrupt_reason,
    )
    if result.is_corrupt:
        logger.warning(
            "Tape %s: recovered %d of %d entries (first bad line %d)",
            reader.path, result.recovered, result.total, result.corrupt_line,
        )
    return result


def complete_bytes(path: str | Path) -> bytes:
    """The tape's content up to its last complete line."""
    data = Path(path).read_bytes()
    end = data.rfind(b"\n")
    return data[: end + 1] if end >= 0 else b""
