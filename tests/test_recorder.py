from __future__ import annotations

import errno

import pytest

from conduit.engine.errors import TapeCorruptionError, TapeLockedError
from conduit.engine.events import AssistantMessage, TurnCompleted, Usage
from conduit.engine.models import AgentInput
from conduit.repro.recorder import Recorder
from conduit.repro.tape import encode_line, read_tape


class _FakeClock:
    def __init__(self, *values: float) -> None:
        self.values = list(values)

    def __call__(self) -> float:
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


def test_records_inputs_and_events_in_order(tmp_path) -> None:
    clock = _FakeClock(10.0, 10.0, 10.25, 11.0)
    with Recorder(tmp_path, clock=clock) as recorder:
        recorder.record_input("s1", AgentInput(action="start", text="hi", working_dir="/w"))
        recorder.record_event("s1", AssistantMessage(text="hello"))
        recorder.record_event("s1", TurnCompleted(usage=Usage(input_tokens=2)))
    result = read_tape(tmp_path / "repro" / "tape.jsonl")
    assert [(e.seq, e.at, e.kind) for e in result.entries] == [
        (1, 0.0, "AgentInput"),
        (2, 0.25, "AgentEvent"),
        (3, 1.0, "AgentEvent"),
    ]
    assert result.entries[0].payload == {"action": "start", "text": "hi", "working_dir": "/w"}
    assert result.entries[2].as_event().usage.input_tokens == 2


def test_at_never_decreases(tmp_path) -> None:
    clock = _FakeClock(5.0, 6.0, 5.5)
    with Recorder(tmp_path, clock=clock) as recorder:
        recorder.record_event("s1", AssistantMessage(text="a"))
        recorder.record_event("s1", AssistantMessage(text="b"))
    ats = [e.at for e in read_tape(recorder.tape_path).entries]
    assert ats == [1.0, 1.0]


def test_second_recorder_is_locked_out(tmp_path) -> None:
    first = Recorder(tmp_path).open()
    try:
        with pytest.raises(TapeLockedError):
            Recorder(tmp_path).open()
    finally:
        first.close()
    # Lock released on close.
    Recorder(tmp_path).open().close()


def test_reopen_resumes_sequence_and_time(tmp_path) -> None:
    with Recorder(tmp_path, clock=_FakeClock(0.0, 2.0)) as recorder:
        recorder.record_event("s1", AssistantMessage(text="a"))
        started_at = recorder.header.started_at
    with Recorder(tmp_path, clock=_FakeClock(100.0, 100.5)) as recorder:
        assert recorder.header.started_at == started_at
        recorder.record_event("s2", AssistantMessage(text="b"))
    entries = read_tape(recorder.tape_path).entries
    assert [(e.seq, e.at, e.session_id) for e in entries] == [(1, 2.0, "s1"), (2, 2.5, "s2")]


def test_incomplete_tail_is_truncated_on_open(tmp_path) -> None:
    with Recorder(tmp_path) as recorder:
        recorder.record_event("s1", AssistantMessage(text="a"))
    with open(recorder.tape_path, "ab") as f:
        f.write(b'{"type":"entry","seq":2,')
    with Recorder(tmp_path) as recorder:
        recorder.record_event("s1", AssistantMessage(text="b"))
    result = read_tape(recorder.tape_path)
    assert not result.is_corrupt
    assert [e.seq for e in result.entries] == [1, 2]


def test_corrupt_existing_tape_refuses_to_open(tmp_path) -> None:
    tape = tmp_path / "repro" / "tape.jsonl"
    tape.parent.mkdir(parents=True)
    tape.write_bytes(
        encode_line({"type": "header", "schema_version": 1, "started_at": "t"})
        + b"garbage\n"
    )
    recorder = Recorder(tmp_path)
    with pytest.raises(TapeCorruptionError):
        recorder.open()
    assert not recorder.is_open
    # The failed open did not keep the lock.
    other = Recorder(tmp_path)
    with pytest.raises(TapeCorruptionError):
        other.open()


def test_append_requires_open(tmp_path) -> None:
    with pytest.raises(RuntimeError):
        Recorder(tmp_path).record_event("s1", AssistantMessage(text="a"))


class _FillsUp:
    """Tape file that accepts ``room`` more bytes, then reports a full disk."""

    def __init__(self, fh, room: int) -> None:
        self._fh = fh
        self.room = room

    def write(self, data) -> int:
        if len(data) > self.room:
            self._fh.write(bytes(data[:self.room]))
            self.room = 0
            raise OSError(errno.ENOSPC, "No space left on device")
        self.room -= len(data)
        return self._fh.write(data)

    def __getattr__(self, name):
        return getattr(self._fh, name)


def test_failed_append_leaves_no_partial_entry(tmp_path) -> None:
    recorder = Recorder(tmp_path).open()
    try:
        recorder.record_event("s1", AssistantMessage(text="a"))
        real = recorder._fh
        recorder._fh = _FillsUp(real, 10)
        with pytest.raises(OSError):
            recorder.record_event("s1", AssistantMessage(text="lost"))
        recorder._fh = real
        recorder.record_event("s1", AssistantMessage(text="b"))
    finally:
        recorder.close()
    result = read_tape(recorder.tape_path)
    assert not result.is_corrupt
    assert [(e.seq, e.payload["text"]) for e in result.entries] == [(1, "a"), (2, "b")]
    assert recorder.entries_written == 2
