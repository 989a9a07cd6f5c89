"""Process supervisor tests against real ``python -c`` subprocesses."""
from __future__ import annotations

import asyncio
import os
import signal
import sys

import pytest

from conduit.engine.errors import SpawnFailureError
from conduit.engine.models import ProcessSpec
from conduit.engine.stream_decoder import RawEvent
from conduit.engine.supervisor import ProcessExit, ProcessSupervisor


def _python(code: str, **kwargs) -> ProcessSpec:
    return ProcessSpec(executable=sys.executable, args=["-c", code], **kwargs)


async def _drain(handle, timeout: float = 10.0) -> list:
    items = []

    async def _run():
        async for item in handle.stream():
            items.append(item)

    await asyncio.wait_for(_run(), timeout)
    return items


@pytest.mark.asyncio
async def test_missing_executable_raises_spawn_failure() -> None:
    supervisor = ProcessSupervisor()
    with pytest.raises(SpawnFailureError, match="not found"):
        await supervisor.spawn(ProcessSpec(executable="/nonexistent/agent"), "claude")
    with pytest.raises(SpawnFailureError, match="PATH"):
        await supervisor.spawn(ProcessSpec(executable="conduit-no-such-binary"), "codex")


@pytest.mark.asyncio
async def test_non_executable_file_raises_spawn_failure(tmp_path) -> None:
    script = tmp_path / "agent"
    script.write_text("#!/bin/sh\necho hi\n")
    os.chmod(script, 0o644)
    with pytest.raises(SpawnFailureError, match="permission denied") as excinfo:
        await ProcessSupervisor().spawn(ProcessSpec(executable=str(script)), "gemini")
    assert excinfo.value.agent_type == "gemini"


@pytest.mark.asyncio
async def test_bad_working_directory_raises_spawn_failure(tmp_path) -> None:
    with pytest.raises(SpawnFailureError, match="working directory"):
        await ProcessSupervisor().spawn(_python("pass", cwd=str(tmp_path / "gone")))


@pytest.mark.asyncio
async def test_stream_preserves_order_and_ends_with_exit() -> None:
    code = (
        "import sys\n"
        "for i in range(200):\n"
        "    print('{\"n\": %d}' % i)\n"
        "sys.stderr.write('bad things\\n')\n"
        "sys.exit(3)\n"
    )
    handle = await ProcessSupervisor().spawn(_python(code, close_stdin=True), "fake")
    items = await _drain(handle)
    lines = [i for i in items if isinstance(i, RawEvent)]
    assert [line.data["n"] for line in lines] == list(range(200))
    assert isinstance(items[-1], ProcessExit)
    assert items[-1].exit_code == 3
    assert "bad things" in items[-1].stderr_tail
    assert items[-1].terminated is False
    assert sum(isinstance(i, ProcessExit) for i in items) == 1


@pytest.mark.asyncio
async def test_stdin_payload_and_follow_up_input() -> None:
    code = (
        "import sys\n"
        "for line in sys.stdin:\n"
        "    print(line.strip(), flush=True)\n"
    )
    supervisor = ProcessSupervisor()
    handle = await supervisor.spawn(_python(code, stdin_payload=b'{"first": 1}\n'), "fake")
    await supervisor.send_input(handle, '{"second": 2}\n')
    first = await asyncio.wait_for(handle.events.get(), 10)
    second = await asyncio.wait_for(handle.events.get(), 10)
    assert first.data == {"first": 1}
    assert second.data == {"second": 2}
    exit_info = await supervisor.terminate(handle, grace=2.0)
    assert exit_info.terminated
    with pytest.raises(BrokenPipeError):
        await supervisor.send_input(handle, "late\n")


@pytest.mark.asyncio
async def test_terminate_is_idempotent() -> None:
    supervisor = ProcessSupervisor(grace_seconds=2.0)
    handle = await supervisor.spawn(_python("import time; time.sleep(30)"), "fake")
    first = await supervisor.terminate(handle)
    second = await supervisor.terminate(handle)
    assert first is second
    assert first.exit_code == -signal.SIGTERM
    assert not handle.is_alive
    items = await _drain(handle)
    assert items == [first]


@pytest.mark.asyncio
async def test_terminate_escalates_to_sigkill() -> None:
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    supervisor = ProcessSupervisor(grace_seconds=0.3)
    handle = await supervisor.spawn(_python(code), "stubborn")
    ready = await asyncio.wait_for(handle.events.get(), 10)
    assert ready.diagnostic == "ready"
    exit_info = await asyncio.wait_for(supervisor.terminate(handle), 10)
    assert exit_info.exit_code == -signal.SIGKILL
    assert exit_info.terminated


@pytest.mark.asyncio
async def test_extra_env_is_merged(monkeypatch) -> None:
    monkeypatch.setenv("CONDUIT_TEST_BASE", "base")
    code = (
        "import json, os\n"
        "print(json.dumps([os.environ['CONDUIT_TEST_BASE'], os.environ['CONDUIT_TEST_EXTRA']]))\n"
    )
    handle = await ProcessSupervisor().spawn(
        _python(code, env={"CONDUIT_TEST_EXTRA": "extra"}, close_stdin=True), "fake",
    )
    items = await _drain(handle)
    assert items[0].data == ["base", "extra"]
    assert items[-1].exit_code == 0
