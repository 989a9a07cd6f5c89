"""Process supervisor for backend CLIs.

Owns a spawned subprocess: stdin writes, stdout decoding into a bounded
event queue, stderr tail capture, and termination (SIGTERM, then SIGKILL
after a grace period). Every handle's event stream ends with exactly one
``ProcessExit`` item, however the process ended.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .errors import SpawnFailureError
from .models import ProcessSpec
from .stream_decoder import DEFAULT_MAX_LINE_BYTES, RawEvent, StreamDecoder

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_STDERR_TAIL_CHARS = 4000
# How long to wait for the output pumps after the process is gone.
_PUMP_DRAIN_TIMEOUT = 2.0


@dataclass
class ProcessExit:
    """End-of-stream marker carrying how the process ended."""
    exit_code: int | None
    stderr_tail: str = ""
    terminated: bool = False


@dataclass
class ProcessHandle:
    """A running (or finished) backend process."""
    agent_type: str
    spec: ProcessSpec
    process: asyncio.subprocess.Process
    events: asyncio.Queue
    stderr_tail: str = ""
    terminated: bool = False
    exit: ProcessExit | None = None
    _pump_task: asyncio.Task | None = field(default=None, repr=False)
    _stderr_task: asyncio.Task | None = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.process.stdin

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None and not self._closed

    async def stream(self) -> AsyncIterator[RawEvent | ProcessExit]:
        """Yield decoded lines in order, then the ProcessExit marker."""
        while True:
            item = await self.events.get()
            yield item
            if isinstance(item, ProcessExit):
                return

    def _close(self, exit_info: ProcessExit) -> None:
        if self._closed:
            return
        self._closed = True
        self.exit = exit_info
        try:
            self.events.put_nowait(exit_info)
        except asyncio.QueueFull:
            # Consumer stopped reading; make room for the marker.
            dropped = self.events.get_nowait()
            logger.warning(
                "pid=%s event queue full at close, dropped %s",
                self.pid, type(dropped).__name__,
            )
            self.events.put_nowait(exit_info)


class ProcessSupervisor:
    """Spawns and supervises backend subprocesses."""

    def __init__(
        self,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        queue_size: int = 1000,
        grace_seconds: float = 5.0,
    ) -> None:
        self.max_line_bytes = max_line_bytes
        self.queue_size = queue_size
        self.grace_seconds = grace_seconds

    def _check_executable(self, agent_type: str, spec: ProcessSpec) -> str:
        exe = spec.executable
        if not exe:
            raise SpawnFailureError(agent_type, exe, "no executable configured")
        if os.sep in exe:
            if not os.path.isfile(exe):
                raise SpawnFailureError(agent_type, exe, "executable not found")
            if not os.access(exe, os.X_OK):
                raise SpawnFailureError(agent_type, exe, "permission denied")
            return exe
        resolved = shutil.which(exe)
        if resolved is None:
            raise SpawnFailureError(agent_type, exe, "executable not found on PATH")
        return resolved

    async def spawn(self, spec: ProcessSpec, agent_type: str = "") -> ProcessHandle:
        """Start the process described by ``spec``.

        Raises SpawnFailureError before anything else happens if the
        binary or working directory is unusable.
        """
        agent_type = agent_type or os.path.basename(spec.executable)
        exe = self._check_executable(agent_type, spec)
        if spec.cwd and not os.path.isdir(spec.cwd):
            raise SpawnFailureError(
                agent_type, spec.executable,
                f"working directory does not exist: {spec.cwd}",
            )

        env = None
        if spec.env:
            env = os.environ.copy()
            env.update(spec.env)

        try:
            process = await asyncio.create_subprocess_exec(
                exe,
                *spec.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise SpawnFailureError(agent_type, spec.executable, str(exc)) from exc
        except PermissionError as exc:
            raise SpawnFailureError(
                agent_type, spec.executable, f"permission denied: {exc}",
            ) from exc
        except OSError as exc:
            raise SpawnFailureError(agent_type, spec.executable, str(exc)) from exc

        handle = ProcessHandle(
            agent_type=agent_type,
            spec=spec,
            process=process,
            events=asyncio.Queue(maxsize=self.queue_size),
        )
        logger.info(
            "Spawned %s pid=%d: %s (cwd=%s)",
            agent_type, process.pid, " ".join(spec.argv)[:300], spec.cwd,
        )

        handle._stderr_task = asyncio.create_task(self._pump_stderr(handle))
        handle._pump_task = asyncio.create_task(self._pump_stdout(handle))

        if spec.stdin_payload is not None:
            await self.send_input(handle, spec.stdin_payload)
        if spec.close_stdin:
            await self._close_stdin(handle)
        return handle

    async def send_input(self, handle: ProcessHandle, data: bytes | str) -> None:
        """Write ``data`` to the process stdin and drain."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        stdin = handle.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError(f"stdin of pid {handle.pid} is closed")
        stdin.write(data)
        await stdin.drain()

    async def terminate(
        self, handle: ProcessHandle, grace: float | None = None,
    ) -> ProcessExit:
        """Stop the process and reap it. Safe to call more than once."""
        grace = self.grace_seconds if grace is None else grace
        handle.terminated = True
        process = handle.process

        if process.returncode is None:
            logger.info("Terminating %s pid=%d", handle.agent_type, handle.pid)
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "%s pid=%d did not exit within %.1fs, killing",
                    handle.agent_type, handle.pid, grace,
                )
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        await self._close_stdin(handle)
        await self._finish_pumps(handle)
        handle._close(ProcessExit(
            exit_code=process.returncode,
            stderr_tail=handle.stderr_tail,
            terminated=True,
        ))
        return handle.exit

    async def _close_stdin(self, handle: ProcessHandle) -> None:
        stdin = handle.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

    async def _finish_pumps(self, handle: ProcessHandle) -> None:
        for task in (handle._pump_task, handle._stderr_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=_PUMP_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                # A grandchild may still hold the pipe open.
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _pump_stdout(self, handle: ProcessHandle) -> None:
        decoder = StreamDecoder(self.max_line_bytes)
        stream = handle.process.stdout
        assert stream is not None
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                for raw in decoder.feed(chunk):
                    await handle.events.put(raw)
            for raw in decoder.flush():
                await handle.events.put(raw)
        except asyncio.CancelledError:
            logger.debug("stdout pump for pid=%d cancelled", handle.pid)
            raise
        if handle._closed:
            return
        if handle._stderr_task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(handle._stderr_task), timeout=_PUMP_DRAIN_TIMEOUT,
                )
            except asyncio.TimeoutError:
                pass
        exit_code = await handle.process.wait()
        logger.info(
            "%s pid=%d exited with code %s (%d lines)",
            handle.agent_type, handle.pid, exit_code, decoder.lines_seen,
        )
        handle._close(ProcessExit(
            exit_code=exit_code,
            stderr_tail=handle.stderr_tail,
            terminated=handle.terminated,
        ))

    async def _pump_stderr(self, handle: ProcessHandle) -> None:
        stream = handle.process.stderr
        assert stream is not None
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            for line in text.splitlines():
                if line.strip():
                    logger.debug("%s pid=%d stderr: %s", handle.agent_type, handle.pid, line)
            handle.stderr_tail = (handle.stderr_tail + text)[-_STDERR_TAIL_CHARS:]
