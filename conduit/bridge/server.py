"""HTTP + SSE relay for the orchestrator.

Thin boundary: every request is translated into one orchestrator call
and every typed error into an HTTP status. Live events reach browsers
through ``GET /sessions/{id}/events`` as Server-Sent Events, one
``agent_event`` envelope per unified event.

Usage:
    conduit serve [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from ..engine.errors import (
    ConduitError,
    ConfigError,
    NotSupportedError,
    ReplayViolationError,
    SessionExistsError,
    SessionNotFoundError,
    SessionNotRunningError,
    SpawnFailureError,
    UnknownControlRequestError,
)
from ..engine.events import event_to_dict
from ..engine.orchestrator import Orchestrator
from ..repro.replayer import Replayer

logger = logging.getLogger(__name__)

# exception type -> (status, error code)
_ERROR_STATUS: list[tuple[type[ConduitError], int, str]] = [
    (SessionNotFoundError, 404, "session_not_found"),
    (SessionNotRunningError, 409, "session_not_running"),
    (ReplayViolationError, 409, "replay_read_only"),
    (SessionExistsError, 409, "session_exists"),
    (UnknownControlRequestError, 400, "unknown_control_request"),
    (NotSupportedError, 400, "not_supported"),
    (ConfigError, 400, "invalid_config"),
    (SpawnFailureError, 502, "spawn_failure"),
]


def error_response(exc: ConduitError) -> web.Response:
    """JSON error body for a typed orchestrator error."""
    for exc_type, status, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return web.json_response({"error": code, "message": str(exc)}, status=status)
    return web.json_response({"error": "internal", "message": str(exc)}, status=500)


def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": "invalid_request", "message": message}, status=400)


class ConduitRelay:
    """aiohttp application exposing one orchestrator."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        host: str = "127.0.0.1",
        port: int = 0,
        cwd: str | None = None,
        keepalive_seconds: float = 30.0,
        replayer: Replayer | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._host = host
        self._port = port
        self._cwd = cwd or os.getcwd()
        self._keepalive_seconds = keepalive_seconds
        self._replayer = replayer
        self._replay_task: asyncio.Task | None = None
        self._started_at = time.time()
        self._sse_clients = 0
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        if replayer is not None:
            self._app.on_startup.append(self._start_replay)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-conduit-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except ConduitError as exc:
            response = error_response(exc)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_get("/sessions/{id}/events", self._handle_session_events)
        r.add_post("/sessions/{id}/input", self._handle_input)
        r.add_post("/sessions/{id}/stop", self._handle_stop)
        r.add_post("/sessions/{id}/control", self._handle_control)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start serving, print the port to stdout, run until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Relay started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Conduit relay listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Relay shutting down")
        finally:
            await runner.cleanup()

    async def _start_replay(self, app: web.Application) -> None:
        # Sessions are registered before the first request is served.
        self._replayer.load()
        self._replay_task = asyncio.create_task(self._run_replay())

    async def _run_replay(self) -> None:
        try:
            report = await self._replayer.run()
        except Exception:
            logger.exception("Replay of %s failed", self._replayer.tape_path)
            return
        if report.ok:
            logger.info(
                "Replay of %s done: %d entries, handed_off=%s",
                report.tape_path, report.replayed, report.handed_off,
            )
        else:
            logger.error("Replay of %s stopped early: %s", report.tape_path, report.corruption)

    async def _on_shutdown(self, app: web.Application) -> None:
        if self._replay_task is not None and not self._replay_task.done():
            self._replay_task.cancel()
            await asyncio.gather(self._replay_task, return_exceptions=True)
        await self._orchestrator.shutdown()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any] | None:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _turn_options(body: dict[str, Any]) -> tuple[list[str], bool] | str:
        """(images, plan_mode) from a request body, or an error message."""
        images = body.get("images", [])
        if not isinstance(images, list) or not all(isinstance(p, str) and p for p in images):
            return "'images' must be a list of file paths"
        plan_mode = body.get("plan_mode", False)
        if not isinstance(plan_mode, bool):
            return "'plan_mode' must be a boolean"
        return images, plan_mode

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        sessions = self._orchestrator.list_sessions()
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._cwd,
            "repro_mode": self._orchestrator.config.repro_mode.value,
            "read_only": self._orchestrator.read_only,
            "replay_running": self._replay_task is not None and not self._replay_task.done(),
            "sessions": len(sessions),
            "sse_clients": self._sse_clients,
            "agents": self._orchestrator.adapters.availability(),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response({
            "sessions": [s.status() for s in self._orchestrator.list_sessions()],
        })

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        if body is None:
            return _bad_request("Body must be a JSON object")
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return _bad_request("'prompt' is required")
        options = self._turn_options(body)
        if isinstance(options, str):
            return _bad_request(options)
        images, plan_mode = options

        if body.get("resume"):
            session_id = body.get("session_id")
            if not isinstance(session_id, str) or not session_id:
                return _bad_request("'session_id' is required to resume")
            session = await self._orchestrator.resume_session(
                session_id, prompt, images=images, plan_mode=plan_mode,
            )
        else:
            session = await self._orchestrator.start_session(
                prompt,
                body.get("working_dir") or self._cwd,
                session_id=body.get("session_id"),
                agent_type=body.get("agent_type"),
                model=body.get("model"),
                images=images,
                plan_mode=plan_mode,
            )
        return web.json_response(session.status(), status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session = self._orchestrator.get_session(request.match_info["id"])
        return web.json_response(session.status())

    async def _handle_input(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await self._json_body(request)
        if body is None:
            return _bad_request("Body must be a JSON object")
        text = body.get("text")
        if not isinstance(text, str) or not text:
            return _bad_request("'text' is required")
        options = self._turn_options(body)
        if isinstance(options, str):
            return _bad_request(options)
        images, plan_mode = options
        await self._orchestrator.send_input(
            session_id, text, images=images, plan_mode=plan_mode,
        )
        return web.json_response({"ok": True, "session_id": session_id})

    async def _handle_stop(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        await self._orchestrator.stop_session(session_id)
        return web.json_response({"ok": True, "session_id": session_id})

    async def _handle_control(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await self._json_body(request)
        if body is None:
            return _bad_request("Body must be a JSON object")
        request_id = body.get("request_id")
        allow = body.get("allow")
        if not isinstance(request_id, str) or not request_id:
            return _bad_request("'request_id' is required")
        if not isinstance(allow, bool):
            return _bad_request("'allow' must be a boolean")
        await self._orchestrator.respond_to_control(session_id, request_id, allow)
        return web.json_response({"ok": True, "session_id": session_id})

    async def _handle_session_events(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["id"]
        # Raises before the stream is prepared so errors map to a status.
        subscription = self._orchestrator.subscribe(session_id)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)
        self._sse_clients += 1
        logger.info(
            "SSE client connected session=%s req=%s active_clients=%d",
            session_id[:8], request.get("req_id", "unknown"), self._sse_clients,
        )

        try:
            await response.write(
                f"event: connected\ndata: {json.dumps({'session_id': session_id})}\n\n".encode()
            )
            while True:
                try:
                    event = await asyncio.wait_for(
                        subscription.get(), timeout=self._keepalive_seconds,
                    )
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if event is None:
                    await response.write(
                        f"event: end\ndata: {json.dumps({'session_id': session_id})}\n\n".encode()
                    )
                    break
                envelope = {
                    "type": "agent_event",
                    "session_id": session_id,
                    "event": event_to_dict(event),
                }
                await response.write(
                    f"event: agent_event\ndata: {json.dumps(envelope)}\n\n".encode()
                )
        except ConnectionResetError:
            logger.debug("SSE client went away session=%s", session_id[:8])
        finally:
            subscription.close()
            self._sse_clients -= 1
            logger.info(
                "SSE client disconnected session=%s dropped=%d active_clients=%d",
                session_id[:8], subscription.dropped, self._sse_clients,
            )
        return response
