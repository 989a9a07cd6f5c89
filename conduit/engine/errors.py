"""Exception hierarchy for the orchestration layer.

One exception per failure mode. Only spawn failures and unrecoverable
tape corruption are meant to reach the end user as blocking failures;
everything else is surfaced as a non-blocking event or a typed error
at the control-action boundary.
"""
from __future__ import annotations

from typing import Any


class ConduitError(Exception):
    """Base exception for all conduit errors."""


class ConfigError(ConduitError):
    """Invalid configuration value or file."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid configuration: {reason}")


class SpawnFailureError(ConduitError):
    """Backend binary missing, not executable, or refused to start."""
    def __init__(self, agent_type: str, executable: str, reason: str):
        self.agent_type = agent_type
        self.executable = executable
        self.reason = reason
        super().__init__(
            f"Failed to spawn {agent_type} backend '{executable}': {reason}"
        )


class SessionNotFoundError(ConduitError):
    """Control action targeted a session id that is not registered."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionExistsError(ConduitError):
    """start_session called with an id that is already live."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class SessionNotRunningError(ConduitError):
    """Control action requires a live session but it is terminated or idle."""
    def __init__(self, session_id: str, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id} is not running (state={state})")


class ReplayViolationError(ConduitError):
    """A mutating action was attempted against a replaying session."""
    def __init__(self, session_id: str, action: str):
        self.session_id = session_id
        self.action = action
        super().__init__(
            f"Replay is read-only: '{action}' rejected for session {session_id}"
        )


class NotSupportedError(ConduitError):
    """The backend adapter does not support the requested operation."""
    def __init__(self, agent_type: str, operation: str):
        self.agent_type = agent_type
        self.operation = operation
        super().__init__(f"{agent_type} backend does not support {operation}")


class UnknownControlRequestError(ConduitError):
    """respond_to_control referenced a request id with no pending request."""
    def __init__(self, session_id: str, request_id: str):
        self.session_id = session_id
        self.request_id = request_id
        super().__init__(
            f"No pending control request {request_id} in session {session_id}"
        )


class ProtocolTranslationError(ConduitError):
    """One backend line could not be translated.

    Never escapes a stream: adapters convert it into a non-fatal
    ``Error`` event carrying the offending payload.
    """
    def __init__(self, agent_type: str, reason: str, payload: Any = None):
        self.agent_type = agent_type
        self.reason = reason
        self.payload = payload
        super().__init__(f"{agent_type} translation failed: {reason}")


class TapeCorruptionError(ConduitError):
    """An unreadable entry was found in a tape."""
    def __init__(self, path: str, recovered: int, total: int, line_no: int):
        self.path = path
        self.recovered = recovered
        self.total = total
        self.line_no = line_no
        super().__init__(
            f"Tape {path} is corrupt at line {line_no}: "
            f"recovered {recovered} of {total} entries"
        )


class TapeLockedError(ConduitError):
    """Another recorder already owns the tape of this data directory."""
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Tape is locked by another recorder: {path}")


class BundleIntegrityError(ConduitError):
    """Repro bundle is malformed; nothing was written."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid repro bundle {path}: {reason}")
