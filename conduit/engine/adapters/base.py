"""Abstract base for backend adapters.

Each adapter wraps one agent CLI family (Claude Code, Codex, Gemini).
It knows how to build the subprocess invocation, how to encode input
for the backend's stdin, and how to translate each decoded stdout line
into the unified event vocabulary.

Translation is synchronous and side-effect free apart from logging:
an adapter instance holds no per-session state and can be shared by
any number of sessions.
"""
from __future__ import annotations

import abc
import logging
import shutil
from typing import Any

from ..errors import NotSupportedError, ProtocolTranslationError
from ..events import Error, Raw, TurnCompleted, UnifiedEvent
from ..models import AdapterCapabilities, ProcessSpec, SessionContext
from ..stream_decoder import RawEvent

logger = logging.getLogger(__name__)

# Max characters of stderr quoted in a synthesized exit error.
STDERR_TAIL_CHARS = 2000


class AgentAdapter(abc.ABC):
    """Shared adapter contract.

    Subclasses implement ``name``, ``capabilities``, ``build_invocation``
    and ``_translate``. ``translate_line`` is what the session pipeline
    calls: it splits compound backend messages with ``explode`` and runs
    each piece through ``translate``.
    """

    # Model ids this backend is known to accept. Others still pass
    # through but are logged.
    KNOWN_MODELS: tuple[str, ...] = ()
    DEFAULT_COMMAND: str = ""

    def __init__(
        self,
        command: str | None = None,
        default_model: str | None = None,
        extra_args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._command = self.resolve_command(command or self.DEFAULT_COMMAND)
        self.default_model = default_model
        self.extra_args = list(extra_args or [])
        self.env = dict(env or {})

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude', 'codex')."""

    @property
    def command(self) -> str:
        return self._command

    @abc.abstractmethod
    def capabilities(self) -> AdapterCapabilities:
        """Declare what this backend supports."""

    @abc.abstractmethod
    def build_invocation(self, ctx: SessionContext) -> ProcessSpec:
        """Build the subprocess invocation for one turn (or one
        long-lived process, for persistent backends)."""

    @abc.abstractmethod
    def _translate(self, data: dict[str, Any]) -> UnifiedEvent | None:
        """Translate one backend JSON object.

        Return None only through ``self.drop`` so the reason is logged.
        May raise any exception; ``translate`` converts it.
        """

    def is_available(self) -> bool:
        """Check whether the backend binary is installed."""
        return shutil.which(self._command) is not None

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a backend binary, preferring the explicit command.

        A command that is not on PATH is kept as-is so spawn errors can
        name the configured value.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s", command, fallback,
            )
            return fallback
        return command or fallback or ""

    def resolve_model(self, model: str | None) -> str | None:
        """Pick the model for a session and warn about unknown ids."""
        model = model or self.default_model
        if model and self.KNOWN_MODELS and model not in self.KNOWN_MODELS:
            logger.warning(
                "Model '%s' is not a known %s model (known: %s); passing it through",
                model, self.name, ", ".join(self.KNOWN_MODELS),
            )
        return model

    def format_input(self, text: str, images: list[str] | None = None) -> bytes:
        """Encode a follow-up user message for the backend's stdin."""
        raise NotSupportedError(self.name, "follow-up input over stdin")

    def format_control_response(self, request_id: str, allow: bool) -> bytes:
        """Encode an answer to a ControlRequest for the backend's stdin."""
        raise NotSupportedError(self.name, "control responses")

    def explode(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Split one backend message into independently translatable parts.

        Default: the message is already atomic.
        """
        return [data]

    def translate(self, data: Any) -> UnifiedEvent | None:
        """Translate one raw backend object into at most one unified event.

        Never raises: a failure becomes a non-fatal ``Error`` carrying the
        offending payload, and the stream continues.
        """
        if not isinstance(data, dict):
            return Raw(backend_payload=data, agent_type=self.name)
        try:
            return self._translate(data)
        except Exception as exc:
            err = ProtocolTranslationError(self.name, str(exc), data)
            logger.warning("%s (type=%s)", err, data.get("type"))
            return Error(message=str(err), is_fatal=False, payload=data)

    def translate_line(self, raw: RawEvent) -> list[UnifiedEvent]:
        """Translate one decoded stdout line, in order."""
        if raw.is_diagnostic:
            return [Raw(
                backend_payload={
                    "diagnostic": raw.diagnostic,
                    "line_no": raw.line_no,
                    "truncated": raw.truncated,
                },
                agent_type=self.name,
            )]
        if not isinstance(raw.data, dict):
            return [Raw(backend_payload=raw.data, agent_type=self.name)]
        try:
            parts = self.explode(raw.data)
        except Exception as exc:
            logger.warning(
                "%s could not split line %d: %s", self.name, raw.line_no, exc,
            )
            parts = [raw.data]
        events: list[UnifiedEvent] = []
        for part in parts:
            event = self.translate(part)
            if event is not None:
                events.append(event)
        return events

    def drop(self, data: dict[str, Any], reason: str) -> None:
        """Drop a raw event on purpose, with a logged reason."""
        logger.debug(
            "%s dropped %s event: %s", self.name, data.get("type", "?"), reason,
        )
        return None

    def unknown(self, data: dict[str, Any]) -> Raw:
        """Preserve an event type this adapter does not understand."""
        logger.debug("%s passing through unknown event type %s",
                     self.name, data.get("type"))
        return Raw(backend_payload=data, agent_type=self.name)

    def terminal_event_on_exit(
        self, exit_code: int | None, stderr_tail: str = "",
    ) -> UnifiedEvent:
        """Synthesize the event that closes a turn whose process exited
        without a clean completion signal."""
        if exit_code == 0:
            return TurnCompleted(usage=None)
        tail = stderr_tail.strip()[-STDERR_TAIL_CHARS:]
        message = f"{self.name} exited with code {exit_code} before completing the turn"
        if tail:
            message = f"{message}: {tail}"
        return Error(message=message, is_fatal=True)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(command={self._command!r})"


def text_of(content: Any) -> str:
    """Flatten a tool result / message content field to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text" or "text" in item:
                    parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    if isinstance(content, dict) and "text" in content:
        return str(content["text"])
    return str(content)
