"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONDUIT_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError
from .models import ReproMode

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _default_data_dir() -> str:
    return str(Path.home() / ".conduit")


@dataclass
class EngineConfig:
    """Orchestration layer configuration."""

    # Where conduit.db, repro/ and logs/ live.
    data_dir: str = ""
    default_agent: str = "claude"
    default_model: str | None = None

    # Record / replay switch.
    repro_mode: ReproMode = ReproMode.OFF
    # Replay acceleration factor. 1.0 = original timing, 0 = no delays.
    replay_speed: float = 1.0

    # Stream decoding
    max_line_bytes: int = 8 * 1024 * 1024

    # Queue sizes
    subscriber_queue_size: int = 1000
    process_queue_size: int = 1000

    # In-memory event log per session; the tape keeps everything.
    max_log_events: int = 2000

    # Seconds between SIGTERM and SIGKILL when stopping a backend.
    terminate_grace_seconds: float = 5.0

    # Ask the user before tool calls (backends that support it).
    tool_approval: bool = False

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.data_dir:
            self.data_dir = _default_data_dir()
        if isinstance(self.repro_mode, str) and not isinstance(self.repro_mode, ReproMode):
            self.repro_mode = ReproMode.parse(self.repro_mode)
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError for values no component can work with."""
        if self.replay_speed < 0:
            raise ConfigError(f"replay_speed must be >= 0, got {self.replay_speed}")
        if self.max_line_bytes <= 0:
            raise ConfigError(f"max_line_bytes must be positive, got {self.max_line_bytes}")
        if self.subscriber_queue_size <= 0:
            raise ConfigError(
                f"subscriber_queue_size must be positive, got {self.subscriber_queue_size}"
            )
        if self.process_queue_size <= 0:
            raise ConfigError(
                f"process_queue_size must be positive, got {self.process_queue_size}"
            )
        if self.max_log_events <= 0:
            raise ConfigError(f"max_log_events must be positive, got {self.max_log_events}")
        if self.terminate_grace_seconds < 0:
            raise ConfigError(
                f"terminate_grace_seconds must be >= 0, got {self.terminate_grace_seconds}"
            )

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "conduit.db"

    @property
    def repro_dir(self) -> Path:
        return Path(self.data_dir) / "repro"

    @property
    def tape_path(self) -> Path:
        return self.repro_dir / "tape.jsonl"

    @property
    def log_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CONDUIT_* environment variables."""
        conduit_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONDUIT_")
        }
        if conduit_vars:
            logger.info(
                "EngineConfig.from_env: CONDUIT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(conduit_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CONDUIT_* env vars set, using defaults")

        try:
            config = cls(
                data_dir=os.path.expanduser(
                    os.getenv("CONDUIT_DATA_DIR", "") or _default_data_dir()
                ),
                default_agent=os.getenv("CONDUIT_DEFAULT_AGENT", cls.default_agent),
                default_model=os.getenv("CONDUIT_DEFAULT_MODEL") or None,
                repro_mode=ReproMode.parse(os.getenv("CONDUIT_REPRO_MODE")),
                replay_speed=float(os.getenv(
                    "CONDUIT_REPLAY_SPEED", str(cls.replay_speed)
                )),
                max_line_bytes=int(os.getenv(
                    "CONDUIT_MAX_LINE_BYTES", str(cls.max_line_bytes)
                )),
                subscriber_queue_size=int(os.getenv(
                    "CONDUIT_SUBSCRIBER_QUEUE_SIZE", str(cls.subscriber_queue_size)
                )),
                max_log_events=int(os.getenv(
                    "CONDUIT_MAX_LOG_EVENTS", str(cls.max_log_events)
                )),
                terminate_grace_seconds=float(os.getenv(
                    "CONDUIT_TERMINATE_GRACE", str(cls.terminate_grace_seconds)
                )),
                tool_approval=(
                    os.getenv("CONDUIT_TOOL_APPROVAL", "").lower() in _TRUE_VALUES
                ),
                log_level=os.getenv("CONDUIT_LOG_LEVEL", cls.log_level).upper(),
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        logger.info(
            "EngineConfig.from_env: data_dir=%s agent=%s repro_mode=%s log_level=%s",
            config.data_dir, config.default_agent,
            config.repro_mode.value, config.log_level,
        )
        return config
