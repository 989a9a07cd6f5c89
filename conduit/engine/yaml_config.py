"""YAML configuration loader.

Optional file layered on top of environment configuration.

Example YAML:
    engine:
      data_dir: ~/.conduit
      default_agent: codex
      repro_mode: record
      replay_speed: 2.0

    agents:
      claude:
        command: /opt/claude/bin/claude
        default_model: sonnet
      codex:
        default_model: gpt-5.2-codex
        extra_args: ["--sandbox", "workspace-write"]
        env:
          OPENAI_API_KEY: sk-...
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ConfigError
from .models import ReproMode

logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Per-backend overrides."""
    command: str | None = None
    default_model: str | None = None
    extra_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ConduitConfig:
    """Complete parsed configuration."""
    engine: EngineConfig
    agents: dict[str, AgentConfig] = field(default_factory=dict)


_ENGINE_FIELD_TYPES: dict[str, type] = {
    "data_dir": str,
    "default_agent": str,
    "default_model": str,
    "repro_mode": str,
    "replay_speed": float,
    "max_line_bytes": int,
    "subscriber_queue_size": int,
    "process_queue_size": int,
    "max_log_events": int,
    "terminate_grace_seconds": float,
    "tool_approval": bool,
    "log_level": str,
}


def _coerce(section: str, key: str, value: Any, expected: type) -> Any:
    if value is None:
        return None
    if expected is float and isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if expected is int and isinstance(value, int) and not isinstance(value, bool):
        return value
    if expected is bool and isinstance(value, bool):
        return value
    if expected is str and isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigError(
        f"{section}.{key} must be {expected.__name__}, got {type(value).__name__}"
    )


def _apply_engine_section(base: EngineConfig, raw: dict[str, Any]) -> EngineConfig:
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        expected = _ENGINE_FIELD_TYPES.get(key)
        if expected is None:
            logger.warning("Unknown engine config key '%s', ignoring", key)
            continue
        overrides[key] = _coerce("engine", key, value, expected)

    if "data_dir" in overrides and overrides["data_dir"]:
        overrides["data_dir"] = os.path.expanduser(overrides["data_dir"])
    if "repro_mode" in overrides:
        try:
            overrides["repro_mode"] = ReproMode.parse(overrides["repro_mode"])
        except ValueError as exc:
            raise ConfigError(f"engine.repro_mode: {exc}") from exc
    if "log_level" in overrides and overrides["log_level"]:
        overrides["log_level"] = overrides["log_level"].upper()

    values = {f.name: getattr(base, f.name) for f in fields(EngineConfig)}
    values.update(overrides)
    return EngineConfig(**values)


def _parse_agents(raw: Any) -> dict[str, AgentConfig]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("agents must be a mapping of backend name to settings")

    agents: dict[str, AgentConfig] = {}
    for name, cfg in raw.items():
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            raise ConfigError(f"agents.{name} must be a mapping")
        for key in cfg:
            if key not in ("command", "default_model", "extra_args", "env"):
                logger.warning("Unknown key '%s' in agents.%s, ignoring", key, name)

        extra_args = cfg.get("extra_args") or []
        if not isinstance(extra_args, list):
            raise ConfigError(f"agents.{name}.extra_args must be a list")
        env = cfg.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigError(f"agents.{name}.env must be a mapping")

        agents[str(name)] = AgentConfig(
            command=_coerce(f"agents.{name}", "command", cfg.get("command"), str),
            default_model=_coerce(
                f"agents.{name}", "default_model", cfg.get("default_model"), str,
            ),
            extra_args=[str(a) for a in extra_args],
            env={str(k): str(v) for k, v in env.items()},
        )
    return agents


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> ConduitConfig:
    """Load and parse a YAML config file.

    Values from the ``engine:`` section override ``base`` (typically
    ``EngineConfig.from_env()``).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"{path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )
    for section in top_sections:
        if section not in ("engine", "agents"):
            logger.warning("Unknown config section '%s', ignoring", section)

    engine_raw = raw.get("engine") or {}
    if not isinstance(engine_raw, dict):
        raise ConfigError("engine must be a mapping")

    engine = _apply_engine_section(base or EngineConfig(), engine_raw)
    agents = _parse_agents(raw.get("agents"))
    return ConduitConfig(engine=engine, agents=agents)
