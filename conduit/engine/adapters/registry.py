"""Adapter registry. Maps backend names to AgentAdapter instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .base import AgentAdapter

if TYPE_CHECKING:
    from ..yaml_config import AgentConfig

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Registry of backend adapters.

    Maps short names (e.g. 'claude', 'codex') to AgentAdapter instances.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, AgentAdapter] = {}

    def register(self, name: str, adapter: AgentAdapter) -> None:
        """Register an adapter by name."""
        self._adapters[name] = adapter
        logger.info(
            "Adapter registered: %s (command=%s, available=%s)",
            name, adapter.command, adapter.is_available(),
        )

    def get_or_raise(self, name: str) -> AgentAdapter:
        """Get an adapter by name, raising KeyError if not found."""
        adapter = self._adapters.get(name)
        if adapter is None:
            available = ", ".join(self._adapters.keys())
            raise KeyError(
                f"Agent type '{name}' not registered. "
                f"Available: {available or 'none'}"
            )
        return adapter

    def list_names(self) -> list[str]:
        return list(self._adapters.keys())

    def availability(self) -> dict[str, bool]:
        """Backend name -> whether its CLI is on PATH."""
        return {name: adapter.is_available() for name, adapter in self._adapters.items()}

    def log_availability(self) -> None:
        report = self.availability()
        missing = [name for name, ok in report.items() if not ok]
        if missing:
            logger.warning("Backend CLI not found for: %s", ", ".join(missing))
        if report and len(missing) == len(report):
            logger.error("No backend CLI is installed; live sessions will fail to spawn")


def build_adapter_registry(
    agent_configs: dict[str, AgentConfig] | None = None,
) -> AdapterRegistry:
    """Build a registry with all built-in backends.

    Entries in ``agent_configs`` override the command, default model,
    extra arguments and environment of the backend with the same name.
    """
    from .claude_adapter import ClaudeAdapter
    from .codex_adapter import CodexAdapter
    from .gemini_adapter import GeminiAdapter

    builtin: dict[str, type[AgentAdapter]] = {
        "claude": ClaudeAdapter,
        "codex": CodexAdapter,
        "gemini": GeminiAdapter,
    }
    agent_configs = agent_configs or {}

    for name in agent_configs:
        if name not in builtin:
            logger.warning("Unknown agent type '%s' in config, skipping", name)

    registry = AdapterRegistry()
    for name, cls in builtin.items():
        cfg = agent_configs.get(name)
        if cfg is None:
            registry.register(name, cls())
            continue
        registry.register(name, cls(
            command=cfg.command,
            default_model=cfg.default_model,
            extra_args=cfg.extra_args,
            env=cfg.env,
        ))

    registry.log_availability()
    return registry
