"""Conduit engine: agent sessions, backend adapters and the orchestrator."""
from .models import (
    AdapterCapabilities,
    AgentInput,
    AgentType,
    ProcessSpec,
    ReproMode,
    SessionContext,
    SessionLifecycle,
    TurnState,
)
from .config import EngineConfig
from .errors import (
    BundleIntegrityError,
    ConduitError,
    ConfigError,
    NotSupportedError,
    ProtocolTranslationError,
    ReplayViolationError,
    SessionExistsError,
    SessionNotFoundError,
    SessionNotRunningError,
    SpawnFailureError,
    TapeCorruptionError,
    TapeLockedError,
    UnknownControlRequestError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "Orchestrator",
    "AgentSession",
    "ProcessSupervisor",
    # Models
    "AdapterCapabilities",
    "AgentInput",
    "AgentType",
    "ProcessSpec",
    "ReproMode",
    "SessionContext",
    "SessionLifecycle",
    "TurnState",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "ConduitConfig",
    "load_yaml_config",
    # Errors
    "BundleIntegrityError",
    "ConduitError",
    "ConfigError",
    "NotSupportedError",
    "ProtocolTranslationError",
    "ReplayViolationError",
    "SessionExistsError",
    "SessionNotFoundError",
    "SessionNotRunningError",
    "SpawnFailureError",
    "TapeCorruptionError",
    "TapeLockedError",
    "UnknownControlRequestError",
]


def __getattr__(name: str):
    if name == "Orchestrator":
        from .orchestrator import Orchestrator
        return Orchestrator
    if name == "AgentSession":
        from .session import AgentSession
        return AgentSession
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "ConduitConfig":
        from .yaml_config import ConduitConfig
        return ConduitConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
