"""Backend adapters translating agent CLI output into unified events."""
from .base import AgentAdapter
from .claude_adapter import ClaudeAdapter
from .codex_adapter import CodexAdapter
from .gemini_adapter import GeminiAdapter
from .registry import AdapterRegistry, build_adapter_registry

__all__ = [
    "AgentAdapter",
    "AdapterRegistry",
    "ClaudeAdapter",
    "CodexAdapter",
    "GeminiAdapter",
    "build_adapter_registry",
]
