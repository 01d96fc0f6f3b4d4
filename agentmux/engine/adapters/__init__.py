"""Agent adapters for multi-vendor sessions."""
from .base import (
    AdapterSessionState,
    AgentAdapter,
    VendorCall,
    VendorClient,
    VendorOptions,
)
from .registry import AgentRegistry, build_agent_registry
from .claude_adapter import ClaudeCodeAdapter, ClaudeSdkClient
from .codex_adapter import CodexAdapter, CodexExecClient
from .gemini_adapter import GeminiAdapter, GeminiCliClient

__all__ = [
    "AdapterSessionState",
    "AgentAdapter",
    "VendorCall",
    "VendorClient",
    "VendorOptions",
    "AgentRegistry",
    "build_agent_registry",
    "ClaudeCodeAdapter",
    "ClaudeSdkClient",
    "CodexAdapter",
    "CodexExecClient",
    "GeminiAdapter",
    "GeminiCliClient",
]
