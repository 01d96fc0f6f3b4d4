"""agentmux: drive Claude Code, Codex and Gemini sessions through one interface."""

__version__ = "0.1.0"
