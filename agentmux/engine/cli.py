"""CLI entry point for the agent multiplexer.

Usage:
    agentmux agents
    agentmux permissions codex acceptEdits
    agentmux run claude-code "Explain main.py" --cwd .
    agentmux run codex --prompt-file task.md --permission-mode auto
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .config import EngineConfig
from .errors import OrchestrationError
from .models import PermissionMode


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentmux",
        description="Drive Claude Code, Codex and Gemini sessions through one interface",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: AGENTMUX_* env vars)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("agents", help="List agents, availability and capabilities")

    perms = sub.add_parser("permissions", help="Preview permission mode translation")
    perms.add_argument("agent", help="Agent type (claude-code, codex, gemini)")
    perms.add_argument(
        "mode",
        nargs="?",
        default=None,
        help="Mode to translate (default: show every unified mode)",
    )

    run = sub.add_parser("run", help="Create a session and run one prompt")
    run.add_argument("agent", help="Agent type (claude-code, codex, gemini)")
    run.add_argument("prompt", nargs="?", default=None, help="Prompt text")
    run.add_argument("--prompt-file", "-f", default=None, help="Read the prompt from a file")
    run.add_argument("--permission-mode", "-p", default=None, help="Permission mode for the session")
    run.add_argument("--cwd", default=None, help="Working directory for the agent")
    run.add_argument("--title", default=None, help="Session title")
    run.add_argument("--json", action="store_true", help="Print the response as JSON")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "permissions":
        sys.exit(_cmd_permissions(args.agent, args.mode))

    orchestrator = _build_orchestrator(args.config)
    try:
        if args.command == "agents":
            code = asyncio.run(_cmd_agents(orchestrator))
        else:
            prompt = _resolve_prompt(args.prompt, args.prompt_file)
            code = asyncio.run(_cmd_run(orchestrator, args, prompt))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    sys.exit(code)


def _build_orchestrator(config_path: str | None):
    from .orchestrator import AgentOrchestrator

    if config_path:
        return AgentOrchestrator.from_yaml(config_path)
    return AgentOrchestrator.from_config(EngineConfig.from_env())


def _cmd_permissions(agent: str, mode: str | None) -> int:
    from .permissions import get_permission_table

    table = get_permission_table(agent)
    modes = [mode] if mode is not None else [m.value for m in PermissionMode]
    print(f"{table.agent_type} (default: {table.default_mode})")
    for requested in modes:
        native = table.translate(requested)
        settings = ", ".join(f"{k}={v}" for k, v in native.settings.items())
        print(f"  {requested:<18} -> {native.mode:<18} {settings}")
    return 0


async def _cmd_agents(orchestrator) -> int:
    for descriptor in orchestrator.list_agents():
        adapter = orchestrator.get_agent(descriptor.agent_type)
        healthy = await adapter.health_check()
        caps = descriptor.capabilities.to_dict()
        extensions = caps.pop("extensions")
        enabled = [name for name, on in caps.items() if on]
        enabled.extend(name for name, on in extensions.items() if on)
        print(
            f"{descriptor.agent_type:<12} "
            f"{'ready' if healthy else 'unavailable':<12} "
            f"default={descriptor.default_permission_mode:<10} "
            f"{', '.join(enabled)}"
        )
    await orchestrator.shutdown()
    return 0


async def _cmd_run(orchestrator, args: argparse.Namespace, prompt: str) -> int:
    async def _print_chunk(event: dict) -> None:
        if event.get("event") == "message_chunk" and not args.json:
            sys.stdout.write(event.get("text", ""))
            sys.stdout.flush()

    orchestrator.notifications.add_sink(_print_chunk)
    try:
        session = await orchestrator.create_session(
            args.agent,
            permission_mode=args.permission_mode,
            working_directory=args.cwd,
            title=args.title,
        )
        outcome = await orchestrator.prompt(session.session_id, prompt)
    except OrchestrationError as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        await orchestrator.shutdown()
        return 1

    await orchestrator.notifications.flush()
    response = outcome.response
    if args.json:
        from .storage import response_to_dict

        print(json.dumps(response_to_dict(response), indent=2, default=str))
    else:
        print("\n\n=== Response ===\n")
        print(response.content)
        if response.usage is not None:
            usage = response.usage
            print(
                f"\n[{response.status.value}] tokens in={usage.input_tokens} "
                f"out={usage.output_tokens} cache_read={usage.cache_read_tokens}"
            )
        if response.model:
            print(f"Model: {response.model} (context window {response.context_window_limit})")
        if response.files_modified:
            print("Files modified: " + ", ".join(response.files_modified))
    await orchestrator.shutdown()
    return 0


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from the inline arg or a file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a prompt or --prompt-file, not both.")
        sys.exit(1)
    if file_path:
        path = Path(file_path)
        if not path.is_file():
            print(f"Error: Prompt file not found: {file_path}")
            sys.exit(1)
        return path.read_text(encoding="utf-8").strip()
    if inline:
        return inline
    print("Error: Provide a prompt or --prompt-file.")
    sys.exit(1)


if __name__ == "__main__":
    main()
