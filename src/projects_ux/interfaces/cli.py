"""Local REPL harness that hosts the plugin in-process."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from projects_ux.commands import CommandReply
from projects_ux.plugin import CommandSpec, ProjectsPlugin, register


@dataclass(slots=True)
class LocalHost:
    """In-process HostApi: collects registered commands and hooks."""

    plugin_config: Mapping[str, Any] | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("projects_ux.host"))
    commands: dict[str, CommandSpec] = field(default_factory=dict)
    hooks: dict[str, list[tuple[int, Callable[..., Awaitable[Any]]]]] = field(default_factory=dict)

    def resolve_path(self, path: str) -> str:
        return str(Path(path).expanduser())

    def register_command(self, spec: CommandSpec) -> None:
        self.commands[spec.name] = spec

    def on(self, hook: str, handler: Callable[..., Awaitable[Any]], *, priority: int = 0) -> None:
        handlers = self.hooks.setdefault(hook, [])
        handlers.append((priority, handler))
        handlers.sort(key=lambda item: item[0], reverse=True)

    async def emit(self, hook: str, *args: Any) -> Any:
        """Run handlers by priority; the first non-None result wins."""
        for _, handler in self.hooks.get(hook, []):
            result = await handler(*args)
            if result is not None:
                return result
        return None


@dataclass(slots=True)
class CliState:
    channel: str
    sender_id: str
    next_message_id: int = 1

    def take_message_id(self) -> int:
        message_id = self.next_message_id
        self.next_message_id += 1
        return message_id


def build_host(
    plugin_config: Mapping[str, Any] | None,
    overrides: dict[str, str] | None = None,
) -> tuple[LocalHost, ProjectsPlugin]:
    host = LocalHost(plugin_config=plugin_config)
    plugin = register(host, overrides=overrides)
    return host, plugin


def format_reply(reply: CommandReply) -> str:
    lines = [reply.text]
    for row in reply.actions:
        lines.append("  ".join(f"[{action.label}] -> {action.command}" for action in row))
    return "\n".join(lines)


def _print_help() -> None:
    print("Commands:")
    print("/help")
    print("/exit")
    print("/projects [on|off|list|new <name>|switch <name|id>|note|archive|unarchive|more|reset|wipe|debug|help]")
    print("/project ...  (deprecated alias)")
    print("/memory remember|list|global remember|global list|help")
    print("/frame  (run the framing hook for the local peer)")
    print("/route <room_key> [message_id]")


def _session_key(state: CliState) -> str:
    return f"agent:main:{state.channel}:dm:{state.sender_id}"


async def _dispatch(host: LocalHost, state: CliState, command_line: str) -> int:
    try:
        tokens = shlex.split(command_line)
    except ValueError as exc:
        print(f"Parse error: {exc}")
        return 2
    if not tokens:
        print("Empty command.")
        return 2

    command = tokens[0].lower()
    if command == "/help":
        _print_help()
        return 0

    if command == "/frame":
        ctx = {
            "sessionKey": _session_key(state),
            "channelId": state.channel,
            "conversationId": state.sender_id,
        }
        result = await host.emit("before_agent_start", {}, ctx)
        print(result.prepend_context if result is not None else "(no framing)")
        return 0

    if command == "/route":
        if len(tokens) < 2:
            print("Usage: /route <room_key> [message_id]")
            return 2
        try:
            message_id = int(tokens[2]) if len(tokens) > 2 else None
        except ValueError:
            print("message_id must be an integer")
            return 2
        event = {
            "channel": state.channel,
            "peer": {"kind": "dm", "id": state.sender_id},
            "roomKey": tokens[1],
            "messageId": message_id,
        }
        result = await host.emit("resolve_room_key", event, {})
        print(result.room_key if result is not None else f"{tokens[1]} (unchanged)")
        return 0

    spec = host.commands.get(command.lstrip("/"))
    if spec is None:
        print("Unknown command. Use /help.")
        return 2
    # Keep the caller's original spacing for names like "/projects new  My App".
    args = command_line.strip()[len(tokens[0]) :].strip() if spec.accepts_args else ""
    reply = await spec.handler(
        {
            "channel": state.channel,
            "senderId": state.sender_id,
            "args": args,
            "messageId": state.take_message_id(),
        }
    )
    print(format_reply(reply))
    return 0


def execute_single_command(host: LocalHost, command_line: str, *, channel: str, sender_id: str) -> int:
    state = CliState(channel=channel, sender_id=sender_id)
    return asyncio.run(_dispatch(host, state, command_line))


def run_cli(host: LocalHost, plugin: ProjectsPlugin, *, channel: str, sender_id: str) -> None:
    """Run CLI REPL."""
    state = CliState(channel=channel, sender_id=sender_id)
    print(f"projects-ux CLI ready (peer {channel}:{sender_id}). Type /help for commands.")
    if not plugin.snapshot.valid:
        print("Config invalid. Running with bootstrap defaults.")
        for issue in plugin.snapshot.issues:
            print(f"- {issue}")

    try:
        while True:
            raw = input("> ").strip()
            if not raw:
                continue
            if raw.lower() == "/exit":
                break
            if not raw.startswith("/"):
                print("Only slash commands are supported. Use /help.")
                continue
            asyncio.run(_dispatch(host, state, raw))
    except (EOFError, KeyboardInterrupt):
        print()
