"""Wiring between a chat host and the Projects state machinery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Protocol

from projects_ux.commands import CommandReply, ProjectsCommands
from projects_ux.config import ConfigSnapshot, ProjectsConfig, ensure_runtime_config, read_config_snapshot
from projects_ux.framing import FramingAdapter, FramingResult, RoutingResult
from projects_ux.guard import WipeGuard
from projects_ux.identity import CommandContext, HookContext, RoutingEvent
from projects_ux.store import CachedStateStore, PeerLocks, StateBackend, StateStore, WriteThroughStore

logger = logging.getLogger(__name__)

HOOK_PRIORITY = 100


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    description: str
    handler: Callable[[Any], Awaitable[CommandReply]]
    accepts_args: bool = True
    require_auth: bool = True


class HostApi(Protocol):
    plugin_config: Mapping[str, Any] | None
    logger: logging.Logger

    def resolve_path(self, path: str) -> str: ...

    def register_command(self, spec: CommandSpec) -> None: ...

    def on(self, hook: str, handler: Callable[..., Awaitable[Any]], *, priority: int = 0) -> None: ...


class ProjectsPlugin:
    """Owns the store, cache, locks, guard, framing adapter and command handlers."""

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        *,
        resolve_path: Callable[[str], str] = lambda p: str(Path(p).expanduser()),
        backend: StateBackend | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.log = log or logger
        for issue in snapshot.issues:
            self.log.error("projects_ux: invalid config: %s", issue)
        for warning in snapshot.warnings:
            self.log.warning("projects_ux: config warning: %s", warning)

        self.config: ProjectsConfig = ensure_runtime_config(snapshot)
        self.store = StateStore(resolve_path(self.config.storage_path))
        self.locks = PeerLocks()
        if backend is None:
            self.cache: StateBackend = CachedStateStore(self.store)
            self.backend: StateBackend = WriteThroughStore(self.cache)
        else:
            self.cache = backend
            self.backend = backend

        self.guard = WipeGuard(
            self.backend,
            self.store.root_dir,
            default_name=self.config.default_project_name,
            locks=self.locks,
        )
        self.framing = FramingAdapter(
            self.config,
            cache=self.cache,
            backend=self.backend,
            locks=self.locks,
            log=self.log,
        )
        self.commands = ProjectsCommands(
            self.config,
            backend=self.backend,
            guard=self.guard,
            locks=self.locks,
        )

    async def _run_command(
        self,
        name: str,
        handler: Callable[[CommandContext], Awaitable[CommandReply]],
        raw_ctx: Any,
    ) -> CommandReply:
        ctx = CommandContext.from_mapping(raw_ctx)
        try:
            return await handler(ctx)
        except Exception:  # noqa: BLE001
            self.log.exception("projects_ux: /%s failed for peer=%s", name, ctx.peer_key)
            return CommandReply(f"/{name} failed unexpectedly; nothing further was changed. See logs.")

    async def on_projects_command(self, raw_ctx: Any) -> CommandReply:
        return await self._run_command("projects", self.commands.handle_projects, raw_ctx)

    async def on_memory_command(self, raw_ctx: Any) -> CommandReply:
        return await self._run_command("memory", self.commands.handle_memory, raw_ctx)

    async def on_project_command(self, raw_ctx: Any) -> CommandReply:
        return await self._run_command("project", self.commands.handle_project_alias, raw_ctx)

    async def on_before_agent_start(self, event: Any, ctx: Any = None) -> FramingResult | None:
        # A framing failure must never block the agent turn.
        try:
            return await self.framing.before_agent_start(HookContext.from_mapping(ctx if ctx is not None else event))
        except Exception:  # noqa: BLE001
            self.log.exception("projects_ux: before_agent_start failed")
            return None

    async def on_resolve_room_key(self, event: Any, ctx: Any = None) -> RoutingResult | None:
        try:
            return await self.framing.resolve_room_key(RoutingEvent.from_mapping(event))
        except Exception:  # noqa: BLE001
            self.log.exception("projects_ux: resolve_room_key failed")
            return None

    def command_specs(self) -> list[CommandSpec]:
        return [
            CommandSpec(
                name="projects",
                description="Projects mode: on/off, list, new, switch, wipe.",
                handler=self.on_projects_command,
            ),
            CommandSpec(
                name="memory",
                description="Durable memory tokens (project-scoped by default).",
                handler=self.on_memory_command,
            ),
            CommandSpec(
                name="project",
                description="Deprecated alias for /projects.",
                handler=self.on_project_command,
            ),
        ]


def register(
    api: HostApi,
    *,
    backend: StateBackend | None = None,
    overrides: dict[str, str] | None = None,
) -> ProjectsPlugin:
    """Build the plugin from host config and register its commands and hooks."""
    snapshot = read_config_snapshot(api.plugin_config, overrides)
    plugin = ProjectsPlugin(snapshot, resolve_path=api.resolve_path, backend=backend, log=api.logger)
    for spec in plugin.command_specs():
        api.register_command(spec)
    api.on("before_agent_start", plugin.on_before_agent_start, priority=HOOK_PRIORITY)
    api.on("resolve_room_key", plugin.on_resolve_room_key, priority=HOOK_PRIORITY)
    plugin.log.info(
        "projects_ux: registered storage=%s dmChannel=%s hardIsolation=%s",
        plugin.store.path,
        plugin.config.dm_channel,
        plugin.config.hard_isolation.enabled,
    )
    return plugin
