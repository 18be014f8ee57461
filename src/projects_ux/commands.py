"""Chat command surface: ``/projects``, ``/memory`` and the deprecated ``/project``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from projects_ux.config import ProjectsConfig
from projects_ux.errors import ProjectsError, StoreWriteError, UsageError, WipeRefusedError
from projects_ux.framing import sanitize_room_key_token
from projects_ux.guard import WIPE_CONFIRM_TTL_MS, WipeGuard
from projects_ux.identity import CommandContext
from projects_ux.lifecycle import (
    archive_project,
    create_project,
    default_project_id,
    ensure_default,
    mark_effective_from,
    ordered_projects,
    remember_token,
    set_enabled,
    set_note,
    switch_project,
    unarchive_project,
)
from projects_ux.models import PeerState, Project
from projects_ux.store import PeerLocks, StateBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_PROJECT_BUTTONS = 8
_CONFIRM_SECONDS = WIPE_CONFIRM_TTL_MS // 1000
DEPRECATION_PREFIX = "Note: /project is deprecated, use /projects.\n\n"


@dataclass(frozen=True, slots=True)
class ReplyAction:
    """A selectable action; ``command`` is the exact command line it invokes."""

    label: str
    command: str


@dataclass(slots=True)
class CommandReply:
    text: str
    actions: list[list[ReplyAction]] = field(default_factory=list)


def _mode_line(enabled: bool) -> str:
    return "Mode: Projects ON" if enabled else "Mode: Classic (Projects OFF)"


def _label(project: Project | None) -> str:
    return f"{project.name} ({project.id})" if project else "(none)"


def _pairs(actions: list[ReplyAction]) -> list[list[ReplyAction]]:
    return [actions[i : i + 2] for i in range(0, len(actions), 2)]


def render_project_list(peer: PeerState) -> str:
    projects = ordered_projects(peer)
    if not projects:
        return "(no projects)"
    return "\n".join(f"- {p.name} ({p.id})" for p in projects)


def project_buttons(peer: PeerState | None) -> list[list[ReplyAction]]:
    enabled = peer is not None and peer.enabled
    rows: list[list[ReplyAction]] = [
        [
            ReplyAction("Turn Projects OFF (Classic)", "/projects off")
            if enabled
            else ReplyAction("Turn Projects ON", "/projects on")
        ]
    ]
    top = ordered_projects(peer)[:_MAX_PROJECT_BUTTONS] if peer is not None else []
    rows.extend(_pairs([ReplyAction(p.name, f"/projects switch {p.id}") for p in top]))
    rows.append([ReplyAction("New project", "/projects new")])
    rows.append([ReplyAction("More...", "/projects more")])
    return rows


PROJECTS_HELP = (
    "Projects mode is a routing mode:\n"
    "- Classic (OFF): one normal chat history\n"
    "- Projects (ON): separate history per project\n\n"
    "Commands:\n"
    "/projects\n"
    "/projects on\n"
    "/projects off\n"
    "/projects list\n"
    "/projects new <name>\n"
    "/projects switch <name|id>\n"
    "/projects note [<text>|clear]\n"
    "/projects archive <name|id>\n"
    "/projects unarchive <name|id>\n"
    "/projects more\n"
    "/projects wipe\n\n"
    "Alias (deprecated): /project\n\n"
    "Durable memory (scoped by default):\n"
    "/memory remember <token>\n"
    "/memory list\n"
    "/memory global remember <token>\n"
    "/memory global list\n"
)

MEMORY_HELP = (
    "Memory is separate from transcript history.\n"
    "Default scope is the current project.\n\n"
    "Commands:\n"
    "/memory remember <token>\n"
    "/memory list\n"
    "/memory global remember <token>\n"
    "/memory global list\n"
)


class ProjectsCommands:
    """Parses command arguments and applies them to the caller's peer state."""

    def __init__(
        self,
        config: ProjectsConfig,
        *,
        backend: StateBackend,
        guard: WipeGuard,
        locks: PeerLocks,
    ) -> None:
        self._config = config
        self._backend = backend
        self._guard = guard
        self._locks = locks

    @property
    def _default_name(self) -> str:
        return self._config.default_project_name

    def _tracks_message_ids(self, ctx: CommandContext) -> bool:
        # Message ids are only comparable within the DM channel that routing reads them from.
        return (ctx.channel or "").lower() == self._config.dm_channel.lower() and ctx.message_id is not None

    def _mark(self, peer: PeerState, ctx: CommandContext) -> None:
        if self._tracks_message_ids(ctx):
            mark_effective_from(peer, ctx.message_id)

    async def _mutate(self, peer_key: str, fn: Callable[[PeerState], T]) -> T:
        """Load, heal, mutate and persist one peer; a raised ProjectsError writes nothing."""
        async with self._locks.hold(peer_key), self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key) or PeerState()
            ensure_default(peer, self._default_name)
            result = fn(peer)
            store.peers[peer_key] = peer
            await self._backend.write_atomic(store)
            return result

    async def _read(self, peer_key: str) -> PeerState | None:
        """Load one peer, persisting only if self-healing changed it."""
        async with self._locks.hold(peer_key), self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key)
            if peer is not None and ensure_default(peer, self._default_name):
                await self._backend.write_atomic(store)
            return peer

    # ------------------------------------------------------------------
    # /projects
    # ------------------------------------------------------------------

    async def handle_projects(self, ctx: CommandContext) -> CommandReply:
        try:
            return await self._dispatch_projects(ctx)
        except StoreWriteError as exc:
            logger.error("commands: state write failed", extra={"peer": ctx.peer_key, "error": exc.message})
            return CommandReply(f"Failed to save Projects state; the change was not applied.\n({exc.message})")
        except ProjectsError as exc:
            return CommandReply(exc.message)

    async def _dispatch_projects(self, ctx: CommandContext) -> CommandReply:
        args = ctx.args
        if args.lower() == "new":
            return CommandReply("Usage: /projects new <name>")

        parts = args.split()
        sub = parts[0].lower() if parts else ""
        rest = args.split(None, 1)[1].strip() if len(parts) > 1 else ""

        if not sub:
            return await self._status(ctx)
        if sub == "help":
            return CommandReply(PROJECTS_HELP)
        if sub == "debug":
            return await self._debug(ctx)
        if sub == "more":
            return CommandReply(
                "More...",
                [
                    [ReplyAction("Back", "/projects")],
                    [ReplyAction("Debug", "/projects debug"), ReplyAction("Memory...", "/projects memory")],
                    [ReplyAction("Reset...", "/projects reset")],
                ],
            )
        if sub == "memory":
            return CommandReply(
                "Memory (scoped):\n"
                "- /memory remember <token>\n"
                "- /memory list\n\n"
                "Global memory (explicit):\n"
                "- /memory global remember <token>\n"
                "- /memory global list\n\n"
                "Note: transcripts are never modified by Projects reset/wipe.",
                [[ReplyAction("Back", "/projects more")]],
            )
        if sub == "reset":
            return await self._reset(ctx, parts)
        if sub == "wipe":
            return await self._wipe(ctx, parts)
        if sub == "on":
            return await self._on(ctx)
        if sub == "off":
            return await self._off(ctx)
        if sub == "list":
            return await self._list(ctx)
        if sub == "new":
            return await self._new(ctx, rest)
        if sub == "switch":
            return await self._switch(ctx, rest)
        if sub == "note":
            return await self._note(ctx, rest)
        if sub == "archive":
            return await self._archive(ctx, rest)
        if sub == "unarchive":
            return await self._unarchive(ctx, rest)
        return CommandReply(PROJECTS_HELP)

    async def _status(self, ctx: CommandContext) -> CommandReply:
        peer = await self._read(ctx.peer_key)
        enabled = peer is not None and peer.enabled
        warning = "" if enabled else "\n\nProjects are OFF. Turning ON creates separate histories."
        current = _label(peer.active_project if peer else None)
        return CommandReply(
            f"{_mode_line(enabled)}{warning}\n\n"
            f"Active project: {current}\n\n"
            "Use /projects on/off, /projects list, /projects new <name>, or /projects switch <name|id>.",
            project_buttons(peer),
        )

    async def _debug(self, ctx: CommandContext) -> CommandReply:
        peer = await self._read(ctx.peer_key)
        if peer is None:
            return CommandReply(
                "No peer state yet.\n\n"
                "Send /projects on or /projects new <name> to initialize Projects state for this DM."
            )
        hard = self._config.hard_isolation.enabled
        active = peer.active_project
        suffix = sanitize_room_key_token(active.id) if active else ""
        if hard and peer.enabled and suffix:
            routing = f"will append :proj:{suffix} to the base DM session key"
        else:
            routing = "will NOT append any :proj: suffix (Classic/base session)"
        effective = peer.effective_from_message_id
        lines = [
            f"Mode: {'Projects ON' if peer.enabled else 'Classic (Projects OFF)'}",
            f"hardIsolationEnabled: {'true' if hard else 'false'}",
            f"activeProject: {_label(active)}",
            f"previousProjectId: {peer.previous_project_id or '(none)'}",
            f"effectiveFromMessageId: {effective if effective is not None else '(none)'}",
            f"pendingWipe: {peer.pending_wipe.kind.value if peer.pending_wipe else '(none)'}",
            f"Routing: {routing}",
        ]
        return CommandReply("\n".join(lines))

    async def _on(self, ctx: CommandContext) -> CommandReply:
        def _apply(peer: PeerState) -> Project | None:
            chosen = set_enabled(peer, True)
            self._mark(peer, ctx)
            return chosen

        project = await self._mutate(ctx.peer_key, _apply)
        return CommandReply(f"Projects ON. Active: {_label(project)}")

    async def _off(self, ctx: CommandContext) -> CommandReply:
        def _apply(peer: PeerState) -> None:
            set_enabled(peer, False)
            self._mark(peer, ctx)

        await self._mutate(ctx.peer_key, _apply)
        return CommandReply("Projects OFF (Classic). Next messages go to Classic history.")

    async def _list(self, ctx: CommandContext) -> CommandReply:
        peer = await self._read(ctx.peer_key)
        if peer is None:
            return CommandReply(
                "Mode: Classic (Projects OFF)\n\nNo projects yet. Use /projects on, /projects new <name>."
            )
        header = f"Active: {_label(peer.active_project)}"
        return CommandReply(
            f"{_mode_line(peer.enabled)}\n{header}\n\n{render_project_list(peer)}",
            project_buttons(peer),
        )

    async def _new(self, ctx: CommandContext, name: str) -> CommandReply:
        if not name:
            raise UsageError("Usage: /projects new <name>")

        def _apply(peer: PeerState) -> tuple[Project, bool]:
            project, existed = create_project(peer, name, max_projects=self._config.max_projects)
            peer.projects_enabled = True
            self._mark(peer, ctx)
            return project, existed

        project, existed = await self._mutate(ctx.peer_key, _apply)
        if existed:
            return CommandReply(f"Switched to existing project: {_label(project)}")
        return CommandReply(f"Created and switched to project: {_label(project)}")

    async def _switch(self, ctx: CommandContext, key: str) -> CommandReply:
        if not key:
            raise UsageError("Usage: /projects switch <name|id>")

        def _apply(peer: PeerState) -> Project:
            project = switch_project(peer, key)
            peer.projects_enabled = True
            self._mark(peer, ctx)
            return project

        project = await self._mutate(ctx.peer_key, _apply)
        return CommandReply(f"Switched to project: {_label(project)}")

    async def _note(self, ctx: CommandContext, text: str) -> CommandReply:
        if not text:
            peer = await self._read(ctx.peer_key)
            active = peer.active_project if peer else None
            if active is None:
                return CommandReply("No active project.")
            if not active.note:
                return CommandReply(f"No note for project {active.name}. Use /projects note <text>.")
            return CommandReply(f"Note for project {active.name}:\n{active.note}")

        cleared = text.lower() == "clear"
        project = await self._mutate(ctx.peer_key, lambda peer: set_note(peer, None if cleared else text))
        if cleared:
            return CommandReply(f"Cleared note for project {project.name}.")
        return CommandReply(f"Saved note for project {project.name}.")

    async def _archive(self, ctx: CommandContext, key: str) -> CommandReply:
        if not key:
            raise UsageError("Usage: /projects archive <name|id>")

        def _apply(peer: PeerState) -> tuple[Project, Project | None]:
            project = archive_project(peer, key, self._default_name)
            return project, peer.active_project

        project, active = await self._mutate(ctx.peer_key, _apply)
        return CommandReply(f"Archived project: {_label(project)}\nActive project: {_label(active)}")

    async def _unarchive(self, ctx: CommandContext, key: str) -> CommandReply:
        if not key:
            raise UsageError("Usage: /projects unarchive <name|id>")
        project = await self._mutate(
            ctx.peer_key,
            lambda peer: unarchive_project(peer, key, max_projects=self._config.max_projects),
        )
        return CommandReply(f"Restored project: {_label(project)}")

    # ------------------------------------------------------------------
    # reset / wipe
    # ------------------------------------------------------------------

    async def _reset(self, ctx: CommandContext, parts: list[str]) -> CommandReply:
        action = parts[1].lower() if len(parts) > 1 else ""
        if not action:
            return CommandReply(
                "Reset / Wipe (Projects state for this DM)\n\n"
                "- Remove (wipe) ONE project...\n"
                "- Wipe ALL projects... (recovery)\n\n"
                "Transcripts/history are never deleted.",
                [
                    [ReplyAction("Cancel", "/projects more")],
                    [ReplyAction("Remove (wipe) ONE project...", "/projects reset remove")],
                    [ReplyAction("Wipe ALL projects...", "/projects wipe")],
                ],
            )
        if action != "remove":
            return CommandReply("Unknown reset action.")

        project_id = parts[2] if len(parts) > 2 else ""
        if not project_id:
            return await self._remove_picker(ctx)

        pending, project = await self._guard.arm_project(ctx.peer_key, project_id)
        name = project.name if project else project_id
        return CommandReply(
            "This will wipe ONE project for this DM:\n\n"
            f"Project: {name} ({project_id})\n"
            "Removes: project entry + project-scoped memory.\n"
            f"Backup: {pending.backup_dir}\n\n"
            f"Confirm within {_CONFIRM_SECONDS}s:\n"
            f"/projects wipe project confirm {pending.nonce} {project_id}",
            [
                [ReplyAction("Cancel", "/projects wipe cancel")],
                [ReplyAction("Confirm WIPE", f"/projects wipe project confirm {pending.nonce} {project_id}")],
            ],
        )

    async def _remove_picker(self, ctx: CommandContext) -> CommandReply:
        peer = await self._read(ctx.peer_key)
        if peer is None:
            return CommandReply("No Projects state yet for this DM.")
        default_id = default_project_id(self._default_name)
        candidates = [p for p in peer.projects if not p.archived and p.id != default_id]
        if not candidates:
            return CommandReply(
                "No removable projects (only the default project exists).",
                [[ReplyAction("Back", "/projects reset")]],
            )
        rows = _pairs([ReplyAction(p.name, f"/projects reset remove {p.id}") for p in candidates])
        rows.append([ReplyAction("Cancel", "/projects reset")])
        return CommandReply("Select a project to wipe (default project cannot be removed):", rows)

    async def _wipe(self, ctx: CommandContext, parts: list[str]) -> CommandReply:
        action = parts[1].lower() if len(parts) > 1 else ""

        if action == "cancel":
            await self._guard.cancel(ctx.peer_key)
            return CommandReply("Cancelled. Nothing was deleted.")

        if action == "confirm":
            nonce = parts[2] if len(parts) > 2 else ""
            message_id = ctx.message_id if self._tracks_message_ids(ctx) else None
            result = await self._guard.confirm_all(ctx.peer_key, nonce, message_id=message_id)
            return CommandReply(
                "WIPED ALL projects state for this DM.\n"
                f"Backup: {result.backup_dir}\n"
                "Mode: Classic (Projects OFF)\n"
                f"Active project: {result.active_project_name}\n\n"
                "Next: /projects (or /projects debug)"
            )

        if action == "project":
            if len(parts) < 3 or parts[2].lower() != "confirm":
                raise UsageError("Usage: /projects wipe project confirm <nonce> <id>")
            nonce = parts[3] if len(parts) > 3 else ""
            project_id = parts[4] if len(parts) > 4 else ""
            message_id = ctx.message_id if self._tracks_message_ids(ctx) else None
            result = await self._guard.confirm_project(ctx.peer_key, nonce, project_id, message_id=message_id)
            return CommandReply(
                f"WIPED project: {result.project_name} ({project_id})\n"
                f"Backup: {result.backup_dir}\n\n"
                f"{_mode_line(result.projects_enabled)}\n"
                f"Active project: {result.active_project_name}\n\n"
                "Next: /projects (or /projects debug)"
            )

        if action:
            raise WipeRefusedError("Unknown wipe action. Use /projects wipe, /projects wipe cancel.")

        pending = await self._guard.arm_all(ctx.peer_key)
        return CommandReply(
            "This will WIPE ALL Projects state for this DM (recovery).\n"
            "It will NOT delete transcripts or anything outside the Projects state directory.\n\n"
            f"Backup: {pending.backup_dir}\n\n"
            f"Confirm within {_CONFIRM_SECONDS}s:\n"
            f"/projects wipe confirm {pending.nonce}",
            [
                [ReplyAction("Cancel", "/projects wipe cancel")],
                [ReplyAction("Confirm WIPE ALL", f"/projects wipe confirm {pending.nonce}")],
            ],
        )

    # ------------------------------------------------------------------
    # /project (deprecated alias)
    # ------------------------------------------------------------------

    async def handle_project_alias(self, ctx: CommandContext) -> CommandReply:
        reply = await self.handle_projects(ctx)
        if reply.text.strip():
            return CommandReply(DEPRECATION_PREFIX + reply.text, reply.actions)
        return CommandReply(DEPRECATION_PREFIX.strip(), reply.actions)

    # ------------------------------------------------------------------
    # /memory
    # ------------------------------------------------------------------

    async def handle_memory(self, ctx: CommandContext) -> CommandReply:
        try:
            return await self._dispatch_memory(ctx)
        except StoreWriteError as exc:
            logger.error("commands: state write failed", extra={"peer": ctx.peer_key, "error": exc.message})
            return CommandReply(f"Failed to save memory; nothing was stored.\n({exc.message})")
        except ProjectsError as exc:
            return CommandReply(exc.message)

    async def _dispatch_memory(self, ctx: CommandContext) -> CommandReply:
        parts = ctx.args.split()
        sub = parts[0].lower() if parts else ""
        if not sub or sub == "help":
            return CommandReply(MEMORY_HELP)

        if sub == "global":
            sub2 = parts[1].lower() if len(parts) > 1 else ""
            token = " ".join(parts[2:]).strip()
            if sub2 == "remember":
                if not token:
                    raise UsageError("Usage: /memory global remember <token>")

                def _remember_global(peer: PeerState) -> bool:
                    if peer.global_tokens is None:
                        peer.global_tokens = []
                    return remember_token(peer.global_tokens, token)

                await self._mutate(ctx.peer_key, _remember_global)
                return CommandReply(f"Saved globally: {token}")
            if sub2 == "list":
                peer = await self._read(ctx.peer_key)
                tokens = (peer.global_tokens or []) if peer else []
                if not tokens:
                    return CommandReply("No global tokens saved.")
                return CommandReply("Global tokens:\n" + "\n".join(f"- {t}" for t in tokens))
            return CommandReply(MEMORY_HELP)

        if sub not in {"remember", "list"}:
            return CommandReply(MEMORY_HELP)

        peer = await self._read(ctx.peer_key)
        if peer is None:
            return CommandReply(
                "No Projects state for this chat yet.\n\n"
                "Run /projects on (or /projects new <name>) first, then use /memory remember ...\n"
                "Or use /memory global remember ..."
            )
        # Project-scoped memory needs Projects ON so the scope is unambiguous.
        if not peer.enabled:
            return CommandReply(
                "Projects are OFF (Classic).\n\n"
                "Turn Projects ON to use project-scoped memory, or use /memory global ...\n\n"
                "- /projects on\n"
                "- /memory global remember <token>"
            )

        if sub == "list":
            active = peer.active_project
            if active is None:
                return CommandReply("No active project.")
            tokens = active.tokens or []
            if not tokens:
                return CommandReply(f"No tokens saved in project {active.name}.")
            return CommandReply(f"Tokens in project {active.name}:\n" + "\n".join(f"- {t}" for t in tokens))

        token = " ".join(parts[1:]).strip()
        if not token:
            raise UsageError("Usage: /memory remember <token>")

        def _apply(fresh: PeerState) -> Project:
            active = fresh.active_project
            if active is None:
                raise UsageError("No active project.")
            if active.tokens is None:
                active.tokens = []
            remember_token(active.tokens, token)
            return active

        project = await self._mutate(ctx.peer_key, _apply)
        return CommandReply(f"Saved in project {project.name}: {token}")
