"""Host-visible side information derived from the current peer state.

``before_agent_start`` prepends a short project preface to an agent turn, and
``resolve_room_key`` appends a per-project suffix to the routing key when hard
isolation is enabled.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass

from projects_ux.config import ProjectsConfig
from projects_ux.identity import HookContext, RoutingEvent
from projects_ux.lifecycle import ensure_default
from projects_ux.models import PeerState, Project
from projects_ux.store import PeerLocks, StateBackend

logger = logging.getLogger(__name__)

ROOM_KEY_SEPARATOR = ":proj:"
ANTI_BLEED_INSTRUCTION = (
    "Ignore any context not explicitly stated in this project's messages or notes. "
    "If information is missing, proceed with minimal assumptions and state them."
)


@dataclass(frozen=True, slots=True)
class FramingResult:
    prepend_context: str


@dataclass(frozen=True, slots=True)
class RoutingResult:
    room_key: str


def clamp_text(text: str | None, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    value = text or ""
    return value[:max_chars] if len(value) > max_chars else value


def build_preface(peer: PeerState, *, max_note_chars: int, max_prefix_chars: int) -> str | None:
    if not peer.enabled:
        return None
    active = peer.active_project
    if active is None:
        return None

    lines = [f"Active project: {active.name} ({active.id})."]
    if peer.pending_reset:
        lines.append(ANTI_BLEED_INSTRUCTION)
    note = clamp_text(active.note, max_note_chars).strip() if active.note else ""
    if note:
        lines.append("Project notes (user-provided):")
        lines.append(note)
    return clamp_text("\n".join(lines), max_prefix_chars)


def sanitize_room_key_token(text: str | None) -> str:
    token = re.sub(r"[^a-z0-9_-]+", "-", (text or "").strip().lower())
    return token.strip("-")[:80]


def select_routing_project_id(peer: PeerState, message_id: int | None) -> str:
    """Messages sent before the switch took effect keep routing to the previous project."""
    effective_from = peer.effective_from_message_id
    if message_id is not None and effective_from is not None and message_id < effective_from:
        return peer.previous_project_id or peer.active_project_id
    return peer.active_project_id


def route_room_key(peer: PeerState, base_key: str, message_id: int | None) -> str | None:
    if not peer.enabled:
        return None
    suffix = sanitize_room_key_token(select_routing_project_id(peer, message_id))
    base = (base_key or "").strip()
    if not suffix or not base:
        return None
    return f"{base}{ROOM_KEY_SEPARATOR}{suffix}"


class FramingAdapter:
    """Hook handlers; reads go through the cache, writes through the mutation backend."""

    def __init__(
        self,
        config: ProjectsConfig,
        *,
        cache: StateBackend,
        backend: StateBackend,
        locks: PeerLocks,
        log: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._backend = backend
        self._locks = locks
        self._log = log or logger

    async def _heal_and_consume(self, peer_key: str) -> PeerState | None:
        """Re-read the peer from disk, heal it, and clear the one-shot reset flag.

        Returns the peer as it was *before* the flag was cleared, so the caller can
        still frame the turn with the anti-bleed instruction.
        """
        async with self._locks.hold(peer_key), self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key)
            if peer is None:
                return None
            changed = ensure_default(peer, self._config.default_project_name)
            snapshot = copy.deepcopy(peer)
            if peer.enabled and peer.pending_reset:
                peer.pending_reset = False
                changed = True
            if changed:
                await self._backend.write_atomic(store)
            return snapshot

    async def before_agent_start(self, ctx: HookContext) -> FramingResult | None:
        peer_key = ctx.peer_key(self._config.dm_channel)
        self._log.info(
            "projects_ux: before_agent_start channel=%s conversation=%s session=%s -> peer=%s",
            ctx.channel_id,
            ctx.conversation_id,
            ctx.session_key,
            peer_key,
        )

        store = await self._cache.load()
        cached = store.peers.get(peer_key)
        if cached is None:
            known = ",".join(list(store.peers.keys())[:10])
            self._log.info("projects_ux: no peer state for %s. knownPeers=%s", peer_key, known)
            return None

        peer = copy.deepcopy(cached)
        needs_write = ensure_default(peer, self._config.default_project_name) or (peer.enabled and peer.pending_reset)
        if needs_write:
            fresh = await self._heal_and_consume(peer_key)
            if fresh is None:
                return None
            peer = fresh

        text = build_preface(
            peer,
            max_note_chars=self._config.max_injected_note_chars,
            max_prefix_chars=self._config.max_prefix_chars,
        )
        if not text:
            return None
        active: Project | None = peer.active_project
        self._log.info(
            "projects_ux: before_agent_start inject peer=%s active=%s reset=%s len=%s",
            peer_key,
            active.id if active else None,
            peer.pending_reset,
            len(text),
        )
        return FramingResult(prepend_context=text)

    async def resolve_room_key(self, event: RoutingEvent) -> RoutingResult | None:
        if not self._config.hard_isolation.enabled:
            return None
        peer_key = event.peer_key(self._config.dm_channel)
        if peer_key is None or not event.room_key:
            return None

        store = await self._cache.load()
        cached = store.peers.get(peer_key)
        if cached is None:
            return None
        peer = copy.deepcopy(cached)
        if ensure_default(peer, self._config.default_project_name):
            async with self._locks.hold(peer_key), self._locks.hold_document():
                fresh_store = await self._backend.load()
                fresh = fresh_store.peers.get(peer_key)
                if fresh is None:
                    return None
                if ensure_default(fresh, self._config.default_project_name):
                    await self._backend.write_atomic(fresh_store)
                peer = fresh

        room_key = route_room_key(peer, event.room_key, event.message_id)
        if room_key is None:
            return None
        return RoutingResult(room_key=room_key)
