"""Project lifecycle operations over a single peer's state.

Everything here is pure in-memory mutation; callers load the state document,
apply one of these functions, and write the document back.
"""

from __future__ import annotations

import re
import secrets
import time

from projects_ux.errors import ProjectLimitError, ProjectNotFoundError, ProtectedProjectError
from projects_ux.models import PeerState, Project, now_iso

_SLUG_MAX = 48
_LEGACY_DEFAULT_NAME = "inbox"


def slugify_id(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").strip().lower())
    return slug.strip("-")[:_SLUG_MAX]


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value <= 0:
        return "0"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out


def random_project_id(prefix: str = "proj") -> str:
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


def default_project_id(default_name: str) -> str:
    return f"proj-{slugify_id(default_name) or 'general'}"


def _is_legacy_default(project: Project) -> bool:
    name = (project.name or "").strip().lower()
    project_id = (project.id or "").strip().lower()
    return name == _LEGACY_DEFAULT_NAME or project_id == "proj-inbox" or project_id.startswith("inbox-")


def _first_live(peer: PeerState) -> Project | None:
    return next((p for p in peer.projects if not p.archived), None)


def ensure_default(peer: PeerState, default_name: str) -> bool:
    """Restore the peer invariants; returns True when anything changed."""
    changed = False

    # Older state used "Inbox" as the default project name.
    for project in peer.projects:
        if _is_legacy_default(project) and project.name != default_name:
            project.name = default_name
            changed = True

    if not peer.projects:
        stamp = now_iso()
        project_id = default_project_id(default_name)
        peer.projects.append(
            Project(id=project_id, name=default_name, created_at=stamp, last_used_at=stamp, tokens=[])
        )
        peer.active_project_id = project_id
        peer.last_project_id = project_id
        peer.pending_reset = False
        changed = True

    for project in peer.projects:
        if project.tokens is None:
            project.tokens = []
            changed = True
    if peer.global_tokens is None:
        peer.global_tokens = []
        changed = True

    if _first_live(peer) is None:
        fallback = peer.project_by_id(default_project_id(default_name))
        if fallback is not None:
            fallback.archived = False
        else:
            stamp = now_iso()
            peer.projects.append(
                Project(
                    id=default_project_id(default_name),
                    name=default_name,
                    created_at=stamp,
                    last_used_at=stamp,
                    tokens=[],
                )
            )
        changed = True

    active = peer.active_project
    if active is None or active.archived:
        first = _first_live(peer)
        if first is not None and peer.active_project_id != first.id:
            peer.active_project_id = first.id
            changed = True

    if peer.projects_enabled is None:
        peer.projects_enabled = False
        changed = True

    return changed


def find_project(peer: PeerState, key: str) -> Project | None:
    trimmed = (key or "").strip()
    if not trimmed:
        return None
    by_id = peer.project_by_id(trimmed)
    if by_id is not None:
        return by_id
    lowered = trimmed.lower()
    return next((p for p in peer.projects if p.name.lower() == lowered), None)


def ordered_projects(peer: PeerState) -> list[Project]:
    """Non-archived projects, most recently used first."""
    live = [p for p in peer.projects if not p.archived]
    return sorted(live, key=lambda p: p.recency_key, reverse=True)


def _activate(peer: PeerState, project: Project) -> None:
    peer.previous_project_id = peer.active_project_id or peer.previous_project_id
    peer.active_project_id = project.id
    peer.last_project_id = project.id
    project.last_used_at = now_iso()
    peer.pending_reset = True


def mark_effective_from(peer: PeerState, message_id: int | None) -> None:
    if message_id is not None:
        peer.effective_from_message_id = message_id


def _unique_id(peer: PeerState, base: str) -> str:
    candidate = base
    suffix = 2
    while peer.project_by_id(candidate) is not None:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def create_project(peer: PeerState, name: str, *, max_projects: int) -> tuple[Project, bool]:
    """Create a project and switch to it; an existing live project of that name is switched to instead.

    Returns ``(project, existed)``.
    """
    clean = (name or "").strip()
    lowered = clean.lower()
    existing = next((p for p in peer.projects if not p.archived and p.name.lower() == lowered), None)
    if existing is not None:
        _activate(peer, existing)
        return existing, True

    live_count = sum(1 for p in peer.projects if not p.archived)
    if live_count >= max_projects:
        raise ProjectLimitError(
            f"Project limit reached ({max_projects}). Archive old projects first.",
            limit=max_projects,
        )

    slug = slugify_id(clean)
    project_id = _unique_id(peer, f"proj-{slug}") if slug else random_project_id()
    stamp = now_iso()
    project = Project(id=project_id, name=clean, created_at=stamp, last_used_at=stamp, tokens=[])
    peer.projects.append(project)
    _activate(peer, project)
    return project, False


def switch_project(peer: PeerState, key: str) -> Project:
    project = find_project(peer, key)
    if project is None or project.archived:
        raise ProjectNotFoundError(f"Project not found: {key.strip()}", key=key)
    _activate(peer, project)
    return project


def set_enabled(peer: PeerState, enabled: bool) -> Project | None:
    """Toggle projects mode; turning it on re-selects the best active project."""
    peer.projects_enabled = enabled
    if not enabled:
        return None

    last = peer.project_by_id(peer.last_project_id)
    if last is not None and last.archived:
        last = None
    active = peer.active_project
    if active is not None and active.archived:
        active = None
    chosen = last or active or _first_live(peer) or (peer.projects[0] if peer.projects else None)
    if chosen is not None:
        _activate(peer, chosen)
    return chosen


def archive_project(peer: PeerState, key: str, default_name: str) -> Project:
    project = find_project(peer, key)
    if project is None or project.archived:
        raise ProjectNotFoundError(f"Project not found: {key.strip()}", key=key)
    default_id = default_project_id(default_name)
    if project.id == default_id:
        raise ProtectedProjectError("Refused: default project cannot be archived.", project_id=project.id)
    project.archived = True
    if peer.active_project_id == project.id:
        fallback = peer.project_by_id(default_id) or _first_live(peer)
        if fallback is not None:
            _activate(peer, fallback)
    if peer.last_project_id == project.id:
        peer.last_project_id = peer.active_project_id
    return project


def unarchive_project(peer: PeerState, key: str, *, max_projects: int) -> Project:
    project = find_project(peer, key)
    if project is None or not project.archived:
        raise ProjectNotFoundError(f"No archived project: {key.strip()}", key=key)
    live_count = sum(1 for p in peer.projects if not p.archived)
    if live_count >= max_projects:
        raise ProjectLimitError(f"Project limit reached ({max_projects}).", limit=max_projects)
    project.archived = False
    return project


def set_note(peer: PeerState, note: str | None) -> Project:
    project = peer.active_project
    if project is None:
        raise ProjectNotFoundError("No active project.")
    cleaned = (note or "").strip()
    project.note = cleaned or None
    return project


def remember_token(tokens: list[str], token: str) -> bool:
    """Append with set semantics; returns False when already present."""
    if token in tokens:
        return False
    tokens.append(token)
    return True
