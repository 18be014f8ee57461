from __future__ import annotations

import pytest

from projects_ux.errors import ProjectLimitError, ProjectNotFoundError, ProtectedProjectError
from projects_ux.lifecycle import (
    archive_project,
    create_project,
    default_project_id,
    ensure_default,
    find_project,
    ordered_projects,
    remember_token,
    set_enabled,
    set_note,
    slugify_id,
    switch_project,
    unarchive_project,
)
from projects_ux.models import PeerState, Project


def _healed() -> PeerState:
    peer = PeerState()
    ensure_default(peer, "General")
    return peer


def test_ensure_default_creates_classic_peer_with_default_project() -> None:
    peer = PeerState()

    assert ensure_default(peer, "General") is True
    assert [p.id for p in peer.projects] == ["proj-general"]
    assert peer.active_project_id == "proj-general"
    assert peer.projects_enabled is False
    assert peer.global_tokens == []
    assert ensure_default(peer, "General") is False


def test_ensure_default_renames_legacy_inbox_and_repairs_active() -> None:
    peer = PeerState(
        projects_enabled=True,
        projects=[Project(id="proj-inbox", name="Inbox", created_at="t")],
        active_project_id="proj-gone",
        global_tokens=[],
    )

    assert ensure_default(peer, "General") is True
    assert peer.projects[0].name == "General"
    assert peer.projects[0].tokens == []
    assert peer.active_project_id == "proj-inbox"
    assert peer.projects_enabled is True


def test_ensure_default_restores_a_live_project_when_all_archived() -> None:
    peer = PeerState(
        projects=[Project(id="proj-general", name="General", created_at="t", archived=True, tokens=[])],
        active_project_id="proj-general",
        global_tokens=[],
        projects_enabled=False,
    )

    ensure_default(peer, "General")

    assert peer.active_project is not None
    assert not peer.active_project.archived


def test_slugify_and_default_id() -> None:
    assert slugify_id("  My App!! v2 ") == "my-app-v2"
    assert len(slugify_id("x" * 100)) == 48
    assert default_project_id("General") == "proj-general"
    assert default_project_id("!!!") == "proj-general"


def test_create_project_switches_and_reuses_existing_name() -> None:
    peer = _healed()

    project, existed = create_project(peer, "Alpha", max_projects=50)
    assert not existed
    assert project.id == "proj-alpha"
    assert peer.active_project_id == "proj-alpha"
    assert peer.previous_project_id == "proj-general"
    assert peer.pending_reset is True

    again, existed = create_project(peer, "alpha", max_projects=50)
    assert existed
    assert again is project
    assert len(peer.projects) == 2


def test_create_project_gets_unique_id_on_slug_collision() -> None:
    peer = _healed()
    create_project(peer, "My App", max_projects=50)
    archive_project(peer, "My App", "General")

    project, _ = create_project(peer, "my app", max_projects=50)

    assert project.id == "proj-my-app-2"


def test_create_project_random_id_for_unsluggable_name() -> None:
    peer = _healed()

    project, _ = create_project(peer, "???", max_projects=50)

    assert project.id.startswith("proj-")
    assert project.name == "???"


def test_create_project_enforces_limit() -> None:
    peer = _healed()
    create_project(peer, "One", max_projects=2)

    with pytest.raises(ProjectLimitError):
        create_project(peer, "Two", max_projects=2)


def test_switch_by_name_or_id() -> None:
    peer = _healed()
    create_project(peer, "Alpha", max_projects=50)

    assert switch_project(peer, "GENERAL").id == "proj-general"
    assert peer.previous_project_id == "proj-alpha"
    assert switch_project(peer, "proj-alpha").name == "Alpha"
    assert find_project(peer, "") is None
    with pytest.raises(ProjectNotFoundError):
        switch_project(peer, "nope")


def test_set_enabled_prefers_last_project() -> None:
    peer = _healed()
    create_project(peer, "Alpha", max_projects=50)
    set_enabled(peer, False)
    peer.pending_reset = False

    chosen = set_enabled(peer, True)

    assert chosen is not None and chosen.id == "proj-alpha"
    assert peer.enabled
    assert peer.pending_reset is True


def test_archive_and_unarchive() -> None:
    peer = _healed()
    create_project(peer, "Alpha", max_projects=50)

    archived = archive_project(peer, "Alpha", "General")
    assert archived.archived
    assert peer.active_project_id == "proj-general"
    assert [p.id for p in ordered_projects(peer)] == ["proj-general"]

    with pytest.raises(ProtectedProjectError):
        archive_project(peer, "General", "General")

    restored = unarchive_project(peer, "proj-alpha", max_projects=50)
    assert not restored.archived
    with pytest.raises(ProjectNotFoundError):
        unarchive_project(peer, "proj-alpha", max_projects=50)


def test_ordered_projects_most_recent_first() -> None:
    peer = PeerState(
        projects=[
            Project(id="a", name="A", created_at="2026-01-01T00:00:00.000Z"),
            Project(id="b", name="B", created_at="2026-01-01T00:00:00.000Z", last_used_at="2026-02-01T00:00:00.000Z"),
            Project(id="c", name="C", created_at="2026-01-15T00:00:00.000Z"),
        ]
    )

    assert [p.id for p in ordered_projects(peer)] == ["b", "c", "a"]


def test_note_and_tokens() -> None:
    peer = _healed()

    assert set_note(peer, "  keep it short ").note == "keep it short"
    assert set_note(peer, None).note is None

    tokens: list[str] = []
    assert remember_token(tokens, "T1")
    assert not remember_token(tokens, "T1")
    assert tokens == ["T1"]
