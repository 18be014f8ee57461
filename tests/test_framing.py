from __future__ import annotations

import asyncio

from projects_ux.config import HardIsolationSection, ProjectsConfig
from projects_ux.framing import (
    ANTI_BLEED_INSTRUCTION,
    FramingAdapter,
    build_preface,
    sanitize_room_key_token,
    select_routing_project_id,
)
from projects_ux.identity import HookContext, RoutingEvent
from projects_ux.lifecycle import create_project, ensure_default
from projects_ux.models import PeerState, Store
from projects_ux.store import MemoryStateStore, PeerLocks

PEER = "telegram:123"
SESSION = HookContext(session_key="agent:main:telegram:dm:123", channel_id="telegram")


def _peer(*, enabled: bool = True) -> PeerState:
    peer = PeerState()
    ensure_default(peer, "General")
    create_project(peer, "Alpha", max_projects=50)
    peer.projects_enabled = enabled
    return peer


def _adapter(peer: PeerState | None, **config: object) -> tuple[FramingAdapter, MemoryStateStore]:
    backend = MemoryStateStore(Store(peers={PEER: peer}) if peer is not None else None)
    adapter = FramingAdapter(ProjectsConfig(**config), cache=backend, backend=backend, locks=PeerLocks())
    return adapter, backend


def _event(message_id: int | None = None, kind: str = "dm") -> RoutingEvent:
    return RoutingEvent(
        channel="telegram",
        peer_kind=kind,
        peer_id="123",
        room_key="agent:main:telegram:dm:123",
        message_id=message_id,
    )


def test_no_framing_without_peer_state_or_in_classic_mode() -> None:
    adapter, _ = _adapter(None)
    assert asyncio.run(adapter.before_agent_start(SESSION)) is None

    adapter, _ = _adapter(_peer(enabled=False))
    assert asyncio.run(adapter.before_agent_start(SESSION)) is None


def test_anti_bleed_is_emitted_exactly_once_after_switch() -> None:
    adapter, backend = _adapter(_peer())

    first = asyncio.run(adapter.before_agent_start(SESSION))
    second = asyncio.run(adapter.before_agent_start(SESSION))

    assert first is not None and ANTI_BLEED_INSTRUCTION in first.prepend_context
    assert first.prepend_context.startswith("Active project: Alpha (proj-alpha).")
    assert second is not None and ANTI_BLEED_INSTRUCTION not in second.prepend_context
    assert asyncio.run(backend.load()).peers[PEER].pending_reset is False


def test_concurrent_turns_share_one_anti_bleed() -> None:
    adapter, _ = _adapter(_peer())

    async def _two_turns() -> list[object]:
        return list(await asyncio.gather(adapter.before_agent_start(SESSION), adapter.before_agent_start(SESSION)))

    results = asyncio.run(_two_turns())

    texts = [r.prepend_context for r in results if r is not None]
    assert sum(ANTI_BLEED_INSTRUCTION in text for text in texts) == 1


def test_preface_is_clamped() -> None:
    peer = _peer()
    peer.pending_reset = False
    peer.active_project.note = "n" * 1000

    text = build_preface(peer, max_note_chars=600, max_prefix_chars=240)

    assert text is not None and len(text) == 240
    assert "Project notes (user-provided):" in text


def test_zero_prefix_budget_disables_framing() -> None:
    adapter, _ = _adapter(_peer(), max_prefix_chars=0)

    assert asyncio.run(adapter.before_agent_start(SESSION)) is None


def test_room_key_untouched_without_hard_isolation() -> None:
    adapter, _ = _adapter(_peer())

    assert asyncio.run(adapter.resolve_room_key(_event())) is None


def test_room_key_gets_project_suffix_with_hard_isolation() -> None:
    adapter, _ = _adapter(_peer(), hard_isolation=HardIsolationSection(enabled=True))

    result = asyncio.run(adapter.resolve_room_key(_event(5)))

    assert result is not None
    assert result.room_key == "agent:main:telegram:dm:123:proj:proj-alpha"
    assert asyncio.run(adapter.resolve_room_key(_event(kind="group"))) is None


def test_room_key_untouched_in_classic_mode() -> None:
    adapter, _ = _adapter(_peer(enabled=False), hard_isolation=HardIsolationSection(enabled=True))

    assert asyncio.run(adapter.resolve_room_key(_event())) is None


def test_messages_before_the_switch_route_to_previous_project() -> None:
    peer = _peer()
    peer.effective_from_message_id = 100

    assert select_routing_project_id(peer, 99) == "proj-general"
    assert select_routing_project_id(peer, 100) == "proj-alpha"
    assert select_routing_project_id(peer, None) == "proj-alpha"


def test_sanitize_room_key_token() -> None:
    assert sanitize_room_key_token(" Proj Alpha/1 ") == "proj-alpha-1"
    assert len(sanitize_room_key_token("x" * 200)) == 80
