from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

import projects_ux.store as store_module
from projects_ux.errors import StoreWriteError
from projects_ux.models import PeerState, Project, Store
from projects_ux.store import CachedStateStore, StateStore, WriteThroughStore


def _sample_store() -> Store:
    peer = PeerState(
        projects_enabled=True,
        projects=[
            Project(id="proj-general", name="General", created_at="2026-01-01T00:00:00.000Z", tokens=[]),
            Project(
                id="proj-alpha",
                name="Alpha",
                created_at="2026-01-02T00:00:00.000Z",
                last_used_at="2026-01-03T00:00:00.000Z",
                note="ship it",
                tokens=["A1"],
            ),
        ],
        active_project_id="proj-alpha",
        previous_project_id="proj-general",
        last_project_id="proj-alpha",
        effective_from_message_id=42,
        pending_reset=True,
        global_tokens=["G1"],
    )
    return Store(peers={"telegram:123": peer})


def test_missing_file_loads_empty_store(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "nested" / "state.json")

    loaded = asyncio.run(store.load())

    assert loaded.peers == {}
    assert not (tmp_path / "nested").exists()


def test_write_then_load_preserves_peer_state(tmp_path: Path) -> None:
    path = tmp_path / "state" / "state.json"
    store = StateStore(path)

    asyncio.run(store.write_atomic(_sample_store()))
    loaded = asyncio.run(store.load())

    assert loaded == _sample_store()
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["version"] == 1
    peer = raw["peers"]["telegram:123"]
    assert peer["projectsEnabled"] is True
    assert peer["activeProjectId"] == "proj-alpha"
    assert peer["effectiveFromMessageId"] == 42
    assert peer["globalTokens"] == ["G1"]
    assert "pendingWipe" not in peer
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]


def test_corrupt_file_is_moved_aside_and_treated_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not-json", encoding="utf-8")

    loaded = asyncio.run(StateStore(path).load())

    assert loaded.peers == {}
    assert not path.exists()
    assert (tmp_path / "state.json.bak").read_text(encoding="utf-8") == "{not-json"


def test_second_corruption_does_not_overwrite_earlier_backup(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{first", encoding="utf-8")
    asyncio.run(StateStore(path).load())
    path.write_text("{second", encoding="utf-8")

    asyncio.run(StateStore(path).load())

    backups = sorted(p.read_text(encoding="utf-8") for p in tmp_path.glob("state.json.bak*"))
    assert backups == ["{first", "{second"]


def test_read_error_keeps_document_bytes_in_a_backup(monkeypatch, tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    store = StateStore(path)
    asyncio.run(store.write_atomic(_sample_store()))
    (tmp_path / "state.json.bak").write_text("{older", encoding="utf-8")

    original_read_text = Path.read_text
    failures = [OSError(24, "Too many open files")]

    def _emfile_once(self: Path, *args: object, **kwargs: object) -> str:
        if failures:
            raise failures.pop()
        return original_read_text(self, *args, **kwargs)

    monkeypatch.setattr(store_module.Path, "read_text", _emfile_once)

    assert asyncio.run(store.load()).peers == {}

    assert (tmp_path / "state.json.bak").read_text(encoding="utf-8") == "{older"
    kept = list(tmp_path.glob("state.json.bak-*"))
    assert len(kept) == 1
    assert Store.from_dict(json.loads(kept[0].read_text(encoding="utf-8"))) == _sample_store()


def test_wrong_document_version_is_treated_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"version": 2, "peers": {}}), encoding="utf-8")

    loaded = asyncio.run(StateStore(path).load())

    assert loaded.peers == {}
    assert path.exists()


def test_peer_with_unsupported_version_is_dropped(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    good = _sample_store().to_dict()["peers"]["telegram:123"]
    path.write_text(
        json.dumps({"version": 1, "peers": {"telegram:1": good, "telegram:2": {"version": 9}}}),
        encoding="utf-8",
    )

    loaded = asyncio.run(StateStore(path).load())

    assert list(loaded.peers) == ["telegram:1"]


def test_failed_write_keeps_previous_document(monkeypatch, tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    store = StateStore(path)
    asyncio.run(store.write_atomic(_sample_store()))
    before = path.read_text(encoding="utf-8")

    def _boom(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(store_module.os, "replace", _boom)

    with pytest.raises(StoreWriteError) as exc:
        asyncio.run(store.write_atomic(Store()))

    assert exc.value.error["code"] == "store_write_failed"
    assert path.read_text(encoding="utf-8") == before
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_cache_serves_within_ttl_and_refreshes_on_mtime_change(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    backing = StateStore(path)
    asyncio.run(backing.write_atomic(_sample_store()))
    cache = CachedStateStore(backing, ttl_seconds=3600)

    first = asyncio.run(cache.load())
    asyncio.run(backing.write_atomic(Store()))
    assert asyncio.run(cache.load()) is first

    cache = CachedStateStore(backing, ttl_seconds=0)
    asyncio.run(cache.load())
    asyncio.run(backing.write_atomic(_sample_store()))
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))

    assert "telegram:123" in asyncio.run(cache.load()).peers


def test_write_through_reads_disk_and_refreshes_cache(tmp_path: Path) -> None:
    backing = StateStore(tmp_path / "state.json")
    cache = CachedStateStore(backing, ttl_seconds=3600)
    asyncio.run(cache.load())
    writer = WriteThroughStore(cache)

    asyncio.run(backing.write_atomic(_sample_store()))
    assert "telegram:123" in asyncio.run(writer.load()).peers

    asyncio.run(writer.write_atomic(Store()))
    assert asyncio.run(cache.load()).peers == {}
