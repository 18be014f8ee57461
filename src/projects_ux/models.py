"""Projects state models.

The persisted document keeps camelCase keys:
``{"version": 1, "peers": {<peerKey>: PeerState}}``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from projects_ux.errors import StoreFormatError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def now_iso() -> str:
    """Return a fixed-width UTC ISO-8601 timestamp (``2026-01-02T03:04:05.678Z``)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _opt_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _opt_str_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(item) for item in value]


class WipeKind(str, Enum):
    ALL = "all"
    PROJECT = "project"


@dataclass(slots=True)
class Project:
    id: str
    name: str
    created_at: str
    archived: bool = False
    last_used_at: str | None = None
    note: str | None = None
    tokens: list[str] | None = None

    @property
    def recency_key(self) -> str:
        return self.last_used_at or self.created_at

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "name": self.name, "createdAt": self.created_at}
        if self.archived:
            out["archived"] = True
        if self.last_used_at is not None:
            out["lastUsedAt"] = self.last_used_at
        if self.note is not None:
            out["note"] = self.note
        if self.tokens is not None:
            out["tokens"] = list(self.tokens)
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Project:
        return cls(
            id=str(raw.get("id", "")),
            name=str(raw.get("name", "")),
            created_at=str(raw.get("createdAt", "")),
            archived=bool(raw.get("archived", False)),
            last_used_at=_opt_str(raw.get("lastUsedAt")),
            note=_opt_str(raw.get("note")),
            tokens=_opt_str_list(raw.get("tokens")),
        )


@dataclass(slots=True)
class PendingWipe:
    nonce: str
    created_at_ms: int
    kind: WipeKind
    stamp: str
    backup_dir: str
    project_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "nonce": self.nonce,
            "createdAtMs": self.created_at_ms,
            "kind": self.kind.value,
            "stamp": self.stamp,
            "backupDir": self.backup_dir,
        }
        if self.project_id is not None:
            out["projectId"] = self.project_id
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> PendingWipe | None:
        if not isinstance(raw, dict):
            return None
        try:
            kind = WipeKind(str(raw.get("kind", "")))
        except ValueError:
            return None
        nonce = str(raw.get("nonce", "")).strip()
        created = _opt_int(raw.get("createdAtMs"))
        if not nonce or created is None:
            return None
        return cls(
            nonce=nonce,
            created_at_ms=created,
            kind=kind,
            stamp=str(raw.get("stamp", "")),
            backup_dir=str(raw.get("backupDir", "")),
            project_id=_opt_str(raw.get("projectId")),
        )


@dataclass(slots=True)
class PeerState:
    version: int = SCHEMA_VERSION
    projects_enabled: bool | None = None
    projects: list[Project] = field(default_factory=list)
    active_project_id: str = ""
    previous_project_id: str | None = None
    last_project_id: str | None = None
    effective_from_message_id: int | None = None
    pending_reset: bool = False
    global_tokens: list[str] | None = None
    pending_wipe: PendingWipe | None = None

    @property
    def enabled(self) -> bool:
        return self.projects_enabled is True

    def project_by_id(self, project_id: str | None) -> Project | None:
        if not project_id:
            return None
        for project in self.projects:
            if project.id == project_id:
                return project
        return None

    @property
    def active_project(self) -> Project | None:
        return self.project_by_id(self.active_project_id)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "activeProjectId": self.active_project_id,
            "projects": [project.to_dict() for project in self.projects],
        }
        if self.projects_enabled is not None:
            out["projectsEnabled"] = self.projects_enabled
        if self.previous_project_id is not None:
            out["previousProjectId"] = self.previous_project_id
        if self.last_project_id is not None:
            out["lastProjectId"] = self.last_project_id
        if self.effective_from_message_id is not None:
            out["effectiveFromMessageId"] = self.effective_from_message_id
        if self.pending_reset:
            out["pendingReset"] = True
        if self.global_tokens is not None:
            out["globalTokens"] = list(self.global_tokens)
        if self.pending_wipe is not None:
            out["pendingWipe"] = self.pending_wipe.to_dict()
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> PeerState | None:
        """Parse one peer; returns None when the version tag is unsupported."""
        if not isinstance(raw, dict) or raw.get("version") != SCHEMA_VERSION:
            return None
        enabled = raw.get("projectsEnabled")
        projects_raw = raw.get("projects")
        return cls(
            version=SCHEMA_VERSION,
            projects_enabled=enabled if isinstance(enabled, bool) else None,
            projects=[Project.from_dict(p) for p in projects_raw if isinstance(p, dict)]
            if isinstance(projects_raw, list)
            else [],
            active_project_id=str(raw.get("activeProjectId") or ""),
            previous_project_id=_opt_str(raw.get("previousProjectId")),
            last_project_id=_opt_str(raw.get("lastProjectId")),
            effective_from_message_id=_opt_int(raw.get("effectiveFromMessageId")),
            pending_reset=bool(raw.get("pendingReset", False)),
            global_tokens=_opt_str_list(raw.get("globalTokens")),
            pending_wipe=PendingWipe.from_dict(raw.get("pendingWipe")),
        )


@dataclass(slots=True)
class Store:
    version: int = SCHEMA_VERSION
    peers: dict[str, PeerState] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "peers": {key: peer.to_dict() for key, peer in self.peers.items()}}

    @classmethod
    def from_dict(cls, raw: Any) -> Store:
        if not isinstance(raw, dict):
            raise StoreFormatError("Top-level state document must be an object")
        if raw.get("version") != SCHEMA_VERSION:
            raise StoreFormatError("Unsupported state document version", version=raw.get("version"))
        peers_raw = raw.get("peers")
        if not isinstance(peers_raw, dict):
            raise StoreFormatError("State document is missing a peers object")
        peers: dict[str, PeerState] = {}
        for key, value in peers_raw.items():
            peer = PeerState.from_dict(value)
            if peer is None:
                logger.warning("models: dropping peer with unsupported state", extra={"peer": str(key)})
                continue
            peers[str(key)] = peer
        return cls(version=SCHEMA_VERSION, peers=peers)
