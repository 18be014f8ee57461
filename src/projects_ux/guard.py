"""Two-step guard for destructive operations (arm, confirm, cancel).

A peer is either idle (``pending_wipe is None``) or armed with exactly one
PendingWipe. Confirmation burns the arm whatever its outcome, so a wrong or late
nonce can never be retried against the same arm. Execution always takes a full
backup of the state directory before mutating anything.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

from projects_ux.backup import backup_dir_for, backup_root, format_backup_stamp
from projects_ux.errors import WipeRefusedError
from projects_ux.lifecycle import default_project_id, ensure_default
from projects_ux.models import PeerState, PendingWipe, Project, WipeKind
from projects_ux.store import PeerLocks, StateBackend

logger = logging.getLogger(__name__)

WIPE_CONFIRM_TTL_MS = 120_000


class ConfirmOutcome(str, Enum):
    NOT_ARMED = "not_armed"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    ACCEPTED = "accepted"


@dataclass(slots=True)
class WipeResult:
    backup_dir: str
    projects_enabled: bool
    active_project_name: str
    project_id: str | None = None
    project_name: str | None = None


def arm(
    peer: PeerState,
    kind: WipeKind,
    *,
    root_dir: Path,
    default_name: str,
    project_id: str | None = None,
    now_ms: int,
    moment: datetime | None = None,
) -> PendingWipe:
    """Arm a wipe on ``peer``, replacing any previously armed one."""
    if kind is WipeKind.PROJECT:
        if not project_id:
            raise WipeRefusedError("Refused: a project id is required.")
        if project_id == default_project_id(default_name):
            raise WipeRefusedError("Refused: default project cannot be wiped.", project_id=project_id)
        target = peer.project_by_id(project_id)
        if target is None or target.archived:
            raise WipeRefusedError(f"Refused: unknown projectId: {project_id}", project_id=project_id)
    stamp = format_backup_stamp(moment)
    pending = PendingWipe(
        nonce=secrets.token_hex(4),
        created_at_ms=now_ms,
        kind=kind,
        stamp=stamp,
        backup_dir=str(backup_dir_for(root_dir, stamp)),
        project_id=project_id if kind is WipeKind.PROJECT else None,
    )
    peer.pending_wipe = pending
    return pending


def resolve_confirmation(
    peer: PeerState,
    kind: WipeKind,
    nonce: str,
    *,
    project_id: str | None = None,
    now_ms: int,
) -> tuple[ConfirmOutcome, PendingWipe | None]:
    """Check a confirmation attempt; every armed outcome clears the pending wipe."""
    pending = peer.pending_wipe
    if pending is None:
        return ConfirmOutcome.NOT_ARMED, None
    peer.pending_wipe = None

    if now_ms - pending.created_at_ms > WIPE_CONFIRM_TTL_MS:
        return ConfirmOutcome.EXPIRED, pending
    if not nonce or nonce != pending.nonce or pending.kind is not kind:
        return ConfirmOutcome.MISMATCH, pending
    if kind is WipeKind.PROJECT and (not pending.project_id or pending.project_id != project_id):
        return ConfirmOutcome.MISMATCH, pending
    return ConfirmOutcome.ACCEPTED, pending


def cancel(peer: PeerState) -> bool:
    had_pending = peer.pending_wipe is not None
    peer.pending_wipe = None
    return had_pending


def _refusal(outcome: ConfirmOutcome, kind: WipeKind) -> WipeRefusedError:
    if outcome is ConfirmOutcome.NOT_ARMED:
        return WipeRefusedError("Refused: no wipe pending. Use /projects more, then Reset...", outcome=outcome.value)
    if outcome is ConfirmOutcome.EXPIRED:
        return WipeRefusedError("Refused: nonce expired. Re-run Reset...", outcome=outcome.value)
    if kind is WipeKind.PROJECT:
        return WipeRefusedError("Refused: nonce mismatch or wrong projectId. Re-run Reset...", outcome=outcome.value)
    return WipeRefusedError("Refused: nonce mismatch or wrong scope. Re-run Reset...", outcome=outcome.value)


class WipeGuard:
    """Persisted arm/confirm/cancel transitions and the wipe executions they gate."""

    def __init__(
        self,
        backend: StateBackend,
        root_dir: Path,
        *,
        default_name: str,
        locks: PeerLocks,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self.root_dir = Path(root_dir)
        self._default_name = default_name
        self._locks = locks
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def arm_all(self, peer_key: str) -> PendingWipe:
        async with self._locks.hold(peer_key), self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key) or PeerState()
            ensure_default(peer, self._default_name)
            pending = arm(
                peer,
                WipeKind.ALL,
                root_dir=self.root_dir,
                default_name=self._default_name,
                now_ms=self._now_ms(),
            )
            store.peers[peer_key] = peer
            await self._backend.write_atomic(store)
        logger.info("guard: wipe-all armed", extra={"peer": peer_key, "backup_dir": pending.backup_dir})
        return pending

    async def arm_project(self, peer_key: str, project_id: str) -> tuple[PendingWipe, Project | None]:
        async with self._locks.hold(peer_key), self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key)
            if peer is None:
                raise WipeRefusedError("No Projects state yet for this DM.")
            ensure_default(peer, self._default_name)
            pending = arm(
                peer,
                WipeKind.PROJECT,
                root_dir=self.root_dir,
                default_name=self._default_name,
                project_id=project_id,
                now_ms=self._now_ms(),
            )
            store.peers[peer_key] = peer
            await self._backend.write_atomic(store)
        target = peer.project_by_id(project_id)
        logger.info("guard: wipe-one armed", extra={"peer": peer_key, "project_id": project_id})
        return pending, target

    async def cancel(self, peer_key: str) -> bool:
        async with self._locks.hold(peer_key), self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key)
            if peer is None or not cancel(peer):
                return False
            await self._backend.write_atomic(store)
        logger.info("guard: pending wipe cancelled", extra={"peer": peer_key})
        return True

    async def _consume(
        self,
        peer_key: str,
        kind: WipeKind,
        nonce: str,
        project_id: str | None,
    ) -> PendingWipe:
        async with self._locks.hold_document():
            store = await self._backend.load()
            peer = store.peers.get(peer_key)
            if peer is None:
                raise _refusal(ConfirmOutcome.NOT_ARMED, kind)
            outcome, pending = resolve_confirmation(
                peer, kind, nonce, project_id=project_id, now_ms=self._now_ms()
            )
            if outcome is not ConfirmOutcome.NOT_ARMED:
                await self._backend.write_atomic(store)
        if outcome is not ConfirmOutcome.ACCEPTED or pending is None:
            logger.warning("guard: confirmation refused", extra={"peer": peer_key, "outcome": outcome.value})
            raise _refusal(outcome, kind)
        return pending

    async def confirm_all(self, peer_key: str, nonce: str, *, message_id: int | None = None) -> WipeResult:
        async with self._locks.hold(peer_key):
            pending = await self._consume(peer_key, WipeKind.ALL, nonce, None)
            backup_dir = Path(pending.backup_dir)
            async with self._locks.hold_document():
                # No writer may create or remove temp files in root_dir while it is copied.
                await asyncio.to_thread(backup_root, self.root_dir, backup_dir)

            async with self._locks.hold_document():
                store = await self._backend.load()
                fresh = PeerState(
                    projects_enabled=False,
                    projects=[],
                    global_tokens=[],
                    effective_from_message_id=message_id,
                )
                ensure_default(fresh, self._default_name)
                store.peers[peer_key] = fresh
                await self._backend.write_atomic(store)

        logger.info("guard: wiped all projects state", extra={"peer": peer_key, "backup_dir": str(backup_dir)})
        active = fresh.active_project
        return WipeResult(
            backup_dir=str(backup_dir),
            projects_enabled=False,
            active_project_name=active.name if active else self._default_name,
        )

    async def confirm_project(
        self,
        peer_key: str,
        nonce: str,
        project_id: str,
        *,
        message_id: int | None = None,
    ) -> WipeResult:
        async with self._locks.hold(peer_key):
            pending = await self._consume(peer_key, WipeKind.PROJECT, nonce, project_id)
            backup_dir = Path(pending.backup_dir)
            async with self._locks.hold_document():
                await asyncio.to_thread(backup_root, self.root_dir, backup_dir)

            async with self._locks.hold_document():
                store = await self._backend.load()
                peer = store.peers.get(peer_key)
                if peer is None:
                    raise WipeRefusedError("Refused: no peer state.")
                peer.pending_wipe = None
                ensure_default(peer, self._default_name)

                default_id = default_project_id(self._default_name)
                if project_id == default_id:
                    raise WipeRefusedError("Refused: default project cannot be wiped.", project_id=project_id)
                target = peer.project_by_id(project_id)
                if target is None or target.archived:
                    raise WipeRefusedError(f"Refused: unknown projectId: {project_id}", project_id=project_id)

                peer.projects = [p for p in peer.projects if p.id != project_id]
                if project_id in {peer.active_project_id, peer.previous_project_id, peer.last_project_id}:
                    peer.active_project_id = default_id
                    peer.previous_project_id = None
                    peer.last_project_id = default_id
                    peer.pending_reset = True
                if message_id is not None:
                    peer.effective_from_message_id = message_id

                ensure_default(peer, self._default_name)
                peer.pending_wipe = None
                store.peers[peer_key] = peer
                await self._backend.write_atomic(store)

        logger.info(
            "guard: wiped one project",
            extra={"peer": peer_key, "project_id": project_id, "backup_dir": str(backup_dir)},
        )
        active = peer.active_project
        return WipeResult(
            backup_dir=str(backup_dir),
            projects_enabled=peer.enabled,
            active_project_name=active.name if active else self._default_name,
            project_id=project_id,
            project_name=target.name,
        )
