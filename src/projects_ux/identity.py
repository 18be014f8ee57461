"""Peer identity derivation for command and hook entry points.

Explicit commands and passive hooks see different context shapes. Each shape is
parsed into its own small dataclass and immediately reduced to one canonical
peer key, so both paths observe the same PeerState.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping


def _get(raw: Any, *names: str) -> Any:
    """Read the first present field from a mapping or attribute-style object."""
    for name in names:
        if isinstance(raw, Mapping):
            if name in raw:
                return raw[name]
        elif raw is not None and hasattr(raw, name):
            return getattr(raw, name)
    return None


def _message_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


@dataclass(frozen=True, slots=True)
class CommandContext:
    channel: str | None
    sender_id: str | None
    args: str = ""
    message_id: int | None = None

    @classmethod
    def from_mapping(cls, raw: Any) -> CommandContext:
        sender = _get(raw, "sender_id", "senderId")
        channel = _get(raw, "channel")
        return cls(
            channel=str(channel) if channel is not None else None,
            sender_id=str(sender) if sender is not None else None,
            args=str(_get(raw, "args") or "").strip(),
            message_id=_message_id(_get(raw, "message_id", "messageId")),
        )

    def with_args(self, args: str) -> CommandContext:
        return CommandContext(self.channel, self.sender_id, args.strip(), self.message_id)

    @property
    def peer_key(self) -> str:
        channel = (self.channel or "unknown").lower()
        sender = self.sender_id if self.sender_id is not None else "unknown"
        return f"{channel}:{sender}"


@dataclass(frozen=True, slots=True)
class HookContext:
    session_key: str | None = None
    channel_id: str | None = None
    conversation_id: str | None = None

    @classmethod
    def from_mapping(cls, raw: Any) -> HookContext:
        def _opt(value: Any) -> str | None:
            return str(value) if value is not None else None

        return cls(
            session_key=_opt(_get(raw, "session_key", "sessionKey")),
            channel_id=_opt(_get(raw, "channel_id", "channelId")),
            conversation_id=_opt(_get(raw, "conversation_id", "conversationId")),
        )

    def peer_key(self, dm_channel: str) -> str:
        raw_session = self.session_key or ""
        session = raw_session.lower()
        channel = (self.channel_id or "unknown").lower()
        dm = dm_channel.lower()

        # channel_id can be missing in some gateway contexts; the session key still carries it.
        if channel == dm or f":{dm}:" in session:
            peer = extract_dm_peer_id(raw_session, dm)
            if peer:
                return f"{dm}:{peer}"

        conversation = (self.conversation_id or "").strip()
        if conversation:
            return f"{channel}:{conversation}"
        if raw_session:
            return f"{channel}:{raw_session}"
        return f"{channel}:unknown"


@dataclass(frozen=True, slots=True)
class RoutingEvent:
    channel: str | None
    peer_kind: str | None
    peer_id: str | None
    room_key: str
    message_id: int | None = None

    @classmethod
    def from_mapping(cls, raw: Any) -> RoutingEvent:
        peer = _get(raw, "peer")
        peer_id = _get(peer, "id")
        channel = _get(raw, "channel")
        kind = _get(peer, "kind")
        return cls(
            channel=str(channel) if channel is not None else None,
            peer_kind=str(kind) if kind is not None else None,
            peer_id=str(peer_id).strip() if peer_id is not None else None,
            room_key=str(_get(raw, "room_key", "roomKey") or "").strip(),
            message_id=_message_id(_get(raw, "message_id", "messageId")),
        )

    def peer_key(self, dm_channel: str) -> str | None:
        """Identity for DM events on the DM channel; None for anything else."""
        if (self.channel or "").lower() != dm_channel.lower():
            return None
        if self.peer_kind != "dm" or not self.peer_id:
            return None
        return f"{dm_channel.lower()}:{self.peer_id}"


def extract_dm_peer_id(session_key: str, dm_channel: str) -> str | None:
    # e.g. agent:<agentId>:telegram:dm:<peerId>; the peer id keeps its case.
    match = re.search(rf":{re.escape(dm_channel)}:dm:([^:]+)$", session_key, re.IGNORECASE)
    return match.group(1) if match else None
