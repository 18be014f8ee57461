from __future__ import annotations

from types import SimpleNamespace

from projects_ux.identity import CommandContext, HookContext, RoutingEvent, extract_dm_peer_id


def test_command_and_hook_paths_resolve_the_same_peer() -> None:
    command = CommandContext.from_mapping({"channel": "Telegram", "senderId": 123, "args": " list "})
    hook = HookContext.from_mapping({"sessionKey": "agent:main:telegram:dm:123", "channelId": "telegram"})

    assert command.peer_key == "telegram:123"
    assert command.args == "list"
    assert hook.peer_key("telegram") == command.peer_key


def test_hook_peer_falls_back_to_session_key_when_channel_missing() -> None:
    hook = HookContext(session_key="agent:main:telegram:dm:555", channel_id=None)

    assert hook.peer_key("telegram") == "telegram:555"


def test_hook_peer_uses_conversation_for_non_dm_sessions() -> None:
    hook = HookContext(session_key="agent:main:slack:channel:C1", channel_id="slack", conversation_id="C1")

    assert hook.peer_key("telegram") == "slack:C1"


def test_hook_peer_uses_raw_session_when_nothing_else() -> None:
    assert HookContext(session_key="s-1", channel_id="web").peer_key("telegram") == "web:s-1"
    assert HookContext().peer_key("telegram") == "unknown:unknown"


def test_command_context_accepts_attribute_objects_and_rejects_bool_message_ids() -> None:
    ctx = CommandContext.from_mapping(SimpleNamespace(channel="telegram", sender_id="9", args="on", message_id=True))

    assert ctx.peer_key == "telegram:9"
    assert ctx.message_id is None
    assert CommandContext(channel=None, sender_id=None).peer_key == "unknown:unknown"


def test_routing_event_peer_requires_dm_on_dm_channel() -> None:
    dm = RoutingEvent.from_mapping(
        {"channel": "telegram", "peer": {"kind": "dm", "id": 123}, "roomKey": "agent:main:telegram:dm:123", "messageId": 7}
    )
    group = RoutingEvent.from_mapping({"channel": "telegram", "peer": {"kind": "group", "id": "g"}, "roomKey": "x"})
    other = RoutingEvent.from_mapping({"channel": "slack", "peer": {"kind": "dm", "id": "1"}, "roomKey": "x"})

    assert dm.peer_key("telegram") == "telegram:123"
    assert dm.message_id == 7
    assert group.peer_key("telegram") is None
    assert other.peer_key("telegram") is None


def test_extract_dm_peer_id() -> None:
    assert extract_dm_peer_id("agent:main:telegram:dm:abc", "telegram") == "abc"
    assert extract_dm_peer_id("agent:main:telegram:group:abc", "telegram") is None


def test_mixed_case_peer_ids_match_across_entry_points() -> None:
    command = CommandContext.from_mapping({"channel": "Slack", "senderId": "U123ABC", "args": ""})
    hook = HookContext.from_mapping({"sessionKey": "agent:main:Slack:dm:U123ABC"})
    routed = RoutingEvent.from_mapping(
        {"channel": "slack", "peer": {"kind": "dm", "id": "U123ABC"}, "roomKey": "agent:main:slack:dm:U123ABC"}
    )

    assert command.peer_key == "slack:U123ABC"
    assert hook.peer_key("slack") == command.peer_key
    assert routed.peer_key("SLACK") == command.peer_key
    assert extract_dm_peer_id("agent:main:SLACK:DM:U123ABC", "slack") == "U123ABC"


def test_non_string_channel_is_coerced() -> None:
    ctx = CommandContext.from_mapping({"channel": 7, "senderId": 1})
    event = RoutingEvent.from_mapping({"channel": 7, "peer": {"kind": "dm", "id": 1}, "roomKey": "r"})

    assert ctx.peer_key == "7:1"
    assert event.peer_key("7") == "7:1"
