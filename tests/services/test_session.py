"""End-to-end tests for the chat session facade over loopback collaborators."""

from __future__ import annotations

import logging

import pytest

from waku_chat.core.errors import (
    InvalidArgumentError,
    NotFoundError,
    NotInitializedError,
    PermissionDeniedError,
    TransportError,
)
from waku_chat.schemas.message import BroadcastRecord, LeaveMessage, TextMessage, TombstoneMessage
from waku_chat.services.codec import MessageCodec
from waku_chat.services.transport import content_topic


async def _started(make_session, name: str, **kwargs):
    session = make_session(name, **kwargs)
    await session.init()
    return session


@pytest.mark.asyncio
async def test_init_persists_and_reuses_identity(make_session) -> None:
    first = await _started(make_session, "alice", online=False)
    second = await _started(make_session, "alice", online=False)

    assert first.identity is not None
    assert first.identity == second.identity
    assert first.identity.public_id.startswith("0x")


@pytest.mark.asyncio
async def test_operations_require_init(make_session) -> None:
    session = make_session("alice")

    with pytest.raises(NotInitializedError):
        await session.create_conversation(["0xbob"], "direct")
    with pytest.raises(NotInitializedError):
        await session.send_message("conv", "hi")
    assert session.get_all_conversations() == []


@pytest.mark.asyncio
async def test_direct_conversation_is_shared_and_delivers(make_session) -> None:
    alice = await _started(make_session, "alice")
    bob = await _started(make_session, "bob")

    alices = await alice.create_conversation([bob.identity.public_id], "direct", name="Bob")
    bobs = await bob.create_conversation([alice.identity.public_id], "direct")
    assert alices.id == bobs.id

    received = []
    await bob.subscribe(bobs.id, received.append)
    message_id = await alice.send_message(alices.id, "hello bob")

    assert [message.id for message in received] == [message_id]
    assert received[0].content == "hello bob"
    assert received[0].sender == alice.identity.public_id
    assert [m.id for m in alice.get_messages(alices.id)] == [message_id]
    assert [m.id for m in bob.get_messages(bobs.id)] == [message_id]


@pytest.mark.asyncio
async def test_create_conversation_is_idempotent(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)

    first = await alice.create_conversation(["0xbob"], "direct")
    second = await alice.create_conversation(["0xbob"], "direct")

    assert second is first
    assert len(alice.get_all_conversations()) == 1
    assert alice.get_conversation(first.id) is first


@pytest.mark.asyncio
async def test_invalid_conversation_parameters(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)

    with pytest.raises(InvalidArgumentError):
        await alice.create_conversation([alice.identity.public_id], "direct")
    with pytest.raises(InvalidArgumentError):
        await alice.create_conversation(["0xbob", "0xcarol"], "direct")


@pytest.mark.asyncio
async def test_send_to_unknown_conversation(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)

    with pytest.raises(NotFoundError):
        await alice.send_message("missing", "hi")
    with pytest.raises(NotFoundError):
        await alice.revoke_message("missing", "m1")


@pytest.mark.asyncio
async def test_group_messages_reach_members_and_track_senders(make_session) -> None:
    alice = await _started(make_session, "alice")
    bob = await _started(make_session, "bob")
    group = await alice.create_conversation([], "group", name="Team")
    await bob.join_group(group.id)

    await bob.send_message(group.id, "hi team")

    assert [m.content for m in alice.get_messages(group.id)] == ["hi team"]
    assert alice.get_conversation(group.id).participants == [
        alice.identity.public_id,
        bob.identity.public_id,
    ]


@pytest.mark.asyncio
async def test_revoke_hides_content_for_everyone(make_session) -> None:
    alice = await _started(make_session, "alice")
    bob = await _started(make_session, "bob")
    conversation = await alice.create_conversation([bob.identity.public_id], "direct")
    await bob.create_conversation([alice.identity.public_id], "direct")

    message_id = await alice.send_message(conversation.id, "oops")
    tombstone_id = await alice.revoke_message(conversation.id, message_id)

    for session in (alice, bob):
        view = session.get_display_messages(conversation.id)
        assert [(item.id, item.revoked, item.content) for item in view] == [(message_id, True, "")]
        stored = session.get_messages(conversation.id)
        assert isinstance(stored[-1], TombstoneMessage)
        assert stored[-1].id == tombstone_id
        assert stored[-1].tombstone_for == message_id


@pytest.mark.asyncio
async def test_revoke_before_original_arrives(make_session) -> None:
    bob = await _started(make_session, "bob", online=False)
    conversation = await bob.join_group("team")
    key = MessageCodec.derive_key(conversation)

    original = TextMessage(id="m1", conversation_id="team", sender="0xalice", content="secret", timestamp=1)
    revocation = TombstoneMessage(
        id="t1",
        conversation_id="team",
        sender="0xalice",
        tombstone_for="m1",
        timestamp=2,
    )
    assert bob.deliver_inbound(MessageCodec.encrypt(revocation, key).payload, "team") is not None
    assert bob.deliver_inbound(MessageCodec.encrypt(original, key).payload, "team") is not None

    view = bob.get_display_messages("team")
    assert len(view) == 1
    assert view[0].revoked is True
    assert view[0].content == ""


@pytest.mark.asyncio
async def test_cannot_revoke_someone_elses_message(make_session) -> None:
    alice = await _started(make_session, "alice")
    bob = await _started(make_session, "bob")
    group = await alice.create_conversation([], "group")
    await bob.join_group(group.id)

    message_id = await alice.send_message(group.id, "mine")

    with pytest.raises(PermissionDeniedError):
        await bob.revoke_message(group.id, message_id)
    assert len(bob.get_messages(group.id)) == 1


@pytest.mark.asyncio
async def test_revoking_unknown_message_still_sends_tombstone(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)
    group = await alice.create_conversation([], "group")

    tombstone_id = await alice.revoke_message(group.id, "not-here-yet")

    stored = alice.get_messages(group.id)
    assert [m.id for m in stored] == [tombstone_id]
    assert alice.get_display_messages(group.id) == []


@pytest.mark.asyncio
async def test_duplicate_delivery_notifies_once(make_session) -> None:
    bob = await _started(make_session, "bob", online=False)
    conversation = await bob.join_group("team")
    payload = MessageCodec.encrypt(
        TextMessage(id="m1", conversation_id="team", sender="0xalice", content="hi", timestamp=1),
        MessageCodec.derive_key(conversation),
    ).payload
    received = []
    await bob.subscribe("team", received.append)
    await bob.subscribe("team", received.append)

    assert bob.deliver_inbound(payload, "team") is not None
    assert bob.deliver_inbound(payload, "team") is None

    assert len(received) == 1
    assert len(bob.get_messages("team")) == 1


@pytest.mark.asyncio
async def test_unauthentic_payloads_are_discarded(make_session, caplog) -> None:
    bob = await _started(make_session, "bob", online=False)
    await bob.join_group("team")
    other = await bob.join_group("other")
    foreign = MessageCodec.encrypt(
        TextMessage(id="m1", conversation_id="other", sender="0xalice", content="hi", timestamp=1),
        MessageCodec.derive_key(other),
    ).payload

    with caplog.at_level(logging.WARNING, logger="waku_chat.services.session"):
        assert bob.deliver_inbound(foreign, "team") is None
        assert bob.deliver_inbound(b"garbage", "team") is None
    assert bob.deliver_inbound(foreign, "unknown") is None

    assert bob.get_messages("team") == []
    assert "Discarding payload" in caplog.text


@pytest.mark.asyncio
async def test_payload_for_another_conversation_is_discarded(make_session) -> None:
    bob = await _started(make_session, "bob", online=False)
    conversation = await bob.join_group("team")
    key = MessageCodec.derive_key(conversation)
    misrouted = MessageCodec.encrypt(
        TextMessage(id="m1", conversation_id="elsewhere", sender="0xalice", content="hi", timestamp=1),
        key,
    ).payload

    assert bob.deliver_inbound(misrouted, "team") is None
    assert bob.get_messages("team") == []


@pytest.mark.asyncio
async def test_retention_keeps_last_hundred(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)
    group = await alice.create_conversation([], "group")

    ids = [await alice.send_message(group.id, f"message {n}") for n in range(101)]

    stored = [m.id for m in alice.get_messages(group.id)]
    assert len(stored) == 100
    assert stored == ids[1:]


@pytest.mark.asyncio
async def test_local_delete(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)
    group = await alice.create_conversation([], "group")
    message_id = await alice.send_message(group.id, "hi")

    alice.delete_message_locally(group.id, "missing")
    alice.delete_message_locally("missing", message_id)
    assert len(alice.get_messages(group.id)) == 1

    alice.delete_message_locally(group.id, message_id)
    assert alice.get_messages(group.id) == []


@pytest.mark.asyncio
async def test_store_message_bypasses_verification(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)
    message = TextMessage(id="m1", conversation_id="conv", sender="0xbob", content="hi", timestamp=1)

    assert alice.store_message(message) is True
    assert alice.store_message(message) is False
    assert alice.get_messages("conv") == [message]


@pytest.mark.asyncio
async def test_leave_notifies_members_and_tears_down(make_session) -> None:
    alice = await _started(make_session, "alice")
    bob = await _started(make_session, "bob")
    group = await alice.create_conversation([], "group")
    await bob.join_group(group.id)
    await bob.send_message(group.id, "bye soon")

    assert await bob.leave_conversation(group.id) is True

    assert bob.get_conversation(group.id) is None
    assert bob.get_messages(group.id) == []
    assert alice.get_conversation(group.id).participants == [alice.identity.public_id]

    view = alice.get_display_messages(group.id)
    assert view[-1].system_notice is True
    assert view[-1].sender == bob.identity.public_id
    assert isinstance(alice.get_messages(group.id)[-1], LeaveMessage)

    with pytest.raises(NotFoundError):
        await bob.send_message(group.id, "still here?")


@pytest.mark.asyncio
async def test_leave_unknown_conversation_is_a_no_op(make_session) -> None:
    alice = await _started(make_session, "alice", online=False)

    assert await alice.leave_conversation("missing") is False


@pytest.mark.asyncio
async def test_transport_start_failure_means_local_only(make_session, mocker) -> None:
    transport = mocker.AsyncMock()
    transport.start.side_effect = TransportError("node unreachable")
    alice = await _started(make_session, "alice", transport=transport)

    assert alice.online is False
    group = await alice.create_conversation([], "group")
    message_id = await alice.send_message(group.id, "offline")

    assert [m.id for m in alice.get_messages(group.id)] == [message_id]
    transport.publish.assert_not_called()
    transport.subscribe_topic.assert_not_called()


@pytest.mark.asyncio
async def test_publish_failure_keeps_local_message(make_session, mocker, caplog) -> None:
    transport = mocker.AsyncMock()
    transport.publish.side_effect = TransportError("relay down")
    alice = await _started(make_session, "alice", transport=transport)
    group = await alice.create_conversation([], "group")
    received = []
    await alice.subscribe(group.id, received.append)

    with caplog.at_level(logging.WARNING, logger="waku_chat.services.session"):
        message_id = await alice.send_message(group.id, "hi")

    assert [m.id for m in alice.get_messages(group.id)] == [message_id]
    assert [m.id for m in received] == [message_id]
    assert "stored locally only" in caplog.text
    topic = content_topic(group.id, alice.settings.content_topic_prefix)
    transport.subscribe_topic.assert_awaited_once()
    assert transport.subscribe_topic.await_args.args[0] == topic


@pytest.mark.asyncio
async def test_history_is_pulled_when_store_is_enabled(make_session) -> None:
    alice = await _started(make_session, "alice")
    group = await alice.create_conversation([], "group")
    first = await alice.send_message(group.id, "before bob")

    bob = await _started(make_session, "bob", store_messages=True)
    await bob.join_group(group.id)
    assert [m.id for m in bob.get_messages(group.id)] == [first]

    carol = await _started(make_session, "carol")
    await carol.join_group(group.id)
    assert carol.get_messages(group.id) == []


@pytest.mark.asyncio
async def test_broadcast_mirrors_to_other_local_session(make_session, channel) -> None:
    alice = await _started(make_session, "alice", online=False, broadcast=channel.endpoint())
    bob = await _started(make_session, "bob", online=False, broadcast=channel.endpoint())
    conversation = await alice.create_conversation([bob.identity.public_id], "direct")

    message_id = await alice.send_message(conversation.id, "same device")

    adopted = bob.get_conversation(conversation.id)
    assert adopted is not None
    assert adopted.is_direct
    assert [m.id for m in bob.get_messages(conversation.id)] == [message_id]
    assert [m.id for m in alice.get_messages(conversation.id)] == [message_id]

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_broadcast_auto_joins_groups(make_session, channel) -> None:
    alice = await _started(make_session, "alice", online=False, broadcast=channel.endpoint())
    bob = await _started(make_session, "bob", online=False, broadcast=channel.endpoint())
    group = await alice.create_conversation([], "group")

    await alice.send_message(group.id, "hello")

    joined = bob.get_conversation(group.id)
    assert joined is not None
    assert not joined.is_direct
    assert [m.content for m in bob.get_messages(group.id)] == ["hello"]

    await bob.close()


@pytest.mark.asyncio
async def test_broadcast_without_auto_join_is_discarded(make_session, channel) -> None:
    alice = await _started(make_session, "alice", online=False, broadcast=channel.endpoint())
    bob = await _started(
        make_session,
        "bob",
        online=False,
        broadcast=channel.endpoint(),
        auto_join_broadcast_conversations=False,
    )
    group = await alice.create_conversation([], "group")

    await alice.send_message(group.id, "hello")

    assert bob.get_conversation(group.id) is None
    assert bob.get_all_conversations() == []


@pytest.mark.asyncio
async def test_close_detaches_broadcast(make_session, channel) -> None:
    alice = await _started(make_session, "alice", online=False, broadcast=channel.endpoint())
    bob = await _started(make_session, "bob", online=False, broadcast=channel.endpoint())
    group = await alice.create_conversation([], "group")

    await bob.close()
    await bob.close()
    await alice.send_message(group.id, "anyone?")

    assert bob.get_conversation(group.id) is None


@pytest.mark.asyncio
async def test_dedup_capacity_setting_bounds_the_index(make_session) -> None:
    alice = await _started(make_session, "alice", online=False, dedup_index_capacity=2)
    group = await alice.create_conversation([], "group")

    ids = [await alice.send_message(group.id, f"message {n}") for n in range(3)]

    index = alice.message_log.dedup_index
    assert len(index) == 2
    assert ids[0] not in index
    assert ids[2] in index


@pytest.mark.asyncio
async def test_unauthentic_broadcast_does_not_adopt_conversation(make_session, channel, caplog) -> None:
    bob = await _started(make_session, "bob", online=False, broadcast=channel.endpoint())
    forged = TextMessage(
        id="m1",
        conversation_id="intruder-room",
        sender="0xmallory",
        content="hi",
        timestamp=1,
        signature="0x00",
        mac="0x00",
        payload=b"not-a-valid-ciphertext",
    )

    with caplog.at_level(logging.WARNING, logger="waku_chat.services.session"):
        assert bob.receive_broadcast(BroadcastRecord(message=forged, timestamp=1)) is None

    assert bob.get_all_conversations() == []
    assert bob.get_messages("intruder-room") == []
    assert "Discarding broadcast for unknown conversation intruder-room" in caplog.text
    await bob.close()


@pytest.mark.asyncio
async def test_broadcast_sealed_for_another_conversation_is_not_adopted(make_session, channel) -> None:
    bob = await _started(make_session, "bob", online=False, broadcast=channel.endpoint())
    other = await bob.join_group("other")
    sealed = MessageCodec.encrypt(
        TextMessage(id="m1", conversation_id="other", sender="0xalice", content="hi", timestamp=1),
        MessageCodec.derive_key(other),
    )
    relabelled = sealed.model_copy(update={"conversation_id": "elsewhere"})

    assert bob.receive_broadcast(BroadcastRecord(message=relabelled, timestamp=1)) is None
    assert [conversation.id for conversation in bob.get_all_conversations()] == ["other"]
    await bob.close()


@pytest.mark.asyncio
async def test_reinit_after_close_resubscribes_conversations(make_session) -> None:
    alice = await _started(make_session, "alice")
    bob = await _started(make_session, "bob")
    group = await alice.create_conversation([], "group")
    await bob.join_group(group.id)

    await bob.close()
    await bob.init()
    assert bob.online is True

    message_id = await alice.send_message(group.id, "welcome back")
    assert [m.id for m in bob.get_messages(group.id)] == [message_id]
