import asyncio

import pytest

from gatechat.channel import Attachment, MessageChannel, Viewer
from gatechat.config import MAX_PAYLOAD_BYTES
from gatechat.errors import AttachmentTooLarge, EmptyMessage, InvalidCallsign
from gatechat.identity import IdentityStore
from gatechat.store import DocumentStore


async def _channel(clock):
    store = DocumentStore(clock)
    identity = IdentityStore(store)
    for user_id, callsign in (("u1", "FALCON"), ("u2", "HAWK"), ("u3", "OWL")):
        await identity.register(user_id, callsign)
    return MessageChannel(store, identity), identity


def _viewer(user_id, callsign, started_at, is_admin=False):
    return Viewer(user_id, callsign, is_admin, started_at)


def test_visibility_rules(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        early = await channel.send("u2", "HAWK", "ALL", "before anyone logged in")
        clock.advance(10)
        start = clock()
        clock.advance(1)
        await channel.send("u2", "HAWK", "ALL", "broadcast")
        await channel.send("u2", "HAWK", "falcon", "for falcon")
        await channel.send("u2", "HAWK", "OWL", "for owl")
        await channel.send("u1", "FALCON", "OWL", "falcon to owl")

        falcon = [m.content for m in channel.history(_viewer("u1", "FALCON", start))]
        assert falcon == ["broadcast", "for falcon", "falcon to owl"]

        owl = [m.content for m in channel.history(_viewer("u3", "OWL", start))]
        assert owl == ["broadcast", "for owl", "falcon to owl"]

        admin = channel.history(_viewer("a1", "OVERSEER", start + 1000, is_admin=True))
        assert len(admin) == 5
        assert admin[0].id == early.id
    asyncio.run(scenario())


def test_log_is_ordered_by_server_time(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        sent = await asyncio.gather(*(channel.send("u1", "FALCON", "ALL", f"m{i}") for i in range(5)))
        history = channel.history(_viewer("a1", "OVERSEER", 0, is_admin=True))
        stamps = [m.sent_at for m in history]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 5
        assert {m.id for m in history} == {m.id for m in sent}
    asyncio.run(scenario())


def test_attachment_size_limit_is_inclusive(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        with pytest.raises(AttachmentTooLarge):
            await channel.send("u1", "FALCON", "ALL", "big",
                               Attachment("big.bin", "application/octet-stream", b"\0" * (MAX_PAYLOAD_BYTES + 1)))
        assert channel.history(_viewer("a1", "OVERSEER", 0, is_admin=True)) == []

        msg = await channel.send("u1", "FALCON", "ALL", "",
                                 Attachment("ok.bin", "application/octet-stream", b"\0" * MAX_PAYLOAD_BYTES))
        assert msg.attachment is not None
        assert len(msg.attachment.blob) == 1_048_576
    asyncio.run(scenario())


def test_empty_messages_and_bad_recipients_are_rejected(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        with pytest.raises(EmptyMessage):
            await channel.send("u1", "FALCON", "ALL", "   ")
        with pytest.raises(InvalidCallsign):
            await channel.send("u1", "FALCON", "not a callsign", "hi")
    asyncio.run(scenario())


def test_direct_messages_follow_the_user_not_the_name(clock):
    async def scenario():
        channel, identity = await _channel(clock)
        await channel.send("u2", "HAWK", "FALCON", "sent before rename")
        await identity.rename("u1", "KESTREL")
        await identity.register("u4", "FALCON")

        kestrel = [m.content for m in channel.history(_viewer("u1", "KESTREL", 0))]
        new_falcon = [m.content for m in channel.history(_viewer("u4", "FALCON", 0))]
        assert kestrel == ["sent before rename"]
        assert new_falcon == []
    asyncio.run(scenario())


def test_unknown_recipient_is_logged_but_only_admins_see_it(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        msg = await channel.send("u1", "FALCON", "GHOST", "anyone?")
        assert msg.recipient == "GHOST" and msg.recipient_id is None
        assert [m.content for m in channel.history(_viewer("u2", "HAWK", 0))] == []
        assert [m.content for m in channel.history(_viewer("u1", "FALCON", 0))] == ["anyone?"]
        assert len(channel.history(_viewer("a1", "OVERSEER", 0, is_admin=True))) == 1
    asyncio.run(scenario())


def test_subscribe_streams_only_visible_messages(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        await channel.send("u2", "HAWK", "ALL", "history")
        stream = channel.subscribe(_viewer("u1", "FALCON", 0))
        assert (await stream.next(1)).content == "history"
        await channel.send("u2", "HAWK", "OWL", "private")
        await channel.send("u2", "HAWK", "FALCON", "for you")
        assert (await stream.next(1)).content == "for you"
        stream.close()
    asyncio.run(scenario())


def test_purge_empties_the_log(clock):
    async def scenario():
        channel, _ = await _channel(clock)
        await channel.send("u1", "FALCON", "ALL", "one")
        await channel.send("u1", "FALCON", "ALL", "two")
        assert await channel.purge() == 2
        assert channel.history(_viewer("a1", "OVERSEER", 0, is_admin=True)) == []
    asyncio.run(scenario())
