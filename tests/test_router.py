"""Event routing: login handshake, rooms, messages and failure handling."""
import asyncio

from lchatd.constants import AUDIT_CHANNEL_CREATE, AUDIT_MESSAGE_DELETE, CLOSE_INVALID_AUTH
from lchatd.errors import CollaboratorFailure
from lchatd.models import ChannelRecord, MessageRecord, UserRecord
from lchatd.rooms import dm_room_name
from lchatd.util import now_ms


def test_login_sequence(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        assert alice.types() == ["initial_state", "message_history", "user_presence", "login_success"]

        state = alice.last("initial_state")
        assert state["currentChannel"] == "#general"
        assert [c["name"] for c in state["availableChannels"]] == ["#dev-talk", "#general", "#random"]
        assert alice.last("message_history") == {
            "type": "message_history",
            "channel": "#general",
            "messages": [],
            "pinned": None,
        }
        assert alice.last("login_success") == {"type": "login_success", "username": "Alice", "role": "User"}

        bob = await harness.login("u-bob")
        assert alice.last("channel_message")["content"] == "Bob has joined #general."
        assert bob.of_type("channel_message") == []
        assert [u["username"] for u in alice.last("user_presence")["users"]] == ["Alice", "Bob"]

    asyncio.run(scenario())


def test_login_unknown_identity(harness):
    async def scenario():
        conn = harness.connection("stranger")
        await harness.send(conn, "login", userId="u-nobody")
        assert conn.errors() == ["Invalid User ID. Please register."]
        assert conn.closed and conn.close_reason == CLOSE_INVALID_AUTH
        assert harness.hub.session_manager.sessions == {}

        blank = harness.connection("blank")
        await harness.send(blank, "login")
        assert blank.errors() == ["Missing field: userId."]
        assert not blank.closed

    asyncio.run(scenario())


def test_login_restores_last_room(harness):
    async def scenario():
        await harness.store.update_last_room("u-alice", "#random")
        alice = await harness.login("u-alice")
        assert alice.last("initial_state")["currentChannel"] == "#random"

        await harness.store.update_last_room("u-bob", "#gone")
        bob = await harness.login("u-bob")
        assert bob.last("initial_state")["currentChannel"] == "#general"
        assert (await harness.store.get_user("u-bob")).last_seen_channel == "#general"

    asyncio.run(scenario())


def test_message_fan_out_and_threads(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        gus = await harness.login("u-gus")
        await harness.send(gus, "join_channel", channel="#random")
        for conn in (alice, bob, gus):
            conn.clear()

        root = await harness.say(alice, "hello")
        assert bob.last("channel_message") == root
        assert root["author"] == "Alice"
        assert root["is_thread_root"] is True
        assert gus.of_type("channel_message") == []
        assert len(alice.of_type("channel_message")) == 1

        reply = await harness.say(bob, "hi back", parent_message_id=root["id"])
        assert reply["parent_message_id"] == root["id"]
        assert reply["is_thread_root"] is False

        stored_root = await harness.store.get_message(root["id"])
        assert stored_root.is_thread_root is True
        history = await harness.store.room_history("#general")
        assert [m.content for m in history.messages] == ["hello", "hi back"]

        await harness.send(bob, "send_message", content="orphan", parent_message_id="missing")
        assert bob.errors() == ["Parent message not found."]

        await harness.send(gus, "send_message", content="elsewhere", parent_message_id=root["id"])
        assert gus.errors() == ["Parent message not found."]
        assert bob.of_type("channel_message")[-1]["content"] == "hi back"

    asyncio.run(scenario())


def test_empty_message_and_attachment(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        await harness.send(alice, "send_message", content="   ")
        await harness.send(alice, "send_message", content="x", attachment="file.png")
        assert alice.errors() == ["Message content is empty.", "Attachment must be a map."]

        sent = await harness.say(alice, "", attachment={"name": "cat.png", "size": 12})
        assert sent["content"] == ""
        assert sent["attachment"] == {"name": "cat.png", "size": 12}

    asyncio.run(scenario())


def _old_message(mid, author_id="u-alice", author="Alice", hours=25):
    return MessageRecord(
        id=mid,
        channel="#general",
        author_id=author_id,
        author=author,
        content="old text",
        timestamp=now_ms() - hours * 3600 * 1000,
    )


def test_edit_ttl_and_permissions(harness):
    async def scenario():
        await harness.store.insert_message(_old_message("m-old"))
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        mod = await harness.login("u-mod")

        await harness.send(alice, "edit_message", id="m-old", content="new text")
        assert alice.errors() == ["Message is too old to edit (TTL exceeded)."]

        await harness.send(bob, "edit_message", id="m-old", content="hijack")
        assert bob.errors() == ["Permission denied to edit this message."]

        alice.clear()
        await harness.send(mod, "edit_message", id="m-old", content="moderated")
        edited = alice.last("message_edited")
        assert edited["content"] == "moderated"
        assert edited["edited"] is True
        assert edited["editedTimestamp"] is not None
        assert mod.last("message_edited") == edited

        fresh = await harness.say(alice, "typo")
        await harness.send(alice, "edit_message", id=fresh["id"], content="fixed")
        assert bob.last("message_edited")["content"] == "fixed"

        await harness.send(alice, "edit_message", id="nope", content="x")
        await harness.send(alice, "edit_message", id=fresh["id"], content="  ")
        assert alice.errors()[-2:] == ["Message not found.", "Message content is empty."]

    asyncio.run(scenario())


def test_delete_message_and_pin_cleanup(harness):
    async def scenario():
        admin = await harness.login("u-admin")
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        first = await harness.say(alice, "keep me pinned")
        second = await harness.say(alice, "x" * 60)
        await harness.send(admin, "send_message", content=f"/pin {first['id']}")

        await harness.send(bob, "delete_message", id=second["id"])
        assert bob.errors() == ["Permission denied to delete this message."]

        bob.clear()
        await harness.send(alice, "delete_message", id=second["id"])
        assert bob.of_type("update_pinned_message") == []
        assert bob.last("message_deleted") == {
            "type": "message_deleted",
            "id": second["id"],
            "channel": "#general",
        }
        assert alice.last("message_deleted")["id"] == second["id"]
        entry = harness.store.audit[-1]
        assert entry.kind == AUDIT_MESSAGE_DELETE
        assert entry.details == {"room": "#general", "content": "x" * 50 + "..."}

        await harness.send(admin, "delete_message", id=first["id"])
        assert bob.last("update_pinned_message")["message"] is None
        assert (await harness.store.room_history("#general")).pinned is None

    asyncio.run(scenario())


def test_reactions(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        msg = await harness.say(alice, "react to me")

        await harness.send(bob, "add_reaction", id=msg["id"], emoji="+1")
        await harness.send(bob, "add_reaction", id=msg["id"], emoji="+1")
        reacted = alice.of_type("message_reacted")
        assert [r["reactions"] for r in reacted] == [{"+1": ["u-bob"]}, {"+1": ["u-bob"]}]
        assert bob.last("message_reacted")["id"] == msg["id"]

        await harness.send(bob, "remove_reaction", id=msg["id"], emoji="+1")
        assert alice.last("message_reacted")["reactions"] == {}

        await harness.send(bob, "add_reaction", id="missing", emoji="+1")
        assert bob.errors() == ["Message not found."]

    asyncio.run(scenario())


def test_create_and_delete_public_channel(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")

        await harness.send(alice, "create_channel", channel="#ops")
        await harness.settle()
        assert alice.last("notification")["message"] == "Public Channel #ops created!"
        assert alice.last("channel_change")["newChannel"] == "#ops"
        assert "#ops" in [c["name"] for c in bob.last("channel_list_update")["availableChannels"]]
        assert harness.store.audit[-1].kind == AUDIT_CHANNEL_CREATE
        assert harness.hub.room_index.is_known("#ops")

        await harness.send(bob, "create_channel", channel="#ops")
        assert bob.errors() == ["Channel #ops already exists."]

        await harness.send(bob, "join_channel", channel="#ops")
        await harness.send(bob, "delete_channel", channel="#ops")
        assert bob.errors()[-1] == "Permission denied. Only the creator or an Admin can delete this channel."

        bob.clear()
        await harness.send(alice, "delete_channel", channel="#ops")
        await harness.settle()
        assert bob.last("channel_change")["newChannel"] == "#general"
        assert alice.last("channel_change")["newChannel"] == "#general"
        assert alice.last("notification")["message"] == "Channel #ops deleted successfully."
        assert "#ops" not in [c["name"] for c in bob.last("channel_list_update")["availableChannels"]]
        assert harness.presence_names("#general") == ["Alice", "Bob"]
        assert not harness.hub.room_index.is_known("#ops")

        await harness.send(alice, "delete_channel", channel="#general")
        await harness.send(alice, "delete_channel", channel="#nowhere")
        assert alice.errors() == ["Cannot delete default or nonexistent channel."] * 2

    asyncio.run(scenario())


def test_private_channel_invite_flow(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")

        await harness.send(alice, "create_channel", channel="#secret", isPrivate=True)
        await harness.settle()
        text = alice.last("notification")["message"]
        assert text.startswith("Private Channel #secret created! Invite code: ")
        code = text.rsplit(" ", 1)[1]
        assert len(code) == 8
        assert "#secret" not in [c["name"] for c in bob.last("channel_list_update")["availableChannels"]]

        await harness.send(bob, "join_channel", channel="#secret")
        assert bob.errors() == ["Channel #secret is private or does not exist."]

        await harness.send(bob, "join_channel_by_code", code="00000000")
        assert bob.errors()[-1] == "Invalid or expired invite code."

        bob.clear()
        await harness.send(bob, "join_channel_by_code", code=code.lower())
        assert bob.types()[:3] == ["notification", "channel_list_update", "channel_change"]
        assert bob.last("notification")["message"] == "Successfully joined private channel #secret."
        assert bob.last("channel_change")["newChannel"] == "#secret"
        assert harness.presence_names("#secret") == ["Alice", "Bob"]

        await harness.store.create_channel(ChannelRecord(name="#lobby", invite_code="FEEDBEEF"))
        await harness.send(bob, "join_channel_by_code", code="FEEDBEEF")
        assert bob.errors() == ["This code is for a public channel. Use the channel list."]

    asyncio.run(scenario())


def test_invalid_channel_names(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        await harness.send(alice, "create_channel", channel="x")
        await harness.send(alice, "create_channel", channel="DM:sneaky")
        await harness.send(alice, "create_channel")
        assert alice.errors() == [
            "Channel name is too short or too long.",
            "Channel names must not start with DM:",
            "Channel name is required.",
        ]

    asyncio.run(scenario())


def test_direct_messages(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        gus = await harness.login("u-gus")
        room = dm_room_name("u-bob", "u-alice")
        assert room == "DM:u-alice-u-bob"

        await harness.send(alice, "start_dm", targetUserId="u-alice")
        await harness.send(alice, "start_dm", targetUserId="u-ghost")
        assert alice.errors() == ["Cannot start a direct message with yourself.", "User not found."]

        bob.clear()
        await harness.send(alice, "start_dm", targetUserId="u-bob")
        change = alice.last("channel_change")
        assert change["newChannel"] == room
        assert change["history"] == []
        assert [m["content"] for m in bob.of_type("channel_message")] == ["Alice has left the chat."]

        await harness.send(bob, "start_dm", targetUserId="u-alice")
        assert harness.presence_names(room) == ["Alice", "Bob"]

        alice.clear()
        await harness.send(alice, "send_dm", channel=room, content="psst")
        assert bob.last("channel_message")["content"] == "psst"
        assert alice.last("channel_message")["channel"] == room
        assert (await harness.store.room_history(room)).messages == []

        await harness.send(gus, "send_dm", channel=room, content="let me in")
        assert gus.errors() == ["Direct messages must target a DM room you belong to."]
        assert bob.last("channel_message")["content"] == "psst"

    asyncio.run(scenario())


def test_dm_rooms_reject_partial_id_matches(harness):
    async def scenario():
        room = dm_room_name("u-alice", "u-bob")
        harness.store.put_user(UserRecord(user_id="bob", username="Robert", last_seen_channel=room))
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        robert = await harness.login("bob")
        assert robert.last("initial_state")["currentChannel"] == "#general"
        await harness.send(alice, "start_dm", targetUserId="u-bob")
        await harness.send(bob, "start_dm", targetUserId="u-alice")
        alice.clear()
        bob.clear()

        await harness.send(robert, "send_dm", channel=room, content="spoofed")
        assert robert.errors() == ["Direct messages must target a DM room you belong to."]
        assert alice.of_type("channel_message") == []
        assert bob.of_type("channel_message") == []

        assert harness.presence_names(room) == ["Alice", "Bob"]

    asyncio.run(scenario())


def test_bad_packets(harness):
    async def scenario():
        conn = harness.connection("noise")
        await harness.hub.router.handle_packet(conn, b"\xff\xff\xff")
        await harness.send(conn, "shout")
        errors = conn.errors()
        assert len(errors) == 2
        assert all(e.startswith("bad message: ") for e in errors)
        assert harness.hub.stats_manager.get("events_bad") == 2
        assert not conn.closed

    asyncio.run(scenario())


def test_collaborator_failures(harness, monkeypatch):
    async def broken(*args, **kwargs):
        raise CollaboratorFailure("database is locked")

    async def scenario():
        monkeypatch.setattr(harness.store, "room_history", broken)
        monkeypatch.setattr(harness.store, "list_visible_channels", broken)
        alice = await harness.login("u-alice")
        assert "login_success" in alice.types()
        assert [c["name"] for c in alice.last("initial_state")["availableChannels"]] == ["#general"]
        assert alice.last("message_history")["messages"] == []

        monkeypatch.setattr(harness.store, "insert_message", broken)
        await harness.send(alice, "send_message", content="hello")
        assert alice.errors() == ["Request failed due to a server error."]
        assert alice.of_type("channel_message") == []

    asyncio.run(scenario())


def test_unexpected_errors_are_contained(harness, monkeypatch):
    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    async def scenario():
        alice = await harness.login("u-alice")
        msg = await harness.say(alice, "hello")
        monkeypatch.setattr(harness.store, "add_reaction", explode)
        await harness.send(alice, "add_reaction", id=msg["id"], emoji="+1")
        assert alice.errors() == ["Internal error processing request."]
        assert harness.hub.session_manager.lookup("u-alice").conn is alice

    asyncio.run(scenario())
