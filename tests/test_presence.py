import asyncio


def test_typing_set_and_broadcast(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        bob.clear()

        await harness.send(alice, "typing_update", isTyping=True)
        assert bob.last("typing_status") == {"type": "typing_status", "channel": "#general", "typingUsers": ["Alice"]}
        assert alice.last("typing_status")["typingUsers"] == ["Alice"]

        await harness.send(bob, "typing_update", isTyping=True)
        assert alice.last("typing_status")["typingUsers"] == ["Alice", "Bob"]

        await harness.send(alice, "typing_update", isTyping=False)
        assert bob.last("typing_status")["typingUsers"] == ["Bob"]

    asyncio.run(scenario())


def test_room_change_moves_presence_and_clears_typing(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        bob = await harness.login("u-bob")
        await harness.send(alice, "typing_update", isTyping=True)
        bob.clear()
        alice.clear()

        await harness.send(alice, "join_channel", channel="#random")

        assert harness.presence_names("#general") == ["Bob"]
        assert harness.presence_names("#random") == ["Alice"]
        assert harness.hub.presence.typing_users("#general") == []

        # Departure notice, typing delta and presence all reach the old room.
        assert [m["content"] for m in bob.of_type("channel_message")] == ["Alice has left the chat."]
        assert bob.last("typing_status")["typingUsers"] == []
        assert [u["username"] for u in bob.last("user_presence")["users"]] == ["Bob"]

        change = alice.last("channel_change")
        assert change["newChannel"] == "#random"
        assert change["history"] == []
        assert change["pinned"] is None
        assert [c["name"] for c in change["availableChannels"]] == ["#dev-talk", "#general", "#random"]
        assert [u["username"] for u in alice.last("user_presence")["users"]] == ["Alice"]

        user = await harness.store.get_user("u-alice")
        assert user.last_seen_channel == "#random"

    asyncio.run(scenario())


def test_joining_current_room_is_a_no_op(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        alice.clear()
        await harness.send(alice, "join_channel", channel="#general")
        assert alice.sent == []

    asyncio.run(scenario())


def test_active_users_reflect_status(harness):
    async def scenario():
        alice = await harness.login("u-alice")
        await harness.send(alice, "send_message", content="/status away")
        assert alice.last("notification")["message"] == "Your status is now set to away."
        assert harness.hub.presence.active_users("#general") == [
            {"id": "u-alice", "username": "Alice", "role": "User", "status": "away"}
        ]
        assert (await harness.store.get_user("u-alice")).status == "away"

        await harness.send(alice, "send_message", content="/status sleeping")
        assert alice.errors() == ["Invalid status. Use: online, away, or dnd."]

    asyncio.run(scenario())
