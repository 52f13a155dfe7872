from __future__ import annotations

from typing import Any

import pytest

from lchatd.codec import decode_event, encode_event
from lchatd.config import HubRuntimeConfig
from lchatd.constants import DEFAULT_CHANNELS
from lchatd.models import ChannelRecord, UserRecord
from lchatd.roles import Role
from lchatd.service import HubService
from lchatd.store import MemoryStore
from lchatd.transport import Connection


class FakeConnection(Connection):
    """In-memory connection that records every event it is sent."""

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_reason: str | None = None

    @property
    def label(self) -> str:
        return self.name

    def is_open(self) -> bool:
        return not self.closed

    def send(self, event: dict[str, Any]) -> int:
        # Go through the wire codec so tests see exactly what a client would.
        data = encode_event(event)
        self.sent.append(decode_event(data))
        return len(data)

    def close(self, reason: str | None = None) -> None:
        self.closed = True
        self.close_reason = reason

    def types(self) -> list[str]:
        return [e["type"] for e in self.sent]

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [e for e in self.sent if e["type"] == kind]

    def last(self, kind: str) -> dict[str, Any]:
        found = self.of_type(kind)
        assert found, f"{self.name} never received {kind}; got {self.types()}"
        return found[-1]

    def errors(self) -> list[str]:
        return [e["message"] for e in self.of_type("error")]

    def clear(self) -> None:
        self.sent.clear()


USERS = [
    UserRecord(user_id="u-admin", username="Admin", role=Role.ADMIN),
    UserRecord(user_id="u-mod", username="Mod", role=Role.MODERATOR),
    UserRecord(user_id="u-alice", username="Alice", role=Role.USER),
    UserRecord(user_id="u-bob", username="Bob", role=Role.USER),
    UserRecord(user_id="u-gus", username="Gus", role=Role.GUEST),
]


class Harness:
    def __init__(self, **overrides: Any) -> None:
        self.store = MemoryStore(
            users=USERS, channels=[ChannelRecord(name=n) for n in DEFAULT_CHANNELS]
        )
        self.hub = HubService(HubRuntimeConfig(**overrides), store=self.store)
        self.hub.room_index.load(DEFAULT_CHANNELS)

    def connection(self, name: str) -> FakeConnection:
        conn = FakeConnection(name)
        self.hub.session_manager.on_connection_opened(conn)
        return conn

    async def login(self, user_id: str, name: str | None = None) -> FakeConnection:
        conn = self.connection(name or user_id)
        await self.send(conn, "login", userId=user_id)
        return conn

    async def send(self, conn: FakeConnection, kind: str, **fields: Any) -> None:
        await self.hub.router.handle_event(conn, {"type": kind, **fields})

    async def say(self, conn: FakeConnection, content: str, **fields: Any) -> dict[str, Any]:
        """Send a chat message and return the echoed record."""
        before = len(conn.of_type("channel_message"))
        await self.send(conn, "send_message", content=content, **fields)
        echoed = conn.of_type("channel_message")
        assert len(echoed) > before, conn.errors()
        return echoed[-1]

    async def settle(self) -> None:
        await self.hub.broadcaster.drain()

    def presence_names(self, room: str) -> list[str]:
        return [u["username"] for u in self.hub.presence.active_users(room)]


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def make_harness():
    return Harness
