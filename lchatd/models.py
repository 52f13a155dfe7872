"""Records exchanged with the persistence and identity collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .constants import STATUS_ONLINE
from .roles import Role
from .util import now_ms


@dataclass
class UserRecord:
    user_id: str
    username: str
    role: Role = Role.USER
    status: str = STATUS_ONLINE
    last_seen_channel: str | None = None
    is_banned: bool = False
    ban_reason: str | None = None


@dataclass(frozen=True)
class IdentityRecord:
    """A verified identity as handed over by the authentication collaborator."""

    user_id: str
    display_name: str
    role: Role
    status: str = STATUS_ONLINE
    last_room: str | None = None
    is_banned: bool = False
    ban_reason: str | None = None


@dataclass
class ChannelRecord:
    name: str
    is_private: bool = False
    invite_code: str | None = None
    created_by: str | None = None
    pinned_message_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "is_private": self.is_private,
            "invite_code": self.invite_code,
            "created_by": self.created_by,
        }


@dataclass
class MessageRecord:
    id: str
    channel: str
    author_id: str
    author: str
    content: str
    timestamp: int = field(default_factory=now_ms)
    edited: bool = False
    edited_timestamp: int | None = None
    attachment: dict[str, Any] | None = None
    system: bool = False
    parent_message_id: str | None = None
    reactions: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_thread_root(self) -> bool:
        # Derived so that a reply whose parent was removed stays consistent.
        return self.parent_message_id is None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel,
            "author": self.author,
            "authorId": self.author_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "system": self.system,
            "edited": self.edited,
            "editedTimestamp": self.edited_timestamp,
            "attachment": self.attachment,
            "reactions": {k: list(v) for k, v in self.reactions.items()},
            "parent_message_id": self.parent_message_id,
            "is_thread_root": self.is_thread_root,
        }


@dataclass(frozen=True)
class PinnedSummary:
    id: str
    author: str
    content: str

    @classmethod
    def of(cls, msg: MessageRecord) -> PinnedSummary:
        return cls(id=msg.id, author=msg.author, content=msg.content)

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "author": self.author, "content": self.content}


@dataclass
class RoomSnapshot:
    messages: list[MessageRecord] = field(default_factory=list)
    pinned: PinnedSummary | None = None

    def messages_wire(self) -> list[dict[str, Any]]:
        return [m.to_wire() for m in self.messages]

    def pinned_wire(self) -> dict[str, Any] | None:
        return self.pinned.to_wire() if self.pinned is not None else None


@dataclass(frozen=True)
class AuditEntry:
    kind: str
    actor_id: str
    target_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
