"""Persistence collaborator for lchatd.

The coordinator only talks to the abstract ``Store``. ``MemoryStore`` keeps
everything in process memory; ``DirectoryStore`` additionally keeps users and
channels in a TOML directory file that operators can edit between runs.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

from .constants import DEFAULT_CHANNELS
from .errors import CollaboratorFailure, ConflictFailure, NotFound
from .models import (
    AuditEntry,
    ChannelRecord,
    MessageRecord,
    PinnedSummary,
    RoomSnapshot,
    UserRecord,
)
from .roles import Role


class Store(ABC):
    """Async interface to durable storage.

    Implementations raise ``CollaboratorFailure`` for generic errors,
    ``ConflictFailure`` for duplicate keys and ``NotFound`` when a referenced
    row is missing.
    """

    # Users

    @abstractmethod
    async def get_user(self, user_id: str) -> UserRecord | None: ...

    @abstractmethod
    async def find_user_by_name(self, username: str) -> UserRecord | None: ...

    @abstractmethod
    async def update_user_status(self, user_id: str, status: str) -> None: ...

    @abstractmethod
    async def update_last_room(self, user_id: str, room: str) -> None: ...

    @abstractmethod
    async def set_user_ban(
        self, user_id: str, banned: bool, reason: str | None = None
    ) -> None: ...

    # Channels

    @abstractmethod
    async def list_channels(self) -> list[ChannelRecord]: ...

    @abstractmethod
    async def list_visible_channels(self, user_id: str) -> list[ChannelRecord]: ...

    @abstractmethod
    async def get_channel(self, name: str) -> ChannelRecord | None: ...

    @abstractmethod
    async def find_channel_by_invite(self, code: str) -> ChannelRecord | None: ...

    @abstractmethod
    async def create_channel(self, channel: ChannelRecord) -> ChannelRecord: ...

    @abstractmethod
    async def delete_channel(self, name: str) -> None: ...

    @abstractmethod
    async def add_channel_member(self, name: str, user_id: str) -> None: ...

    @abstractmethod
    async def set_pinned_message(self, room: str, message_id: str | None) -> None: ...

    @abstractmethod
    async def clear_pinned_message_if(self, room: str, message_id: str) -> bool:
        """Clear the room pin only if it points at ``message_id``."""

    # Messages

    @abstractmethod
    async def insert_message(self, message: MessageRecord) -> None: ...

    @abstractmethod
    async def get_message(
        self, message_id: str, room: str | None = None
    ) -> MessageRecord | None: ...

    @abstractmethod
    async def update_message_content(
        self, message_id: str, content: str, edited_timestamp: int
    ) -> MessageRecord: ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> MessageRecord | None:
        """Remove a message, its reactions, and detach its replies."""

    @abstractmethod
    async def add_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> dict[str, list[str]]: ...

    @abstractmethod
    async def remove_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> dict[str, list[str]]: ...

    @abstractmethod
    async def room_history(self, room: str, limit: int = 50) -> RoomSnapshot: ...

    # Audit

    @abstractmethod
    async def write_audit(self, entry: AuditEntry) -> None: ...


class MemoryStore(Store):
    def __init__(
        self,
        *,
        users: list[UserRecord] | None = None,
        channels: list[ChannelRecord] | None = None,
    ) -> None:
        self.log = logging.getLogger("lchatd.store")
        self.audit_log = logging.getLogger("lchatd.audit")

        self._users: dict[str, UserRecord] = {}
        self._channels: dict[str, ChannelRecord] = {}
        self._members: dict[str, set[str]] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._reactions: dict[str, dict[str, set[str]]] = {}
        self.audit: list[AuditEntry] = []

        for u in users or ():
            self._users[u.user_id] = replace(u)
        for c in channels or ():
            self._channels[c.name] = replace(c)
            self._members.setdefault(c.name, set())
            if c.is_private and c.created_by:
                self._members[c.name].add(c.created_by)

    # Synchronous helpers, shared with subclasses and tests.

    def put_user(self, user: UserRecord) -> None:
        self._users[user.user_id] = replace(user)

    def _user(self, user_id: str) -> UserRecord:
        u = self._users.get(user_id)
        if u is None:
            raise NotFound(f"User {user_id} does not exist.")
        return u

    def _aggregate(self, message_id: str) -> dict[str, list[str]]:
        per_emoji = self._reactions.get(message_id) or {}
        return {emoji: sorted(ids) for emoji, ids in per_emoji.items() if ids}

    def _snapshot_message(self, msg: MessageRecord) -> MessageRecord:
        return replace(msg, reactions=self._aggregate(msg.id))

    # Users

    async def get_user(self, user_id: str) -> UserRecord | None:
        u = self._users.get(user_id)
        return replace(u) if u is not None else None

    async def find_user_by_name(self, username: str) -> UserRecord | None:
        key = username.strip().lower()
        for u in self._users.values():
            if u.username.lower() == key:
                return replace(u)
        return None

    async def update_user_status(self, user_id: str, status: str) -> None:
        self._user(user_id).status = status

    async def update_last_room(self, user_id: str, room: str) -> None:
        self._user(user_id).last_seen_channel = room

    async def set_user_ban(
        self, user_id: str, banned: bool, reason: str | None = None
    ) -> None:
        u = self._user(user_id)
        u.is_banned = bool(banned)
        u.ban_reason = reason if banned else None

    # Channels

    async def list_channels(self) -> list[ChannelRecord]:
        return [replace(self._channels[n]) for n in sorted(self._channels)]

    async def list_visible_channels(self, user_id: str) -> list[ChannelRecord]:
        out = []
        for name in sorted(self._channels):
            c = self._channels[name]
            if not c.is_private or user_id in self._members.get(name, ()):
                out.append(replace(c))
        return out

    async def get_channel(self, name: str) -> ChannelRecord | None:
        c = self._channels.get(name)
        return replace(c) if c is not None else None

    async def find_channel_by_invite(self, code: str) -> ChannelRecord | None:
        key = code.strip().upper()
        for c in self._channels.values():
            if c.invite_code and c.invite_code.upper() == key:
                return replace(c)
        return None

    async def create_channel(self, channel: ChannelRecord) -> ChannelRecord:
        if channel.name in self._channels:
            raise ConflictFailure(f"Channel {channel.name} already exists.")
        stored = replace(channel)
        self._channels[stored.name] = stored
        members = self._members.setdefault(stored.name, set())
        if stored.is_private and stored.created_by:
            members.add(stored.created_by)
        return replace(stored)

    async def delete_channel(self, name: str) -> None:
        if self._channels.pop(name, None) is None:
            raise NotFound(f"Channel {name} does not exist.")
        self._members.pop(name, None)
        doomed = [mid for mid, m in self._messages.items() if m.channel == name]
        for mid in doomed:
            self._messages.pop(mid, None)
            self._reactions.pop(mid, None)

    async def add_channel_member(self, name: str, user_id: str) -> None:
        if name not in self._channels:
            raise NotFound(f"Channel {name} does not exist.")
        self._members.setdefault(name, set()).add(user_id)

    async def set_pinned_message(self, room: str, message_id: str | None) -> None:
        c = self._channels.get(room)
        if c is None:
            raise NotFound(f"Channel {room} does not exist.")
        c.pinned_message_id = message_id

    async def clear_pinned_message_if(self, room: str, message_id: str) -> bool:
        c = self._channels.get(room)
        if c is None or c.pinned_message_id != message_id:
            return False
        c.pinned_message_id = None
        return True

    # Messages

    async def insert_message(self, message: MessageRecord) -> None:
        if message.id in self._messages:
            raise ConflictFailure(f"Message {message.id} already exists.")
        parent_id = message.parent_message_id
        if parent_id is not None:
            parent = self._messages.get(parent_id)
            if parent is None or parent.channel != message.channel:
                raise NotFound("Parent message not found.")
        self._messages[message.id] = replace(message, reactions={})

    async def get_message(
        self, message_id: str, room: str | None = None
    ) -> MessageRecord | None:
        m = self._messages.get(message_id)
        if m is None or (room is not None and m.channel != room):
            return None
        return self._snapshot_message(m)

    async def update_message_content(
        self, message_id: str, content: str, edited_timestamp: int
    ) -> MessageRecord:
        m = self._messages.get(message_id)
        if m is None:
            raise NotFound("Message not found.")
        m.content = content
        m.edited = True
        m.edited_timestamp = int(edited_timestamp)
        return self._snapshot_message(m)

    async def delete_message(self, message_id: str) -> MessageRecord | None:
        m = self._messages.pop(message_id, None)
        if m is None:
            return None
        self._reactions.pop(message_id, None)
        for other in self._messages.values():
            if other.parent_message_id == message_id:
                other.parent_message_id = None
        return m

    async def add_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> dict[str, list[str]]:
        if message_id not in self._messages:
            raise NotFound("Message not found.")
        self._reactions.setdefault(message_id, {}).setdefault(emoji, set()).add(user_id)
        return self._aggregate(message_id)

    async def remove_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> dict[str, list[str]]:
        if message_id not in self._messages:
            raise NotFound("Message not found.")
        per_emoji = self._reactions.get(message_id) or {}
        ids = per_emoji.get(emoji)
        if ids is not None:
            ids.discard(user_id)
            if not ids:
                per_emoji.pop(emoji, None)
        return self._aggregate(message_id)

    async def room_history(self, room: str, limit: int = 50) -> RoomSnapshot:
        msgs = [m for m in self._messages.values() if m.channel == room]
        msgs.sort(key=lambda m: m.timestamp)
        if limit > 0:
            msgs = msgs[-int(limit):]

        pinned = None
        c = self._channels.get(room)
        if c is not None and c.pinned_message_id:
            pm = self._messages.get(c.pinned_message_id)
            if pm is not None:
                pinned = PinnedSummary.of(pm)

        return RoomSnapshot(
            messages=[self._snapshot_message(m) for m in msgs], pinned=pinned
        )

    # Audit

    async def write_audit(self, entry: AuditEntry) -> None:
        self.audit.append(entry)
        self.audit_log.info(
            "%s actor=%s target=%s details=%s",
            entry.kind,
            entry.actor_id,
            entry.target_id or "-",
            entry.details,
        )


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def load_directory(path: str) -> tuple[list[UserRecord], list[ChannelRecord], dict[str, set[str]]]:
    """Read users, channels and private-channel members from a directory file."""
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)

    users: list[UserRecord] = []
    for row in data.get("users") or ():
        if not isinstance(row, dict):
            continue
        uid = _clean_str(row.get("id"))
        name = _clean_str(row.get("username"))
        if not uid or not name:
            continue
        users.append(
            UserRecord(
                user_id=uid,
                username=name,
                role=Role.parse(row.get("role"), Role.USER),
                status=_clean_str(row.get("status")) or "online",
                last_seen_channel=_clean_str(row.get("last_seen_channel")),
                is_banned=bool(row.get("banned", False)),
                ban_reason=_clean_str(row.get("ban_reason")),
            )
        )

    channels: list[ChannelRecord] = []
    members: dict[str, set[str]] = {}
    for row in data.get("channels") or ():
        if not isinstance(row, dict):
            continue
        name = _clean_str(row.get("name"))
        if not name:
            continue
        channels.append(
            ChannelRecord(
                name=name,
                is_private=bool(row.get("private", False)),
                invite_code=_clean_str(row.get("invite_code")),
                created_by=_clean_str(row.get("created_by")),
                pinned_message_id=_clean_str(row.get("pinned_message_id")),
            )
        )
        raw_members = row.get("members")
        if isinstance(raw_members, list):
            members[name] = {str(x) for x in raw_members if str(x).strip()}

    return users, channels, members


class DirectoryStore(MemoryStore):
    """MemoryStore whose users and channels are mirrored to a TOML file.

    The file is rewritten with tomlkit after every directory mutation. Messages,
    reactions and audit entries stay in memory.
    """

    def __init__(self, path: str) -> None:
        users, channels, members = load_directory(path)
        super().__init__(users=users, channels=channels)
        for name, ids in members.items():
            if name in self._channels:
                self._members.setdefault(name, set()).update(ids)
        self.path = path
        self._write_lock = threading.Lock()
        self.log.info(
            "Directory loaded path=%s users=%s channels=%s",
            path,
            len(self._users),
            len(self._channels),
        )

    def _save(self) -> None:
        from tomlkit import aot, comment, document, dumps, table

        try:
            with self._write_lock:
                st = None
                try:
                    st = os.stat(self.path)
                except Exception:
                    st = None

                doc = document()
                doc.add(comment("lchatd directory (maintained by lchatd)"))

                users = aot()
                for u in sorted(self._users.values(), key=lambda x: x.username.lower()):
                    t = table()
                    t["id"] = u.user_id
                    t["username"] = u.username
                    t["role"] = u.role.label
                    t["status"] = u.status
                    t["last_seen_channel"] = u.last_seen_channel or ""
                    t["banned"] = bool(u.is_banned)
                    t["ban_reason"] = u.ban_reason or ""
                    users.append(t)
                doc["users"] = users

                channels = aot()
                for name in sorted(self._channels):
                    c = self._channels[name]
                    t = table()
                    t["name"] = c.name
                    t["private"] = bool(c.is_private)
                    t["invite_code"] = c.invite_code or ""
                    t["created_by"] = c.created_by or ""
                    t["pinned_message_id"] = c.pinned_message_id or ""
                    t["members"] = sorted(self._members.get(name, ()))
                    channels.append(t)
                doc["channels"] = channels

                with open(self.path, "w", encoding="utf-8") as f:
                    f.write(dumps(doc))

                if st is not None:
                    try:
                        os.chmod(self.path, st.st_mode)
                    except Exception:
                        pass
        except OSError as e:
            self.log.error("Failed to write directory path=%s: %s", self.path, e)
            raise CollaboratorFailure(f"directory write failed: {e}") from e

        self.log.debug("Directory written path=%s", self.path)

    def _checkpoint(self) -> tuple[Any, ...]:
        return (
            {k: replace(v) for k, v in self._users.items()},
            {k: replace(v) for k, v in self._channels.items()},
            {k: set(v) for k, v in self._members.items()},
            dict(self._messages),
            dict(self._reactions),
        )

    def _commit(self, saved: tuple[Any, ...]) -> None:
        """Write the directory file, or put memory back to ``saved`` if that fails.

        Memory and file must agree after every mutation, so a failed write undoes
        the in-memory change before the error reaches the caller.
        """
        try:
            self._save()
        except CollaboratorFailure:
            self._users, self._channels, self._members, self._messages, self._reactions = saved
            raise

    async def update_user_status(self, user_id: str, status: str) -> None:
        saved = self._checkpoint()
        await super().update_user_status(user_id, status)
        self._commit(saved)

    async def update_last_room(self, user_id: str, room: str) -> None:
        saved = self._checkpoint()
        await super().update_last_room(user_id, room)
        self._commit(saved)

    async def set_user_ban(
        self, user_id: str, banned: bool, reason: str | None = None
    ) -> None:
        saved = self._checkpoint()
        await super().set_user_ban(user_id, banned, reason)
        self._commit(saved)

    async def create_channel(self, channel: ChannelRecord) -> ChannelRecord:
        saved = self._checkpoint()
        out = await super().create_channel(channel)
        self._commit(saved)
        return out

    async def delete_channel(self, name: str) -> None:
        saved = self._checkpoint()
        await super().delete_channel(name)
        self._commit(saved)

    async def add_channel_member(self, name: str, user_id: str) -> None:
        saved = self._checkpoint()
        await super().add_channel_member(name, user_id)
        self._commit(saved)

    async def set_pinned_message(self, room: str, message_id: str | None) -> None:
        saved = self._checkpoint()
        await super().set_pinned_message(room, message_id)
        self._commit(saved)

    async def clear_pinned_message_if(self, room: str, message_id: str) -> bool:
        saved = self._checkpoint()
        cleared = await super().clear_pinned_message_if(room, message_id)
        if cleared:
            self._commit(saved)
        return cleared


def default_directory_text() -> str:
    """Initial directory file written on first run."""
    lines = [
        "# lchatd directory (TOML)",
        "#",
        "# Users and channels known to the hub. lchatd rewrites this file when",
        "# statuses, bans, pins or channels change, so keep it valid TOML.",
        "#",
        "# [[users]]",
        '# id = "a3f1..."          # token clients present at login',
        '# username = "alice"',
        '# role = "Admin"           # Admin, Moderator, User or Guest',
        '# status = "online"',
        '# last_seen_channel = ""',
        "# banned = false",
        '# ban_reason = ""',
        "",
    ]
    for name in DEFAULT_CHANNELS:
        lines.extend(
            [
                "[[channels]]",
                f'name = "{name}"',
                "private = false",
                'invite_code = ""',
                'created_by = ""',
                'pinned_message_id = ""',
                "members = []",
                "",
            ]
        )
    return "\n".join(lines)

