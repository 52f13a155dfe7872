"""Slash commands embedded in chat content."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING

from .constants import (
    AUDIT_USER_BAN,
    AUDIT_USER_KICK,
    CLOSE_BANNED,
    CLOSE_KICKED,
    COMMAND_MARKER,
    STATUS_ONLINE,
    STATUSES,
)
from .errors import HubError, NotFound, PermissionDenied, ValidationFailure
from .events import ServerEvent
from .models import AuditEntry, PinnedSummary
from .roles import Role, has_permission
from .rooms import is_dm_room

if TYPE_CHECKING:
    from .service import HubService
    from .session import Session


class Command(str, Enum):
    PIN = "pin"
    UNPIN = "unpin"
    KICK = "kick"
    BAN = "ban"
    STATUS = "status"
    STATS = "stats"


REQUIRED_ROLE: dict[Command, Role] = {
    Command.PIN: Role.ADMIN,
    Command.UNPIN: Role.ADMIN,
    Command.KICK: Role.ADMIN,
    Command.BAN: Role.ADMIN,
    Command.STATUS: Role.GUEST,
    Command.STATS: Role.ADMIN,
}

DEFAULT_BAN_REASON = "Banned by Admin command."


def is_command(content: str) -> bool:
    return content.startswith(COMMAND_MARKER)


def parse_command(content: str) -> tuple[Command, list[str]]:
    parts = [p for p in content[len(COMMAND_MARKER):].split() if p]
    name = parts[0].lower() if parts else ""
    try:
        cmd = Command(name)
    except ValueError:
        raise ValidationFailure(f"Unknown command: /{name}.") from None
    return cmd, parts[1:]


class CommandHandler:
    """Handles slash commands for the lchatd hub."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.commands")
        self._handlers: dict[Command, Callable[[Session, list[str]], Awaitable[None]]] = {
            Command.PIN: self._pin,
            Command.UNPIN: self._unpin,
            Command.KICK: self._kick,
            Command.BAN: self._ban,
            Command.STATUS: self._status,
            Command.STATS: self._stats,
        }
        missing = set(Command) - set(self._handlers)
        if missing or set(Command) - set(REQUIRED_ROLE):
            raise RuntimeError(f"command table incomplete: {sorted(c.value for c in missing)}")

    async def handle(self, session: Session, content: str) -> None:
        cmd, args = parse_command(content.strip())
        required = REQUIRED_ROLE[cmd]
        if not has_permission(session.role, required):
            raise PermissionDenied(f"Permission denied. Requires {required.label} role.")

        self.log.info(
            "Command user=%s cmd=%s args=%s room=%s",
            session.identity_id,
            cmd.value,
            len(args),
            session.room,
        )
        await self._handlers[cmd](session, args)

    async def _audit(self, entry: AuditEntry) -> None:
        try:
            await self.hub.store.write_audit(entry)
        except Exception as e:
            self.log.warning(
                "Audit write failed kind=%s actor=%s err=%s", entry.kind, entry.actor_id, e
            )

    def _check_target_role(self, role: Role) -> None:
        if has_permission(role, Role.ADMIN):
            raise PermissionDenied("Cannot moderate another Admin.")

    async def _pin(self, session: Session, args: list[str]) -> None:
        if not args:
            raise ValidationFailure("Usage: /pin <messageId>")
        room = session.room
        if is_dm_room(room):
            raise ValidationFailure("Messages cannot be pinned in direct messages.")

        msg = await self.hub.store.get_message(args[0], room)
        if msg is None:
            raise NotFound("Message not found in this channel.")
        await self.hub.store.set_pinned_message(room, msg.id)

        self.hub.broadcaster.broadcast(
            room,
            ServerEvent.UPDATE_PINNED_MESSAGE,
            {"message": PinnedSummary.of(msg).to_wire()},
        )
        self.hub.broadcaster.notify(session.conn, "Message pinned successfully.")

    async def _unpin(self, session: Session, args: list[str]) -> None:
        room = session.room
        if is_dm_room(room):
            raise ValidationFailure("Messages cannot be pinned in direct messages.")

        await self.hub.store.set_pinned_message(room, None)

        self.hub.broadcaster.broadcast(
            room, ServerEvent.UPDATE_PINNED_MESSAGE, {"message": None}
        )
        self.hub.broadcaster.notify(session.conn, "Message unpinned.")

    async def _split_target(self, args: list[str]) -> tuple[str, list[str]]:
        """Split command words into a target username and whatever follows it.

        Usernames may contain spaces, so the longest leading run of words that
        names a connected or known user is taken. Without such a run the first
        word is the username.
        """
        for n in range(len(args), 1, -1):
            name = " ".join(args[:n])
            if self.hub.session_manager.find_by_name(name) is not None:
                return name, args[n:]
            if await self.hub.store.find_user_by_name(name) is not None:
                return name, args[n:]
        return args[0], args[1:]

    async def _kick(self, session: Session, args: list[str]) -> None:
        if not args:
            raise ValidationFailure("Usage: /kick <username>")
        name, _ = await self._split_target(args)
        target = self.hub.session_manager.find_by_name(name)
        if target is None:
            raise NotFound(f"User {name} not found or already disconnected.")
        self._check_target_role(target.role)

        room = target.room
        self.hub.broadcaster.system_message(
            room,
            f"{target.display_name} has been kicked by {session.display_name}.",
            exclude=target.identity_id,
        )
        self.hub.session_manager.terminate(
            target,
            ServerEvent.KICKED,
            {"reason": "You were kicked from the server."},
            close_reason=CLOSE_KICKED,
        )
        self.hub.stats_manager.inc("kicks")
        self.log.info(
            "Kicked user=%s by=%s room=%s", target.identity_id, session.identity_id, room
        )

        await self._audit(
            AuditEntry(
                kind=AUDIT_USER_KICK,
                actor_id=session.identity_id,
                target_id=target.identity_id,
                details={"targetUsername": target.display_name, "room": room},
            )
        )

    async def _ban(self, session: Session, args: list[str]) -> None:
        if not args:
            raise ValidationFailure("Usage: /ban <username> [reason]")
        name, rest = await self._split_target(args)
        reason = " ".join(rest) or DEFAULT_BAN_REASON

        live = self.hub.session_manager.find_by_name(name)
        if live is not None:
            target_id, target_name, target_role = live.identity_id, live.display_name, live.role
        else:
            user = await self.hub.store.find_user_by_name(name)
            if user is None:
                raise NotFound(f"User {name} not found.")
            target_id, target_name, target_role = user.user_id, user.username, user.role
            # The target may have logged in while the store was consulted.
            live = self.hub.session_manager.lookup(target_id)
        self._check_target_role(target_role)

        self.hub.trust_manager.add_ban(target_id, reason)
        room = live.room if live is not None else None
        if live is not None:
            self.hub.broadcaster.system_message(
                live.room,
                f"{target_name} has been permanently banned by {session.display_name}.",
                exclude=target_id,
            )
            self.hub.session_manager.terminate(
                live, ServerEvent.BANNED, {"reason": reason}, close_reason=CLOSE_BANNED
            )
        self.hub.stats_manager.inc("bans")
        self.log.warning(
            "Banned user=%s by=%s online=%s", target_id, session.identity_id, live is not None
        )

        try:
            await self.hub.store.set_user_ban(target_id, True, reason)
        except HubError as e:
            self.log.error("Persisting ban failed user=%s err=%s", target_id, e)
            self.hub.broadcaster.error(
                session.conn, f"Ban on {target_name} is active but could not be saved."
            )
        else:
            self.hub.broadcaster.notify(
                session.conn, f"User {target_name} is now permanently banned."
            )

        await self._audit(
            AuditEntry(
                kind=AUDIT_USER_BAN,
                actor_id=session.identity_id,
                target_id=target_id,
                details={"targetUsername": target_name, "room": room, "reason": reason},
            )
        )

    async def _status(self, session: Session, args: list[str]) -> None:
        new_status = args[0].lower() if args else STATUS_ONLINE
        if new_status not in STATUSES:
            raise ValidationFailure("Invalid status. Use: online, away, or dnd.")

        await self.hub.store.update_user_status(session.identity_id, new_status)
        if not self.hub.session_manager.is_current(session):
            return

        session.status = new_status
        self.hub.presence.broadcast_presence(session.room)
        self.hub.broadcaster.notify(session.conn, f"Your status is now set to {new_status}.")

    async def _stats(self, session: Session, args: list[str]) -> None:
        self.hub.broadcaster.notify(session.conn, self.hub.stats_manager.format_stats())
