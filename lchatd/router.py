from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from .codec import decode_event
from .commands import is_command
from .constants import (
    AUDIT_CHANNEL_CREATE,
    AUDIT_CHANNEL_DELETE,
    AUDIT_MESSAGE_DELETE,
    AUDIT_PREVIEW_CHARS,
    CLOSE_BANNED,
    CLOSE_INVALID_AUTH,
    STATUS_ONLINE,
)
from .errors import (
    AuthenticationFailure,
    CollaboratorFailure,
    HubError,
    NotFound,
    PermissionDenied,
    ValidationFailure,
)
from .events import ClientEvent, ServerEvent, field_bool, field_str, parse_event
from .models import AuditEntry, ChannelRecord, MessageRecord, RoomSnapshot
from .roles import Role, has_permission
from .rooms import dm_room_name, is_dm_member, is_dm_room, new_invite_code
from .session import Session
from .util import new_id, normalize_display_name, now_ms, preview

if TYPE_CHECKING:
    from .service import HubService
    from .transport import Connection


Handler = Callable[[Session, dict[str, Any]], Awaitable[None]]


class EventRouter:
    """
    Dispatches client events for the lchatd hub.

    This class is responsible for:
    - Decoding inbound records and rate limiting
    - The login handshake that binds a connection to an identity
    - Routing bound events to their handlers by kind
    - Room changes, chat messages, edits, deletions and reactions
    - Connection close handling

    Handlers run as tasks on the hub event loop. Registry state is only
    mutated between awaits, and every await is followed by an
    ``is_current`` check so a replaced or closed session never emits.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.router")
        self._handlers: dict[ClientEvent, Handler] = {
            ClientEvent.SEND_MESSAGE: self._handle_send_message,
            ClientEvent.SEND_DM: self._handle_send_dm,
            ClientEvent.CREATE_CHANNEL: self._handle_create_channel,
            ClientEvent.DELETE_CHANNEL: self._handle_delete_channel,
            ClientEvent.JOIN_CHANNEL_BY_CODE: self._handle_join_by_code,
            ClientEvent.TYPING_UPDATE: self._handle_typing,
            ClientEvent.EDIT_MESSAGE: self._handle_edit,
            ClientEvent.DELETE_MESSAGE: self._handle_delete,
            ClientEvent.ADD_REACTION: self._handle_add_reaction,
            ClientEvent.REMOVE_REACTION: self._handle_remove_reaction,
            ClientEvent.JOIN_CHANNEL: self._handle_join_channel,
            ClientEvent.START_DM: self._handle_start_dm,
        }
        missing = set(ClientEvent) - set(self._handlers) - {ClientEvent.LOGIN}
        if missing:
            raise RuntimeError(
                f"event table incomplete: {sorted(k.value for k in missing)}"
            )

    @property
    def fallback(self) -> str:
        return str(self.hub.config.fallback_channel)

    # Entry points

    async def handle_packet(self, conn: Connection, data: bytes) -> None:
        self.hub.stats_manager.inc("bytes_in", len(data))
        try:
            obj = decode_event(data)
        except (TypeError, ValueError) as e:
            self.hub.stats_manager.inc("events_bad")
            self.log.debug("Bad packet conn=%s bytes=%s err=%s", conn.label, len(data), e)
            self.hub.broadcaster.error(conn, f"bad message: {e}")
            return
        await self.handle_event(conn, obj)

    async def handle_event(self, conn: Connection, obj: Any) -> None:
        self.hub.stats_manager.inc("events_in")

        if not self.hub.session_manager.refill_and_take(conn, 1.0):
            self.hub.stats_manager.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited conn=%s", conn.label)
            self.hub.broadcaster.error(conn, "rate limited")
            return

        try:
            kind, event = parse_event(obj)
        except (TypeError, ValueError) as e:
            self.hub.stats_manager.inc("events_bad")
            self.log.debug("Bad event conn=%s err=%s", conn.label, e)
            self.hub.broadcaster.error(conn, f"bad message: {e}")
            return

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s user=%s type=%s", conn.label, conn.bound_identity, kind.value
            )

        try:
            if kind is ClientEvent.LOGIN:
                await self._handle_login(conn, event)
                return

            sess = self.hub.session_manager.session_for(conn)
            if sess is None or not conn.is_open():
                self.hub.broadcaster.error(conn, "Authentication required.")
                return

            await self._handlers[kind](sess, event)
        except AuthenticationFailure as e:
            self._reject(conn, e)
        except CollaboratorFailure as e:
            self.log.warning(
                "Collaborator failure conn=%s type=%s err=%s", conn.label, kind.value, e
            )
            self.hub.broadcaster.error(conn, e.user_message)
        except HubError as e:
            self.hub.broadcaster.error(conn, e.user_message)
        except Exception:
            self.log.exception(
                "Unhandled error processing event conn=%s type=%s", conn.label, kind.value
            )
            self.hub.broadcaster.error(conn, "Internal error processing request.")

    def on_close(self, conn: Connection) -> None:
        """Tear down the session owned by ``conn``; a no-op for stale connections."""
        sm = self.hub.session_manager
        sm.on_connection_closed(conn)

        sess = sm.session_for(conn)
        if sess is None or not sm.remove(sess):
            return

        room = sess.room
        if not is_dm_room(room):
            self.hub.broadcaster.system_message(room, f"{sess.display_name} has disconnected.")
        presence = self.hub.presence
        if presence.drop_typing(room, sess.display_name):
            presence.broadcast_typing(room)
        presence.broadcast_presence(room)

        self.log.info(
            "Session closed user=%s name=%r room=%s conn=%s",
            sess.identity_id,
            sess.display_name,
            room,
            conn.label,
        )

    # Shared helpers

    async def _authorized_channels(self, identity_id: str) -> list[ChannelRecord]:
        try:
            return await self.hub.store.list_visible_channels(identity_id)
        except HubError as e:
            self.log.warning("Channel list unavailable user=%s err=%s", identity_id, e)
            return [ChannelRecord(name=self.fallback)]

    async def _snapshot(self, room: str) -> RoomSnapshot:
        if is_dm_room(room):
            return RoomSnapshot()
        try:
            return await self.hub.store.room_history(room, int(self.hub.config.history_limit))
        except HubError as e:
            self.log.warning("Room history unavailable room=%s err=%s", room, e)
            return RoomSnapshot()

    def _room_accessible(
        self, room: str | None, identity_id: str, channels: list[ChannelRecord]
    ) -> bool:
        if not room:
            return False
        if is_dm_room(room):
            return is_dm_member(room, identity_id)
        return any(c.name == room for c in channels)

    def _current(self, session: Session) -> bool:
        return self.hub.session_manager.is_current(session)

    def _echo(self, session: Session, kind: ServerEvent, payload: dict[str, Any]) -> None:
        if self._current(session):
            self.hub.broadcaster.send(session.conn, kind, payload)

    async def _audit(self, entry: AuditEntry) -> None:
        try:
            await self.hub.store.write_audit(entry)
        except Exception as e:
            self.log.warning(
                "Audit write failed kind=%s actor=%s err=%s", entry.kind, entry.actor_id, e
            )

    async def _push_channel_list(self, identity_id: str) -> None:
        channels = await self.hub.store.list_visible_channels(identity_id)
        # Dropped if the user went away meanwhile.
        self.hub.broadcaster.send_to(
            identity_id,
            ServerEvent.CHANNEL_LIST_UPDATE,
            {"availableChannels": [c.to_wire() for c in channels]},
        )

    def _refresh_channel_lists(self) -> None:
        for identity_id in list(self.hub.session_manager.sessions):
            self.hub.broadcaster.spawn(
                self._push_channel_list(identity_id), what="channel_list_update"
            )

    # Login

    def _reject(self, conn: Connection, failure: AuthenticationFailure) -> None:
        """Report a refused login and close the connection."""
        self.hub.stats_manager.inc("logins_rejected")
        if failure.banned:
            self.hub.broadcaster.send(conn, ServerEvent.BANNED, {"reason": failure.user_message})
        else:
            self.hub.broadcaster.error(conn, failure.user_message)
        try:
            conn.close(failure.reason)
        except Exception:
            self.log.debug("Close failed conn=%s", conn.label, exc_info=True)

    def _ban_reason(self, identity_id: str, persisted: str | None) -> str:
        return (
            self.hub.trust_manager.ban_reason(identity_id)
            or persisted
            or "You are banned from this server."
        )

    async def _handle_login(self, conn: Connection, event: dict[str, Any]) -> None:
        if conn.bound_identity is not None:
            raise ValidationFailure("Already logged in on this connection.")

        token = field_str(event, "userId")
        ident = await self.hub.identity_provider.resolve(token)
        if ident is None:
            self.log.info("Login rejected: unknown identity conn=%s", conn.label)
            raise AuthenticationFailure(
                "Invalid User ID. Please register.", reason=CLOSE_INVALID_AUTH
            )

        uid = ident.user_id
        if ident.is_banned or self.hub.trust_manager.is_banned(uid):
            self.log.warning("Login rejected: banned user=%s conn=%s", uid, conn.label)
            raise AuthenticationFailure(
                self._ban_reason(uid, ident.ban_reason), reason=CLOSE_BANNED, banned=True
            )

        channels = await self._authorized_channels(uid)
        room = ident.last_room
        if not self._room_accessible(room, uid, channels):
            room = self.fallback
            try:
                await self.hub.store.update_last_room(uid, room)
            except HubError as e:
                self.log.warning("Could not persist fallback room user=%s err=%s", uid, e)

        # Bind and register without suspending: a competing login for the
        # same identity must observe this session once it is installed.
        if not conn.is_open():
            return
        if self.hub.trust_manager.is_banned(uid):
            raise AuthenticationFailure(
                self._ban_reason(uid, ident.ban_reason), reason=CLOSE_BANNED, banned=True
            )
        conn.bind(uid)
        display_name = normalize_display_name(
            ident.display_name, max_chars=int(self.hub.config.display_name_max_chars)
        )
        session = Session(
            identity_id=uid,
            display_name=display_name or uid,
            room=room,
            role=ident.role,
            status=ident.status or STATUS_ONLINE,
            conn=conn,
        )
        self.hub.session_manager.register(session)
        self.hub.stats_manager.inc("logins")

        snapshot = await self._snapshot(room)
        if not self._current(session):
            return

        b = self.hub.broadcaster
        b.send(
            conn,
            ServerEvent.INITIAL_STATE,
            {
                "currentChannel": room,
                "availableChannels": [c.to_wire() for c in channels],
            },
        )
        b.send(
            conn,
            ServerEvent.MESSAGE_HISTORY,
            {
                "channel": room,
                "messages": snapshot.messages_wire(),
                "pinned": snapshot.pinned_wire(),
            },
        )
        if not is_dm_room(room):
            b.system_message(room, f"{session.display_name} has joined {room}.", exclude=uid)
        self.hub.presence.broadcast_presence(room)
        b.send(
            conn,
            ServerEvent.LOGIN_SUCCESS,
            {"username": session.display_name, "role": session.role.label},
        )

    # Room changes

    async def change_room(self, session: Session, new_room: str) -> None:
        if session.room == new_room:
            return

        # Persist first; a failure leaves the session where it was.
        await self.hub.store.update_last_room(session.identity_id, new_room)
        if not self._current(session) or session.room == new_room:
            return

        old_room = session.room
        name = session.display_name
        b = self.hub.broadcaster
        presence = self.hub.presence

        if not is_dm_room(old_room):
            b.system_message(old_room, f"{name} has left the chat.", exclude=session.identity_id)
        session.room = new_room
        if presence.drop_typing(old_room, name):
            presence.broadcast_typing(old_room)

        snapshot = await self._snapshot(new_room)
        channels = await self._authorized_channels(session.identity_id)
        if not self._current(session) or session.room != new_room:
            presence.broadcast_presence(old_room)
            return

        b.send(
            session.conn,
            ServerEvent.CHANNEL_CHANGE,
            {
                "newChannel": new_room,
                "history": snapshot.messages_wire(),
                "pinned": snapshot.pinned_wire(),
                "availableChannels": [c.to_wire() for c in channels],
            },
        )
        if not is_dm_room(new_room):
            b.system_message(new_room, f"{name} has joined {new_room}.", exclude=session.identity_id)
        presence.broadcast_presence(old_room)
        presence.broadcast_presence(new_room)

        self.log.debug(
            "Room change user=%s from=%s to=%s", session.identity_id, old_room, new_room
        )

    async def _handle_join_channel(self, session: Session, event: dict[str, Any]) -> None:
        channel = field_str(event, "channel")
        channels = await self._authorized_channels(session.identity_id)
        if not any(c.name == channel for c in channels):
            raise NotFound(f"Channel {channel} is private or does not exist.")
        if not self._current(session):
            return
        await self.change_room(session, channel)

    async def _handle_start_dm(self, session: Session, event: dict[str, Any]) -> None:
        target = field_str(event, "targetUserId")
        if target == session.identity_id:
            raise ValidationFailure("Cannot start a direct message with yourself.")
        user = await self.hub.store.get_user(target)
        if user is None:
            raise NotFound("User not found.")
        if not self._current(session):
            return
        await self.change_room(session, dm_room_name(session.identity_id, user.user_id))

    # Channels

    async def _handle_create_channel(self, session: Session, event: dict[str, Any]) -> None:
        name = self.hub.room_index.validate_channel_name(event.get("channel"))
        is_private = field_bool(event, "isPrivate")
        code = new_invite_code() if is_private else None

        await self.hub.store.create_channel(
            ChannelRecord(
                name=name,
                is_private=is_private,
                invite_code=code,
                created_by=session.identity_id,
            )
        )
        self.hub.room_index.add(name)
        self.log.info(
            "Channel created name=%s private=%s by=%s", name, is_private, session.identity_id
        )

        if code:
            msg = f"Private Channel {name} created! Invite code: {code}"
        else:
            msg = f"Public Channel {name} created!"
        self.hub.broadcaster.notify(session.conn, msg)
        self._refresh_channel_lists()

        await self._audit(
            AuditEntry(
                kind=AUDIT_CHANNEL_CREATE,
                actor_id=session.identity_id,
                target_id=name,
                details={"channel": name, "isPrivate": is_private},
            )
        )
        if self._current(session):
            await self.change_room(session, name)

    async def _handle_delete_channel(self, session: Session, event: dict[str, Any]) -> None:
        name = field_str(event, "channel")
        fallback = self.fallback
        chan = await self.hub.store.get_channel(name)
        if chan is None or name == fallback:
            raise ValidationFailure("Cannot delete default or nonexistent channel.")
        if chan.created_by != session.identity_id and not has_permission(session.role, Role.ADMIN):
            raise PermissionDenied(
                "Permission denied. Only the creator or an Admin can delete this channel."
            )

        await self.hub.store.delete_channel(name)
        self.hub.room_index.discard(name)
        self.hub.presence.clear_room(name)

        moved = self.hub.session_manager.in_room(name)
        for sess in moved:
            sess.room = fallback
        self.log.info(
            "Channel deleted name=%s by=%s moved=%s", name, session.identity_id, len(moved)
        )

        snapshot = await self._snapshot(fallback)
        for sess in moved:
            channels = await self._authorized_channels(sess.identity_id)
            if not self._current(sess) or sess.room != fallback:
                continue
            self.hub.broadcaster.send(
                sess.conn,
                ServerEvent.CHANNEL_CHANGE,
                {
                    "newChannel": fallback,
                    "history": snapshot.messages_wire(),
                    "pinned": snapshot.pinned_wire(),
                    "availableChannels": [c.to_wire() for c in channels],
                },
            )

        self._refresh_channel_lists()
        self.hub.presence.broadcast_presence(name)
        self.hub.presence.broadcast_presence(fallback)

        await self._audit(
            AuditEntry(
                kind=AUDIT_CHANNEL_DELETE,
                actor_id=session.identity_id,
                target_id=name,
                details={"channel": name, "moved": len(moved)},
            )
        )
        self.hub.broadcaster.notify(session.conn, f"Channel {name} deleted successfully.")

    async def _handle_join_by_code(self, session: Session, event: dict[str, Any]) -> None:
        code = field_str(event, "code")
        chan = await self.hub.store.find_channel_by_invite(code)
        if chan is None:
            raise NotFound("Invalid or expired invite code.")
        if not chan.is_private:
            raise ValidationFailure("This code is for a public channel. Use the channel list.")

        await self.hub.store.add_channel_member(chan.name, session.identity_id)
        if not self._current(session):
            return
        self.hub.broadcaster.notify(
            session.conn, f"Successfully joined private channel {chan.name}."
        )

        channels = await self._authorized_channels(session.identity_id)
        if not self._current(session):
            return
        self.hub.broadcaster.send(
            session.conn,
            ServerEvent.CHANNEL_LIST_UPDATE,
            {"availableChannels": [c.to_wire() for c in channels]},
        )
        await self.change_room(session, chan.name)

    # Messages

    async def _handle_send_message(self, session: Session, event: dict[str, Any]) -> None:
        await self._post(session, event, session.room)

    async def _handle_send_dm(self, session: Session, event: dict[str, Any]) -> None:
        room = field_str(event, "channel")
        if not is_dm_member(room, session.identity_id):
            raise ValidationFailure("Direct messages must target a DM room you belong to.")
        await self._post(session, event, room)

    async def _post(self, session: Session, event: dict[str, Any], room: str) -> None:
        raw = event.get("content")
        if raw is not None and not isinstance(raw, str):
            raise ValidationFailure("Field content must be a string.")
        content = (raw or "").strip()

        if is_command(content):
            await self.hub.command_handler.handle(session, content)
            return

        attachment = event.get("attachment")
        if attachment is not None and not isinstance(attachment, dict):
            raise ValidationFailure("Attachment must be a map.")
        if not content and not attachment:
            raise ValidationFailure("Message content is empty.")

        msg = MessageRecord(
            id=new_id(),
            channel=room,
            author_id=session.identity_id,
            author=session.display_name,
            content=content,
            attachment=attachment or None,
            parent_message_id=field_str(event, "parent_message_id", required=False) or None,
        )
        if not is_dm_room(room):
            await self.hub.store.insert_message(msg)
        self.hub.stats_manager.inc("messages")

        wire = msg.to_wire()
        self.hub.broadcaster.broadcast(
            room, ServerEvent.CHANNEL_MESSAGE, wire, exclude=session.identity_id
        )
        self._echo(session, ServerEvent.CHANNEL_MESSAGE, wire)

    async def _handle_typing(self, session: Session, event: dict[str, Any]) -> None:
        room = session.room
        names = self.hub.presence.set_typing(
            room, session.display_name, field_bool(event, "isTyping")
        )
        payload = {"channel": room, "typingUsers": names}
        self.hub.broadcaster.broadcast(
            room, ServerEvent.TYPING_STATUS, payload, exclude=session.identity_id
        )
        self.hub.broadcaster.send(session.conn, ServerEvent.TYPING_STATUS, payload)

    async def _handle_edit(self, session: Session, event: dict[str, Any]) -> None:
        room = session.room
        message_id = field_str(event, "id")
        content = field_str(event, "content", required=False) or ""

        msg = await self.hub.store.get_message(message_id, room)
        if msg is None:
            raise NotFound("Message not found.")
        is_author = msg.author_id == session.identity_id
        is_moderator = has_permission(session.role, Role.MODERATOR)
        if not is_author and not is_moderator:
            raise PermissionDenied("Permission denied to edit this message.")
        if not content:
            raise ValidationFailure("Message content is empty.")
        ttl_ms = int(float(self.hub.config.message_edit_ttl_s) * 1000)
        if not is_moderator and now_ms() > msg.timestamp + ttl_ms:
            raise ValidationFailure("Message is too old to edit (TTL exceeded).")

        updated = await self.hub.store.update_message_content(message_id, content, now_ms())
        wire = updated.to_wire()
        self.hub.broadcaster.broadcast(
            room, ServerEvent.MESSAGE_EDITED, wire, exclude=session.identity_id
        )
        self._echo(session, ServerEvent.MESSAGE_EDITED, wire)

    async def _handle_delete(self, session: Session, event: dict[str, Any]) -> None:
        room = session.room
        message_id = field_str(event, "id")

        msg = await self.hub.store.get_message(message_id, room)
        if msg is None:
            raise NotFound("Message not found.")
        if msg.author_id != session.identity_id and not has_permission(
            session.role, Role.MODERATOR
        ):
            raise PermissionDenied("Permission denied to delete this message.")

        await self.hub.store.delete_message(message_id)
        if await self.hub.store.clear_pinned_message_if(room, message_id):
            self.hub.broadcaster.broadcast(
                room, ServerEvent.UPDATE_PINNED_MESSAGE, {"message": None}
            )

        payload = {"id": message_id, "channel": room}
        self.hub.broadcaster.broadcast(
            room, ServerEvent.MESSAGE_DELETED, payload, exclude=session.identity_id
        )
        self._echo(session, ServerEvent.MESSAGE_DELETED, payload)

        await self._audit(
            AuditEntry(
                kind=AUDIT_MESSAGE_DELETE,
                actor_id=session.identity_id,
                target_id=message_id,
                details={"room": room, "content": preview(msg.content, AUDIT_PREVIEW_CHARS)},
            )
        )

    async def _react(self, session: Session, event: dict[str, Any], *, add: bool) -> None:
        room = session.room
        message_id = field_str(event, "id")
        emoji = field_str(event, "emoji")

        if await self.hub.store.get_message(message_id, room) is None:
            raise NotFound("Message not found.")
        if add:
            reactions = await self.hub.store.add_reaction(message_id, session.identity_id, emoji)
        else:
            reactions = await self.hub.store.remove_reaction(
                message_id, session.identity_id, emoji
            )

        payload = {"id": message_id, "reactions": reactions}
        self.hub.broadcaster.broadcast(
            room, ServerEvent.MESSAGE_REACTED, payload, exclude=session.identity_id
        )
        self._echo(session, ServerEvent.MESSAGE_REACTED, payload)

    async def _handle_add_reaction(self, session: Session, event: dict[str, Any]) -> None:
        await self._react(session, event, add=True)

    async def _handle_remove_reaction(self, session: Session, event: dict[str, Any]) -> None:
        await self._react(session, event, add=False)
