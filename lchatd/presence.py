"""Presence and typing indicators per room."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .events import ServerEvent

if TYPE_CHECKING:
    from .service import HubService


class PresenceTracker:
    """
    Presence is derived from the session registry on demand; the tracker only
    owns the per-room typing sets (display names).
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.presence")
        self._typing: dict[str, set[str]] = {}

    def active_users(self, room: str) -> list[dict[str, Any]]:
        sessions = self.hub.session_manager.in_room(room)
        sessions.sort(key=lambda s: (s.display_name.lower(), s.identity_id))
        return [s.presence_entry() for s in sessions]

    def typing_users(self, room: str) -> list[str]:
        return sorted(self._typing.get(room) or ())

    def set_typing(self, room: str, name: str, is_typing: bool) -> list[str]:
        if is_typing:
            self._typing.setdefault(room, set()).add(name)
        else:
            names = self._typing.get(room)
            if names is not None:
                names.discard(name)
                if not names:
                    self._typing.pop(room, None)
        return self.typing_users(room)

    def drop_typing(self, room: str, name: str) -> bool:
        """Remove ``name`` from the room's typing set; True if it was there."""
        names = self._typing.get(room)
        if not names or name not in names:
            return False
        names.discard(name)
        if not names:
            self._typing.pop(room, None)
        return True

    def clear_room(self, room: str) -> None:
        self._typing.pop(room, None)

    def broadcast_typing(self, room: str, *, exclude: str | None = None) -> list[str]:
        names = self.typing_users(room)
        self.hub.broadcaster.broadcast(
            room,
            ServerEvent.TYPING_STATUS,
            {"channel": room, "typingUsers": names},
            exclude=exclude,
        )
        return names

    def broadcast_presence(self, room: str) -> int:
        users = self.active_users(room)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Presence room=%s users=%s", room, len(users))
        return self.hub.broadcaster.broadcast(
            room, ServerEvent.USER_PRESENCE, {"channel": room, "users": users}
        )

    def get_stats(self) -> dict[str, int]:
        return {
            "typing_rooms": len(self._typing),
            "typing_users": sum(len(v) for v in self._typing.values()),
        }
