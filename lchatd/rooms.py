"""Room naming for lchatd.

Handles:
- Deterministic direct-message room names for a pair of identities
- Channel name validation
- Invite code generation for private channels
- The set of channel names known to the hub
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from .constants import DM_PREFIX, INVITE_CODE_BYTES
from .errors import ValidationFailure
from .util import has_control_chars

if TYPE_CHECKING:
    from .service import HubService


def dm_room_name(id1: str, id2: str) -> str:
    """Both participants compute the same name regardless of who starts the DM."""
    a, b = sorted((str(id1), str(id2)))
    return f"{DM_PREFIX}{a}-{b}"


def is_dm_room(room: str | None) -> bool:
    return isinstance(room, str) and room.startswith(DM_PREFIX)


def dm_partner(room: str, identity_id: str) -> str | None:
    """The other participant of ``room`` if ``identity_id`` is one of the pair."""
    if not is_dm_room(room) or not identity_id:
        return None
    pair = room[len(DM_PREFIX):]
    # Identity ids may contain "-" themselves, so try the id at either end and
    # accept only a split that reproduces the room name exactly.
    candidates = []
    if pair.startswith(f"{identity_id}-"):
        candidates.append(pair[len(identity_id) + 1 :])
    if pair.endswith(f"-{identity_id}"):
        candidates.append(pair[: -(len(identity_id) + 1)])
    for other in candidates:
        if other and dm_room_name(identity_id, other) == room:
            return other
    return None


def is_dm_member(room: str, identity_id: str) -> bool:
    return dm_partner(room, identity_id) is not None


def new_invite_code() -> str:
    return os.urandom(INVITE_CODE_BYTES).hex().upper()


class RoomIndex:
    """Tracks known channel names and validates new ones."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.rooms")
        self._channels: set[str] = set()

    def load(self, names: Iterable[str]) -> None:
        self._channels = {n for n in names if isinstance(n, str) and n}
        self.log.info("Known channels loaded count=%s", len(self._channels))

    def add(self, name: str) -> None:
        self._channels.add(name)

    def discard(self, name: str) -> None:
        self._channels.discard(name)

    def is_known(self, name: str) -> bool:
        return name in self._channels

    def validate_channel_name(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationFailure("Channel name is required.")
        name = value.strip()
        lo = int(self.hub.config.min_channel_name_len)
        hi = int(self.hub.config.max_channel_name_len)
        if len(name) < lo or len(name) > hi:
            raise ValidationFailure("Channel name is too short or too long.")
        if is_dm_room(name):
            raise ValidationFailure(f"Channel names must not start with {DM_PREFIX}")
        if has_control_chars(name):
            raise ValidationFailure("Channel name contains invalid characters.")
        return name

    def get_stats(self) -> dict[str, Any]:
        occupied: dict[str, int] = {}
        for sess in self.hub.session_manager.sessions.values():
            occupied[sess.room] = occupied.get(sess.room, 0) + 1
        top_rooms = sorted(occupied.items(), key=lambda x: (-x[1], x[0]))[:5]
        return {
            "channels_known": len(self._channels),
            "rooms_occupied": len(occupied),
            "top_rooms": top_rooms,
        }
