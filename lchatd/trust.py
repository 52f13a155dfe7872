"""In-memory ban list for the lchatd hub."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class TrustManager:
    """
    Identities barred from logging in.

    Seeded from the ``banned_identities`` config list and extended by /ban.
    The persisted ban flag on the user record is checked separately at login.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.trust")
        self._banned: dict[str, str | None] = {}

    def load_from_config(self, banned_list: tuple[str, ...] | list[str] | None) -> None:
        self._banned = {str(h).strip(): None for h in (banned_list or ()) if str(h).strip()}
        if self._banned:
            self.log.info("Loaded banned identities count=%s", len(self._banned))

    def is_banned(self, identity_id: str | None) -> bool:
        if not identity_id:
            return False
        return identity_id in self._banned

    def ban_reason(self, identity_id: str) -> str | None:
        return self._banned.get(identity_id)

    def add_ban(self, identity_id: str, reason: str | None = None) -> None:
        self._banned[identity_id] = reason

    def get_stats(self) -> dict[str, int]:
        return {"banned_count": len(self._banned)}
