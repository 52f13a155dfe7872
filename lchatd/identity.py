"""Identity collaborator: turns a login token into a verified identity."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from .models import IdentityRecord
from .store import Store


class IdentityProvider(ABC):
    @abstractmethod
    async def resolve(self, token: str) -> IdentityRecord | None:
        """Return the identity for ``token`` or None when it is unknown."""


class StoreIdentityProvider(IdentityProvider):
    """Treats the login token as a user id known to the store."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self.log = logging.getLogger("lchatd.identity")

    async def resolve(self, token: str) -> IdentityRecord | None:
        if not isinstance(token, str) or not token.strip():
            return None
        user = await self.store.get_user(token.strip())
        if user is None:
            self.log.debug("Unknown identity token=%s", token[:12])
            return None
        return IdentityRecord(
            user_id=user.user_id,
            display_name=user.username,
            role=user.role,
            status=user.status,
            last_room=user.last_seen_channel,
            is_banned=user.is_banned,
            ban_reason=user.ban_reason,
        )
