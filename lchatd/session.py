from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .constants import CLOSE_DUPLICATE_LOGIN
from .events import ServerEvent
from .roles import Role

if TYPE_CHECKING:
    from .service import HubService
    from .transport import Connection


@dataclass(eq=False)
class Session:
    """Live binding of an authenticated identity to one connection."""

    identity_id: str
    display_name: str
    room: str
    role: Role
    status: str
    conn: Connection
    connected_at: float = field(default_factory=time.monotonic)

    def presence_entry(self) -> dict[str, Any]:
        return {
            "id": self.identity_id,
            "username": self.display_name,
            "role": self.role.label,
            "status": self.status,
        }


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Session registry for lchatd connections.

    This class is responsible for:
    - Installing sessions at login, replacing any prior session for the identity
    - Lookups by identity, display name and room
    - Forced termination (preemption, kick, ban)
    - Rate limiting with token bucket algorithm

    Every method is synchronous; callers run on the hub event loop, so a
    check followed by a mutation inside one call cannot interleave with
    another event.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.session")
        self.sessions: dict[str, Session] = {}
        self._rate: dict[Connection, _RateState] = {}

    def on_connection_opened(self, conn: Connection) -> None:
        self._rate[conn] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )
        self.log.debug("Connection opened conn=%s", conn.label)

    def on_connection_closed(self, conn: Connection) -> None:
        self._rate.pop(conn, None)

    def register(self, session: Session) -> Session | None:
        """
        Install ``session``, force-closing any existing session for the same
        identity first. Returns the replaced session, if any.
        """
        old = self.sessions.get(session.identity_id)
        if old is not None and old is not session:
            self.log.info(
                "Preempting session user=%s old_conn=%s new_conn=%s",
                old.identity_id,
                old.conn.label,
                session.conn.label,
            )
            self.terminate(
                old,
                ServerEvent.KICKED,
                {"reason": "Another connection established with your user ID."},
                close_reason=CLOSE_DUPLICATE_LOGIN,
            )

        self.sessions[session.identity_id] = session
        self.log.info(
            "Session registered user=%s name=%r room=%s role=%s conn=%s",
            session.identity_id,
            session.display_name,
            session.room,
            session.role.label,
            session.conn.label,
        )
        return old

    def terminate(
        self,
        session: Session,
        event: ServerEvent,
        payload: dict[str, Any] | None,
        *,
        close_reason: str,
    ) -> bool:
        """
        Single force-disconnect path: notify, close, drop typing, recompute
        presence. Returns False when the session was no longer current.
        """
        if self.sessions.get(session.identity_id) is not session:
            return False

        del self.sessions[session.identity_id]
        self._rate.pop(session.conn, None)

        self.hub.broadcaster.send(session.conn, event, payload)
        try:
            session.conn.close(close_reason)
        except Exception:
            self.log.debug("Close failed conn=%s", session.conn.label, exc_info=True)

        presence = self.hub.presence
        if presence.drop_typing(session.room, session.display_name):
            presence.broadcast_typing(session.room)
        presence.broadcast_presence(session.room)

        self.log.info(
            "Session terminated user=%s reason=%s conn=%s",
            session.identity_id,
            close_reason,
            session.conn.label,
        )
        return True

    def lookup(self, identity_id: str | None) -> Session | None:
        if identity_id is None:
            return None
        return self.sessions.get(identity_id)

    def session_for(self, conn: Connection) -> Session | None:
        """The current session bound to ``conn``, if the connection still owns it."""
        sess = self.lookup(conn.bound_identity)
        if sess is None or sess.conn is not conn:
            return None
        return sess

    def is_current(self, session: Session) -> bool:
        """False once the session was replaced, removed or its connection closed."""
        return (
            self.sessions.get(session.identity_id) is session and session.conn.is_open()
        )

    def find_by_name(self, display_name: str) -> Session | None:
        key = display_name.strip().lower()
        for sess in self.sessions.values():
            if sess.display_name.lower() == key:
                return sess
        return None

    def in_room(self, room: str) -> list[Session]:
        return [s for s in self.sessions.values() if s.room == room]

    def for_each_in_room(self, room: str, fn: Callable[[Session], Any]) -> int:
        count = 0
        for sess in self.in_room(room):
            fn(sess)
            count += 1
        return count

    def remove(self, session: Session) -> bool:
        if self.sessions.get(session.identity_id) is not session:
            return False
        del self.sessions[session.identity_id]
        self._rate.pop(session.conn, None)
        return True

    def refill_and_take(self, conn: Connection, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(conn)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def clear_all(self) -> list[Session]:
        out = list(self.sessions.values())
        self.sessions.clear()
        self._rate.clear()
        return out

    def get_stats(self) -> dict[str, Any]:
        by_role: dict[str, int] = {}
        for s in self.sessions.values():
            by_role[s.role.label] = by_role.get(s.role.label, 0) + 1
        return {
            "total": len(self.sessions),
            "connections": len(self._rate),
            "by_role": by_role,
        }
