"""Event delivery for the lchatd hub."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any

from .constants import SYSTEM_AUTHOR
from .events import ServerEvent, make_event
from .util import new_id, now_ms

if TYPE_CHECKING:
    from .service import HubService
    from .session import Session
    from .transport import Connection


class Broadcaster:
    """
    Helper methods for delivering events.

    Handles:
    - Direct delivery to one connection or identity
    - Room fan-out with optional sender exclusion
    - Notification, error and system-message shortcuts
    - Fire-and-forget tasks whose failures are only logged

    Delivery is best-effort: closed connections are skipped and transport
    errors never propagate to the caller.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lchatd.hub")
        self._tasks: set[asyncio.Task] = set()

    def send(
        self, conn: Connection, kind: ServerEvent, payload: dict[str, Any] | None = None
    ) -> bool:
        if not conn.is_open():
            return False
        event = make_event(kind, payload)
        try:
            n = conn.send(event)
        except OSError as e:
            self.log.warning(
                "Send failed conn=%s type=%s err=%s", conn.label, kind.value, e
            )
            return False
        except Exception:
            self.log.debug(
                "Send failed conn=%s type=%s", conn.label, kind.value, exc_info=True
            )
            return False
        self.hub.stats_manager.inc("bytes_out", int(n or 0))
        return True

    def send_to(
        self, identity_id: str, kind: ServerEvent, payload: dict[str, Any] | None = None
    ) -> bool:
        sess = self.hub.session_manager.lookup(identity_id)
        if sess is None:
            return False
        return self.send(sess.conn, kind, payload)

    def broadcast(
        self,
        room: str,
        kind: ServerEvent,
        payload: dict[str, Any] | None = None,
        *,
        exclude: str | None = None,
    ) -> int:
        """Send to every session bound to ``room`` except identity ``exclude``."""
        delivered: list[str] = []

        def _deliver(sess: Session) -> None:
            if exclude is not None and sess.identity_id == exclude:
                return
            if self.send(sess.conn, kind, payload):
                delivered.append(sess.identity_id)

        self.hub.session_manager.for_each_in_room(room, _deliver)
        self.hub.stats_manager.inc("broadcasts")
        return len(delivered)

    def notify(self, conn: Connection, message: str) -> bool:
        return self.send(conn, ServerEvent.NOTIFICATION, {"message": message})

    def error(self, conn: Connection, message: str) -> bool:
        self.hub.stats_manager.inc("errors_sent")
        return self.send(conn, ServerEvent.ERROR, {"message": message})

    def system_message(self, room: str, text: str, *, exclude: str | None = None) -> int:
        """Hub-authored chat line; never persisted."""
        return self.broadcast(
            room,
            ServerEvent.CHANNEL_MESSAGE,
            {
                "id": new_id(),
                "channel": room,
                "author": SYSTEM_AUTHOR,
                "content": text,
                "timestamp": now_ms(),
                "system": True,
            },
            exclude=exclude,
        )

    def spawn(self, coro: Coroutine[Any, Any, Any], *, what: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self.log.warning(
                    "Background task failed what=%s err=%s",
                    what,
                    exc,
                    exc_info=exc,
                )

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background tasks (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
