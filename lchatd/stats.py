"""Statistics tracking and reporting for the lchatd hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub.

    Tracks counters for:
    - Events received and rejected
    - Rate limiting and errors sent
    - Logins, messages and broadcasts
    - Moderation actions
    - Bytes and resources sent
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "events_in": 0,
            "events_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "logins": 0,
            "logins_rejected": 0,
            "messages": 0,
            "broadcasts": 0,
            "kicks": 0,
            "bans": 0,
            "bytes_in": 0,
            "bytes_out": 0,
            "resources_sent": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        session_stats = self.hub.session_manager.get_stats()
        room_stats = self.hub.room_index.get_stats()
        trust_stats = self.hub.trust_manager.get_stats()
        typing_stats = self.hub.presence.get_stats()
        c = dict(self._counters)

        lines: list[str] = []
        lines.append(f"lchatd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        roles = ", ".join(f"{k}:{v}" for k, v in sorted(session_stats["by_role"].items()))
        lines.append(
            f"sessions={session_stats['total']} connections={session_stats['connections']}"
            + (f" roles={roles}" if roles else "")
        )
        lines.append(
            f"channels={room_stats['channels_known']} rooms_occupied={room_stats['rooms_occupied']}"
        )
        if room_stats["top_rooms"]:
            lines.append(
                "top_rooms=" + ", ".join(f"{r}:{n}" for r, n in room_stats["top_rooms"])
            )
        lines.append(
            f"typing: rooms={typing_stats['typing_rooms']} users={typing_stats['typing_users']}"
        )
        lines.append(f"trust: banned={trust_stats['banned_count']}")
        lines.append(
            "events: in={} bad={} rate_limited={} errors_sent={}".format(
                c.get("events_in", 0),
                c.get("events_bad", 0),
                c.get("rate_limited", 0),
                c.get("errors_sent", 0),
            )
        )
        lines.append(
            "activity: logins={} rejected={} messages={} broadcasts={} kicks={} bans={}".format(
                c.get("logins", 0),
                c.get("logins_rejected", 0),
                c.get("messages", 0),
                c.get("broadcasts", 0),
                c.get("kicks", 0),
                c.get("bans", 0),
            )
        )
        lines.append(
            "io: bytes_in={} bytes_out={} resources_sent={} announces={}".format(
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
                c.get("resources_sent", 0),
                c.get("announces", 0),
            )
        )

        return "\n".join(lines)
