from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable, Coroutine
from typing import Any

import cbor2
import RNS

from . import __version__
from .commands import CommandHandler
from .config import HubRuntimeConfig
from .constants import CLOSE_SHUTDOWN
from .identity import IdentityProvider, StoreIdentityProvider
from .messages import Broadcaster
from .presence import PresenceTracker
from .rooms import RoomIndex
from .router import EventRouter
from .session import SessionManager
from .stats import StatsManager
from .store import DirectoryStore, MemoryStore, Store
from .transport import Connection, LinkConnection
from .trust import TrustManager
from .util import expand_path


class HubService:
    """Owns every hub component, the asyncio loop and the Reticulum destination.

    Reticulum delivers link callbacks on its own threads; they are handed to the
    loop with ``call_soon_threadsafe`` and all hub state is touched only there.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        store: Store | None = None,
        identity_provider: IdentityProvider | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("lchatd.hub")

        if store is None:
            if config.directory_path:
                store = DirectoryStore(expand_path(config.directory_path))
            else:
                store = MemoryStore()
        self.store = store
        self.identity_provider = identity_provider or StoreIdentityProvider(store)

        self.stats_manager = StatsManager(self)
        self.trust_manager = TrustManager(self)
        self.trust_manager.load_from_config(config.banned_identities)

        # Session registry for connection lifecycle
        self.session_manager = SessionManager(self)
        self.presence = PresenceTracker(self)
        self.broadcaster = Broadcaster(self)
        self.room_index = RoomIndex(self)

        # Slash commands and event dispatch
        self.command_handler = CommandHandler(self)
        self.router = EventRouter(self)

        self.loop: asyncio.AbstractEventLoop | None = None
        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_task: asyncio.Task | None = None
        # Last scheduled task per connection; events of one connection run in order.
        self._conn_tail: dict[Connection, asyncio.Task] = {}

    # Event scheduling

    def submit(
        self, conn: Connection, factory: Callable[[], Coroutine[Any, Any, Any]]
    ) -> None:
        """Queue work for ``conn`` from any thread."""
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule, conn, factory)

    def _schedule(
        self, conn: Connection, factory: Callable[[], Coroutine[Any, Any, Any]]
    ) -> asyncio.Task:
        prev = self._conn_tail.get(conn)
        task = asyncio.get_running_loop().create_task(self._run_after(prev, factory))
        self._conn_tail[conn] = task

        def _done(t: asyncio.Task) -> None:
            if self._conn_tail.get(conn) is t:
                del self._conn_tail[conn]
            if not t.cancelled() and t.exception() is not None:
                self.log.error(
                    "Event task failed conn=%s", conn.label, exc_info=t.exception()
                )

        task.add_done_callback(_done)
        return task

    async def _run_after(
        self,
        prev: asyncio.Task | None,
        factory: Callable[[], Coroutine[Any, Any, Any]],
    ) -> None:
        if prev is not None and not prev.done():
            await asyncio.wait({prev})
        await factory()

    # Reticulum callbacks (transport threads)

    def _on_link(self, link: RNS.Link) -> None:
        conn = LinkConnection(link, self)
        loop = self.loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self.session_manager.on_connection_opened, conn)

        link.set_packet_callback(
            lambda data, pkt: self.submit(conn, lambda: self.router.handle_packet(conn, data))
        )
        link.set_link_closed_callback(lambda closed_link: self._on_link_closed(conn))

        self.log.info("Link established link_id=%s", conn.label)

    def _on_link_closed(self, conn: LinkConnection) -> None:
        conn.mark_closed()
        self.log.info("Link closed link_id=%s user=%s", conn.label, conn.bound_identity)
        self.submit(conn, lambda: self._close_async(conn))

    async def _close_async(self, conn: Connection) -> None:
        self.router.on_close(conn)

    # Lifecycle

    async def _load_channels(self) -> None:
        channels = await self.store.list_channels()
        self.room_index.load(c.name for c in channels)

    def start(self) -> None:
        self.log.info("Starting lchatd %s", __version__)
        if self.loop is None:
            self.loop = asyncio.new_event_loop()
        self.stats_manager.set_start_time()
        self.loop.run_until_complete(self._load_channels())

        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy fallback=%s edit_ttl_s=%s channel_name_len=%s-%s rate_limit_msgs_per_minute=%s",
            self.config.fallback_channel,
            self.config.message_edit_ttl_s,
            self.config.min_channel_name_len,
            self.config.max_channel_name_len,
            self.config.rate_limit_msgs_per_minute,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=cbor2.dumps({"proto": "lchat", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    async def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while True:
            await asyncio.sleep(period)
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()
        loop = self.loop
        assert loop is not None

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda *_: self.stop())

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_task = loop.create_task(self._announce_loop())

        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(self._shutdown())
            loop.close()
            self.log.info("Hub stopped")

    def stop(self) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(loop.stop)

    async def _shutdown(self) -> None:
        if self._announce_task is not None:
            self._announce_task.cancel()
            self._announce_task = None

        for sess in self.session_manager.clear_all():
            try:
                sess.conn.close(CLOSE_SHUTDOWN)
            except Exception:
                self.log.debug("Close failed conn=%s", sess.conn.label, exc_info=True)

        pending = [t for t in self._conn_tail.values() if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.broadcaster.drain()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident
