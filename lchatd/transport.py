"""Connections as seen by the coordinator, and the Reticulum link adapter."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import RNS

from .codec import encode_event
from .errors import ValidationFailure

if TYPE_CHECKING:
    from .service import HubService


class Connection(ABC):
    """One client connection. The identity is bound once, at login."""

    def __init__(self) -> None:
        self._identity: str | None = None

    @property
    def bound_identity(self) -> str | None:
        return self._identity

    def bind(self, identity_id: str) -> None:
        if self._identity is not None:
            raise ValidationFailure("Already logged in on this connection.")
        self._identity = identity_id

    @property
    def label(self) -> str:
        return "-"

    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def send(self, event: dict[str, Any]) -> int:
        """Deliver one event record; returns the number of bytes written."""

    @abstractmethod
    def close(self, reason: str | None = None) -> None: ...


class LinkConnection(Connection):
    """A Reticulum link carrying CBOR event records.

    Records that do not fit the link MDU go out as an RNS.Resource.
    """

    def __init__(self, link: RNS.Link, hub: HubService) -> None:
        super().__init__()
        self.link = link
        self.hub = hub
        self.log = logging.getLogger("lchatd.transport")
        self._closed = False

    @property
    def label(self) -> str:
        lid = getattr(self.link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(self.link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def mark_closed(self) -> None:
        self._closed = True

    def is_open(self) -> bool:
        if self._closed:
            return False
        return getattr(self.link, "status", None) != RNS.Link.CLOSED

    def _packet_would_fit(self, payload: bytes) -> bool:
        try:
            if getattr(self.link, "MDU", None) is not None:
                return len(payload) <= self.link.MDU
            pkt = RNS.Packet(self.link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def send(self, event: dict[str, Any]) -> int:
        payload = encode_event(event)
        if self._packet_would_fit(payload):
            RNS.Packet(self.link, payload).send()
            return len(payload)

        size = len(payload)
        if size > int(self.hub.config.max_resource_bytes):
            self.log.error(
                "Event too large to send link_id=%s type=%s bytes=%s max=%s",
                self.label,
                event.get("type"),
                size,
                self.hub.config.max_resource_bytes,
            )
            return 0

        RNS.Resource(payload, self.link, advertise=True, auto_compress=False)
        self.hub.stats_manager.inc("resources_sent")
        self.log.debug(
            "Sent event via resource link_id=%s type=%s bytes=%s",
            self.label,
            event.get("type"),
            size,
        )
        return size

    def close(self, reason: str | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.log.debug("Closing link_id=%s reason=%s", self.label, reason)
        try:
            self.link.teardown()
        except Exception:
            self.log.debug("Teardown failed link_id=%s", self.label, exc_info=True)
