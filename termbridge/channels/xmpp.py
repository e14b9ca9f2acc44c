"""XMPP channel adapter.

Each channel name maps to one multi-user chat room. A broadcast is a
groupchat stanza whose JSON payload travels in a namespaced meta extension,
so structured data stays out of the body while plain clients still see the
text content.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
from typing import Any, Callable, cast

from slixmpp.clientxmpp import ClientXMPP
from slixmpp.xmlstream import ET

from termbridge.channels.ports import BroadcastAck, ChannelHandle, PayloadCallback
from termbridge.errors import ChannelError

TERMBRIDGE_META_NS = "urn:termbridge:message-meta"
REALTIME_META_TYPE = "realtime"
DELAY_NS = "urn:xmpp:delay"

log = logging.getLogger("xmpp")


def build_message_meta(meta_type: str, *, meta_payload: object | None = None) -> ET.Element:
    """Build a TermBridge message meta extension element."""

    meta = ET.Element(f"{{{TERMBRIDGE_META_NS}}}meta")
    meta.set("type", meta_type)

    if meta_payload is not None:
        payload = ET.SubElement(meta, f"{{{TERMBRIDGE_META_NS}}}payload")
        payload.set("format", "json")
        payload.text = json.dumps(meta_payload, ensure_ascii=True, separators=(",", ":"))

    return meta


def extract_message_meta(msg) -> tuple[str | None, object | None]:
    """Extract the meta extension (best-effort)."""
    for child in getattr(msg, "xml", []) or []:
        if getattr(child, "tag", None) != f"{{{TERMBRIDGE_META_NS}}}meta":
            continue
        meta_type = child.get("type")

        payload_obj: object | None = None
        payload = child.find(f"{{{TERMBRIDGE_META_NS}}}payload")
        if payload is not None and (payload.get("format") or "").lower() == "json":
            raw = (payload.text or "").strip()
            if raw:
                try:
                    payload_obj = json.loads(raw)
                except json.JSONDecodeError:
                    log.warning("Dropping meta payload with invalid JSON")
                    return meta_type, None

        return meta_type, payload_obj

    return None, None


def is_delayed(msg) -> bool:
    """True for stanzas carrying a XEP-0203 delay stamp, i.e. replayed room history."""
    return any(
        getattr(child, "tag", None) == f"{{{DELAY_NS}}}delay"
        for child in getattr(msg, "xml", []) or []
    )


def room_for_channel(channel: str, muc_service: str) -> str:
    slug = re.sub(r"[^a-z0-9-]+", "-", channel.lower()).strip("-")
    return f"{slug}@{muc_service}"


class XmppChannelAdapter(ClientXMPP):
    """ChannelAdapter over XMPP multi-user chat rooms.

    Connects lazily on the first subscribe. A dropped stream is reported
    through the transport-lost callback; reconnecting is left to the caller.
    """

    def __init__(
        self,
        jid: str,
        password: str,
        *,
        server: str,
        muc_service: str,
        port: int = 5222,
        use_tls: bool = False,
        nick: str | None = None,
        connect_timeout_s: float = 15.0,
    ):
        super().__init__(jid, password)
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.muc_service = muc_service
        self.nick = nick or jid.split("@", 1)[0]
        self.connect_timeout_s = connect_timeout_s

        self._online = asyncio.Event()
        self._rooms: dict[str, dict[int, PayloadCallback]] = {}
        self._tokens = itertools.count(1)
        self._closing = False
        self._connect_lock = asyncio.Lock()
        self._on_transport_lost: Callable[[], None] | None = None

        self.register_plugin("xep_0199")  # Ping
        self.register_plugin("xep_0045")  # Multi-User Chat
        self.add_event_handler("session_start", self.on_start)
        self.add_event_handler("groupchat_message", self.on_groupchat)
        self.add_event_handler("disconnected", self.on_disconnected)

    def set_transport_lost_callback(self, callback: Callable[[], None] | None) -> None:
        self._on_transport_lost = callback

    @property
    def online(self) -> bool:
        return self._online.is_set()

    # -------------------------------------------------------------------------
    # XMPP lifecycle
    # -------------------------------------------------------------------------

    def _open_stream(self) -> None:
        if not self.use_tls:
            self["feature_mechanisms"].unencrypted_plain = True  # type: ignore[attr-defined]
            self.enable_plaintext = True
        self.enable_starttls = self.use_tls
        self.enable_direct_tls = False
        log.info("Connecting to %s:%s (tls=%s)", self.server, self.port, self.use_tls)
        # slixmpp.ClientXMPP.connect expects a single address tuple.
        self.connect((self.server, self.port))  # type: ignore[arg-type]

    async def on_start(self, event):
        self.send_presence()
        try:
            await asyncio.wait_for(self.get_roster(), timeout=15)
        except asyncio.TimeoutError:
            log.error("Startup timed out during roster fetch")
            self.disconnect()
            return
        log.info("Connected as %s", self.boundjid.bare)
        self._online.set()

    def on_disconnected(self, event):
        was_online = self.online
        self._online.clear()
        if self._closing:
            log.info("Disconnected during shutdown")
            return
        if was_online and self._on_transport_lost:
            log.warning("XMPP stream dropped")
            self._on_transport_lost()

    async def ensure_connected(self) -> None:
        async with self._connect_lock:
            if self.online:
                return
            self._closing = False
            self._open_stream()
            try:
                await asyncio.wait_for(self._online.wait(), self.connect_timeout_s)
            except asyncio.TimeoutError:
                raise ChannelError(f"could not connect to {self.server}:{self.port}") from None

    async def close(self) -> None:
        self._closing = True
        self._rooms.clear()
        if self.online:
            self.disconnect()
        self._online.clear()

    # -------------------------------------------------------------------------
    # ChannelAdapter
    # -------------------------------------------------------------------------

    async def subscribe(self, channel: str, on_payload: PayloadCallback) -> ChannelHandle:
        await self.ensure_connected()
        room = room_for_channel(channel, self.muc_service)
        if room not in self._rooms:
            try:
                muc = cast(Any, self["xep_0045"])
                # No history: a rejoin must not replay old input or cancels.
                await muc.join_muc_wait(  # type: ignore[attr-defined]
                    room, self.nick, maxstanzas=0, timeout=self.connect_timeout_s
                )
            except Exception as exc:
                raise ChannelError(f"failed to join room {room}: {exc}", channel=channel) from exc
            self._rooms[room] = {}
        token = next(self._tokens)
        self._rooms[room][token] = on_payload
        return ChannelHandle(channel=channel, token=token)

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> BroadcastAck:
        if not self.online:
            raise ChannelError("not connected", channel=channel)
        room = room_for_channel(channel, self.muc_service)
        body = payload.get("content")
        msg = self.make_message(
            mto=room,
            mbody=body if isinstance(body, str) else "",
            mtype="groupchat",
        )
        msg.xml.append(build_message_meta(REALTIME_META_TYPE, meta_payload=payload))
        try:
            msg.send()
        except Exception as exc:
            raise ChannelError(f"send failed: {exc}", channel=channel) from exc
        return BroadcastAck(channel=channel)

    async def unsubscribe(self, handle: ChannelHandle) -> None:
        room = room_for_channel(handle.channel, self.muc_service)
        subs = self._rooms.get(room)
        if subs is None:
            return
        subs.pop(handle.token, None)
        if subs:
            return
        self._rooms.pop(room, None)
        if not self.online:
            return
        try:
            muc = cast(Any, self["xep_0045"])
            muc.leave_muc(room, self.nick)  # type: ignore[attr-defined]
        except Exception:
            log.warning("Failed to leave room %s", room, exc_info=True)

    async def ping(self) -> None:
        if not self.online:
            raise ChannelError("not connected")
        try:
            xep_0199 = cast(Any, self["xep_0199"])
            await xep_0199.ping(jid=self.boundjid.domain, timeout=10)  # type: ignore[attr-defined]
        except Exception as exc:
            raise ChannelError(f"ping failed: {exc}") from exc

    def on_groupchat(self, msg):
        if msg["mucnick"] == self.nick:
            return
        if is_delayed(msg):
            log.debug("Ignoring delayed stanza from %s", msg["from"])
            return
        room = str(msg["from"].bare)
        subs = self._rooms.get(room)
        if not subs:
            return
        meta_type, payload = extract_message_meta(msg)
        if meta_type != REALTIME_META_TYPE or not isinstance(payload, dict):
            return
        for cb in list(subs.values()):
            try:
                cb(payload)
            except Exception:
                log.exception("Subscriber callback failed for %s", room)
