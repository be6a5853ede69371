from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ..config import TWITCH_WEB_BASE
from ..db import utc_now_iso
from ..models import ChannelEntry
from .twitch_url import is_twitch_url
from .webhook import NotificationWebhook

logger = logging.getLogger("autoswap.host")


@dataclass
class Surface:
    surface_id: str
    url: str = ""
    status: str = "complete"
    active: bool = False


class SurfaceController(Protocol):
    async def get(self, surface_id: str) -> Optional[Surface]: ...

    async def navigate(self, surface_id: str, url: str) -> bool: ...

    async def provide_default_surface(self) -> Optional[str]: ...


class NotificationSink(Protocol):
    async def notify_live(self, channel: ChannelEntry) -> None: ...

    async def request_confirmation(self, *, prompt_id: str, surface_id: str, channel: str) -> None: ...

    async def publish_status(self, summary: dict[str, Any]) -> None: ...


@dataclass
class HostBridge:
    """In-process host collaborator.

    The browser side reports its tabs and idle state through the API and
    follows the events pushed to ``subscribers`` (navigate, open_surface,
    notify, switch_prompt, status).
    """

    webhook: Optional[NotificationWebhook] = None
    surfaces: dict[str, Surface] = field(default_factory=dict)
    subscribers: set[asyncio.Queue[dict[str, Any]]] = field(default_factory=set)
    last_status: dict[str, Any] = field(default_factory=dict)

    async def emit(self, payload: dict[str, Any]) -> None:
        dead: list[asyncio.Queue[dict[str, Any]]] = []
        for q in self.subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.append(q)
        for q in dead:
            self.subscribers.discard(q)

    def report_surface(self, surface: Surface) -> None:
        self.surfaces[surface.surface_id] = surface

    def remove_surface(self, surface_id: str) -> bool:
        return self.surfaces.pop(surface_id, None) is not None

    async def get(self, surface_id: str) -> Optional[Surface]:
        return self.surfaces.get(surface_id)

    async def navigate(self, surface_id: str, url: str) -> bool:
        surface = self.surfaces.get(surface_id)
        if surface is None:
            return False
        surface.url = url
        surface.status = "loading"
        await self.emit({"event": "navigate", "surface_id": surface_id, "url": url, "timestamp": utc_now_iso()})
        return True

    async def provide_default_surface(self) -> Optional[str]:
        twitch = [s for s in self.surfaces.values() if is_twitch_url(s.url)]
        for surface in twitch:
            if surface.active:
                return surface.surface_id
        if twitch:
            return twitch[0].surface_id
        surface = Surface(surface_id=f"surface-{uuid.uuid4().hex[:12]}", url=f"{TWITCH_WEB_BASE}/", status="loading")
        self.surfaces[surface.surface_id] = surface
        await self.emit(
            {"event": "open_surface", "surface_id": surface.surface_id, "url": surface.url, "timestamp": utc_now_iso()}
        )
        return surface.surface_id

    async def notify_live(self, channel: ChannelEntry) -> None:
        meta = channel.live_metadata
        await self.emit(
            {
                "event": "notify",
                "channel": channel.name,
                "title": meta.title if meta else "",
                "category_name": meta.category_name if meta else "",
                "thumbnail_ref": meta.thumbnail_ref if meta else "",
                "timestamp": utc_now_iso(),
            }
        )
        if self.webhook is not None:
            ok, detail = await self.webhook.send_live_notification(channel)
            if not ok:
                logger.warning("Live notification webhook failed for %s: %s", channel.name, detail)

    async def request_confirmation(self, *, prompt_id: str, surface_id: str, channel: str) -> None:
        await self.emit(
            {
                "event": "switch_prompt",
                "prompt_id": prompt_id,
                "surface_id": surface_id,
                "channel": channel,
                "timestamp": utc_now_iso(),
            }
        )

    async def publish_status(self, summary: dict[str, Any]) -> None:
        self.last_status = dict(summary)
        await self.emit({"event": "status", **summary})
