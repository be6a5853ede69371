from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from ..models import ChannelEntry
from .twitch_url import channel_url


def _notification_message(channel: ChannelEntry) -> str:
    meta = channel.live_metadata
    title = meta.title if meta else ""
    if title:
        return title if len(title) <= 100 else f"{title[:97]}..."
    category = meta.category_name if meta and meta.category_name else "Unknown"
    return f"Playing {category}"


class NotificationWebhook:
    def __init__(self, url: str, timeout_seconds: int = 8):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def send_live_notification(self, channel: ChannelEntry) -> tuple[bool, str]:
        payload: dict[str, Any] = {
            "title": f"{channel.name} is now live!",
            "message": _notification_message(channel),
            "channel": channel.name,
            "url": channel_url(channel.name),
        }
        if channel.live_metadata and channel.live_metadata.thumbnail_ref:
            payload["thumbnail_url"] = channel.live_metadata.thumbnail_ref
        return await self.post_json(payload)

    async def post_json(self, payload: dict[str, Any]) -> tuple[bool, str]:
        if not self.url:
            return False, "webhook_url_empty"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload) as resp:
                    body = await resp.text()
                    if 200 <= resp.status < 300:
                        return True, body[:300]
                    return False, f"status={resp.status} body={body[:300]}"
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            return False, str(err)
