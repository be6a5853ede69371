from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from ..config import (
    RECORD_ANALYTICS,
    RECORD_CHANNELS,
    RECORD_RUNTIME,
    RECORD_SETTINGS,
)
from ..db import Database
from ..models import (
    AnalyticsState,
    ChannelEntry,
    FallbackRuntime,
    LastSwitch,
    UserSettings,
    is_valid_channel_name,
)
from .reconciler import merge_statuses, normalize_priorities

logger = logging.getLogger("autoswap.store")

ChangeListener = Callable[[str, Any], Awaitable[None]]


class ChannelListError(ValueError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class StateStore:
    """Typed access to the four persisted records.

    Writes are coalesced per record key and flushed after a short debounce;
    ``immediate=True`` flushes in the same call (used for the channel list).
    Reads see pending writes, so a read-modify-write never works from a value
    older than the last accepted write.
    """

    def __init__(self, db: Database, *, debounce_seconds: float = 0.3):
        self.db = db
        self.debounce_seconds = debounce_seconds
        self._pending: dict[str, Any] = {}
        self._flush_task: Optional[asyncio.Task[None]] = None
        self._flush_lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def get(self, key: str) -> Any:
        if key in self._pending:
            return self._pending[key]
        return await self.db.get_record(key)

    async def set(self, items: dict[str, Any], *, immediate: bool = False) -> None:
        self._pending.update(items)
        if immediate:
            await self.flush()
        elif self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._delayed_flush(), name="autoswap-store-flush")
        for key, value in items.items():
            await self._notify(key, value)

    async def _delayed_flush(self) -> None:
        # Keys written while a flush is in progress are picked up by the next pass.
        while True:
            await asyncio.sleep(self.debounce_seconds)
            try:
                await self.flush()
            except Exception:
                logger.exception("Deferred store flush failed; pending keys kept for the next write")
                return
            if not self._pending:
                return

    async def flush(self) -> None:
        async with self._flush_lock:
            if not self._pending:
                return
            items = dict(self._pending)
            await self.db.set_records(items)
            for key, value in items.items():
                if self._pending.get(key) is value:
                    self._pending.pop(key, None)

    async def close(self) -> None:
        task = self._flush_task
        self._flush_task = None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.flush()

    async def _notify(self, key: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                await listener(key, value)
            except Exception:
                logger.exception("Store listener failed for record %s", key)

    # channels

    async def get_channels(self) -> list[ChannelEntry]:
        raw = await self.get(RECORD_CHANNELS)
        out: list[ChannelEntry] = []
        if isinstance(raw, list):
            for item in raw:
                if not isinstance(item, dict):
                    continue
                try:
                    out.append(ChannelEntry.model_validate(item))
                except ValueError:
                    logger.warning("Dropping unreadable channel record: %r", item)
        out.sort(key=lambda c: (c.priority, c.added_at))
        return out

    async def save_channels(self, channels: list[ChannelEntry]) -> list[ChannelEntry]:
        normalized = normalize_priorities(channels)
        await self.set({RECORD_CHANNELS: [c.model_dump() for c in normalized]}, immediate=True)
        return normalized

    async def merge_channel_statuses(self, updated: list[ChannelEntry]) -> list[ChannelEntry]:
        latest = await self.get_channels()
        merged = merge_statuses(latest, updated)
        return await self.save_channels(merged)

    async def add_channel(self, name: str, *, limit: Optional[int] = None) -> list[ChannelEntry]:
        key = (name or "").strip().lower()
        if not is_valid_channel_name(key):
            raise ChannelListError(
                "channel_name_invalid",
                "Invalid channel name. Twitch names are 4-25 characters: letters, numbers, underscores.",
            )
        channels = await self.get_channels()
        if any(c.name == key for c in channels):
            raise ChannelListError("channel_exists", f'"{key}" is already in the list.')
        if limit is not None and len(channels) >= limit:
            raise ChannelListError(
                "channel_limit_reached",
                f"The free tier is limited to {limit} channels. Enable supporter mode for unlimited channels.",
            )
        channels.append(ChannelEntry(name=key, priority=len(channels) + 1, added_at=time.time()))
        return await self.save_channels(channels)

    async def remove_channel(self, name: str) -> list[ChannelEntry]:
        key = (name or "").strip().lower()
        channels = await self.get_channels()
        remaining = [c for c in channels if c.name != key]
        if len(remaining) == len(channels):
            raise ChannelListError("channel_not_found", f'"{key}" is not in the list.')
        return await self.save_channels(remaining)

    async def reorder_channels(self, names: list[str]) -> list[ChannelEntry]:
        channels = await self.get_channels()
        by_name = {c.name: c for c in channels}
        ordered: list[ChannelEntry] = []
        for name in names:
            entry = by_name.pop(name.strip().lower(), None)
            if entry is not None:
                ordered.append(entry)
        # Names the caller did not mention keep their relative order at the end.
        ordered.extend(c for c in channels if c.name in by_name)
        return await self.save_channels(ordered)

    # settings

    async def get_settings(self) -> UserSettings:
        return UserSettings.from_stored(await self.get(RECORD_SETTINGS))

    async def save_settings(self, patch: dict[str, Any]) -> UserSettings:
        current = await self.get_settings()
        merged = UserSettings.from_stored({**current.model_dump(), **patch})
        # A surface stays bound only while auto-switch is on.
        if not merged.auto_switch_enabled and merged.managed_surface_id is not None:
            merged = merged.model_copy(update={"managed_surface_id": None})
        await self.set({RECORD_SETTINGS: merged.model_dump()})
        return merged

    async def disable_auto_switch(self) -> UserSettings:
        return await self.save_settings({"auto_switch_enabled": False, "managed_surface_id": None})

    # runtime

    async def get_runtime(self) -> FallbackRuntime:
        raw = await self.get(RECORD_RUNTIME)
        if not isinstance(raw, dict):
            return FallbackRuntime()
        return FallbackRuntime.model_validate(raw)

    async def save_runtime(self, runtime: FallbackRuntime) -> None:
        await self.set({RECORD_RUNTIME: runtime.model_dump()})

    async def clear_fallback(self) -> FallbackRuntime:
        runtime = await self.get_runtime()
        if not runtime.active:
            return runtime
        cleared = runtime.model_copy(update={"active": False, "updated_at": time.time()})
        await self.save_runtime(cleared)
        return cleared

    # analytics

    async def get_analytics(self) -> AnalyticsState:
        raw = await self.get(RECORD_ANALYTICS)
        if not isinstance(raw, dict):
            return AnalyticsState()
        return AnalyticsState.model_validate(raw)

    async def add_viewing_time(self, channel: str, seconds: float) -> AnalyticsState:
        analytics = await self.get_analytics()
        totals = dict(analytics.viewing_seconds_by_channel)
        totals[channel] = totals.get(channel, 0.0) + seconds
        updated = analytics.model_copy(update={"viewing_seconds_by_channel": totals})
        await self.set({RECORD_ANALYTICS: updated.model_dump()})
        return updated

    async def record_switch(self, channel: str) -> AnalyticsState:
        analytics = await self.get_analytics()
        updated = analytics.model_copy(
            update={
                "switch_count": analytics.switch_count + 1,
                "last_switch": LastSwitch(channel=channel, timestamp=time.time()),
            }
        )
        await self.set({RECORD_ANALYTICS: updated.model_dump()})
        return updated

    async def clear_analytics(self) -> AnalyticsState:
        cleared = AnalyticsState()
        await self.set({RECORD_ANALYTICS: cleared.model_dump()}, immediate=True)
        return cleared
