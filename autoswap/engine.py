from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Callable, Optional

from .config import RECORD_SETTINGS, Settings
from .models import AnalyticsState, ChannelEntry, UserSettings
from .services.fallback import FallbackEngine
from .services.host import NotificationSink, SurfaceController
from .services.reconciler import reconcile
from .services.scheduler import PollScheduler
from .services.state_store import StateStore
from .services.switcher import SwitchExecutor
from .services.twitch_api import StatusClient, StatusClientError
from .services.twitch_url import is_twitch_url

logger = logging.getLogger("autoswap")


@dataclass
class Engine:
    settings: Settings
    store: StateStore
    client: StatusClient
    surfaces: SurfaceController
    notifier: NotificationSink
    clock: Callable[[], float] = monotonic
    switcher: SwitchExecutor = field(init=False)
    fallback: FallbackEngine = field(init=False)
    scheduler: PollScheduler = field(init=False)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    started: bool = False

    def __post_init__(self) -> None:
        self.switcher = SwitchExecutor(
            store=self.store,
            surfaces=self.surfaces,
            notifier=self.notifier,
            snooze_seconds=self.settings.prompt_snooze_seconds,
            clock=self.clock,
        )
        self.fallback = FallbackEngine(store=self.store, client=self.client, surfaces=self.surfaces)
        self.scheduler = PollScheduler(
            self.poll_cycle,
            min_spacing_seconds=self.settings.min_poll_spacing_seconds,
            rate_limit_retry_seconds=self.settings.rate_limit_retry_seconds,
            transient_retry_seconds=self.settings.transient_retry_seconds,
            clock=self.clock,
        )
        # Registered before start() so settings writes are handled during startup too.
        self.store.add_listener(self._on_record_change)

    async def start(self) -> None:
        await self.apply_settings(await self.store.get_settings())
        self.started = True
        self.ready.set()
        await self.scheduler.start()
        await self.publish_status()

    async def stop(self) -> None:
        await self.scheduler.stop("stopped")
        await self.scheduler.wait_idle()
        await self.store.close()
        await self.client.close()

    def _credentials(self, user_settings: UserSettings) -> tuple[str, str]:
        return user_settings.client_id or self.settings.client_id, self.settings.access_token

    async def _on_record_change(self, key: str, value: Any) -> None:
        if key == RECORD_SETTINGS:
            await self.apply_settings(UserSettings.from_stored(value))

    async def apply_settings(self, user_settings: UserSettings) -> None:
        client_id, token = self._credentials(user_settings)
        creds_changed = self.client.configure(client_id=client_id, access_token=token)
        timing_changed = self.scheduler.configure(
            interval_seconds=user_settings.poll_interval_ms / 1000,
            has_credentials=self.client.has_credentials,
        )
        # Writes that leave credentials and timing alone (surface binding, toggles) keep a 401 block.
        was_blocked = self.scheduler.auth_blocked and (creds_changed or timing_changed)
        if was_blocked:
            self.scheduler.clear_auth_block()
        if not self.client.has_credentials:
            logger.warning("No Twitch client id configured; polling stays unconfigured")

        if not user_settings.auto_switch_enabled:
            self.switcher.clear_prompts()
            await self.store.clear_fallback()

        if self.started and (creds_changed or timing_changed or was_blocked):
            await self.scheduler.restart()
        await self.publish_status()

    async def poll_cycle(self) -> None:
        channels = await self.store.get_channels()
        statuses = await self.client.check_statuses([c.name for c in channels]) if channels else {}
        result = reconcile(channels, statuses)
        if channels:
            await self.store.merge_channel_statuses(result.updated_channels)

        user_settings = await self.store.get_settings()
        if result.newly_live and user_settings.notifications_enabled and user_settings.supporter_mode:
            for channel in result.newly_live:
                await self.notifier.notify_live(channel)

        target = result.target
        if target is not None:
            await self.store.clear_fallback()

        if user_settings.auto_switch_enabled:
            surface = await self.switcher.resolve_surface(user_settings)
            if surface is not None:
                if target is not None:
                    await self.switcher.apply(surface, target, user_settings)
                elif (
                    user_settings.fallback_category
                    and surface.status == "complete"
                    and is_twitch_url(surface.url)
                ):
                    await self.fallback.run(surface=surface, user_settings=user_settings)

        if user_settings.supporter_mode and target is not None:
            await self.store.add_viewing_time(target.name, user_settings.poll_interval_ms / 1000)

        await self.publish_status()

    # commands

    async def get_managed_surface_id(self) -> Optional[str]:
        return (await self.store.get_settings()).managed_surface_id

    async def force_poll(self) -> bool:
        await self.ready.wait()
        return await self.scheduler.force()

    async def force_fallback_reroll(self) -> bool:
        await self.ready.wait()
        user_settings = await self.store.get_settings()
        if not user_settings.fallback_category or not self.client.has_credentials:
            return False
        surface = await self.switcher.resolve_surface(user_settings)
        if surface is None:
            return False
        try:
            redirected = await self.fallback.run(
                surface=surface, user_settings=user_settings, force=True, reason="manual"
            )
        except StatusClientError as err:
            logger.warning("Manual fallback reroll failed (%s): %s", err.code, err)
            return False
        await self.publish_status()
        return redirected

    async def respond_to_prompt(self, prompt_id: str, accept: bool) -> bool:
        await self.ready.wait()
        return await self.switcher.respond(prompt_id, accept)

    async def handle_surface_removed(self, surface_id: str) -> bool:
        user_settings = await self.store.get_settings()
        if user_settings.managed_surface_id != surface_id:
            return False
        logger.info("Managed surface %s was closed; auto-switch disabled", surface_id)
        await self.store.disable_auto_switch()
        return True

    async def set_idle_state(self, state: str) -> None:
        await self.scheduler.set_idle_state(state)
        await self.publish_status()

    async def add_channel(self, name: str) -> list[ChannelEntry]:
        user_settings = await self.store.get_settings()
        limit = None if user_settings.supporter_mode else self.settings.free_channel_limit
        channels = await self.store.add_channel(name, limit=limit)
        await self.force_poll()
        return channels

    async def remove_channel(self, name: str) -> list[ChannelEntry]:
        channels = await self.store.remove_channel(name)
        await self.force_poll()
        return channels

    async def reorder_channels(self, names: list[str]) -> list[ChannelEntry]:
        channels = await self.store.reorder_channels(names)
        await self.force_poll()
        return channels

    async def clear_analytics(self) -> AnalyticsState:
        return await self.store.clear_analytics()

    # status

    async def status_summary(self) -> dict[str, Any]:
        user_settings = await self.store.get_settings()
        channels = await self.store.get_channels()
        runtime = await self.store.get_runtime()
        live = [c for c in channels if c.is_live]
        target = live[0] if live else (channels[0] if channels else None)
        return {
            "enabled": user_settings.auto_switch_enabled,
            "mode": "enabled" if user_settings.auto_switch_enabled else "disabled",
            "state": "live" if live else "waiting",
            "target": target.name if target else None,
            "managed_surface_id": user_settings.managed_surface_id,
            "unconfigured": not self.client.has_credentials,
            "channels_total": len(channels),
            "channels_live": len(live),
            "fallback": runtime.model_dump(),
            "scheduler": self.scheduler.describe(),
            "client": self.client.cache_stats(),
            "build_version": self.settings.build_version,
        }

    async def publish_status(self) -> None:
        await self.notifier.publish_status(await self.status_summary())
