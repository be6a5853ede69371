from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from time import monotonic
from typing import Callable, Optional

from ..models import ChannelEntry, UserSettings
from .host import NotificationSink, Surface, SurfaceController
from .state_store import StateStore
from .twitch_url import channel_from_url, channel_url, is_twitch_url

logger = logging.getLogger("autoswap.switcher")


class SurfaceState(str, enum.Enum):
    NO_MANAGED_SURFACE = "no_managed_surface"
    LOADING = "loading"
    OFF_TOPIC = "off_topic"
    ON_TARGET = "on_target"
    NEEDS_SWITCH = "needs_switch"
    NO_TARGET = "no_target"


class InvariantViolation(RuntimeError):
    pass


@dataclass
class PendingPrompt:
    prompt_id: str
    surface_id: str
    channel: str


class SwitchExecutor:
    """Redirects the one managed surface toward the current target.

    Only ``managed_surface_id`` is ever looked up or navigated.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        surfaces: SurfaceController,
        notifier: NotificationSink,
        snooze_seconds: float = 300.0,
        clock: Callable[[], float] = monotonic,
    ):
        self.store = store
        self.surfaces = surfaces
        self.notifier = notifier
        self.snooze_seconds = snooze_seconds
        self._clock = clock
        self._pending: dict[str, PendingPrompt] = {}
        self._snoozed_until: dict[str, float] = {}

    async def resolve_surface(self, user_settings: UserSettings) -> Optional[Surface]:
        if not user_settings.auto_switch_enabled:
            return None
        surface_id = user_settings.managed_surface_id
        try:
            if not surface_id:
                surface_id = await self.surfaces.provide_default_surface()
                if not surface_id:
                    raise InvariantViolation("auto-switch is enabled but no surface could be bound")
                await self.store.save_settings({"managed_surface_id": surface_id})
                logger.info("Bound managed surface %s", surface_id)
            surface = await self.surfaces.get(surface_id)
            if surface is None:
                raise InvariantViolation(f"managed surface {surface_id} no longer exists")
        except InvariantViolation as err:
            logger.warning("Disabling auto-switch: %s", err)
            await self.store.disable_auto_switch()
            return None
        return surface

    @staticmethod
    def classify(surface: Optional[Surface], target: Optional[ChannelEntry]) -> SurfaceState:
        if surface is None:
            return SurfaceState.NO_MANAGED_SURFACE
        if surface.status != "complete":
            return SurfaceState.LOADING
        on_service = is_twitch_url(surface.url)
        if target is None:
            return SurfaceState.NO_TARGET if on_service else SurfaceState.OFF_TOPIC
        if not on_service:
            return SurfaceState.OFF_TOPIC
        if channel_from_url(surface.url) == target.name.lower():
            return SurfaceState.ON_TARGET
        return SurfaceState.NEEDS_SWITCH

    async def apply(self, surface: Surface, target: Optional[ChannelEntry], user_settings: UserSettings) -> bool:
        state = self.classify(surface, target)
        if target is None or state not in (SurfaceState.NEEDS_SWITCH, SurfaceState.OFF_TOPIC):
            return False
        if user_settings.prompt_before_switch:
            await self._prompt(surface.surface_id, target.name)
            return False
        return await self.redirect(surface.surface_id, target.name, user_settings)

    async def still_managed(self, surface_id: str) -> bool:
        current = await self.store.get_settings()
        return current.auto_switch_enabled and current.managed_surface_id == surface_id

    async def redirect(self, surface_id: str, channel: str, user_settings: UserSettings) -> bool:
        if not await self.still_managed(surface_id):
            logger.info("Redirect to %s dropped: surface %s is no longer managed", channel, surface_id)
            return False
        ok = await self.surfaces.navigate(surface_id, channel_url(channel))
        if not ok:
            logger.warning("Surface %s did not accept redirect to %s", surface_id, channel)
            return False
        logger.info("Switched surface %s to %s", surface_id, channel)
        if user_settings.supporter_mode:
            await self.store.record_switch(channel)
        return True

    async def _prompt(self, surface_id: str, channel: str) -> None:
        key = f"{surface_id}:{channel}"
        if self._snoozed_until.get(key, 0.0) > self._clock():
            return
        if any(f"{p.surface_id}:{p.channel}" == key for p in self._pending.values()):
            return
        prompt = PendingPrompt(prompt_id=uuid.uuid4().hex, surface_id=surface_id, channel=channel)
        self._pending[prompt.prompt_id] = prompt
        await self.notifier.request_confirmation(prompt_id=prompt.prompt_id, surface_id=surface_id, channel=channel)

    async def respond(self, prompt_id: str, accept: bool) -> bool:
        prompt = self._pending.pop(prompt_id, None)
        if prompt is None:
            return False
        if not accept:
            self._snoozed_until[f"{prompt.surface_id}:{prompt.channel}"] = self._clock() + self.snooze_seconds
            return False
        user_settings = await self.store.get_settings()
        if await self.surfaces.get(prompt.surface_id) is None:
            return False
        return await self.redirect(prompt.surface_id, prompt.channel, user_settings)

    def pending_prompts(self) -> list[PendingPrompt]:
        return list(self._pending.values())

    def clear_prompts(self) -> None:
        self._pending.clear()
