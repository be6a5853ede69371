from __future__ import annotations

import logging
import time
from typing import Literal, Optional

from ..models import UserSettings
from .host import Surface, SurfaceController
from .state_store import StateStore
from .twitch_api import StatusClient
from .twitch_url import channel_from_url, channel_url

logger = logging.getLogger("autoswap.fallback")


def should_reroll(
    *,
    force: bool,
    fallback_active: bool,
    current_channel: Optional[str],
    active_category: Optional[str],
    configured_category: Optional[str],
) -> bool:
    """Decide whether category fallback should pick a new random channel.

    Already in fallback and watching a channel page means keep it, unless the
    configured category changed or the caller forces a new pick.
    """
    if force:
        return True
    configured = (configured_category or "").strip()
    active = (active_category or "").strip()
    if configured and active and configured.lower() != active.lower():
        return True
    if fallback_active and current_channel:
        return False
    return True


class FallbackEngine:
    def __init__(self, *, store: StateStore, client: StatusClient, surfaces: SurfaceController):
        self.store = store
        self.client = client
        self.surfaces = surfaces

    async def run(
        self,
        *,
        surface: Surface,
        user_settings: UserSettings,
        force: bool = False,
        reason: Literal["auto", "manual"] = "auto",
    ) -> bool:
        category = user_settings.fallback_category
        if not category:
            return False
        runtime = await self.store.get_runtime()
        if not should_reroll(
            force=force,
            fallback_active=runtime.active,
            current_channel=channel_from_url(surface.url),
            active_category=runtime.category,
            configured_category=category,
        ):
            return False

        pick = await self.client.random_live_channel_in_category(category)
        if pick is None:
            logger.info("No live channel found for fallback category %r", category)
            return False
        current = await self.store.get_settings()
        if not current.auto_switch_enabled or current.managed_surface_id != surface.surface_id:
            logger.info("Fallback pick %s dropped: surface %s is no longer managed", pick.name, surface.surface_id)
            return False

        ok = await self.surfaces.navigate(surface.surface_id, channel_url(pick.name))
        if not ok:
            logger.warning("Fallback redirect to %s was not accepted by surface %s", pick.name, surface.surface_id)
            return False
        await self.store.save_runtime(
            runtime.model_copy(
                update={
                    "active": True,
                    "category": category,
                    "current_channel": pick.name,
                    "reason": reason,
                    "updated_at": time.time(),
                }
            )
        )
        logger.info("Fallback (%s) switched surface %s to %s", reason, surface.surface_id, pick.name)
        return True
