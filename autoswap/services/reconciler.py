from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ..models import ChannelEntry, LiveInfo


@dataclass
class ReconcileResult:
    updated_channels: list[ChannelEntry]
    target: Optional[ChannelEntry]
    newly_live: list[ChannelEntry] = field(default_factory=list)


def normalize_priorities(channels: list[ChannelEntry]) -> list[ChannelEntry]:
    """Renumber priorities to 1..N following the list order."""
    return [c.model_copy(update={"priority": index + 1}) for index, c in enumerate(channels)]


def reconcile(channels: list[ChannelEntry], statuses: dict[str, Optional[LiveInfo]]) -> ReconcileResult:
    ordered = sorted(channels, key=lambda c: (c.priority, c.added_at))
    updated: list[ChannelEntry] = []
    newly_live: list[ChannelEntry] = []
    target: Optional[ChannelEntry] = None

    for channel in ordered:
        info = statuses.get(channel.name)
        is_live = info is not None
        entry = channel.model_copy(
            update={
                "is_live": is_live,
                "live_metadata": info.to_metadata() if info is not None else None,
                "was_live_last_cycle": is_live,
            }
        )
        if is_live and not channel.was_live_last_cycle:
            newly_live.append(entry)
        if is_live and target is None:
            target = entry
        updated.append(entry)

    return ReconcileResult(updated_channels=updated, target=target, newly_live=newly_live)


def merge_statuses(latest: list[ChannelEntry], updated: list[ChannelEntry]) -> list[ChannelEntry]:
    """Copy status fields from ``updated`` onto the latest persisted list.

    Order, membership and priorities come from ``latest``; channels added since
    the cycle started keep their stored status.
    """
    by_name = {c.name: c for c in updated}
    merged: list[ChannelEntry] = []
    for channel in sorted(latest, key=lambda c: (c.priority, c.added_at)):
        fresh = by_name.get(channel.name)
        if fresh is None:
            merged.append(channel)
            continue
        merged.append(
            channel.model_copy(
                update={
                    "is_live": fresh.is_live,
                    "live_metadata": fresh.live_metadata,
                    "was_live_last_cycle": fresh.was_live_last_cycle,
                }
            )
        )
    return merged
