from __future__ import annotations

import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import CHANNEL_NAME_PATTERN, DEFAULT_USER_SETTINGS

_CHANNEL_NAME_RE = re.compile(CHANNEL_NAME_PATTERN)


def is_valid_channel_name(name: str) -> bool:
    return bool(name) and bool(_CHANNEL_NAME_RE.match(name))


class LiveMetadata(BaseModel):
    title: str = ""
    category_name: str = ""
    thumbnail_ref: str = ""


class LiveInfo(BaseModel):
    user_login: str
    user_name: str = ""
    title: str = ""
    category_name: str = ""
    thumbnail_url: str = ""
    viewer_count: int = 0
    started_at: str = ""

    @classmethod
    def from_stream(cls, raw: dict[str, Any]) -> "LiveInfo":
        return cls(
            user_login=str(raw.get("user_login", "")).lower(),
            user_name=str(raw.get("user_name", "")),
            title=str(raw.get("title", "")),
            category_name=str(raw.get("game_name", "")),
            thumbnail_url=str(raw.get("thumbnail_url", "")),
            viewer_count=int(raw.get("viewer_count", 0) or 0),
            started_at=str(raw.get("started_at", "")),
        )

    def to_metadata(self) -> LiveMetadata:
        return LiveMetadata(title=self.title, category_name=self.category_name, thumbnail_ref=self.thumbnail_url)


class ChannelRef(BaseModel):
    name: str
    display_name: str = ""
    title: str = ""
    category_name: str = ""


class ChannelEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    priority: int = Field(ge=1)
    is_live: bool = False
    live_metadata: Optional[LiveMetadata] = None
    was_live_last_cycle: bool = False
    added_at: float = 0.0


class UserSettings(BaseModel):
    """Settings record edited by the UI collaborator.

    Stored records may be partial or carry keys written by newer versions; both
    are tolerated by overlaying the stored values on DEFAULT_USER_SETTINGS.
    """

    model_config = ConfigDict(extra="ignore")

    poll_interval_ms: int = DEFAULT_USER_SETTINGS["poll_interval_ms"]
    fallback_category: str = DEFAULT_USER_SETTINGS["fallback_category"]
    auto_switch_enabled: bool = DEFAULT_USER_SETTINGS["auto_switch_enabled"]
    prompt_before_switch: bool = DEFAULT_USER_SETTINGS["prompt_before_switch"]
    notifications_enabled: bool = DEFAULT_USER_SETTINGS["notifications_enabled"]
    supporter_mode: bool = DEFAULT_USER_SETTINGS["supporter_mode"]
    managed_surface_id: Optional[str] = DEFAULT_USER_SETTINGS["managed_surface_id"]
    client_id: str = DEFAULT_USER_SETTINGS["client_id"]

    @classmethod
    def from_stored(cls, stored: dict[str, Any] | None) -> "UserSettings":
        merged = dict(DEFAULT_USER_SETTINGS)
        if isinstance(stored, dict):
            merged.update({k: v for k, v in stored.items() if v is not None or k == "managed_surface_id"})
        return cls.model_validate(merged)

    @field_validator("fallback_category", "client_id", mode="before")
    @classmethod
    def normalize_text(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("managed_surface_id", mode="before")
    @classmethod
    def normalize_surface_id(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        out = str(value).strip()
        return out or None


class FallbackRuntime(BaseModel):
    model_config = ConfigDict(extra="ignore")

    active: bool = False
    category: Optional[str] = None
    current_channel: Optional[str] = None
    reason: Literal["auto", "manual"] = "auto"
    updated_at: float = 0.0


class LastSwitch(BaseModel):
    channel: str
    timestamp: float


class AnalyticsState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    viewing_seconds_by_channel: dict[str, float] = Field(default_factory=dict)
    switch_count: int = 0
    last_switch: Optional[LastSwitch] = None


class AddChannelRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        return (value or "").strip().lower()


class ReorderChannelsRequest(BaseModel):
    names: list[str] = Field(default_factory=list)

    @field_validator("names")
    @classmethod
    def normalize_names(cls, value: list[str]) -> list[str]:
        out: list[str] = []
        seen: set[str] = set()
        for item in value:
            key = (item or "").strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            out.append(key)
        return out


class SettingsUpdateRequest(BaseModel):
    poll_interval_ms: Optional[int] = Field(default=None, ge=5000, le=3600000)
    fallback_category: Optional[str] = None
    auto_switch_enabled: Optional[bool] = None
    prompt_before_switch: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    supporter_mode: Optional[bool] = None
    managed_surface_id: Optional[str] = None
    client_id: Optional[str] = None


class SurfaceReportRequest(BaseModel):
    surface_id: str = Field(min_length=1, max_length=128)
    url: str = ""
    status: Literal["loading", "complete"] = "complete"
    active: bool = False


class IdleStateRequest(BaseModel):
    state: Literal["active", "idle", "locked"]


class PromptResponseRequest(BaseModel):
    accept: bool
