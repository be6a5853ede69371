from __future__ import annotations

import os
from dataclasses import dataclass, field


def _default_helix_base() -> str:
    broker = os.getenv("AUTOSWAP_TOKEN_BROKER_URL", "").strip().rstrip("/")
    if broker:
        return f"{broker}/helix"
    return os.getenv("AUTOSWAP_HELIX_BASE_URL", "https://api.twitch.tv/helix")


@dataclass(frozen=True)
class Settings:
    app_name: str = "AutoSwap"
    build_version: str = field(default_factory=lambda: os.getenv("AUTOSWAP_BUILD_VERSION", "v1"))
    host: str = field(default_factory=lambda: os.getenv("AUTOSWAP_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("AUTOSWAP_PORT", "8095")))
    db_path: str = field(default_factory=lambda: os.getenv("AUTOSWAP_DB_PATH", "./data/autoswap.db"))
    helix_base_url: str = field(default_factory=_default_helix_base)
    client_id: str = field(default_factory=lambda: os.getenv("TWITCH_CLIENT_ID", ""))
    access_token: str = field(default_factory=lambda: os.getenv("TWITCH_ACCESS_TOKEN", ""))
    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("AUTOSWAP_REQUEST_TIMEOUT_SECONDS", "30"))
    )
    cache_ttl_seconds: float = field(default_factory=lambda: float(os.getenv("AUTOSWAP_CACHE_TTL_SECONDS", "30")))
    max_requests_per_minute: int = field(
        default_factory=lambda: int(os.getenv("AUTOSWAP_MAX_REQUESTS_PER_MINUTE", "800"))
    )
    batch_size: int = 100
    category_page_size: int = 100
    max_retries: int = field(default_factory=lambda: int(os.getenv("AUTOSWAP_MAX_RETRIES", "3")))
    backoff_base_seconds: float = field(
        default_factory=lambda: float(os.getenv("AUTOSWAP_BACKOFF_BASE_SECONDS", "1.0"))
    )
    min_poll_spacing_seconds: float = 5.0
    rate_limit_retry_seconds: float = field(
        default_factory=lambda: float(os.getenv("AUTOSWAP_RATE_LIMIT_RETRY_SECONDS", "120"))
    )
    transient_retry_seconds: float = field(
        default_factory=lambda: float(os.getenv("AUTOSWAP_TRANSIENT_RETRY_SECONDS", "60"))
    )
    write_debounce_seconds: float = field(
        default_factory=lambda: float(os.getenv("AUTOSWAP_WRITE_DEBOUNCE_SECONDS", "0.3"))
    )
    prompt_snooze_seconds: float = field(
        default_factory=lambda: float(os.getenv("AUTOSWAP_PROMPT_SNOOZE_SECONDS", "300"))
    )
    free_channel_limit: int = field(default_factory=lambda: int(os.getenv("AUTOSWAP_FREE_CHANNEL_LIMIT", "10")))
    notify_webhook_url: str = field(default_factory=lambda: os.getenv("AUTOSWAP_NOTIFY_WEBHOOK_URL", ""))
    webhook_timeout_seconds: int = field(
        default_factory=lambda: int(os.getenv("AUTOSWAP_WEBHOOK_TIMEOUT_SECONDS", "8"))
    )


TWITCH_WEB_BASE = "https://www.twitch.tv"

TWITCH_HOSTS = ("twitch.tv", "twitch.com")

# First path segments on twitch.tv that are not channel pages.
RESERVED_TWITCH_ROUTES = frozenset(
    {
        "directory",
        "downloads",
        "p",
        "videos",
        "clips",
        "search",
        "settings",
        "subscriptions",
        "wallet",
        "turbo",
        "prime",
        "inventory",
        "drops",
        "friends",
        "messages",
        "moderator",
        "safety",
        "jobs",
        "privacy",
        "terms",
    }
)

CHANNEL_NAME_PATTERN = r"^[a-zA-Z0-9_]{4,25}$"

DEFAULT_USER_SETTINGS = {
    "poll_interval_ms": 60000,
    "fallback_category": "Just Chatting",
    "auto_switch_enabled": True,
    "prompt_before_switch": False,
    "notifications_enabled": False,
    "supporter_mode": False,
    "managed_surface_id": None,
    "client_id": "",
}

RECORD_CHANNELS = "channels"
RECORD_SETTINGS = "settings"
RECORD_RUNTIME = "runtime"
RECORD_ANALYTICS = "analytics"
