from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

from ..config import RESERVED_TWITCH_ROUTES, TWITCH_HOSTS, TWITCH_WEB_BASE


def _twitch_host(url: str) -> Optional[str]:
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return None
    if parsed.scheme not in {"http", "https"}:
        return None
    host = (parsed.hostname or "").lower()
    for base in TWITCH_HOSTS:
        if host == base or host.endswith(f".{base}"):
            return host
    return None


def is_twitch_url(url: str) -> bool:
    return _twitch_host(url) is not None


def channel_from_url(url: str) -> Optional[str]:
    """Return the lower-cased channel name for a /<channel> page, else None."""
    if not is_twitch_url(url):
        return None
    segments = [seg for seg in urlparse(url).path.split("/") if seg]
    if not segments:
        return None
    first = segments[0].lower()
    if first in RESERVED_TWITCH_ROUTES:
        return None
    return first


def channel_url(name: str) -> str:
    return f"{TWITCH_WEB_BASE}/{name.lower()}"
