from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from time import monotonic
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urlencode

import aiohttp

from ..config import Settings
from ..models import ChannelRef, LiveInfo, is_valid_channel_name

logger = logging.getLogger("autoswap.twitch")

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]


class StatusClientError(RuntimeError):
    code = "api_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class AuthFailure(StatusClientError):
    code = "auth_failure"


class RateLimited(StatusClientError):
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class Transient(StatusClientError):
    code = "transient"


class ProtocolError(StatusClientError):
    code = "protocol_error"


@dataclass
class CacheEntry:
    payload: Any
    fetched_at: float


@dataclass
class RateWindow:
    window_start: float
    count_in_window: int = 0


@dataclass
class RawResponse:
    status: int
    headers: Mapping[str, str]
    body: bytes


def _advised_wait(headers: Mapping[str, str], default: float) -> float:
    raw = (headers.get("Retry-After") or "").strip()
    if raw:
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
    reset = (headers.get("Ratelimit-Reset") or "").strip()
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            pass
    return default


class StatusClient:
    """Batched Twitch Helix client for live status and category lookups."""

    def __init__(
        self,
        settings: Settings,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.base_url = settings.helix_base_url.rstrip("/")
        self.client_id = settings.client_id
        self.access_token = settings.access_token
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._cache: dict[str, CacheEntry] = {}
        self._window = RateWindow(window_start=clock())
        self._session: Optional[aiohttp.ClientSession] = None

    def configure(self, *, client_id: str, access_token: str = "") -> bool:
        changed = (client_id, access_token) != (self.client_id, self.access_token)
        self.client_id = client_id
        self.access_token = access_token
        if changed:
            self._cache.clear()
        return changed

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id)

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session and not session.closed:
            await session.close()

    def cache_stats(self) -> dict[str, int]:
        return {"size": len(self._cache), "requests_this_minute": self._window.count_in_window}

    def _headers(self) -> dict[str, str]:
        if not self.client_id:
            raise AuthFailure("Twitch client id is not configured.")
        headers = {"Client-ID": self.client_id, "Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _acquire_slot(self) -> None:
        now = self._clock()
        if now - self._window.window_start >= 60:
            self._window = RateWindow(window_start=now)
        if self._window.count_in_window >= self.settings.max_requests_per_minute:
            wait = 60 - (now - self._window.window_start)
            if wait > 0:
                logger.warning("Request ceiling reached; delaying %.1fs", wait)
                await self._sleep(wait)
            self._window = RateWindow(window_start=self._clock())
        self._window.count_in_window += 1

    async def _send(self, path: str, params: list[tuple[str, str]]) -> RawResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)
        async with self._session.get(
            f"{self.base_url}{path}", params=params, headers=self._headers(), timeout=timeout
        ) as resp:
            body = await resp.read()
            return RawResponse(status=resp.status, headers=dict(resp.headers), body=body)

    async def _request(self, path: str, params: list[tuple[str, str]]) -> dict[str, Any]:
        signature = f"{path}?{urlencode(params)}"
        cached = self._cache.get(signature)
        if cached is not None:
            if self._clock() - cached.fetched_at < self.settings.cache_ttl_seconds:
                return cached.payload
            del self._cache[signature]

        retries = max(0, self.settings.max_retries)
        attempt = 0
        while True:
            await self._acquire_slot()
            try:
                resp = await self._send(path, params)
            except (asyncio.TimeoutError, aiohttp.ClientError) as err:
                if attempt < retries:
                    await self._backoff(attempt, f"{type(err).__name__}: {err}")
                    attempt += 1
                    continue
                raise Transient(f"Twitch request failed: {type(err).__name__}: {err}") from err

            if resp.status == 429:
                wait = _advised_wait(resp.headers, self.settings.rate_limit_retry_seconds)
                if attempt < retries:
                    logger.warning("Rate limited by Twitch; retrying in %.1fs", wait)
                    await self._sleep(wait)
                    attempt += 1
                    continue
                raise RateLimited("Twitch rate limit exceeded.", retry_after=wait)
            if resp.status == 401:
                raise AuthFailure("Twitch rejected the client credentials (401).")
            if resp.status >= 500:
                if attempt < retries:
                    await self._backoff(attempt, f"status={resp.status}")
                    attempt += 1
                    continue
                raise Transient(f"Twitch API server error: status={resp.status}")
            if resp.status >= 400:
                raise StatusClientError(f"Twitch API error: status={resp.status} body={resp.body[:300]!r}")

            payload = self._parse(resp.body)
            self._cache[signature] = CacheEntry(payload=payload, fetched_at=self._clock())
            return payload

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.settings.backoff_base_seconds * (2**attempt)
        logger.info("Transient Twitch failure (%s); retry %d in %.1fs", reason, attempt + 1, delay)
        await self._sleep(delay)

    @staticmethod
    def _parse(body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as err:
            raise ProtocolError("Invalid JSON response from Twitch.") from err
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise ProtocolError("Twitch response is missing the data list.")
        return payload

    async def check_statuses(self, names: list[str]) -> dict[str, Optional[LiveInfo]]:
        results: dict[str, Optional[LiveInfo]] = {}
        valid: list[str] = []
        seen: set[str] = set()
        for name in names:
            results[name] = None
            key = (name or "").lower()
            if not is_valid_channel_name(name or ""):
                logger.warning("Skipping invalid channel name %r", name)
                continue
            if key in seen:
                continue
            seen.add(key)
            valid.append(name)

        size = max(1, self.settings.batch_size)
        batches = [valid[start : start + size] for start in range(0, len(valid), size)]
        unreachable: list[Transient] = []
        for batch in batches:
            params = [("user_login", n.lower()) for n in batch]
            try:
                payload = await self._request("/streams", params)
            except (AuthFailure, RateLimited):
                raise
            except StatusClientError as err:
                if isinstance(err, Transient):
                    unreachable.append(err)
                logger.warning("Status batch of %d failed (%s); reporting offline: %s", len(batch), err.code, err)
                continue

            live: dict[str, LiveInfo] = {}
            for raw in payload["data"]:
                if isinstance(raw, dict) and raw.get("user_login"):
                    info = LiveInfo.from_stream(raw)
                    live[info.user_login] = info
            for name in names:
                if name and name.lower() in live:
                    results[name] = live[name.lower()]
        # Nothing got through at all: let the scheduler back off instead of reporting everyone offline.
        if batches and len(unreachable) == len(batches):
            raise unreachable[-1]
        return results

    async def find_category_id(self, name: str) -> Optional[str]:
        category = (name or "").strip()
        if not category:
            return None
        try:
            payload = await self._request("/games", [("name", category)])
        except AuthFailure:
            raise
        except StatusClientError as err:
            logger.warning("Category lookup for %r failed: %s", category, err)
            return None
        for item in payload["data"]:
            if isinstance(item, dict) and item.get("id"):
                return str(item["id"])
        return None

    async def random_live_channel_in_category(self, name: str) -> Optional[ChannelRef]:
        category_id = await self.find_category_id(name)
        if not category_id:
            return None
        try:
            payload = await self._request(
                "/streams",
                [("game_id", category_id), ("first", str(self.settings.category_page_size))],
            )
        except AuthFailure:
            raise
        except StatusClientError as err:
            logger.warning("Live channel lookup for category %r failed: %s", name, err)
            return None
        streams = [s for s in payload["data"] if isinstance(s, dict) and s.get("user_login")]
        if not streams:
            return None
        pick = self._rng.choice(streams)
        return ChannelRef(
            name=str(pick["user_login"]).lower(),
            display_name=str(pick.get("user_name", "")),
            title=str(pick.get("title", "")),
            category_name=str(pick.get("game_name", "")),
        )
