import json
from typing import Any, Callable, Optional

import pytest

from autoswap.config import Settings
from autoswap.services.twitch_api import RawResponse, StatusClient


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays and moves the paired clock forward instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


def json_response(data: Any, status: int = 200, headers: Optional[dict[str, str]] = None) -> RawResponse:
    return RawResponse(status=status, headers=headers or {}, body=json.dumps({"data": data}).encode("utf-8"))


def stream(login: str, title: str = "", game: str = "Just Chatting") -> dict[str, Any]:
    return {
        "user_login": login,
        "user_name": login.capitalize(),
        "title": title or f"{login} stream",
        "game_name": game,
        "thumbnail_url": f"https://static-cdn.jtvnw.net/previews-ttv/live_user_{login}-{{width}}x{{height}}.jpg",
        "viewer_count": 42,
        "started_at": "2026-10-18T12:00:00Z",
    }


Responder = Callable[[str, list[tuple[str, str]]], Any]


class ScriptedStatusClient(StatusClient):
    """StatusClient whose transport is answered in-process.

    ``responder`` returns a RawResponse or an exception instance (raised as if
    the transport failed).
    """

    def __init__(self, settings: Settings, responder: Responder, **kwargs: Any):
        super().__init__(settings, **kwargs)
        self.responder = responder
        self.sent: list[tuple[str, list[tuple[str, str]]]] = []

    async def _send(self, path: str, params: list[tuple[str, str]]) -> RawResponse:
        self.sent.append((path, list(params)))
        self._headers()
        out = self.responder(path, params)
        if isinstance(out, BaseException):
            raise out
        return out


class FakeTwitch:
    """Minimal Helix stand-in: live channels by login and streams by category."""

    def __init__(self):
        self.live: dict[str, dict[str, Any]] = {}
        self.categories: dict[str, str] = {"just chatting": "509658"}
        self.category_streams: dict[str, list[dict[str, Any]]] = {}
        self.status_override: Optional[RawResponse] = None

    def go_live(self, login: str, **kwargs: Any) -> None:
        self.live[login] = stream(login, **kwargs)

    def go_offline(self, login: str) -> None:
        self.live.pop(login, None)

    def __call__(self, path: str, params: list[tuple[str, str]]) -> RawResponse:
        if self.status_override is not None:
            return self.status_override
        query = dict(params)
        if path == "/games":
            game_id = self.categories.get(query.get("name", "").lower())
            return json_response([{"id": game_id, "name": query["name"]}] if game_id else [])
        if path == "/streams" and "game_id" in query:
            return json_response(self.category_streams.get(query["game_id"], []))
        logins = [value for key, value in params if key == "user_login"]
        return json_response([self.live[login] for login in logins if login in self.live])


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "db_path": str(tmp_path / "autoswap.db"),
        "client_id": "test-client",
        "access_token": "",
        "notify_webhook_url": "",
        "helix_base_url": "https://api.twitch.tv/helix",
        "backoff_base_seconds": 1.0,
        "max_retries": 3,
        "write_debounce_seconds": 0.3,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def twitch() -> FakeTwitch:
    return FakeTwitch()


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.delenv("TWITCH_CLIENT_ID", raising=False)
    monkeypatch.delenv("AUTOSWAP_TOKEN_BROKER_URL", raising=False)
    return make_settings(tmp_path)
