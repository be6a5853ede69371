import asyncio
import logging

import pytest

from autoswap.models import ChannelEntry, LiveMetadata
from autoswap.services.host import HostBridge
from autoswap.services.webhook import NotificationWebhook, _notification_message


def _channel(title="", category="", thumbnail=""):
    return ChannelEntry(
        name="alpha_one",
        priority=1,
        is_live=True,
        live_metadata=LiveMetadata(title=title, category_name=category, thumbnail_ref=thumbnail),
    )


def test_message_uses_the_stream_title():
    assert _notification_message(_channel(title="Ranked grind")) == "Ranked grind"
    assert _notification_message(_channel(title="x" * 100)) == "x" * 100


def test_long_titles_are_truncated():
    message = _notification_message(_channel(title="y" * 150))
    assert message == "y" * 97 + "..."
    assert len(message) == 100


def test_message_falls_back_to_the_category():
    assert _notification_message(_channel(category="Art")) == "Playing Art"
    assert _notification_message(_channel()) == "Playing Unknown"
    assert _notification_message(ChannelEntry(name="alpha_one", priority=1)) == "Playing Unknown"


@pytest.mark.asyncio
async def test_live_notification_payload(monkeypatch):
    webhook = NotificationWebhook("https://hooks.example.test/notify")
    sent = []

    async def fake_post(payload):
        sent.append(payload)
        return True, "ok"

    monkeypatch.setattr(webhook, "post_json", fake_post)

    ok, detail = await webhook.send_live_notification(
        _channel(title="Ranked grind", thumbnail="https://static-cdn.jtvnw.net/thumb.jpg")
    )

    assert (ok, detail) == (True, "ok")
    assert sent == [
        {
            "title": "alpha_one is now live!",
            "message": "Ranked grind",
            "channel": "alpha_one",
            "url": "https://www.twitch.tv/alpha_one",
            "thumbnail_url": "https://static-cdn.jtvnw.net/thumb.jpg",
        }
    ]

    sent.clear()
    await webhook.send_live_notification(_channel(category="Art"))
    assert "thumbnail_url" not in sent[0]
    assert sent[0]["message"] == "Playing Art"


@pytest.mark.asyncio
async def test_empty_webhook_url_is_reported():
    assert await NotificationWebhook("").post_json({"title": "x"}) == (False, "webhook_url_empty")


@pytest.mark.asyncio
async def test_failed_webhook_is_logged_and_the_event_still_emitted(caplog):
    host = HostBridge(webhook=NotificationWebhook(""))
    events: asyncio.Queue = asyncio.Queue()
    host.subscribers.add(events)

    with caplog.at_level(logging.WARNING, logger="autoswap.host"):
        await host.notify_live(_channel(title="Ranked grind"))

    event = events.get_nowait()
    assert event["event"] == "notify"
    assert event["channel"] == "alpha_one"
    assert "Live notification webhook failed for alpha_one: webhook_url_empty" in caplog.text
