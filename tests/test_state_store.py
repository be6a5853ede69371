import asyncio

import pytest

from autoswap.config import RECORD_ANALYTICS, RECORD_CHANNELS, RECORD_SETTINGS
from autoswap.db import Database
from autoswap.services.state_store import ChannelListError, StateStore


async def _store(tmp_path, debounce_seconds=0.3):
    db = Database(str(tmp_path / "autoswap.db"))
    await db.init()
    return db, StateStore(db, debounce_seconds=debounce_seconds)


@pytest.mark.asyncio
async def test_settings_default_when_missing_and_overlay_partial_records(tmp_path):
    db, store = await _store(tmp_path)
    defaults = await store.get_settings()
    assert defaults.poll_interval_ms == 60000
    assert defaults.fallback_category == "Just Chatting"
    assert defaults.auto_switch_enabled is True
    assert defaults.managed_surface_id is None

    await db.set_records({RECORD_SETTINGS: {"poll_interval_ms": 30000, "added_by_a_newer_version": 1}})
    stored = await store.get_settings()
    assert stored.poll_interval_ms == 30000
    assert stored.prompt_before_switch is False
    await store.close()


@pytest.mark.asyncio
async def test_settings_writes_are_coalesced_but_readable_immediately(tmp_path):
    db, store = await _store(tmp_path, debounce_seconds=0.05)

    await store.save_settings({"fallback_category": "Art"})
    await store.save_settings({"poll_interval_ms": 15000})

    assert (await store.get_settings()).fallback_category == "Art"
    assert await db.get_record(RECORD_SETTINGS) is None

    await asyncio.sleep(0.1)
    persisted = await db.get_record(RECORD_SETTINGS)
    assert persisted["fallback_category"] == "Art"
    assert persisted["poll_interval_ms"] == 15000
    await store.close()


@pytest.mark.asyncio
async def test_channel_list_writes_are_immediate_and_dense(tmp_path):
    db, store = await _store(tmp_path)

    await store.add_channel("Alpha_One")
    await store.add_channel("beta_two")
    await store.add_channel("gamma_three")
    await store.remove_channel("beta_two")

    persisted = await db.get_record(RECORD_CHANNELS)
    assert [c["name"] for c in persisted] == ["alpha_one", "gamma_three"]
    assert [c["priority"] for c in persisted] == [1, 2]
    await store.close()


@pytest.mark.asyncio
async def test_channel_list_validation(tmp_path):
    db, store = await _store(tmp_path)
    await store.add_channel("alpha_one")

    with pytest.raises(ChannelListError) as excinfo:
        await store.add_channel("ALPHA_ONE")
    assert excinfo.value.code == "channel_exists"

    with pytest.raises(ChannelListError) as excinfo:
        await store.add_channel("no")
    assert excinfo.value.code == "channel_name_invalid"

    with pytest.raises(ChannelListError) as excinfo:
        await store.add_channel("beta_two", limit=1)
    assert excinfo.value.code == "channel_limit_reached"

    with pytest.raises(ChannelListError) as excinfo:
        await store.remove_channel("missing_one")
    assert excinfo.value.code == "channel_not_found"
    await store.close()


@pytest.mark.asyncio
async def test_reorder_puts_unmentioned_channels_last(tmp_path):
    db, store = await _store(tmp_path)
    for name in ("alpha_one", "beta_two", "gamma_three"):
        await store.add_channel(name)

    channels = await store.reorder_channels(["gamma_three", "alpha_one"])

    assert [(c.name, c.priority) for c in channels] == [("gamma_three", 1), ("alpha_one", 2), ("beta_two", 3)]
    await store.close()


@pytest.mark.asyncio
async def test_status_merge_rereads_the_latest_list(tmp_path):
    db, store = await _store(tmp_path)
    await store.add_channel("alpha_one")
    snapshot = await store.get_channels()

    # Edited by the UI while a cycle was waiting on the network.
    await store.add_channel("beta_two")
    live = [snapshot[0].model_copy(update={"is_live": True, "was_live_last_cycle": True})]
    merged = await store.merge_channel_statuses(live)

    assert [c.name for c in merged] == ["alpha_one", "beta_two"]
    assert merged[0].is_live is True
    await store.close()


@pytest.mark.asyncio
async def test_listeners_see_settings_writes(tmp_path):
    db, store = await _store(tmp_path)
    seen = []

    async def listener(key, value):
        seen.append((key, value.get("auto_switch_enabled") if isinstance(value, dict) else None))

    store.add_listener(listener)
    await store.disable_auto_switch()

    assert seen == [(RECORD_SETTINGS, False)]
    assert (await store.get_settings()).managed_surface_id is None
    await store.close()


@pytest.mark.asyncio
async def test_analytics_accumulate_and_clear(tmp_path):
    db, store = await _store(tmp_path)
    await store.add_viewing_time("alpha_one", 60)
    await store.add_viewing_time("alpha_one", 30)
    await store.record_switch("alpha_one")

    analytics = await store.get_analytics()
    assert analytics.viewing_seconds_by_channel == {"alpha_one": 90}
    assert analytics.switch_count == 1
    assert analytics.last_switch.channel == "alpha_one"

    cleared = await store.clear_analytics()
    assert cleared.switch_count == 0
    assert (await store.get_analytics()).viewing_seconds_by_channel == {}
    await store.close()


class SlowDatabase(Database):
    async def set_records(self, items):
        await asyncio.sleep(0.05)
        await super().set_records(items)


@pytest.mark.asyncio
async def test_write_arriving_during_a_flush_is_persisted(tmp_path):
    db = SlowDatabase(str(tmp_path / "autoswap.db"))
    await db.init()
    store = StateStore(db, debounce_seconds=0.01)

    await store.save_settings({"fallback_category": "Art"})
    # The first deferred flush is now inside set_records.
    await asyncio.sleep(0.03)
    await store.record_switch("alpha_one")
    await asyncio.sleep(0.5)

    assert (await db.get_record(RECORD_SETTINGS))["fallback_category"] == "Art"
    assert (await db.get_record(RECORD_ANALYTICS))["switch_count"] == 1
    assert store._pending == {}
    await store.close()


@pytest.mark.asyncio
async def test_disabling_auto_switch_releases_the_surface(tmp_path):
    db, store = await _store(tmp_path)
    await store.save_settings({"managed_surface_id": "tab-1"})

    updated = await store.save_settings({"auto_switch_enabled": False})

    assert updated.managed_surface_id is None
    assert (await store.get_settings()).managed_surface_id is None

    # Re-enabling does not bring the old binding back.
    assert (await store.save_settings({"auto_switch_enabled": True})).managed_surface_id is None
    await store.close()
