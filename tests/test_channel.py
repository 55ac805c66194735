"""Tests for the per-device ingestion channel."""

import asyncio
from datetime import datetime, timedelta

import pytest

from wearable_telemetry.analysis.trend import TrendAnalyzer
from wearable_telemetry.errors import DataLoss
from wearable_telemetry.models import DataType
from wearable_telemetry.monitors.thresholds import ThresholdEvaluator
from wearable_telemetry.storage.repository import HealthDataRepository
from wearable_telemetry.streaming.channel import IngestionChannel


@pytest.fixture
def data_repo(database):
    return HealthDataRepository(database)


@pytest.fixture
def make_channel(device, dispatcher, data_repo):
    def _make(**kw):
        kw.setdefault("evaluator", ThresholdEvaluator(dispatcher))
        kw.setdefault("analyzer", TrendAnalyzer(window_size=10))
        kw.setdefault("repository", data_repo)
        return IngestionChannel(device, **kw)

    return _make


WIDE = (datetime(2000, 1, 1), datetime(2100, 1, 1))


@pytest.mark.asyncio
async def test_close_drains_everything(make_channel, data_repo, make_point):
    channel = make_channel()
    await channel.start()
    for v in range(60, 80):
        assert channel.push(make_point(v)) is True

    await channel.close()

    assert await data_repo.count_for_device("AA:01") == 20
    assert channel.stats["persisted"] == 20
    assert channel.stats["analyzed"] == 20
    assert channel.pending == 0


@pytest.mark.asyncio
async def test_arrival_order_preserved_for_equal_timestamps(make_channel, data_repo, make_point):
    channel = make_channel()
    await channel.start()
    ts = datetime(2024, 5, 1, 12, 0)
    values = [72, 70, 75, 71, 74]
    for v in values:
        channel.push(make_point(v, timestamp=ts))
    await channel.close()

    stored = await data_repo.get_range("AA:01", DataType.HEART_RATE, ts - timedelta(seconds=1), ts)
    assert [p.value for p in stored] == values


@pytest.mark.asyncio
async def test_push_after_close_rejected(make_channel, data_repo, make_point):
    channel = make_channel()
    await channel.start()
    channel.push(make_point(70))
    await channel.close()

    assert channel.push(make_point(71)) is False
    assert channel.stats["rejected"] == 1
    assert await data_repo.count_for_device("AA:01") == 1


@pytest.mark.asyncio
async def test_push_for_other_device_raises(make_channel, make_point):
    channel = make_channel()
    with pytest.raises(ValueError):
        channel.push(make_point(70, device_id="ZZ:99"))


@pytest.mark.asyncio
async def test_critical_evaluated_on_push(make_channel, dispatcher, recorder, make_point):
    channel = make_channel()
    # not started: evaluation must not depend on the consumer tasks
    channel.push(make_point(20))
    assert channel.stats["critical"] == 1
    assert dispatcher.stats["enqueued"] == 1

    await dispatcher.drain()
    assert recorder.titled("Health Alert")


@pytest.mark.asyncio
async def test_overflow_drops_oldest_with_warning(make_channel, make_point):
    channel = make_channel(buffer_size=2)

    channel.push(make_point(1))
    channel.push(make_point(2))
    with pytest.warns(DataLoss):
        assert channel.push(make_point(3)) is True

    assert channel.dropped(DataType.HEART_RATE) > 0
    assert channel.dropped(DataType.STEPS) == 0
    assert channel.stats["dropped"] == channel.dropped(DataType.HEART_RATE)
    assert channel.pending == 4


@pytest.mark.asyncio
async def test_overflowed_point_is_the_oldest(make_channel, data_repo, make_point):
    channel = make_channel(buffer_size=2)
    with pytest.warns(DataLoss):
        for v in (1, 2, 3):
            channel.push(make_point(v))
    await channel.start()
    await channel.close()

    stored = await data_repo.get_range("AA:01", DataType.HEART_RATE, *WIDE)
    assert [p.value for p in stored] == [2, 3]


@pytest.mark.asyncio
async def test_window_close_invokes_callback(make_channel, make_point):
    calls = []

    async def on_close(device, data_type, window):
        calls.append((device.device_id, data_type, [p.value for p in window]))

    channel = make_channel(analyzer=TrendAnalyzer(window_size=3), on_window_close=on_close)
    await channel.start()
    for v in (70, 71, 72, 73):
        channel.push(make_point(v))
    await channel.close()

    assert calls == [("AA:01", DataType.HEART_RATE, [70, 71, 72])]
    assert channel.stats["windows_closed"] == 1


@pytest.mark.asyncio
async def test_callback_failure_is_contained(make_channel, make_point):
    async def on_close(device, data_type, window):
        raise RuntimeError("boom")

    channel = make_channel(analyzer=TrendAnalyzer(window_size=2), on_window_close=on_close)
    await channel.start()
    for v in (70, 71, 72, 73):
        channel.push(make_point(v))
    await channel.close()

    assert channel.stats["windows_closed"] == 2
    assert channel.stats["analyzed"] == 4


@pytest.mark.asyncio
async def test_types_are_interleaved(make_channel, data_repo, make_point):
    channel = make_channel()
    await channel.start()
    for i in range(5):
        channel.push(make_point(70 + i))
        channel.push(make_point(1000 * i, DataType.STEPS))
    await asyncio.sleep(0)
    await channel.close()

    assert len(await data_repo.get_range("AA:01", DataType.STEPS, *WIDE)) == 5
    assert len(await data_repo.get_range("AA:01", DataType.HEART_RATE, *WIDE)) == 5
