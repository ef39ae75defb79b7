import asyncio
import threading

import pytest

from bingeboard.availability import (
    AvailabilityAggregator,
    TitleRequest,
    availability_sqlite_cache,
    cache_key,
)
from bingeboard.cache import SQLiteCache, TTLCache
from bingeboard.platforms import make_record


class FakeSource:
    def __init__(self, name, records=None, error=None, delay=0.0, gate=None):
        self.name = name
        self.records = records or []
        self.error = error
        self.delay = delay
        self.gate = gate
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def fetch(self, title_id, title, media_type="tv", external_id=None):
        self.calls.append((title_id, media_type))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return list(self.records)
        finally:
            self.active -= 1

    async def aclose(self):
        self.closed = True


def _four_sources(failing="utelly"):
    sources = [
        FakeSource("tmdb", [make_record(8, "Netflix", "sub", "tmdb", logo_path="/n.jpg")]),
        FakeSource("watchmode", [make_record(157, "Hulu", "sub", "watchmode", web_url="https://hulu.com/x")]),
        FakeSource("utelly", [make_record(9000, "Peacock", "sub", "utelly")]),
        FakeSource("streaming_availability", [make_record(8000, "Apple TV+", "buy", "streaming_availability",
                                                          price=3.99)]),
    ]
    for s in sources:
        if s.name == failing:
            s.error = RuntimeError("provider exploded")
    return sources


@pytest.mark.asyncio
async def test_single_failing_source_is_isolated():
    sources = _four_sources(failing="utelly")
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache())

    agg = await aggregator.get_availability(1399, "Show", "tv")

    assert agg.total_platforms == 3
    assert agg.sources == {"tmdb": True, "watchmode": True, "utelly": False, "streaming_availability": True}
    assert {p.provider_name for p in agg.platforms} == {"Netflix", "Hulu", "Apple TV+"}
    assert agg.affiliate_platforms == 3
    assert agg.premium_platforms == 3


@pytest.mark.asyncio
async def test_timed_out_source_counts_as_failed():
    sources = _four_sources(failing=None)
    sources[1].delay = 1.0
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache(), source_timeout=0.05)

    agg = await aggregator.get_availability(1, "Show")

    assert agg.sources["watchmode"] is False
    assert agg.sources["tmdb"] is True
    assert "Hulu" not in {p.provider_name for p in agg.platforms}


@pytest.mark.asyncio
async def test_cache_hit_within_ttl_and_refetch_after_expiry(clock):
    sources = _four_sources(failing=None)
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache(clock=clock), cache_ttl=1800)

    first = await aggregator.get_availability(1399, "Show", "tv")
    second = await aggregator.get_availability(1399, "Show", "tv")

    assert second is first
    assert all(len(s.calls) == 1 for s in sources)

    clock.advance(1801)
    third = await aggregator.get_availability(1399, "Show", "tv")

    assert all(len(s.calls) == 2 for s in sources)
    assert third.to_dict() == first.to_dict()


@pytest.mark.asyncio
async def test_cache_is_keyed_by_media_type():
    sources = _four_sources(failing=None)
    cache = TTLCache()
    aggregator = AvailabilityAggregator(sources=sources, cache=cache)

    await aggregator.get_availability(1, "Thing", "tv")
    await aggregator.get_availability(1, "Thing", "movie")

    assert all(len(s.calls) == 2 for s in sources)
    assert cache_key(1, "movie") in cache


@pytest.mark.asyncio
async def test_all_sources_failing_is_not_cached():
    sources = [FakeSource(name, error=RuntimeError("down")) for name in ("tmdb", "watchmode")]
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache())

    agg = await aggregator.get_availability(5, "Nothing")
    assert agg.total_platforms == 0
    assert agg.sources == {"tmdb": False, "watchmode": False}

    await aggregator.get_availability(5, "Nothing")
    assert all(len(s.calls) == 2 for s in sources)


@pytest.mark.asyncio
async def test_successful_empty_source_is_flagged_true():
    aggregator = AvailabilityAggregator(sources=[FakeSource("tmdb", [])], cache=TTLCache())
    agg = await aggregator.get_availability(5, "Obscure")
    assert agg.sources == {"tmdb": True}
    assert agg.total_platforms == 0


@pytest.mark.asyncio
async def test_cross_source_duplicates_are_merged():
    sources = [
        FakeSource("tmdb", [make_record(337, "Disney+", "sub", "tmdb")]),
        FakeSource("utelly", [make_record(9000, "Disney Plus", "sub", "utelly",
                                          web_url="https://www.disneyplus.com/series/x")]),
    ]
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache())

    agg = await aggregator.get_availability(82856, "The Mandalorian")

    assert agg.total_platforms == 1
    assert agg.platforms[0].web_url == "https://www.disneyplus.com/series/x"


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fan_out():
    gate = asyncio.Event()
    source = FakeSource("tmdb", [make_record(8, "Netflix", "sub", "tmdb")], gate=gate)
    aggregator = AvailabilityAggregator(sources=[source], cache=TTLCache())

    first = asyncio.create_task(aggregator.get_availability(1, "Show"))
    second = asyncio.create_task(aggregator.get_availability(1, "Show"))
    await asyncio.sleep(0)
    gate.set()
    a, b = await asyncio.gather(first, second)

    assert a is b
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_semaphore_bounds_simultaneous_source_calls():
    active = {"now": 0, "max": 0}

    class CountingSource(FakeSource):
        async def fetch(self, *args, **kwargs):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            try:
                await asyncio.sleep(0.01)
                return []
            finally:
                active["now"] -= 1

    sources = [CountingSource(f"s{i}") for i in range(6)]
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache(), max_concurrent=2)

    await asyncio.gather(*(aggregator.get_availability(i, "t") for i in range(3)))

    assert active["max"] <= 2


@pytest.mark.asyncio
async def test_batch_availability_returns_each_title():
    sources = _four_sources(failing=None)
    aggregator = AvailabilityAggregator(sources=sources, cache=TTLCache(), batch_size=2, batch_delay_ms=1)

    titles = [
        {"tmdbId": 1, "title": "One", "mediaType": "tv"},
        TitleRequest(2, "Two", "movie"),
        {"title_id": 3, "title": "Three"},
    ]
    results = await aggregator.get_batch_availability(titles)

    assert set(results) == {1, 2, 3}
    assert results[2].media_type == "movie"
    assert all(len(s.calls) == 3 for s in sources)


@pytest.mark.asyncio
async def test_batch_omits_titles_that_raise(monkeypatch):
    aggregator = AvailabilityAggregator(sources=_four_sources(failing=None), cache=TTLCache(), batch_delay_ms=0)
    original = aggregator.get_availability

    async def flaky(title_id, *args, **kwargs):
        if title_id == 2:
            raise RuntimeError("boom")
        return await original(title_id, *args, **kwargs)

    monkeypatch.setattr(aggregator, "get_availability", flaky)
    results = await aggregator.get_batch_availability([TitleRequest(1), TitleRequest(2), TitleRequest(3)])

    assert set(results) == {1, 3}


def test_title_request_requires_id():
    with pytest.raises(ValueError):
        TitleRequest.from_dict({"title": "No id"})


@pytest.mark.asyncio
async def test_missing_title_id_raises():
    aggregator = AvailabilityAggregator(sources=[], cache=TTLCache())
    with pytest.raises(ValueError):
        await aggregator.get_availability(None, "x")


@pytest.mark.asyncio
async def test_sqlite_cache_backend_serves_equal_aggregate(tmp_path):
    sources = _four_sources(failing=None)
    cache = availability_sqlite_cache(tmp_path / "avail.db", ttl=60)

    async with AvailabilityAggregator(sources=sources, cache=cache) as aggregator:
        first = await aggregator.get_availability(1399, "Show", "tv")
        second = await aggregator.get_availability(1399, "Show", "tv")

    assert second == first
    assert all(len(s.calls) == 1 for s in sources)
    assert all(s.closed for s in sources)


@pytest.mark.asyncio
async def test_blocking_cache_runs_off_the_event_loop(tmp_path):
    loop_thread = threading.get_ident()
    seen_threads = []

    class RecordingCache(SQLiteCache):
        def get(self, key):
            seen_threads.append(threading.get_ident())
            return super().get(key)

        def set(self, key, value, ttl=None):
            seen_threads.append(threading.get_ident())
            super().set(key, value, ttl)

    base = availability_sqlite_cache(tmp_path / "avail.db", ttl=60)
    cache = RecordingCache(base.db_path, default_ttl=60, encode=base._encode, decode=base._decode)
    aggregator = AvailabilityAggregator(sources=_four_sources(failing=None), cache=cache)

    await aggregator.get_availability(1399, "Show", "tv")
    await aggregator.get_availability(1399, "Show", "tv")

    assert len(seen_threads) == 3
    assert loop_thread not in seen_threads
