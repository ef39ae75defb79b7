import asyncio

import pytest

from bingeboard.availability import AvailabilityAggregator, TitleRequest
from bingeboard.cache import TTLCache
from bingeboard.platforms import build_aggregate, make_record
from bingeboard.preferences import (
    PlatformPreferences,
    filter_aggregate,
    get_batch_availability_with_preferences,
    get_preference_aware_availability,
)


@pytest.fixture
def aggregate():
    return build_aggregate(1399, "Show", "tv", [
        make_record(8, "Netflix", "sub", "tmdb", web_url="https://netflix.com/x"),
        make_record(15, "Hulu", "sub", "watchmode"),
        make_record(2, "Apple TV", "rent", "watchmode", price=3.99),
        make_record(73, "Tubi", "free", "tmdb"),
    ], {"tmdb": True, "watchmode": True})


def test_subscription_type_filter_leaves_original_untouched(aggregate):
    prefs = PlatformPreferences.build(subscription_types=["sub"])
    filtered = filter_aggregate(aggregate, prefs)

    assert [p.provider_name for p in filtered.platforms] == ["Hulu", "Netflix"]
    assert filtered.total_platforms == 2
    assert filtered.filtered_out == 2
    assert filtered.premium_platforms == 2
    assert filtered.free_platforms == 0

    assert aggregate.total_platforms == 4
    assert aggregate.filtered_out == 0
    assert filtered.sources == aggregate.sources


def test_preferred_platforms_match_aliases(aggregate):
    prefs = PlatformPreferences.build(preferred_platforms=["netflix", "Tubi TV", "hulu"])
    filtered = filter_aggregate(aggregate, prefs)
    assert {p.provider_name for p in filtered.platforms} == {"Netflix", "Hulu"}


def test_excluded_platforms(aggregate):
    prefs = PlatformPreferences.build(excluded_platforms=["Hulu", "APPLE TV"])
    filtered = filter_aggregate(aggregate, prefs)
    assert {p.provider_name for p in filtered.platforms} == {"Netflix", "Tubi"}
    assert filtered.filtered_out == 2


def test_only_affiliate_supported(aggregate):
    filtered = filter_aggregate(aggregate, PlatformPreferences.build(only_affiliate_supported=True))
    assert {p.provider_name for p in filtered.platforms} == {"Netflix", "Hulu"}
    assert filtered.affiliate_platforms == 2


def test_filters_combine(aggregate):
    prefs = PlatformPreferences.build(
        preferred_platforms=["Netflix", "Hulu", "Tubi"],
        excluded_platforms=["Hulu"],
        subscription_types=["sub", "free"],
        only_affiliate_supported=True,
    )
    filtered = filter_aggregate(aggregate, prefs)
    assert [p.provider_name for p in filtered.platforms] == ["Netflix"]
    assert filtered.filtered_out == 3


def test_empty_preferences_keep_everything(aggregate):
    prefs = PlatformPreferences.from_dict(None)
    assert prefs.is_empty
    filtered = filter_aggregate(aggregate, prefs)
    assert filtered.platforms == aggregate.platforms
    assert filtered.filtered_out == 0
    assert filter_aggregate(aggregate, None).total_platforms == 4


def test_from_dict_accepts_camel_case():
    prefs = PlatformPreferences.from_dict({
        "preferredPlatforms": ["Disney Plus"],
        "subscriptionTypes": ["SUB"],
        "onlyAffiliateSupported": True,
    })
    assert prefs.preferred_platforms == frozenset({"disney+"})
    assert prefs.subscription_types == frozenset({"sub"})
    assert prefs.only_affiliate_supported
    assert not prefs.is_empty


def test_long_form_type_names_are_understood(aggregate):
    prefs = PlatformPreferences.from_dict({"subscriptionTypes": ["subscription", "Rental"]})
    assert prefs.subscription_types == frozenset({"sub", "rent"})

    filtered = filter_aggregate(aggregate, prefs)
    assert sorted(p.type for p in filtered.platforms) == ["rent", "sub", "sub"]


def test_unrecognized_types_keep_type_filter_active(aggregate):
    prefs = PlatformPreferences.from_dict({"subscriptionTypes": ["lease"]})
    assert not prefs.is_empty

    filtered = filter_aggregate(aggregate, prefs)
    assert filtered.total_platforms == 0
    assert filtered.filtered_out == 4

    mixed = filter_aggregate(aggregate, PlatformPreferences.build(subscription_types=["sub", "lease"]))
    assert {p.type for p in mixed.platforms} == {"sub"}


class StaticSource:
    def __init__(self, name, records):
        self.name = name
        self.records = records
        self.calls = 0

    async def fetch(self, title_id, title, media_type="tv", external_id=None):
        self.calls += 1
        await asyncio.sleep(0)
        return list(self.records)

    async def aclose(self):
        pass


def _aggregator():
    source = StaticSource("tmdb", [
        make_record(8, "Netflix", "sub", "tmdb"),
        make_record(2, "Apple TV", "rent", "tmdb"),
    ])
    return AvailabilityAggregator(sources=[source], cache=TTLCache(), batch_delay_ms=0), source


@pytest.mark.asyncio
async def test_preference_aware_lookup_does_not_change_cached_result():
    aggregator, source = _aggregator()
    prefs = PlatformPreferences.build(subscription_types=["sub"])

    filtered = await get_preference_aware_availability(aggregator, 1, "Show", preferences=prefs)
    unfiltered = await aggregator.get_availability(1, "Show")

    assert filtered.total_platforms == 1
    assert filtered.filtered_out == 1
    assert unfiltered.total_platforms == 2
    assert source.calls == 1


@pytest.mark.asyncio
async def test_batch_lookup_applies_preferences_to_every_title():
    aggregator, _ = _aggregator()
    prefs = PlatformPreferences.build(excluded_platforms=["Netflix"])

    results = await get_batch_availability_with_preferences(
        aggregator, [TitleRequest(1, "One"), {"tmdbId": 2, "title": "Two"}], prefs,
    )

    assert set(results) == {1, 2}
    for agg in results.values():
        assert [p.provider_name for p in agg.platforms] == ["Apple TV"]
        assert agg.filtered_out == 1
