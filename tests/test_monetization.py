import random
from urllib.parse import parse_qs, urlsplit

import pytest

from bingeboard.monetization import (
    affiliate_links,
    affiliate_url,
    generate_tracking_id,
    monetization_metrics,
    search_fallback_url,
)
from bingeboard.platforms import StreamingPlatformRecord, build_aggregate, make_record


@pytest.mark.parametrize("name, url, param", [
    ("Netflix", "https://www.netflix.com/title/80057281", "trkid"),
    ("Amazon Prime Video", "https://www.amazon.com/dp/B01", "tag"),
    ("Hulu", "https://www.hulu.com/series/x", "ref"),
    ("Disney+", "https://www.disneyplus.com/series/x", "cid"),
    ("Max", "https://play.max.com/show/x", "src"),
    ("Apple TV+", "https://tv.apple.com/show/x", "at"),
    ("Paramount+", "https://www.paramountplus.com/shows/xyz", "promo"),
    ("Peacock", "https://www.peacocktv.com/watch/x", "partner"),
])
def test_known_providers_get_their_tracking_parameter(name, url, param):
    record = make_record(1, name, "sub", "tmdb", web_url=url)
    out = affiliate_url(record, "user-1", 1399, "Show")

    assert out.startswith(url + "?")
    assert param in parse_qs(urlsplit(out).query)


def test_amazon_carries_associate_tag():
    record = make_record(1, "Amazon Prime Video", "sub", "tmdb", web_url="https://www.amazon.com/dp/B01")
    query = parse_qs(urlsplit(affiliate_url(record, "u", 1, "Show")).query)
    assert query["tag"] == ["bingeboard-20"]
    assert "ref_" in query


def test_affiliate_provider_without_template_gets_generic_ref():
    record = make_record(1, "Crunchyroll", "sub", "watchmode", web_url="https://www.crunchyroll.com/series/x")
    out = affiliate_url(record, "u", 1, "Show")
    assert out.startswith("https://www.crunchyroll.com/series/x?ref=BINGEBOARD_")


def test_existing_query_string_is_extended():
    record = make_record(1, "Netflix", "sub", "tmdb", web_url="https://www.netflix.com/watch/1?t=30")
    out = affiliate_url(record, "u", 1, "Show", tracking_id="abc")
    assert out == "https://www.netflix.com/watch/1?t=30&trkid=BINGEBOARD_abc"


def test_unknown_affiliate_record_still_appends_ref():
    record = StreamingPlatformRecord(1, "Tubi", "free", "tmdb", web_url="https://tubitv.com/x",
                                     affiliate_supported=True)
    out = affiliate_url(record, "u", 1, "Show")
    assert out
    assert "ref=" in out


def test_non_affiliate_record_returns_plain_link_or_search():
    plain = make_record(1, "Crackle", "free", "watchmode", web_url="https://crackle.com/x")
    assert affiliate_url(plain, "u", 1, "Show") == "https://crackle.com/x"

    no_link = make_record(2, "Netflix", "sub", "tmdb")
    out = affiliate_url(no_link, "u", 1, "Breaking Bad")
    assert out == search_fallback_url("Breaking Bad")
    assert out == "https://www.google.com/search?q=Breaking%20Bad%20streaming"


def test_affiliate_url_requires_ids():
    record = make_record(1, "Netflix", "sub", "tmdb", web_url="https://netflix.com/x")
    with pytest.raises(ValueError):
        affiliate_url(record, "", 1, "Show")
    with pytest.raises(ValueError):
        affiliate_url(record, "u", None, "Show")


def test_tracking_id_segments():
    tid = generate_tracking_id("user-1", 42, "Netflix", timestamp_ms=36 ** 3, rng=random.Random(0))
    parts = tid.split("_")

    assert len(parts) == 5
    assert len(parts[0]) == 6
    assert parts[1] == "16"
    assert parts[2] == "netf"
    assert parts[3] == "1000"
    assert parts[4].isalnum()


def test_tracking_ids_differ_between_calls():
    ids = {generate_tracking_id("u", 1, "Hulu") for _ in range(20)}
    assert len(ids) == 20


def test_monetization_metrics():
    records = [
        make_record(1, "Netflix", "sub", "tmdb"),
        make_record(2, "Max", "sub", "tmdb"),
        make_record(3, "Peacock", "sub", "tmdb"),
        make_record(4, "Crackle", "free", "tmdb"),
        make_record(5, "Hulu", "sub", "tmdb"),
        make_record(6, "Disney+", "sub", "tmdb"),
        make_record(7, "YouTube Premium", "sub", "tmdb"),
    ]
    metrics = monetization_metrics(records)

    assert metrics.affiliate_platforms == 6
    assert metrics.average_commission == pytest.approx((8.5 + 9.0 + 4.8 + 6.0 + 7.2 + 3.2) / 6)
    assert [r.provider_name for r in metrics.top_affiliate_platforms] == [
        "Max", "Netflix", "Disney+", "Hulu", "Peacock",
    ]
    assert metrics.potential_revenue == pytest.approx(6 * 25.50)


def test_monetization_metrics_empty():
    metrics = monetization_metrics([])
    assert metrics.average_commission == 0.0
    assert metrics.potential_revenue == 0.0


def test_affiliate_links_cover_every_platform():
    agg = build_aggregate(1, "Show", "tv", [
        make_record(1, "Netflix", "sub", "tmdb", web_url="https://netflix.com/x"),
        make_record(2, "Crackle", "free", "tmdb"),
    ], {"tmdb": True})
    links = affiliate_links(agg, "u")

    assert set(links) == {"Netflix", "Crackle"}
    assert "trkid=" in links["Netflix"]
    assert links["Crackle"].startswith("https://www.google.com/search?q=")
