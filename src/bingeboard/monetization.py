"""Affiliate deep links and revenue summaries for availability results."""
import hashlib
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable
from urllib.parse import quote, urlsplit, urlunsplit

from .config import (
    AFFILIATE_PREFIX,
    AMAZON_ASSOCIATE_TAG,
    REVENUE_PER_AFFILIATE_PLATFORM,
    TOP_AFFILIATE_LIMIT,
)
from .platforms import AvailabilityAggregate, StreamingPlatformRecord
from .utils import provider_slug, to_base36

logger = logging.getLogger(__name__)

SEARCH_FALLBACK_URL = "https://www.google.com/search?q={query}"
GENERIC_TRACKING_PARAM = "ref"

# Provider -> query fragment builder taking the tracking id
AFFILIATE_TEMPLATES: dict[str, Callable[[str], str]] = {
    "Netflix": lambda tid: f"trkid={AFFILIATE_PREFIX}_{tid}",
    "Amazon Prime Video": lambda tid: f"tag={AMAZON_ASSOCIATE_TAG}&ref_={tid}",
    "Hulu": lambda tid: f"ref={AFFILIATE_PREFIX}_{tid}",
    "Disney+": lambda tid: f"cid={AFFILIATE_PREFIX}_{tid}",
    "Max": lambda tid: f"src={AFFILIATE_PREFIX}_{tid}",
    "Apple TV+": lambda tid: f"at={AFFILIATE_PREFIX}_{tid}",
    "Paramount+": lambda tid: f"promo={AFFILIATE_PREFIX}_{tid}",
    "Peacock": lambda tid: f"partner={AFFILIATE_PREFIX}_{tid}",
}


def _title_segment(title_id: int | str) -> str:
    try:
        return to_base36(int(title_id))
    except (TypeError, ValueError):
        return provider_slug(str(title_id)) or "0"


def generate_tracking_id(
    user_id: str,
    title_id: int | str,
    provider_name: str,
    timestamp_ms: int | None = None,
    rng: random.Random | None = None,
) -> str:
    """
    user-hash _ title-id(base36) _ provider-slug(4) _ timestamp-ms(base36) _ random(base36)

    Good enough to attribute clicks; not meant to be unguessable.
    """
    user_hash = hashlib.sha1(str(user_id).encode("utf-8")).hexdigest()[:6]
    ts = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    nonce = (rng or random).getrandbits(32)
    return "_".join([
        user_hash,
        _title_segment(title_id),
        provider_slug(provider_name, 4) or "none",
        to_base36(ts),
        to_base36(nonce),
    ])


def _append_query(url: str, fragment: str) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&{fragment}" if parts.query else fragment
    return urlunsplit(parts._replace(query=query))


def search_fallback_url(title: str) -> str:
    return SEARCH_FALLBACK_URL.format(query=quote(f"{title} streaming"))


def affiliate_url(
    record: StreamingPlatformRecord,
    user_id: str,
    title_id: int | str,
    title: str,
    tracking_id: str | None = None,
) -> str:
    """
    Outbound link for a platform record.

    Non-affiliate records (or records without a web link) get their plain
    link, or a search-engine fallback when there is none. Affiliate records
    get the provider's tracking parameter, or a generic `ref=` when the
    provider has no template.
    """
    if not user_id:
        raise ValueError("affiliate_url requires a user id")
    if title_id in (None, ""):
        raise ValueError("affiliate_url requires a title id")

    if not record.affiliate_supported or not record.web_url:
        return record.web_url or search_fallback_url(title)

    tid = tracking_id or generate_tracking_id(user_id, title_id, record.provider_name)
    template = AFFILIATE_TEMPLATES.get(record.provider_name)
    if template is None:
        fragment = f"{GENERIC_TRACKING_PARAM}={AFFILIATE_PREFIX}_{tid}"
    else:
        fragment = template(tid)
    return _append_query(record.web_url, fragment)


def affiliate_links(aggregate: AvailabilityAggregate, user_id: str) -> dict[str, str]:
    """Provider name -> outbound link for every platform in an aggregate."""
    return {
        p.provider_name: affiliate_url(p, user_id, aggregate.title_id, aggregate.title)
        for p in aggregate.platforms
    }


@dataclass(frozen=True)
class MonetizationMetrics:
    affiliate_platforms: int
    average_commission: float
    top_affiliate_platforms: tuple[StreamingPlatformRecord, ...]
    potential_revenue: float


def monetization_metrics(records: Iterable[StreamingPlatformRecord]) -> MonetizationMetrics:
    affiliate = [r for r in records if r.affiliate_supported]
    total = sum(r.commission_rate or 0.0 for r in affiliate)
    top = sorted(affiliate, key=lambda r: (-(r.commission_rate or 0.0), r.provider_name))
    return MonetizationMetrics(
        affiliate_platforms=len(affiliate),
        average_commission=total / len(affiliate) if affiliate else 0.0,
        top_affiliate_platforms=tuple(top[:TOP_AFFILIATE_LIMIT]),
        potential_revenue=len(affiliate) * REVENUE_PER_AFFILIATE_PLATFORM,
    )
