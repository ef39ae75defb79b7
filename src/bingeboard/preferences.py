"""
Per-user filtering of availability results.

Filtering never touches the aggregate it is given (which is usually the
shared cached object); it returns a new aggregate with recomputed counts and
`filtered_out` set to the number of platforms removed.
"""
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .availability import AvailabilityAggregator, TitleRequest
from .platforms import (
    PLATFORM_TYPES,
    AvailabilityAggregate,
    StreamingPlatformRecord,
    build_aggregate,
    normalize_platform_name,
)

logger = logging.getLogger(__name__)

# Long-form distribution names -> platform type
TYPE_ALIASES = {
    "subscription": "sub",
    "flatrate": "sub",
    "rental": "rent",
    "purchase": "buy",
    "ads": "free",
}


def _name_set(names: Iterable[str] | None) -> frozenset[str]:
    return frozenset(normalize_platform_name(n).casefold() for n in names or () if n)


@dataclass(frozen=True)
class PlatformPreferences:
    preferred_platforms: frozenset[str] = frozenset()  # casefolded canonical names
    excluded_platforms: frozenset[str] = frozenset()
    subscription_types: frozenset[str] = frozenset()
    only_affiliate_supported: bool = False

    @classmethod
    def build(
        cls,
        preferred_platforms: Iterable[str] | None = None,
        excluded_platforms: Iterable[str] | None = None,
        subscription_types: Iterable[str] | None = None,
        only_affiliate_supported: bool = False,
    ) -> "PlatformPreferences":
        types = frozenset(
            TYPE_ALIASES.get(t.strip().lower(), t.strip().lower()) for t in subscription_types or () if t
        )
        unknown = types - PLATFORM_TYPES
        if unknown:
            # Unknown types stay in the set and match no record
            logger.warning(f"Unknown subscription types match nothing: {sorted(unknown)}")
        return cls(
            preferred_platforms=_name_set(preferred_platforms),
            excluded_platforms=_name_set(excluded_platforms),
            subscription_types=types,
            only_affiliate_supported=bool(only_affiliate_supported),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "PlatformPreferences":
        data = data or {}
        return cls.build(
            preferred_platforms=data.get("preferred_platforms") or data.get("preferredPlatforms"),
            excluded_platforms=data.get("excluded_platforms") or data.get("excludedPlatforms"),
            subscription_types=data.get("subscription_types") or data.get("subscriptionTypes"),
            only_affiliate_supported=data.get("only_affiliate_supported", data.get("onlyAffiliateSupported", False)),
        )

    @property
    def is_empty(self) -> bool:
        return not (
            self.preferred_platforms
            or self.excluded_platforms
            or self.subscription_types
            or self.only_affiliate_supported
        )

    def allows(self, record: StreamingPlatformRecord) -> bool:
        name = normalize_platform_name(record.provider_name).casefold()
        if self.preferred_platforms and name not in self.preferred_platforms:
            return False
        if name in self.excluded_platforms:
            return False
        if self.subscription_types and record.type not in self.subscription_types:
            return False
        if self.only_affiliate_supported and not record.affiliate_supported:
            return False
        return True


def filter_aggregate(aggregate: AvailabilityAggregate, preferences: PlatformPreferences | None) -> AvailabilityAggregate:
    """New aggregate holding only the platforms the preferences allow."""
    preferences = preferences or PlatformPreferences()
    kept = [p for p in aggregate.platforms if preferences.allows(p)]
    return build_aggregate(
        aggregate.title_id,
        aggregate.title,
        aggregate.media_type,
        kept,
        aggregate.sources,
        filtered_out=len(aggregate.platforms) - len(kept),
        dedupe=False,
    )


async def get_preference_aware_availability(
    aggregator: AvailabilityAggregator,
    title_id: int | str,
    title: str = "",
    media_type: str = "tv",
    preferences: PlatformPreferences | None = None,
    external_id: str | None = None,
) -> AvailabilityAggregate:
    aggregate = await aggregator.get_availability(title_id, title, media_type, external_id)
    return filter_aggregate(aggregate, preferences)


async def get_batch_availability_with_preferences(
    aggregator: AvailabilityAggregator,
    titles: Iterable[TitleRequest | Mapping[str, Any]],
    preferences: PlatformPreferences | None = None,
) -> dict[int | str, AvailabilityAggregate]:
    results = await aggregator.get_batch_availability(titles)
    return {title_id: filter_aggregate(agg, preferences) for title_id, agg in results.items()}
