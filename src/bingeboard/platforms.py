"""
Canonical "where to watch" records and the reconciliation rules applied to
them: provider-name normalization, affiliate commission lookup, record
quality scoring, de-duplication and summary counts.
"""
import logging
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

PLATFORM_TYPES = frozenset({"sub", "buy", "rent", "free"})

# Provider-specific spellings -> canonical provider name
PLATFORM_ALIASES = {
    "Disney Plus": "Disney+",
    "Amazon Prime": "Amazon Prime Video",
    "Apple TV Plus": "Apple TV+",
    "Paramount Plus": "Paramount+",
    "HBO Max": "Max",
    "Peacock Premium": "Peacock",
    "YouTube TV": "YouTube Premium",
}
_ALIASES_FOLDED = {k.casefold(): v for k, v in PLATFORM_ALIASES.items()}

# Commission (%) for providers we hold affiliate agreements with
AFFILIATE_COMMISSIONS = {
    "Netflix": 8.5,
    "Amazon Prime Video": 4.5,
    "Hulu": 6.0,
    "Disney+": 7.2,
    "Max": 9.0,
    "Apple TV+": 5.0,
    "Paramount+": 5.5,
    "Peacock": 4.8,
    "Crunchyroll": 6.5,
    "YouTube Premium": 3.2,
    "Showtime": 7.0,
    "Starz": 6.8,
}

# Reliability bonus per source; also the tie-break order when scores match
SOURCE_TIERS = {
    "tmdb": 3,
    "watchmode": 2,
    "streaming_availability": 2,
    "utelly": 1,
}

# Record completeness weights
SCORE_LOGO = 2
SCORE_WEB_URL = 3
SCORE_APP_URL = 1
SCORE_PRICE = 1
SCORE_FORMAT = 1
SCORE_AFFILIATE = 2


def normalize_platform_name(name: str) -> str:
    cleaned = " ".join((name or "").split())
    return _ALIASES_FOLDED.get(cleaned.casefold(), cleaned)


def commission_rate(name: str) -> float | None:
    return AFFILIATE_COMMISSIONS.get(normalize_platform_name(name))


@dataclass(frozen=True)
class StreamingPlatformRecord:
    provider_id: int
    provider_name: str
    type: str
    source: str
    logo_path: str | None = None
    web_url: str | None = None
    ios_url: str | None = None
    android_url: str | None = None
    price: float | None = None
    format: str | None = None
    affiliate_supported: bool = False
    commission_rate: float | None = None

    def __post_init__(self):
        if self.type not in PLATFORM_TYPES:
            raise ValueError(f"Unknown platform type '{self.type}' for {self.provider_name}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StreamingPlatformRecord":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


def make_record(
    provider_id: int,
    provider_name: str,
    type: str,
    source: str,
    **extra,
) -> StreamingPlatformRecord:
    """Build a record with the canonical name and affiliate fields filled in."""
    name = normalize_platform_name(provider_name)
    rate = AFFILIATE_COMMISSIONS.get(name)
    return StreamingPlatformRecord(
        provider_id=int(provider_id),
        provider_name=name,
        type=type,
        source=source,
        affiliate_supported=rate is not None,
        commission_rate=rate,
        **extra,
    )


def record_score(record: StreamingPlatformRecord) -> int:
    """Completeness score; higher wins during de-duplication."""
    score = 0
    if record.logo_path:
        score += SCORE_LOGO
    if record.web_url:
        score += SCORE_WEB_URL
    if record.ios_url or record.android_url:
        score += SCORE_APP_URL
    if record.price is not None:
        score += SCORE_PRICE
    if record.format:
        score += SCORE_FORMAT
    if record.affiliate_supported:
        score += SCORE_AFFILIATE
    return score + SOURCE_TIERS.get(record.source, 0)


def dedupe_key(record: StreamingPlatformRecord) -> str:
    return normalize_platform_name(record.provider_name).casefold()


def _preference(record: StreamingPlatformRecord) -> tuple:
    # Highest score first, then most reliable source, then lowest provider id
    return (-record_score(record), -SOURCE_TIERS.get(record.source, 0), record.source, record.provider_id)


def dedupe_records(records: Iterable[StreamingPlatformRecord]) -> list[StreamingPlatformRecord]:
    """
    Keep one record per provider, choosing the best-scoring one.

    The result does not depend on input order: ties are broken by source
    tier, source name and provider id, and the output is sorted by name.
    """
    best: dict[str, StreamingPlatformRecord] = {}
    for record in records:
        key = dedupe_key(record)
        current = best.get(key)
        if current is None or _preference(record) < _preference(current):
            best[key] = record
    return [best[k] for k in sorted(best)]


@dataclass(frozen=True)
class PlatformStats:
    total: int
    affiliate: int
    premium: int
    free: int


def compute_stats(records: Iterable[StreamingPlatformRecord]) -> PlatformStats:
    records = list(records)
    return PlatformStats(
        total=len(records),
        affiliate=sum(1 for r in records if r.affiliate_supported),
        premium=sum(1 for r in records if r.type == "sub" or (r.price is not None and r.price > 0)),
        free=sum(1 for r in records if r.type == "free" or r.price == 0),
    )


@dataclass(frozen=True)
class AvailabilityAggregate:
    """Cross-provider availability for one title. Replaced wholesale, never edited."""
    title_id: int | str
    title: str
    media_type: str
    platforms: tuple[StreamingPlatformRecord, ...]
    total_platforms: int
    affiliate_platforms: int
    premium_platforms: int
    free_platforms: int
    sources: Mapping[str, bool] = field(default_factory=dict)
    filtered_out: int = 0

    def __post_init__(self):
        object.__setattr__(self, "platforms", tuple(self.platforms))
        object.__setattr__(self, "sources", MappingProxyType(dict(self.sources)))

    @property
    def successful_sources(self) -> list[str]:
        return [name for name, ok in self.sources.items() if ok]

    def to_dict(self) -> dict:
        return {
            "title_id": self.title_id,
            "title": self.title,
            "media_type": self.media_type,
            "platforms": [p.to_dict() for p in self.platforms],
            "total_platforms": self.total_platforms,
            "affiliate_platforms": self.affiliate_platforms,
            "premium_platforms": self.premium_platforms,
            "free_platforms": self.free_platforms,
            "sources": dict(self.sources),
            "filtered_out": self.filtered_out,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AvailabilityAggregate":
        return cls(
            title_id=data["title_id"],
            title=data.get("title", ""),
            media_type=data.get("media_type", "movie"),
            platforms=tuple(StreamingPlatformRecord.from_dict(p) for p in data.get("platforms", [])),
            total_platforms=data["total_platforms"],
            affiliate_platforms=data["affiliate_platforms"],
            premium_platforms=data["premium_platforms"],
            free_platforms=data["free_platforms"],
            sources=data.get("sources", {}),
            filtered_out=data.get("filtered_out", 0),
        )


def build_aggregate(
    title_id: int | str,
    title: str,
    media_type: str,
    records: Iterable[StreamingPlatformRecord],
    sources: Mapping[str, bool],
    filtered_out: int = 0,
    dedupe: bool = True,
) -> AvailabilityAggregate:
    platforms = dedupe_records(records) if dedupe else list(records)
    stats = compute_stats(platforms)
    return AvailabilityAggregate(
        title_id=title_id,
        title=title,
        media_type=media_type,
        platforms=tuple(platforms),
        total_platforms=stats.total,
        affiliate_platforms=stats.affiliate,
        premium_platforms=stats.premium,
        free_platforms=stats.free,
        sources=sources,
        filtered_out=filtered_out,
    )
