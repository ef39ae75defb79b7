"""
Input records for the embedding pipeline.

Callers hand these over as plain dicts (camelCase from the web layer or
snake_case from batch jobs); `from_dict` substitutes a documented default for
every missing field except the entity identifier, which is required.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

logger = logging.getLogger(__name__)

# Defaults substituted for missing behavioral fields
DEFAULT_COMPLETION_RATE = 0.5
DEFAULT_SKIP_RATE = 0.2
DEFAULT_BINGE_INTENSITY = "light"
DEFAULT_PREFERRED_LENGTH = "medium"


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present, non-None value among alternative key spellings."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_lower_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


@dataclass(frozen=True)
class BehaviorSignals:
    """How a user watches, as opposed to what they like."""
    completion_rate: float = DEFAULT_COMPLETION_RATE
    skip_rate: float = DEFAULT_SKIP_RATE
    binge_intensity: str = DEFAULT_BINGE_INTENSITY  # heavy | moderate | light
    preferred_length: str = DEFAULT_PREFERRED_LENGTH  # long | medium | short
    watching_times: frozenset[str] = frozenset()
    genre_evolution: Mapping[str, float] = field(default_factory=dict)

    @property
    def engagement(self) -> float:
        return self.completion_rate * (1 - self.skip_rate)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "BehaviorSignals":
        data = data or {}
        evolution = _pick(data, "genre_evolution", "genreEvolution", default={}) or {}
        return cls(
            completion_rate=_as_float(
                _pick(data, "completion_rate", "completionRate"), DEFAULT_COMPLETION_RATE
            ),
            skip_rate=_as_float(_pick(data, "skip_rate", "skipRate"), DEFAULT_SKIP_RATE),
            binge_intensity=_as_lower_str(
                _pick(data, "binge_intensity", "bingePatterns", "binge_patterns")
            ) or DEFAULT_BINGE_INTENSITY,
            preferred_length=_as_lower_str(
                _pick(data, "preferred_length", "preferredShowLength", "preferred_show_length")
            ) or DEFAULT_PREFERRED_LENGTH,
            watching_times=frozenset(
                str(t).lower() for t in _pick(data, "watching_times", "watchingTimes", default=()) or ()
            ),
            genre_evolution={str(k): _as_float(v, 0.0) for k, v in evolution.items()},
        )


@dataclass(frozen=True)
class ContextCues:
    """Situational signals at request time. Unknown values map to neutral 0.5 downstream."""
    current_mood: str | None = None
    time_of_day: str | None = None
    day_of_week: str | None = None
    season: str | None = None
    recent_activity: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ContextCues":
        data = data or {}
        return cls(
            current_mood=_as_lower_str(_pick(data, "current_mood", "currentMood")),
            time_of_day=_as_lower_str(_pick(data, "time_of_day", "timeOfDay")),
            day_of_week=_as_lower_str(_pick(data, "day_of_week", "dayOfWeek")),
            season=_as_lower_str(data.get("season")),
            recent_activity=tuple(
                str(a).lower() for a in _pick(data, "recent_activity", "recentActivity", default=()) or ()
            ),
        )


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    favorite_genres: tuple[str, ...] = ()
    behavior: BehaviorSignals = field(default_factory=BehaviorSignals)
    context: ContextCues = field(default_factory=ContextCues)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserProfile":
        user_id = _pick(data, "user_id", "userId", "id")
        if user_id in (None, ""):
            raise ValueError("UserProfile requires a user id")
        return cls(
            user_id=str(user_id),
            favorite_genres=tuple(_pick(data, "favorite_genres", "favoriteGenres", default=()) or ()),
            behavior=BehaviorSignals.from_dict(_pick(data, "behavior", "behavioralData")),
            context=ContextCues.from_dict(_pick(data, "context", "contextualCues")),
        )


@dataclass(frozen=True)
class ContentProfile:
    title_id: int | str
    genres: tuple[str, ...] = ()
    overview: str = ""
    avg_rating: float = 0.0  # 0-10 scale; 0 means unrated
    popularity: float = 0.0  # normalized 0-1
    vote_count: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContentProfile":
        title_id = _pick(data, "title_id", "tmdb_id", "tmdbId", "id")
        if title_id in (None, ""):
            raise ValueError("ContentProfile requires a title id")
        return cls(
            title_id=title_id,
            genres=tuple(data.get("genres") or ()),
            overview=str(_pick(data, "overview", "synopsis", default="") or ""),
            avg_rating=_as_float(_pick(data, "avg_rating", "avgRating", "vote_average"), 0.0),
            popularity=_as_float(_pick(data, "popularity", "popularityScore"), 0.0),
            vote_count=int(_as_float(_pick(data, "vote_count", "voteCount"), 0)),
        )
