"""
Dense embeddings for users and titles.

Each entity is described by a few sub-embeddings (genre, behavior, context
for users; genre, theme, quality for titles) that are concatenated into a
single L2-normalized composite vector:

    user composite    = genre(8) | behavior(6) | context(8)   -> 22 dims
    content composite = genre(8) | theme(8)    | quality(6)   -> 22 dims

Genre and behavior vectors come from an encoder strategy chosen once when the
generator is built: small learned networks when weights are available on
disk, otherwise closed-form feature engineering with the same output shape.
Context, theme and quality features are closed-form in both cases.
"""
import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, Sequence

import numpy as np

from .cache import TTLCache
from .config import EMBEDDING_CACHE_MAX_ENTRIES, EMBEDDING_CACHE_TTL, MODEL_DIR, MODEL_VERSION
from .profiles import BehaviorSignals, ContentProfile, ContextCues, UserProfile

logger = logging.getLogger(__name__)

GENRE_VOCABULARY = (
    'Action', 'Adventure', 'Animation', 'Comedy', 'Crime', 'Documentary',
    'Drama', 'Family', 'Fantasy', 'History', 'Horror', 'Music',
    'Mystery', 'Romance', 'Sci-Fi', 'Thriller', 'War', 'Western',
)
_GENRE_INDEX = {g.lower(): i for i, g in enumerate(GENRE_VOCABULARY)}

# Catalog spellings that map onto one or more vocabulary entries
GENRE_ALIASES = {
    'science fiction': ('Sci-Fi',),
    'sci-fi & fantasy': ('Sci-Fi', 'Fantasy'),
    'action & adventure': ('Action', 'Adventure'),
    'war & politics': ('War',),
    'kids': ('Family',),
    'musical': ('Music',),
}

# Every vocabulary genre belongs to exactly one family; the closed-form genre
# embedding is the fraction of each family's genres that are present.
GENRE_FAMILIES = (
    ('action', ('Action', 'Adventure', 'War', 'Western')),
    ('comedy', ('Comedy', 'Family')),
    ('drama', ('Drama', 'History')),
    ('crime', ('Crime', 'Mystery')),
    ('suspense', ('Thriller', 'Horror')),
    ('speculative', ('Sci-Fi', 'Fantasy', 'Animation')),
    ('romance', ('Romance', 'Music')),
    ('documentary', ('Documentary',)),
)

GENRE_EMBEDDING_DIM = len(GENRE_FAMILIES)
BEHAVIOR_EMBEDDING_DIM = 6
BEHAVIOR_MODEL_INPUT_DIM = 10
CONTEXT_EMBEDDING_DIM = 8
QUALITY_EMBEDDING_DIM = 6

MOOD_SCORES = {'light': 0.2, 'comedy': 0.3, 'thought-provoking': 0.7, 'intense': 0.9, 'action': 0.8}
TIME_SCORES = {'morning': 0.2, 'afternoon': 0.5, 'evening': 0.7, 'night': 0.9}
DAY_SCORES = {
    'monday': 0.1, 'tuesday': 0.2, 'wednesday': 0.3, 'thursday': 0.4,
    'friday': 0.7, 'saturday': 0.9, 'sunday': 0.8,
}
SEASON_SCORES = {'winter': 1.0, 'fall': 0.8, 'autumn': 0.8}
BINGE_SCORES = {'heavy': 1.0, 'moderate': 0.5}
LENGTH_SCORES = {'long': 1.0, 'medium': 0.5}
NEUTRAL_SCORE = 0.5

THEME_KEYWORDS = {
    'action': ('action', 'fight', 'battle', 'war', 'chase', 'explosion'),
    'drama': ('family', 'relationship', 'emotion', 'life', 'love', 'heart'),
    'mystery': ('mystery', 'secret', 'hidden', 'investigate', 'solve', 'detective'),
    'comedy': ('funny', 'laugh', 'humor', 'comic', 'joke', 'amusing'),
    'thriller': ('suspense', 'tension', 'dangerous', 'threat', 'chase', 'escape'),
    'scifi': ('future', 'space', 'technology', 'alien', 'robot', 'science'),
    'horror': ('scary', 'fear', 'dark', 'evil', 'monster', 'nightmare'),
    'romance': ('love', 'romantic', 'relationship', 'couple', 'kiss', 'heart'),
}
THEME_EMBEDDING_DIM = len(THEME_KEYWORDS)
_THEME_PATTERNS = {
    theme: [re.compile(rf"\b{re.escape(kw)}") for kw in keywords]
    for theme, keywords in THEME_KEYWORDS.items()
}

HIGH_QUALITY_RATING = 8.5
LOW_QUALITY_RATING = 6.0
HIGH_POPULARITY = 0.8
VOTE_COUNT_CAP = 10_000

USER_EMBEDDING_DIM = GENRE_EMBEDDING_DIM + BEHAVIOR_EMBEDDING_DIM + CONTEXT_EMBEDDING_DIM
CONTENT_EMBEDDING_DIM = GENRE_EMBEDDING_DIM + THEME_EMBEDDING_DIM + QUALITY_EMBEDDING_DIM

ENCODER_WEIGHTS_TEMPLATE = "encoders-{version}.npz"


# ---------------------------------------------------------------------------
# Closed-form features
# ---------------------------------------------------------------------------

def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale to unit length; a zero vector is returned unchanged."""
    vec = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vec)
    if norm == 0:
        return vec.copy()
    return vec / norm


def genre_one_hot(genres: Sequence[str]) -> np.ndarray:
    """Membership vector over GENRE_VOCABULARY; unknown labels are ignored."""
    vec = np.zeros(len(GENRE_VOCABULARY))
    for genre in genres or ():
        key = str(genre).strip().lower()
        targets = GENRE_ALIASES.get(key)
        if targets is None:
            targets = (key,)
        for target in targets:
            idx = _GENRE_INDEX.get(target.lower())
            if idx is not None:
                vec[idx] = 1.0
    return vec


def _build_family_projection() -> np.ndarray:
    projection = np.zeros((len(GENRE_VOCABULARY), GENRE_EMBEDDING_DIM))
    for col, (_, members) in enumerate(GENRE_FAMILIES):
        for genre in members:
            projection[_GENRE_INDEX[genre.lower()], col] = 1.0 / len(members)
    return projection


GENRE_FAMILY_PROJECTION = _build_family_projection()


def behavior_features(behavior: BehaviorSignals) -> np.ndarray:
    """
    Six closed-form behavior signals: completion rate, skip rate, binge
    intensity, preferred length, time-tag diversity and engagement.
    """
    return np.array([
        behavior.completion_rate,
        behavior.skip_rate,
        BINGE_SCORES.get(behavior.binge_intensity, 0.0),
        LENGTH_SCORES.get(behavior.preferred_length, 0.0),
        min(1.0, len(behavior.watching_times) / 7),
        behavior.engagement,
    ], dtype=np.float64)


def behavior_model_features(behavior: BehaviorSignals) -> np.ndarray:
    """Ten raw inputs for the learned behavior encoder."""
    evolution = behavior.genre_evolution or {}
    drift = sum(evolution.values()) / len(evolution) if evolution else NEUTRAL_SCORE
    return np.array([
        behavior.completion_rate,
        behavior.skip_rate,
        BINGE_SCORES.get(behavior.binge_intensity, 0.0),
        LENGTH_SCORES.get(behavior.preferred_length, 0.0),
        min(1.0, len(behavior.watching_times) / 7),
        drift,
        behavior.engagement,
        1.0 if 'night' in behavior.watching_times else 0.0,
        1.0 if 'weekend' in behavior.watching_times else 0.0,
        len(evolution) / len(GENRE_VOCABULARY),
    ], dtype=np.float64)


def context_features(context: ContextCues) -> np.ndarray:
    recent = context.recent_activity
    return np.array([
        MOOD_SCORES.get(context.current_mood, NEUTRAL_SCORE),
        TIME_SCORES.get(context.time_of_day, NEUTRAL_SCORE),
        DAY_SCORES.get(context.day_of_week, NEUTRAL_SCORE),
        SEASON_SCORES.get(context.season, NEUTRAL_SCORE),
        min(1.0, len(recent) / 5),
        1.0 if 'completed series' in recent else 0.0,
        1.0 if context.time_of_day == 'night' else 0.0,
        1.0 if context.day_of_week in ('saturday', 'sunday', 'weekend') else 0.0,
    ], dtype=np.float64)


def theme_scores(overview: str) -> np.ndarray:
    """Fraction of each theme's keywords found in the synopsis."""
    if not overview:
        return np.zeros(THEME_EMBEDDING_DIM)
    text = overview.lower()
    return np.array([
        sum(1 for pattern in patterns if pattern.search(text)) / len(patterns)
        for patterns in _THEME_PATTERNS.values()
    ], dtype=np.float64)


def quality_features(content: ContentProfile) -> np.ndarray:
    rating = max(0.0, min(10.0, content.avg_rating))
    votes = max(0, content.vote_count)
    # An unrated title (rating 0) is not flagged as low quality
    return np.array([
        rating / 10,
        max(0.0, min(1.0, content.popularity)),
        min(1.0, math.log1p(votes) / math.log1p(VOTE_COUNT_CAP)),
        1.0 if rating > HIGH_QUALITY_RATING else 0.0,
        1.0 if 0 < rating < LOW_QUALITY_RATING else 0.0,
        1.0 if content.popularity > HIGH_POPULARITY else 0.0,
    ], dtype=np.float64)


# ---------------------------------------------------------------------------
# Learned networks
# ---------------------------------------------------------------------------

_ACTIVATIONS = {
    'relu': lambda x: np.maximum(x, 0.0),
    'tanh': np.tanh,
    'sigmoid': lambda x: 1.0 / (1.0 + np.exp(-x)),
    'linear': lambda x: x,
}


class DenseNetwork:
    """Feed-forward network evaluated with numpy; hidden layers use ReLU."""

    def __init__(self, layers: Sequence[tuple[np.ndarray, np.ndarray]], output_activation: str = 'tanh'):
        if not layers:
            raise ValueError("DenseNetwork needs at least one layer")
        if output_activation not in _ACTIVATIONS:
            raise ValueError(f"Unknown activation '{output_activation}'")
        self.layers = [(np.asarray(w, dtype=np.float64), np.asarray(b, dtype=np.float64)) for w, b in layers]
        for (w, b), (next_w, _) in zip(self.layers, self.layers[1:] + [(None, None)]):
            if w.ndim != 2 or b.shape != (w.shape[1],):
                raise ValueError(f"Layer shape mismatch: W{w.shape} b{b.shape}")
            if next_w is not None and next_w.shape[0] != w.shape[1]:
                raise ValueError(f"Layer chain mismatch: {w.shape} -> {next_w.shape}")
        self.output_activation = output_activation

    @property
    def input_dim(self) -> int:
        return self.layers[0][0].shape[0]

    @property
    def output_dim(self) -> int:
        return self.layers[-1][0].shape[1]

    def __call__(self, x: np.ndarray) -> np.ndarray:
        out = np.asarray(x, dtype=np.float64)
        if out.shape[-1] != self.input_dim:
            raise ValueError(f"Expected input of size {self.input_dim}, got {out.shape[-1]}")
        for w, b in self.layers[:-1]:
            out = _ACTIVATIONS['relu'](out @ w + b)
        w, b = self.layers[-1]
        return _ACTIVATIONS[self.output_activation](out @ w + b)

    def to_arrays(self, name: str) -> dict[str, np.ndarray]:
        arrays = {f"{name}/activation": np.array(self.output_activation)}
        for i, (w, b) in enumerate(self.layers):
            arrays[f"{name}/{i}/W"] = w
            arrays[f"{name}/{i}/b"] = b
        return arrays

    @classmethod
    def from_arrays(cls, arrays: Mapping[str, np.ndarray], name: str) -> "DenseNetwork":
        layers = []
        i = 0
        while f"{name}/{i}/W" in arrays:
            layers.append((arrays[f"{name}/{i}/W"], arrays[f"{name}/{i}/b"]))
            i += 1
        if not layers:
            raise KeyError(f"No layers stored for network '{name}'")
        activation = str(arrays[f"{name}/activation"]) if f"{name}/activation" in arrays else 'tanh'
        return cls(layers, output_activation=activation)


def save_networks(path: str | Path, networks: Mapping[str, DenseNetwork]) -> Path:
    """Persist named networks into one .npz file (used by training jobs)."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    arrays: dict[str, np.ndarray] = {}
    for name, net in networks.items():
        arrays.update(net.to_arrays(name))
    np.savez_compressed(out, **arrays)
    return out


def load_networks(path: str | Path, names: Sequence[str]) -> dict[str, DenseNetwork]:
    with np.load(Path(path), allow_pickle=False) as data:
        arrays = {key: data[key] for key in data.files}
    return {name: DenseNetwork.from_arrays(arrays, name) for name in names}


# ---------------------------------------------------------------------------
# Encoder strategies
# ---------------------------------------------------------------------------

class EncoderStrategy(Protocol):
    name: str

    def encode_genres(self, genres: Sequence[str]) -> np.ndarray: ...

    def encode_behavior(self, behavior: BehaviorSignals) -> np.ndarray: ...


class ClosedFormEncoder:
    """Deterministic feature engineering used when no trained encoders exist."""

    name = "closed_form"

    def encode_genres(self, genres: Sequence[str]) -> np.ndarray:
        return genre_one_hot(genres) @ GENRE_FAMILY_PROJECTION

    def encode_behavior(self, behavior: BehaviorSignals) -> np.ndarray:
        return behavior_features(behavior)


class LearnedEncoder:
    """Trained genre (18 -> 8) and behavior (10 -> 6) encoders."""

    name = "learned"

    def __init__(self, genre_network: DenseNetwork, behavior_network: DenseNetwork):
        expected = {
            'genre': (genre_network, len(GENRE_VOCABULARY), GENRE_EMBEDDING_DIM),
            'behavior': (behavior_network, BEHAVIOR_MODEL_INPUT_DIM, BEHAVIOR_EMBEDDING_DIM),
        }
        for label, (net, in_dim, out_dim) in expected.items():
            if (net.input_dim, net.output_dim) != (in_dim, out_dim):
                raise ValueError(
                    f"{label} encoder must map {in_dim} -> {out_dim}, got {net.input_dim} -> {net.output_dim}"
                )
        self.genre_network = genre_network
        self.behavior_network = behavior_network

    def encode_genres(self, genres: Sequence[str]) -> np.ndarray:
        return self.genre_network(genre_one_hot(genres))

    def encode_behavior(self, behavior: BehaviorSignals) -> np.ndarray:
        return self.behavior_network(behavior_model_features(behavior))

    @classmethod
    def load(cls, path: str | Path) -> "LearnedEncoder":
        nets = load_networks(path, ('genre', 'behavior'))
        return cls(nets['genre'], nets['behavior'])


def load_encoder_strategy(model_dir: str | Path = MODEL_DIR, model_version: str = MODEL_VERSION) -> EncoderStrategy:
    """Pick the learned encoder if its weights load cleanly, else the closed-form one."""
    path = Path(model_dir) / ENCODER_WEIGHTS_TEMPLATE.format(version=model_version)
    if not path.exists():
        logger.warning(f"Encoder weights not found at {path}; using closed-form embeddings")
        return ClosedFormEncoder()
    try:
        strategy = LearnedEncoder.load(path)
        logger.info(f"Loaded learned encoders from {path}")
        return strategy
    except (OSError, KeyError, ValueError) as exc:
        logger.warning(f"Encoder model unavailable ({type(exc).__name__}: {exc}); using closed-form embeddings")
        return ClosedFormEncoder()


# ---------------------------------------------------------------------------
# Embeddings and generator
# ---------------------------------------------------------------------------

def _frozen(vec: np.ndarray) -> np.ndarray:
    arr = np.array(vec, dtype=np.float64)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class UserEmbedding:
    user_id: str
    genre: np.ndarray
    behavior: np.ndarray
    context: np.ndarray
    composite: np.ndarray
    model_version: str


@dataclass(frozen=True)
class ContentEmbedding:
    title_id: int | str
    genre: np.ndarray
    theme: np.ndarray
    quality: np.ndarray
    composite: np.ndarray
    model_version: str


def _default_embedding_cache() -> TTLCache:
    return TTLCache(default_ttl=EMBEDDING_CACHE_TTL, max_entries=EMBEDDING_CACHE_MAX_ENTRIES)


class EmbeddingGenerator:
    """
    Produces user and content embeddings and memoizes them per model version.

    The encoder strategy is resolved once per model version; callers never
    branch on which path is active. Caches are injected so tests and multiple
    model versions can run side by side; the default ones are bounded by
    EMBEDDING_CACHE_TTL and EMBEDDING_CACHE_MAX_ENTRIES.
    """

    def __init__(
        self,
        strategy: EncoderStrategy | None = None,
        user_cache: TTLCache | None = None,
        content_cache: TTLCache | None = None,
        model_version: str = MODEL_VERSION,
        model_dir: str | Path = MODEL_DIR,
    ):
        self.model_version = model_version
        self.model_dir = Path(model_dir)
        # Injected strategies are kept across version bumps; loaded ones are reloaded
        self._owns_strategy = strategy is None
        self.strategy = strategy if strategy is not None else load_encoder_strategy(self.model_dir, model_version)
        self.user_cache = user_cache if user_cache is not None else _default_embedding_cache()
        self.content_cache = content_cache if content_cache is not None else _default_embedding_cache()

    def embed_user(self, profile: UserProfile) -> UserEmbedding:
        if not profile.user_id:
            raise ValueError("embed_user requires a user id")
        key = (profile.user_id, self.model_version)
        cached = self.user_cache.get(key)
        if cached is not None:
            return cached

        genre = self.strategy.encode_genres(profile.favorite_genres)
        behavior = self.strategy.encode_behavior(profile.behavior)
        context = context_features(profile.context)
        composite = l2_normalize(np.concatenate([genre, behavior, context]))

        embedding = UserEmbedding(
            user_id=profile.user_id,
            genre=_frozen(genre),
            behavior=_frozen(behavior),
            context=_frozen(context),
            composite=_frozen(composite),
            model_version=self.model_version,
        )
        self.user_cache.set(key, embedding)
        return embedding

    def embed_content(self, profile: ContentProfile) -> ContentEmbedding:
        if profile.title_id in (None, ""):
            raise ValueError("embed_content requires a title id")
        key = (profile.title_id, self.model_version)
        cached = self.content_cache.get(key)
        if cached is not None:
            return cached

        genre = self.strategy.encode_genres(profile.genres)
        theme = theme_scores(profile.overview)
        quality = quality_features(profile)
        composite = l2_normalize(np.concatenate([genre, theme, quality]))

        embedding = ContentEmbedding(
            title_id=profile.title_id,
            genre=_frozen(genre),
            theme=_frozen(theme),
            quality=_frozen(quality),
            composite=_frozen(composite),
            model_version=self.model_version,
        )
        self.content_cache.set(key, embedding)
        return embedding

    def bump_version(self, model_version: str) -> None:
        """
        Switch model version; every previously cached embedding is dropped.

        A strategy this generator loaded itself is re-resolved from the new
        version's weight file, so embeddings stamped with a version are always
        computed by that version's encoders.
        """
        logger.info(f"Embedding model version {self.model_version} -> {model_version}; clearing caches")
        if self._owns_strategy:
            self.strategy = load_encoder_strategy(self.model_dir, model_version)
        self.model_version = model_version
        self.clear_caches()

    def clear_caches(self) -> None:
        self.user_cache.clear()
        self.content_cache.clear()

    def metrics(self) -> dict:
        return {
            "model_version": self.model_version,
            "strategy": self.strategy.name,
            "user_cache_size": len(self.user_cache),
            "content_cache_size": len(self.content_cache),
        }
