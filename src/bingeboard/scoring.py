"""
Compatibility scoring between a user embedding and a content embedding.

Scores are always in [0, 1]. The learned strategy evaluates a small network
over the concatenated composites with a sigmoid output; the cosine strategy
clamps negative similarity to 0 so both paths share one bounded scale.
"""
import logging
from pathlib import Path
from typing import Iterable, Protocol

import numpy as np

from .config import MODEL_DIR, MODEL_VERSION
from .embeddings import (
    CONTENT_EMBEDDING_DIM,
    USER_EMBEDDING_DIM,
    ContentEmbedding,
    DenseNetwork,
    UserEmbedding,
    load_networks,
)

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHTS_TEMPLATE = "similarity-{version}.npz"


class SimilarityStrategy(Protocol):
    name: str

    def similarity(self, user_vec: np.ndarray, content_vec: np.ndarray) -> float: ...


class CosineSimilarity:
    name = "cosine"

    def similarity(self, user_vec: np.ndarray, content_vec: np.ndarray) -> float:
        norm = np.linalg.norm(user_vec) * np.linalg.norm(content_vec)
        if norm == 0:
            return 0.0
        cos = float(np.dot(user_vec, content_vec) / norm)
        return min(1.0, max(0.0, cos))


class LearnedSimilarity:
    """Sigmoid-bounded network over [user composite | content composite]."""

    name = "learned"

    def __init__(self, network: DenseNetwork):
        expected_in = USER_EMBEDDING_DIM + CONTENT_EMBEDDING_DIM
        if network.input_dim != expected_in or network.output_dim != 1:
            raise ValueError(
                f"Similarity network must map {expected_in} -> 1, got {network.input_dim} -> {network.output_dim}"
            )
        if network.output_activation != 'sigmoid':
            raise ValueError("Similarity network must end in a sigmoid")
        self.network = network

    def similarity(self, user_vec: np.ndarray, content_vec: np.ndarray) -> float:
        out = self.network(np.concatenate([user_vec, content_vec]))
        return float(np.clip(out[0], 0.0, 1.0))

    @classmethod
    def load(cls, path: str | Path) -> "LearnedSimilarity":
        return cls(load_networks(path, ('similarity',))['similarity'])


def load_similarity_strategy(model_dir: str | Path = MODEL_DIR, model_version: str = MODEL_VERSION) -> SimilarityStrategy:
    path = Path(model_dir) / SIMILARITY_WEIGHTS_TEMPLATE.format(version=model_version)
    if not path.exists():
        logger.warning(f"Similarity model not found at {path}; using cosine fallback")
        return CosineSimilarity()
    try:
        strategy = LearnedSimilarity.load(path)
        logger.info(f"Loaded similarity model from {path}")
        return strategy
    except (OSError, KeyError, ValueError) as exc:
        logger.warning(f"Similarity model unavailable ({type(exc).__name__}: {exc}); using cosine fallback")
        return CosineSimilarity()


class CompatibilityScorer:
    def __init__(
        self,
        strategy: SimilarityStrategy | None = None,
        model_dir: str | Path = MODEL_DIR,
        model_version: str = MODEL_VERSION,
    ):
        self.strategy = strategy if strategy is not None else load_similarity_strategy(model_dir, model_version)

    def score(self, user: UserEmbedding, content: ContentEmbedding) -> float:
        """
        Affinity in [0, 1] between a user and a title.

        Returns 0.0 when either composite is empty or their lengths differ.
        """
        user_vec = np.asarray(user.composite, dtype=np.float64)
        content_vec = np.asarray(content.composite, dtype=np.float64)
        if user_vec.size == 0 or content_vec.size == 0 or user_vec.shape != content_vec.shape:
            logger.debug(
                f"Composite size mismatch for user {user.user_id} / title {content.title_id}: "
                f"{user_vec.size} vs {content_vec.size}"
            )
            return 0.0
        return self.strategy.similarity(user_vec, content_vec)

    def rank(self, user: UserEmbedding, contents: Iterable[ContentEmbedding], n: int | None = None) -> list[tuple[int | str, float]]:
        """(title_id, score) pairs, best first; ties keep input order."""
        scored = [(c.title_id, self.score(user, c)) for c in contents]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:n] if n is not None else scored
