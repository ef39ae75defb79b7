import asyncio
import json
import logging
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
from scipy.linalg import solve
from scipy.sparse import csr_matrix
from tqdm import tqdm

from .config import (
    ALS_CHECK_EVERY,
    ALS_FACTORS,
    ALS_INIT_SCALE,
    ALS_LAMBDA,
    ALS_MAX_ITERATIONS,
    ALS_MODEL_PATH,
    ALS_PATIENCE,
    ALS_TOLERANCE,
)

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 50


@dataclass(frozen=True)
class ALSConfig:
    factors: int = ALS_FACTORS
    reg: float = ALS_LAMBDA
    max_iterations: int = ALS_MAX_ITERATIONS
    tolerance: float = ALS_TOLERANCE
    check_every: int = ALS_CHECK_EVERY
    patience: int = ALS_PATIENCE
    init_scale: float = ALS_INIT_SCALE
    seed: int | None = 42

    def __post_init__(self):
        if self.factors < 1:
            raise ValueError("factors must be >= 1")
        if self.reg <= 0:
            raise ValueError("reg must be > 0 so every normal-equations system is solvable")
        if self.max_iterations < 1 or self.check_every < 1 or self.patience < 1:
            raise ValueError("max_iterations, check_every and patience must be >= 1")


def _readonly(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.float64)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class FactorModel:
    """
    Result of one ALS training run. Never mutated; retraining builds a new one.

    rating(u, i) = global_bias + user_biases[u] + item_biases[i] + user_factors[u] @ item_factors[i]
    """
    user_factors: np.ndarray  # (n_users, k)
    item_factors: np.ndarray  # (n_items, k)
    global_bias: float
    user_biases: np.ndarray
    item_biases: np.ndarray
    rmse: float
    iterations: int
    converged: bool = False
    rmse_history: tuple[tuple[int, float], ...] = field(default=())

    @property
    def shape(self) -> tuple[int, int]:
        return self.user_factors.shape[0], self.item_factors.shape[0]

    @property
    def n_factors(self) -> int:
        return self.user_factors.shape[1]

    def predict(self, user_idx: int, item_idx: int) -> float:
        return float(
            self.global_bias
            + self.user_biases[user_idx]
            + self.item_biases[item_idx]
            + self.user_factors[user_idx] @ self.item_factors[item_idx]
        )

    def predict_user(self, user_idx: int) -> np.ndarray:
        """Predicted rating for every item for one user."""
        return (
            self.global_bias
            + self.user_biases[user_idx]
            + self.item_biases
            + self.item_factors @ self.user_factors[user_idx]
        )


def _observed_rmse(R: csr_matrix, U, V, g, bu, bi) -> float:
    coo = R.tocoo()
    pred = g + bu[coo.row] + bi[coo.col] + np.einsum('ij,ij->i', U[coo.row], V[coo.col])
    return float(np.sqrt(np.mean((coo.data - pred) ** 2)))


def _als_half_step(R: csr_matrix, X, Y, bx, by, g: float, reg_eye: np.ndarray) -> None:
    """
    Update the row-side factors X and biases bx in place, holding Y and by fixed.

    R is compressed along the rows being updated. Rows without observations
    are skipped and keep their initial factors and zero bias.
    """
    for row in range(R.shape[0]):
        start, end = R.indptr[row], R.indptr[row + 1]
        if start == end:
            continue
        cols = R.indices[start:end]
        r = R.data[start:end]
        Yc = Y[cols]

        bx[row] = np.mean(r - g - by[cols] - Yc @ X[row])
        target = r - g - bx[row] - by[cols]
        A = Yc.T @ Yc + reg_eye
        X[row] = solve(A, Yc.T @ target, assume_a='pos')


def train_als(ratings: csr_matrix, config: ALSConfig | None = None, show_progress: bool = False) -> FactorModel:
    """
    Regularized ALS with explicit user and item biases.

    Only stored non-zero cells are treated as observations; absent cells are
    unknown, not zero ratings. The global bias is the mean observed rating
    and stays fixed. RMSE is checked every `check_every` iterations and
    training stops once `patience` consecutive checks move by less than
    `tolerance`.
    """
    config = config or ALSConfig()
    R = csr_matrix(ratings, dtype=np.float64)
    R.eliminate_zeros()
    if R.nnz == 0:
        raise ValueError("Cannot train ALS on a matrix with no observed ratings")

    n_users, n_items = R.shape
    k = config.factors
    rng = np.random.default_rng(config.seed)
    U = rng.normal(0.0, config.init_scale, size=(n_users, k))
    V = rng.normal(0.0, config.init_scale, size=(n_items, k))
    bu = np.zeros(n_users)
    bi = np.zeros(n_items)
    g = float(R.data.mean())
    reg_eye = config.reg * np.eye(k)
    Rt = R.T.tocsr()  # item-major view for the item half-step

    history: list[tuple[int, float]] = []
    last_rmse = None
    stable_checks = 0
    converged = False
    iteration = 0

    for iteration in tqdm(range(1, config.max_iterations + 1), desc="ALS", disable=not show_progress):
        _als_half_step(R, U, V, bu, bi, g, reg_eye)
        _als_half_step(Rt, V, U, bi, bu, g, reg_eye)

        if iteration % config.check_every == 0:
            rmse = _observed_rmse(R, U, V, g, bu, bi)
            history.append((iteration, rmse))
            if last_rmse is not None and abs(last_rmse - rmse) < config.tolerance:
                stable_checks += 1
            else:
                stable_checks = 0
            last_rmse = rmse
            if stable_checks >= config.patience:
                converged = True
                break

        if iteration % PROGRESS_LOG_EVERY == 0:
            logger.info(f"ALS iteration {iteration}/{config.max_iterations}, RMSE={last_rmse}")

    final_rmse = history[-1][1] if history and history[-1][0] == iteration else _observed_rmse(R, U, V, g, bu, bi)
    if converged:
        logger.info(f"ALS converged after {iteration} iterations (RMSE={final_rmse:.5f})")
    else:
        logger.info(f"ALS stopped at iteration cap {iteration} (RMSE={final_rmse:.5f})")

    return FactorModel(
        user_factors=_readonly(U),
        item_factors=_readonly(V),
        global_bias=g,
        user_biases=_readonly(bu),
        item_biases=_readonly(bi),
        rmse=final_rmse,
        iterations=iteration,
        converged=converged,
        rmse_history=tuple(history),
    )


class ALSRecommender:
    """
    Maps user and item identifiers onto an ALS FactorModel.

    Input is {user_id: [{"item_id": ..., "rating": ...}, ...]}; entries
    without a rating are ignored.
    """

    def __init__(self, config: ALSConfig | None = None, rating_bounds: tuple[float, float] | None = None):
        self.config = config or ALSConfig()
        self.rating_bounds = rating_bounds
        self.model: FactorModel | None = None
        self.user_index: dict = {}
        self.item_index: dict = {}
        self.seen: dict = {}
        self.metadata: dict | None = None

    @property
    def is_fitted(self) -> bool:
        return self.model is not None

    @staticmethod
    def compute_fingerprint(ratings: dict[str, list[dict]], hyperparams: dict | None = None) -> dict:
        """Lightweight fingerprint for cache validation."""
        items = set()
        n_ratings = 0
        for entries in ratings.values():
            for e in entries:
                if e.get('rating') is not None:
                    n_ratings += 1
                    items.add(e['item_id'])
        fp = {"n_users": len(ratings), "n_items": len(items), "n_ratings": n_ratings}
        if hyperparams:
            fp["hyperparams"] = hyperparams
        return fp

    def fit(self, ratings: dict[str, list[dict]], show_progress: bool = False) -> 'ALSRecommender':
        self.model = None
        self.user_index = {u: i for i, u in enumerate(ratings)}
        self.item_index = {}
        items: list = []
        for entries in ratings.values():
            for e in entries:
                if e.get('rating') is not None and e['item_id'] not in self.item_index:
                    self.item_index[e['item_id']] = len(items)
                    items.append(e['item_id'])

        rows, cols, data = [], [], []
        self.seen = {}
        for user, entries in ratings.items():
            seen = self.seen.setdefault(user, set())
            for e in entries:
                if e.get('rating') is None:
                    continue
                rows.append(self.user_index[user])
                cols.append(self.item_index[e['item_id']])
                data.append(float(e['rating']))
                seen.add(e['item_id'])

        if not data:
            raise ValueError("Cannot fit ALS model because no ratings were provided.")

        R = csr_matrix((data, (rows, cols)), shape=(len(self.user_index), len(items)), dtype=np.float64)
        self.model = train_als(R, self.config, show_progress=show_progress)
        self.metadata = {
            "fingerprint": self.compute_fingerprint(ratings, asdict(self.config)),
            "n_users": len(self.user_index),
            "n_items": len(items),
            "n_ratings": len(data),
            "rmse": self.model.rmse,
            "iterations": self.model.iterations,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info(
            f"Fitted ALS with {self.config.factors} factors on {len(self.user_index)} users × {len(items)} items"
        )
        return self

    def _clip(self, value):
        if self.rating_bounds is None:
            return value
        return np.clip(value, *self.rating_bounds)

    def predict(self, user_id, item_id) -> float | None:
        if self.model is None:
            logger.warning("ALS model is not fitted; cannot generate prediction.")
            return None
        if user_id not in self.user_index or item_id not in self.item_index:
            return None
        return float(self._clip(self.model.predict(self.user_index[user_id], self.item_index[item_id])))

    def recommend(self, user_id, seen: set | None = None, n: int = 20) -> list[tuple]:
        """Top-N unseen items; `seen` defaults to the items the user rated in training."""
        if self.model is None:
            logger.warning("ALS model is not fitted; returning no recommendations.")
            return []
        if user_id not in self.user_index:
            return []

        exclude = self.seen.get(user_id, set()) if seen is None else seen
        predictions = self._clip(self.model.predict_user(self.user_index[user_id]))
        item_ids = list(self.item_index)
        results = []
        for idx in np.argsort(-predictions, kind='stable'):
            item = item_ids[idx]
            if item in exclude:
                continue
            results.append((item, float(predictions[idx])))
            if len(results) >= n:
                break
        return results

    def save(self, path: str | Path = ALS_MODEL_PATH) -> None:
        """Persist the fitted model to disk for reuse."""
        if self.model is None:
            logger.debug("ALS model not fitted; skipping save.")
            return

        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        m = self.model
        np.savez_compressed(
            out,
            user_factors=m.user_factors,
            item_factors=m.item_factors,
            user_biases=m.user_biases,
            item_biases=m.item_biases,
            global_bias=m.global_bias,
            rmse=m.rmse,
            iterations=m.iterations,
            converged=m.converged,
            user_index=np.array([str(u) for u in self.user_index]),
            item_index=np.array([str(i) for i in self.item_index]),
            config=json.dumps(asdict(self.config)),
            metadata=json.dumps(self.metadata or {}),
            seen=json.dumps({str(u): sorted(str(i) for i in items) for u, items in self.seen.items()}),
        )
        logger.info(f"Saved ALS model to {out}")

    @classmethod
    def load(cls, path: str | Path = ALS_MODEL_PATH, expected_fingerprint: dict | None = None) -> 'ALSRecommender | None':
        """
        Load a saved model, or None if missing, unreadable or stale.

        Identifiers come back as strings.
        """
        model_path = Path(path)
        if not model_path.exists():
            return None

        try:
            with np.load(model_path, allow_pickle=False) as data:
                metadata = json.loads(data["metadata"].item())
                if expected_fingerprint and metadata.get("fingerprint") != expected_fingerprint:
                    logger.info("Saved ALS fingerprint mismatch; ignoring model.")
                    return None

                inst = cls(config=ALSConfig(**json.loads(data["config"].item())))
                inst.model = FactorModel(
                    user_factors=_readonly(data["user_factors"]),
                    item_factors=_readonly(data["item_factors"]),
                    global_bias=float(data["global_bias"]),
                    user_biases=_readonly(data["user_biases"]),
                    item_biases=_readonly(data["item_biases"]),
                    rmse=float(data["rmse"]),
                    iterations=int(data["iterations"]),
                    converged=bool(data["converged"]),
                )
                inst.user_index = {u: i for i, u in enumerate(data["user_index"].tolist())}
                inst.item_index = {s: i for i, s in enumerate(data["item_index"].tolist())}
                inst.metadata = metadata
                inst.seen = {u: set(items) for u, items in json.loads(data["seen"].item()).items()}
        except (OSError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load ALS model from {model_path}: {e}")
            return None

        logger.info(f"Loaded ALS model from {model_path}")
        return inst


def _fit_recommender(ratings: dict[str, list[dict]], config: ALSConfig | None) -> ALSRecommender:
    return ALSRecommender(config=config).fit(ratings)


async def train_in_background(
    ratings: dict[str, list[dict]],
    config: ALSConfig | None = None,
    executor: Executor | None = None,
) -> ALSRecommender:
    """Fit an ALSRecommender in a worker so the event loop stays responsive."""
    loop = asyncio.get_running_loop()
    if executor is not None:
        return await loop.run_in_executor(executor, _fit_recommender, ratings, config)
    with ProcessPoolExecutor(max_workers=1) as pool:
        return await loop.run_in_executor(pool, _fit_recommender, ratings, config)
