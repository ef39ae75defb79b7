import argparse
import asyncio
import csv
import json
import logging
from dataclasses import asdict
from pathlib import Path

from .availability import AvailabilityAggregator, TitleRequest, availability_sqlite_cache
from .config import (
    ALS_FACTORS,
    ALS_LAMBDA,
    ALS_MAX_ITERATIONS,
    ALS_MODEL_PATH,
    ALS_TOLERANCE,
    CACHE_TTL_SECONDS,
    DEFAULT_MAX_CONCURRENT,
    MODEL_DIR,
    MODEL_VERSION,
)
from .embeddings import EmbeddingGenerator
from .matrix_factorization import ALSConfig, ALSRecommender
from .monetization import affiliate_links, monetization_metrics
from .platforms import AvailabilityAggregate
from .preferences import PlatformPreferences, filter_aggregate
from .profiles import ContentProfile, UserProfile
from .scoring import CompatibilityScorer

logger = logging.getLogger(__name__)


def _load_json(path: str | Path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _load_preferences(path: str | None) -> PlatformPreferences | None:
    if not path:
        return None
    return PlatformPreferences.from_dict(_load_json(path))


def _read_ratings_csv(path: str | Path) -> dict[str, list[dict]]:
    """Read `user,item,rating` rows into {user: [{"item_id", "rating"}]}; bad rows are skipped."""
    ratings: dict[str, list[dict]] = {}
    skipped = 0
    with open(path, newline="", encoding="utf-8") as f:
        for row in csv.DictReader(f):
            try:
                user, item, rating = row["user"].strip(), row["item"].strip(), float(row["rating"])
            except (KeyError, AttributeError, TypeError, ValueError):
                skipped += 1
                continue
            if not user or not item:
                skipped += 1
                continue
            ratings.setdefault(user, []).append({"item_id": item, "rating": rating})
    if skipped:
        logger.warning(f"Skipped {skipped} malformed rows in {path}")
    return ratings


def _make_aggregator(args) -> AvailabilityAggregator:
    cache = availability_sqlite_cache(args.cache_db, ttl=args.cache_ttl) if args.cache_db else None
    return AvailabilityAggregator(cache=cache, max_concurrent=args.max_concurrent, cache_ttl=args.cache_ttl)


def _aggregate_output(aggregate: AvailabilityAggregate, user_id: str | None) -> dict:
    out = aggregate.to_dict()
    if user_id:
        out["links"] = affiliate_links(aggregate, user_id)
        metrics = monetization_metrics(aggregate.platforms)
        out["monetization"] = {
            "affiliate_platforms": metrics.affiliate_platforms,
            "average_commission": round(metrics.average_commission, 2),
            "top_affiliate_platforms": [p.provider_name for p in metrics.top_affiliate_platforms],
            "potential_revenue": metrics.potential_revenue,
        }
    return out


def cmd_availability(args):
    preferences = _load_preferences(args.preferences)

    async def run():
        async with _make_aggregator(args) as aggregator:
            return await aggregator.get_availability(args.title_id, args.title, args.media_type, args.imdb_id)

    aggregate = asyncio.run(run())
    if preferences is not None:
        aggregate = filter_aggregate(aggregate, preferences)
    print(json.dumps(_aggregate_output(aggregate, args.user_id), indent=2))


def cmd_batch_availability(args):
    titles = [TitleRequest.from_dict(t) for t in _load_json(args.file)]
    preferences = _load_preferences(args.preferences)

    async def run():
        async with _make_aggregator(args) as aggregator:
            return await aggregator.get_batch_availability(titles)

    results = asyncio.run(run())
    output = {}
    for title_id, aggregate in results.items():
        if preferences is not None:
            aggregate = filter_aggregate(aggregate, preferences)
        output[str(title_id)] = _aggregate_output(aggregate, args.user_id)
    logger.info(f"Fetched availability for {len(results)}/{len(titles)} titles")
    print(json.dumps(output, indent=2))


def cmd_train(args):
    ratings = _read_ratings_csv(args.ratings)
    if not ratings:
        logger.error(f"No usable ratings in {args.ratings}")
        return

    config = ALSConfig(
        factors=args.factors,
        reg=args.reg,
        max_iterations=args.max_iter,
        tolerance=args.tolerance,
    )
    if not args.force:
        fingerprint = ALSRecommender.compute_fingerprint(ratings, asdict(config))
        if ALSRecommender.load(args.output, expected_fingerprint=fingerprint) is not None:
            logger.info(f"Model at {args.output} already matches these ratings; use --force to retrain")
            return

    model = ALSRecommender(config=config).fit(ratings, show_progress=not args.quiet)
    model.save(args.output)
    print(json.dumps({
        "users": len(model.user_index),
        "items": len(model.item_index),
        "rmse": round(model.model.rmse, 5),
        "iterations": model.model.iterations,
        "converged": model.model.converged,
        "output": str(args.output),
    }, indent=2))


def cmd_score(args):
    user = UserProfile.from_dict(_load_json(args.user))
    raw_titles = _load_json(args.titles)
    titles = [ContentProfile.from_dict(t) for t in (raw_titles if isinstance(raw_titles, list) else [raw_titles])]

    generator = EmbeddingGenerator(model_version=args.model_version, model_dir=args.model_dir)
    scorer = CompatibilityScorer(model_dir=args.model_dir, model_version=args.model_version)

    user_emb = generator.embed_user(user)
    ranked = scorer.rank(user_emb, (generator.embed_content(t) for t in titles), n=args.limit)
    print(json.dumps([{"title_id": tid, "score": round(score, 4)} for tid, score in ranked], indent=2))


def _add_availability_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--preferences", help="JSON file with platform preferences")
    p.add_argument("--user-id", help="Attach affiliate links and monetization metrics for this user")
    p.add_argument("--cache-db", help="Persist results in this SQLite cache file")
    p.add_argument("--cache-ttl", type=float, default=CACHE_TTL_SECONDS, help="Cache TTL in seconds")
    p.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT,
                   help="Max simultaneous source calls")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BingeBoard recommendation core")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Availability for one title
    avail_parser = subparsers.add_parser("availability", help="Where to watch a title")
    avail_parser.add_argument("title_id", help="TMDB id of the title")
    avail_parser.add_argument("--title", default="", help="Title text (used by title-search sources)")
    avail_parser.add_argument("--media-type", choices=["movie", "tv"], default="tv")
    avail_parser.add_argument("--imdb-id", help="IMDb id, enables id lookups on sources that support it")
    _add_availability_options(avail_parser)
    avail_parser.set_defaults(func=cmd_availability)

    # Availability for many titles
    batch_parser = subparsers.add_parser("batch-availability", help="Where to watch many titles")
    batch_parser.add_argument("file", help="JSON list of {title_id, title, media_type, imdb_id}")
    _add_availability_options(batch_parser)
    batch_parser.set_defaults(func=cmd_batch_availability)

    # Offline ALS training
    train_parser = subparsers.add_parser("train", help="Train the ALS model from a ratings CSV")
    train_parser.add_argument("ratings", help="CSV with user,item,rating columns")
    train_parser.add_argument("--output", default=str(ALS_MODEL_PATH), help="Where to save the model")
    train_parser.add_argument("--factors", type=int, default=ALS_FACTORS)
    train_parser.add_argument("--reg", type=float, default=ALS_LAMBDA)
    train_parser.add_argument("--max-iter", type=int, default=ALS_MAX_ITERATIONS)
    train_parser.add_argument("--tolerance", type=float, default=ALS_TOLERANCE)
    train_parser.add_argument("--force", action="store_true", help="Retrain even if a matching model exists")
    train_parser.add_argument("--quiet", action="store_true", help="Hide the progress bar")
    train_parser.set_defaults(func=cmd_train)

    # Compatibility scoring
    score_parser = subparsers.add_parser("score", help="Rank titles for a user profile")
    score_parser.add_argument("user", help="JSON file with the user profile")
    score_parser.add_argument("titles", help="JSON file with one content profile or a list of them")
    score_parser.add_argument("--limit", type=int, default=20)
    score_parser.add_argument("--model-dir", default=str(MODEL_DIR))
    score_parser.add_argument("--model-version", default=MODEL_VERSION)
    score_parser.set_defaults(func=cmd_score)

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
