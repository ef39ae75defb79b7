"""
Cross-provider streaming availability.

One request fans out to every source client at once behind a shared
semaphore, reconciles whatever came back into a single de-duplicated
AvailabilityAggregate, and caches that aggregate per (media type, title).
A source that raises or times out only flips its flag in `sources`.
Stores that mark themselves `blocking` (SQLiteCache) are called from a
worker thread so disk I/O never stalls the event loop.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from .cache import CacheStore, SQLiteCache, TTLCache
from .config import (
    CACHE_DB_PATH,
    CACHE_TTL_SECONDS,
    DEFAULT_BATCH_DELAY_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_CONCURRENT,
    SOURCE_TIMEOUT,
)
from .platforms import AvailabilityAggregate, StreamingPlatformRecord, build_aggregate
from .sources import SourceClient, build_default_sources

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TitleRequest:
    title_id: int | str
    title: str = ""
    media_type: str = "tv"
    external_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TitleRequest":
        title_id = next(
            (data[k] for k in ("title_id", "tmdb_id", "tmdbId", "id") if data.get(k) not in (None, "")),
            None,
        )
        if title_id is None:
            raise ValueError(f"Title request without an id: {dict(data)}")
        return cls(
            title_id=title_id,
            title=data.get("title", ""),
            media_type=data.get("media_type") or data.get("mediaType") or "tv",
            external_id=data.get("external_id") or data.get("imdb_id") or data.get("imdbId"),
        )


def cache_key(title_id: int | str, media_type: str) -> str:
    return f"availability:{media_type}:{title_id}"


def availability_sqlite_cache(db_path: str | Path = CACHE_DB_PATH, ttl: float = CACHE_TTL_SECONDS) -> SQLiteCache:
    """Persistent aggregate cache; hits are rebuilt from JSON, so equal rather than identical."""
    return SQLiteCache(
        db_path,
        default_ttl=ttl,
        encode=lambda agg: json.dumps(agg.to_dict()),
        decode=lambda raw: AvailabilityAggregate.from_dict(json.loads(raw)),
    )


class AvailabilityAggregator:
    def __init__(
        self,
        sources: Iterable[SourceClient] | None = None,
        cache: CacheStore | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        source_timeout: float = SOURCE_TIMEOUT,
        cache_ttl: float = CACHE_TTL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.sources = list(sources) if sources is not None else build_default_sources()
        self.cache = cache if cache is not None else TTLCache(default_ttl=cache_ttl)
        self.max_concurrent = max_concurrent
        self.source_timeout = source_timeout
        self.cache_ttl = cache_ttl
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self._inflight: dict[str, asyncio.Task] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        for source in self.sources:
            await source.aclose()

    async def get_availability(
        self,
        title_id: int | str,
        title: str = "",
        media_type: str = "tv",
        external_id: str | None = None,
    ) -> AvailabilityAggregate:
        if title_id in (None, ""):
            raise ValueError("get_availability requires a title id")

        key = cache_key(title_id, media_type)
        cached = await self._cache_get(key)
        if cached is not None:
            logger.debug(f"Availability cache hit for {key}")
            return cached

        # Concurrent misses for the same key share one fan-out
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fan_out(key, title_id, title, media_type, external_id))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _cache_get(self, key: str) -> AvailabilityAggregate | None:
        if getattr(self.cache, "blocking", False):
            return await asyncio.to_thread(self.cache.get, key)
        return self.cache.get(key)

    async def _cache_set(self, key: str, aggregate: AvailabilityAggregate) -> None:
        if getattr(self.cache, "blocking", False):
            await asyncio.to_thread(self.cache.set, key, aggregate, self.cache_ttl)
        else:
            self.cache.set(key, aggregate, self.cache_ttl)

    async def _call_source(
        self, source: SourceClient, title_id, title, media_type, external_id
    ) -> list[StreamingPlatformRecord] | None:
        """Records from one source, or None if it failed or timed out."""
        async with self.semaphore:
            try:
                return await asyncio.wait_for(
                    source.fetch(title_id, title, media_type, external_id),
                    timeout=self.source_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Source {source.name} timed out after {self.source_timeout}s for title {title_id}")
            except Exception as exc:
                logger.warning(f"Source {source.name} failed for title {title_id}: {type(exc).__name__}: {exc}")
        return None

    async def _fan_out(self, key, title_id, title, media_type, external_id) -> AvailabilityAggregate:
        results = await asyncio.gather(*(
            self._call_source(source, title_id, title, media_type, external_id)
            for source in self.sources
        ))

        sources: dict[str, bool] = {}
        records: list[StreamingPlatformRecord] = []
        for source, result in zip(self.sources, results):
            sources[source.name] = result is not None
            if result:
                records.extend(result)

        aggregate = build_aggregate(title_id, title, media_type, records, sources)
        succeeded = sum(sources.values())
        logger.info(
            f"Availability for {title or title_id}: {aggregate.total_platforms} platforms "
            f"({aggregate.affiliate_platforms} affiliate) from {succeeded}/{len(sources)} sources"
        )

        if succeeded:
            await self._cache_set(key, aggregate)
        else:
            logger.warning(f"All sources failed for {key}; result not cached")
        return aggregate

    async def get_batch_availability(
        self, titles: Iterable[TitleRequest | Mapping[str, Any]]
    ) -> dict[int | str, AvailabilityAggregate]:
        """
        Availability for many titles, a batch at a time.

        Batch size is the configured override or else the concurrency limit;
        `batch_delay_ms` is slept between batches. Titles that fail are
        logged and left out of the result.
        """
        requests = [t if isinstance(t, TitleRequest) else TitleRequest.from_dict(t) for t in titles]
        size = self.batch_size or self.max_concurrent
        out: dict[int | str, AvailabilityAggregate] = {}

        for start in range(0, len(requests), size):
            batch = requests[start:start + size]
            results = await asyncio.gather(
                *(self.get_availability(r.title_id, r.title, r.media_type, r.external_id) for r in batch),
                return_exceptions=True,
            )
            for req, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error(f"Failed to get availability for {req.title or req.title_id}: {result}")
                else:
                    out[req.title_id] = result

            if start + size < len(requests) and self.batch_delay_ms > 0:
                await asyncio.sleep(self.batch_delay_ms / 1000)

        logger.info(f"Batch availability complete: {len(out)}/{len(requests)} titles")
        return out
