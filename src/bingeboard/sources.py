"""
Source clients: one per external "where to watch" catalog.

Each client turns its provider's payload into StreamingPlatformRecord objects
before anything else sees it. Clients raise on failure; the aggregator is
the only place that converts a failure into "no data from this source".
"""
import logging

import httpx

from .config import (
    CATALOG_REGION,
    HTTP2_ENABLED,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    RETRY_BACKOFF_FACTOR,
    RETRY_INITIAL_DELAY,
    STREAMING_AVAILABILITY_API_KEY,
    STREAMING_AVAILABILITY_HOST,
    TMDB_API_KEY,
    TMDB_BASE_URL,
    UTELLY_API_KEY,
    UTELLY_HOST,
    WATCHMODE_API_KEY,
    WATCHMODE_BASE_URL,
)
from .platforms import StreamingPlatformRecord, make_record
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
USER_AGENT = "bingeboard-core/1.0"


class SourceError(Exception):
    """A source client could not produce records for a title."""


class RetryableSourceError(SourceError):
    """Transient upstream failure (rate limit or 5xx) worth retrying."""


class SourceClient:
    """
    Base class for catalog clients.

    An httpx.AsyncClient may be injected (shared pool or a MockTransport in
    tests); otherwise one is created on first use and closed by `aclose`.
    """

    name = "base"

    def __init__(
        self,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        region: str = CATALOG_REGION,
    ):
        self.api_key = api_key
        self.region = region.upper()
        self._client = client
        self._owns_client = client is None
        if not api_key:
            logger.warning(f"{self.name}: API key not configured; source will report failure")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=HTTP_TIMEOUT,
                http2=HTTP2_ENABLED,
            )
            self._owns_client = True
        return self._client

    @async_retry_with_backoff(
        max_retries=MAX_HTTP_RETRIES,
        initial_delay=RETRY_INITIAL_DELAY,
        backoff_factor=RETRY_BACKOFF_FACTOR,
        exceptions=(RetryableSourceError, httpx.TransportError),
    )
    async def _get_json(self, url: str, params: dict | None = None, headers: dict | None = None):
        """GET and decode JSON. Returns None on 404."""
        resp = await self._http().get(url, params=params, headers=headers)
        if resp.status_code == 404:
            return None
        if resp.status_code in RETRYABLE_STATUS_CODES:
            raise RetryableSourceError(f"{self.name}: HTTP {resp.status_code} from {url}")
        if resp.is_error:
            raise SourceError(f"{self.name}: HTTP {resp.status_code} from {url}")
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceError(f"{self.name}: malformed JSON from {url}") from exc

    async def fetch(
        self,
        title_id: int | str,
        title: str,
        media_type: str = "tv",
        external_id: str | None = None,
    ) -> list[StreamingPlatformRecord]:
        if not self.api_key:
            raise SourceError(f"{self.name}: API key not configured")
        try:
            return await self._fetch(title_id, title, media_type, external_id)
        except (KeyError, TypeError, AttributeError) as exc:
            raise SourceError(f"{self.name}: unexpected payload shape ({type(exc).__name__}: {exc})") from exc

    async def _fetch(self, title_id, title, media_type, external_id) -> list[StreamingPlatformRecord]:
        raise NotImplementedError


class TMDBSource(SourceClient):
    name = "tmdb"

    # TMDB watch-provider buckets -> platform type
    BUCKETS = {"flatrate": "sub", "free": "free", "ads": "free", "buy": "buy", "rent": "rent"}

    def __init__(self, api_key: str | None = TMDB_API_KEY, base_url: str = TMDB_BASE_URL, **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.base_url = base_url.rstrip("/")

    async def _fetch(self, title_id, title, media_type, external_id):
        data = await self._get_json(
            f"{self.base_url}/{media_type}/{title_id}/watch/providers",
            params={"api_key": self.api_key},
        )
        region = ((data or {}).get("results") or {}).get(self.region) or {}
        records = []
        for bucket, ptype in self.BUCKETS.items():
            for provider in region.get(bucket) or []:
                records.append(make_record(
                    provider["provider_id"],
                    provider["provider_name"],
                    ptype,
                    self.name,
                    logo_path=provider.get("logo_path"),
                ))
        return records


class WatchmodeSource(SourceClient):
    name = "watchmode"

    # Watchmode has no logos of its own; reuse TMDB artwork for the big providers
    PROVIDER_LOGOS = {
        "Netflix": "/pbpMk2JmcoNnQwx5JGpXngfoWtp.jpg",
        "Amazon Prime Video": "/emthp39XA2YScoYL1p0sdbAH2WA.jpg",
        "Disney Plus": "/7rwgEs15tFwyR9NPQ5vpzxTj19Q.jpg",
        "Hulu": "/giwM8XX4CTGNcfbhcQRKqZbzkZK.jpg",
        "HBO Max": "/nmU4theeWOGDkkDrqPnZwdGZqsU.jpg",
        "Apple TV Plus": "/peURlLlr8jggOwK53fJ5wdQl05y.jpg",
        "Paramount Plus": "/fi83B1oztoS47xxcemFdPMhIzK8.jpg",
        "Peacock": "/xbhHHa1YgtpwhC8lb1NQ3ACVcLd.jpg",
        "YouTube": "/oIkQkEkwfmcG7IGpRR1NB8frZ2z.jpg",
        "Crunchyroll": "/8VCV78prwd9QzZnEn4ReKE5hbk5.jpg",
    }
    TYPES = {"sub": "sub", "tve": "sub", "free": "free", "buy": "buy", "rent": "rent"}

    def __init__(self, api_key: str | None = WATCHMODE_API_KEY, base_url: str = WATCHMODE_BASE_URL, **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.base_url = base_url.rstrip("/")

    async def _lookup_id(self, title_id, media_type) -> int | None:
        field = "tmdb_movie_id" if media_type == "movie" else "tmdb_tv_id"
        data = await self._get_json(
            f"{self.base_url}/search/",
            params={"apiKey": self.api_key, "search_field": field, "search_value": str(title_id)},
        )
        results = (data or {}).get("title_results") or []
        return results[0]["id"] if results else None

    async def _fetch(self, title_id, title, media_type, external_id):
        watchmode_id = await self._lookup_id(title_id, media_type)
        if watchmode_id is None:
            logger.debug(f"watchmode: no title for TMDB id {title_id}")
            return []

        sources = await self._get_json(
            f"{self.base_url}/title/{watchmode_id}/sources/",
            params={"apiKey": self.api_key, "regions": self.region},
        ) or []

        records = []
        for src in sources:
            if src.get("region", self.region) != self.region:
                continue
            ptype = self.TYPES.get(src.get("type"))
            if ptype is None:
                continue
            price = src.get("price")
            records.append(make_record(
                src["source_id"],
                src["name"],
                ptype,
                self.name,
                logo_path=self.PROVIDER_LOGOS.get(src["name"]),
                web_url=src.get("web_url") or None,
                ios_url=src.get("ios_url") or None,
                android_url=src.get("android_url") or None,
                price=float(price) if price is not None else None,
                format=src.get("format") or None,
            ))
        return records


class UtellySource(SourceClient):
    """
    Utelly availability. Utelly does not report a distribution type, so every
    location is treated as a subscription offer.
    """

    name = "utelly"
    ID_BASE = 9000

    def __init__(self, api_key: str | None = UTELLY_API_KEY, host: str = UTELLY_HOST, **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.host = host

    def _headers(self) -> dict:
        return {"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": self.host}

    async def _fetch(self, title_id, title, media_type, external_id):
        country = self.region.lower()
        if external_id:
            data = await self._get_json(
                f"https://{self.host}/idlookup",
                params={"source_id": external_id, "source": "imdb", "country": country},
                headers=self._headers(),
            ) or {}
            collection = data.get("collection")
            results = [collection] if collection else []
        else:
            data = await self._get_json(
                f"https://{self.host}/lookup",
                params={"term": title, "country": country},
                headers=self._headers(),
            ) or {}
            results = data.get("results") or []

        records = []
        for i, result in enumerate(results):
            for j, loc in enumerate(result.get("locations") or []):
                name = loc["display_name"]
                logo = f"/logos/{'_'.join(name.lower().split())}.jpg" if loc.get("icon") else None
                records.append(make_record(
                    self.ID_BASE + 100 * i + j,
                    name,
                    "sub",
                    self.name,
                    web_url=loc.get("url") or None,
                    logo_path=logo,
                ))
        return records


class StreamingAvailabilitySource(SourceClient):
    name = "streaming_availability"
    ID_BASE = 8000

    SERVICE_NAMES = {
        "netflix": "Netflix",
        "prime": "Amazon Prime Video",
        "amazon-prime-video": "Amazon Prime Video",
        "hulu": "Hulu",
        "disney": "Disney+",
        "hbo-max": "Max",
        "max": "Max",
        "apple": "Apple TV+",
        "apple-tv": "Apple TV+",
        "paramount": "Paramount+",
        "paramount-plus": "Paramount+",
        "peacock": "Peacock",
        "crunchyroll": "Crunchyroll",
        "youtube-premium": "YouTube Premium",
        "showtime": "Showtime",
        "starz": "Starz",
        "discovery-plus": "Discovery+",
        "espn-plus": "ESPN+",
        "fubo-tv": "fuboTV",
        "sling-tv": "Sling TV",
    }
    TYPES = {"subscription": "sub", "addon": "sub", "ads": "free", "free": "free", "buy": "buy", "rent": "rent"}

    def __init__(
        self,
        api_key: str | None = STREAMING_AVAILABILITY_API_KEY,
        host: str = STREAMING_AVAILABILITY_HOST,
        **kwargs,
    ):
        super().__init__(api_key=api_key, **kwargs)
        self.host = host

    async def _fetch(self, title_id, title, media_type, external_id):
        show_id = external_id or f"{'movie' if media_type == 'movie' else 'tv'}/{title_id}"
        country = self.region.lower()
        data = await self._get_json(
            f"https://{self.host}/shows/{show_id}",
            params={"country": country, "output_language": "en"},
            headers={"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": self.host},
        )
        options = ((data or {}).get("streamingOptions") or {}).get(country) or []

        records = []
        for idx, option in enumerate(options):
            ptype = self.TYPES.get(option.get("type"))
            if ptype is None:
                continue
            service = option.get("service") or {}
            slug = service.get("id", "")
            price = option.get("price") or {}
            try:
                amount = float(price["amount"]) if price.get("amount") is not None else None
            except ValueError:
                logger.debug(f"streaming_availability: unparseable price {price.get('amount')!r}")
                amount = None
            records.append(make_record(
                self.ID_BASE + idx,
                self.SERVICE_NAMES.get(slug, service.get("name") or slug),
                ptype,
                self.name,
                web_url=option.get("link") or None,
                logo_path=(service.get("imageSet") or {}).get("lightThemeImage"),
                price=amount,
                format=option.get("videoQuality") or None,
            ))
        return records


def build_default_sources(client: httpx.AsyncClient | None = None, region: str = CATALOG_REGION) -> list[SourceClient]:
    """All four catalog clients, configured from the environment."""
    return [
        TMDBSource(client=client, region=region),
        WatchmodeSource(client=client, region=region),
        UtellySource(client=client, region=region),
        StreamingAvailabilitySource(client=client, region=region),
    ]
