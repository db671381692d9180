"""OMDb catalog client for single-episode lookups."""

import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import niquests
from aiolimiter import AsyncLimiter
from cachetools import TTLCache
from urllib3.util import Retry

from episodarr.core.config import Settings
from episodarr.core.storage import KeyValueStore
from episodarr.models.media import CatalogUsage, Episode

logger = logging.getLogger(__name__)

# Exact error string OMDb returns once the key's daily quota is used up
RATE_LIMIT_SENTINEL = "Request limit reached!"
AUTH_ERRORS = frozenset({"Invalid API key!", "No API key provided."})

QUOTA_WINDOW = 24 * 60 * 60


class CatalogError(Exception):
    """Domain exception for catalog failures."""

    def __init__(self, message: str, original_exception: Exception = None):
        super().__init__(message)
        self.original_exception = original_exception


class RateLimitedError(CatalogError):
    """The upstream quota is exhausted, no further calls until it resets."""

    def __init__(self, message: str, resets_at: Optional[float] = None):
        super().__init__(message)
        self.resets_at = resets_at
        # Episodes found before the limit tripped, set by the prober
        self.partial: list[Episode] = []


class CatalogNetworkError(CatalogError):
    """Transient transport failure (connection, timeout, 5xx)."""


class QuotaTracker:
    """Rolling daily request counter persisted in the key-value store.

    The window opens on the first request and lasts 24 hours; the counter
    resets once it has elapsed.
    """

    STORAGE_KEY = "catalog_quota"

    def __init__(
        self,
        store: KeyValueStore,
        daily_limit: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.daily_limit = daily_limit
        self._clock = clock
        self.count = 0
        self.window_started: Optional[float] = None
        self._load()

    def _load(self) -> None:
        raw = self.store.get(self.STORAGE_KEY)
        if not raw:
            return
        try:
            data = json.loads(raw)
            self.count = int(data.get("count", 0))
            started = data.get("window_started")
            self.window_started = float(started) if started is not None else None
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Discarding unreadable quota snapshot: %s", exc)
            self.count = 0
            self.window_started = None
        self._roll()

    def _save(self) -> None:
        self.store.set(
            self.STORAGE_KEY,
            json.dumps({"count": self.count, "window_started": self.window_started}),
        )

    def _roll(self) -> None:
        if (
            self.window_started is not None
            and self._clock() - self.window_started >= QUOTA_WINDOW
        ):
            logger.info("Catalog quota window elapsed, resetting request counter")
            self.count = 0
            self.window_started = None
            self._save()

    def is_exhausted(self) -> bool:
        self._roll()
        return self.count >= self.daily_limit

    def record(self) -> None:
        """Count one request sent upstream."""
        self._roll()
        if self.window_started is None:
            self.window_started = self._clock()
        self.count += 1
        self._save()

    def exhaust(self) -> None:
        """Pin the counter at the limit after the upstream refused us."""
        self._roll()
        if self.window_started is None:
            self.window_started = self._clock()
        self.count = max(self.count, self.daily_limit)
        self._save()

    def resets_at(self) -> Optional[float]:
        self._roll()
        if self.window_started is None:
            return None
        return self.window_started + QUOTA_WINDOW

    def seconds_until_reset(self) -> float:
        resets_at = self.resets_at()
        if resets_at is None:
            return 0.0
        return max(0.0, resets_at - self._clock())


def _value(data: dict[str, Any], key: str) -> Optional[str]:
    """Return a field, mapping OMDb's "N/A" placeholder to None."""
    value = data.get(key)
    if value is None:
        return None
    value = str(value).strip()
    if not value or value in ("N/A", "undefined"):
        return None
    return value


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    match = re.search(r"\d+", value)
    return int(match.group(0)) if match else None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_episode(
    series_id: str, season: int, episode: int, data: dict[str, Any]
) -> Optional[Episode]:
    """Build an Episode from an OMDb payload, None if the payload is unusable."""
    title = _value(data, "Title")
    if title is None:
        logger.warning(
            "Malformed response for %s S%sE%s: missing title", series_id, season, episode
        )
        return None

    return Episode(
        series_id=series_id,
        season=season,
        episode=episode,
        external_id=_value(data, "imdbID"),
        title=title,
        plot=_value(data, "Plot"),
        air_date=_value(data, "Released"),
        year=_parse_int(_value(data, "Year")),
        runtime=_parse_int(_value(data, "Runtime")),
        rating=_parse_float(_value(data, "imdbRating")),
        poster_url=_value(data, "Poster"),
        director=_value(data, "Director"),
        writer=_value(data, "Writer"),
        actors=_value(data, "Actors"),
        genre=_value(data, "Genre"),
        imdb_votes=_value(data, "imdbVotes"),
    )


def build_retry(settings: Settings) -> Retry:
    """Session-level retry for transport errors and 5xx answers.

    OMDb reports an exhausted quota with a 401, which is not in the
    forcelist, so the rate-limit sentinel is never retried.
    """
    return Retry(
        total=settings.catalog_max_attempts - 1,
        backoff_factor=settings.catalog_backoff_base,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET"],
    )


class CatalogClient:
    """Budget and cache aware wrapper over OMDb's episode lookup.

    Every network call goes through the shared limiter and the daily quota.
    The session retries transient failures with exponential backoff, a
    rate-limit response never is.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        session: niquests.AsyncSession | None = None,
        limiter: AsyncLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        if session is None:
            session = niquests.AsyncSession(retries=build_retry(settings))
            if settings.proxy:
                session.proxies = {"http": settings.proxy, "https": settings.proxy}
        self.session = session
        if limiter is None:
            limiter = AsyncLimiter(1, settings.catalog_min_interval)
        self.limiter = limiter
        self.quota = QuotaTracker(store, settings.catalog_daily_limit, clock=clock)
        self.response_cache: TTLCache = TTLCache(
            maxsize=settings.response_cache_size, ttl=settings.response_cache_ttl
        )
        self.cache_hits = 0
        self.cache_misses = 0

    async def aclose(self) -> None:
        """Properly close the internal HTTP session."""
        if self.session:
            await self.session.close()

    async def fetch_episode(
        self,
        series_id: str,
        season: int,
        episode: int,
        bypass_cache: bool = False,
    ) -> Optional[Episode]:
        """Look up one episode.

        Returns None when the episode does not exist (or the response could
        not be understood). Raises RateLimitedError or CatalogNetworkError.
        """
        cache_key = (series_id, season, episode)
        if not bypass_cache and cache_key in self.response_cache:
            self.cache_hits += 1
            logger.debug("Using cached result for %s S%sE%s", series_id, season, episode)
            return _parse_episode(series_id, season, episode, self.response_cache[cache_key])

        self.cache_misses += 1
        params = {
            "i": series_id,
            "Season": str(season),
            "Episode": str(episode),
            "plot": "full",
        }
        data = await self._request(params)
        if data is None:
            return None

        result = _parse_episode(series_id, season, episode, data)
        if result is not None:
            self.response_cache[cache_key] = data
        return result

    async def _request(self, params: dict[str, str]) -> Optional[dict[str, Any]]:
        if self.quota.is_exhausted():
            raise RateLimitedError(
                "Daily catalog quota exhausted", resets_at=self.quota.resets_at()
            )

        try:
            async with self.limiter:
                self.quota.record()
                response = await self.session.get(
                    self._settings.omdb_base_url,
                    params={**params, "apikey": self._settings.omdb_api_key},
                    timeout=self._settings.catalog_timeout,
                )
        except niquests.exceptions.RequestException as exc:
            logger.error(
                "Catalog request for %s S%sE%s failed after retries: %s",
                params["i"],
                params["Season"],
                params["Episode"],
                exc,
            )
            raise CatalogNetworkError(f"Catalog request failed: {exc}", exc) from exc

        status = response.status_code or 0
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("Error") == RATE_LIMIT_SENTINEL:
            self.quota.exhaust()
            logger.warning("Catalog rate limit reached, pausing upstream calls")
            raise RateLimitedError(RATE_LIMIT_SENTINEL, resets_at=self.quota.resets_at())

        if status >= 500 or status == 429:
            raise CatalogNetworkError(f"Catalog returned HTTP {status}")

        if not isinstance(data, dict):
            logger.warning(
                "Malformed response for %s S%sE%s, treating as not found",
                params["i"],
                params["Season"],
                params["Episode"],
            )
            return None

        if data.get("Response") == "False":
            error = data.get("Error", "")
            if error in AUTH_ERRORS:
                raise CatalogError(f"Catalog rejected the API key: {error}")
            logger.debug(
                "Not found: %s S%sE%s (%s)",
                params["i"],
                params["Season"],
                params["Episode"],
                error,
            )
            return None

        if status >= 400:
            raise CatalogError(f"Catalog returned HTTP {status}")

        return data

    def usage(self) -> CatalogUsage:
        """Current quota and response cache counters."""
        resets_at = self.quota.resets_at()
        return CatalogUsage(
            requests_used=self.quota.count,
            daily_limit=self.quota.daily_limit,
            resets_at=datetime.fromtimestamp(resets_at, tz=timezone.utc)
            if resets_at
            else None,
            cache_hits=self.cache_hits,
            cache_misses=self.cache_misses,
        )

    def clear_cache(self) -> None:
        """Drop every cached response."""
        self.response_cache.clear()
        logger.info("Catalog response cache cleared")
