"""Consumer-facing episode discovery service."""

import logging
import time
from typing import Callable, Iterable, List, Optional

from episodarr.core.config import Settings
from episodarr.core.storage import KeyValueStore
from episodarr.models.media import (
    DiscoveryProgress,
    Episode,
    PopularEpisode,
    Priority,
    QueueStatus,
    SeriesDiscoveryResult,
    SeriesStats,
    SeriesStructure,
    ServiceStats,
)
from episodarr.services.cache_store import EpisodeCacheStore
from episodarr.services.catalog import (
    CatalogClient,
    CatalogNetworkError,
    RateLimitedError,
)
from episodarr.services.discovery_queue import DiscoveryQueue
from episodarr.services.prober import (
    EpisodeProber,
    EpisodeSource,
    ProgressListener,
    SeasonNotFoundError,
)

logger = logging.getLogger(__name__)


class DiscoveryBudgetExceeded(Exception):
    """A series discovery would need more upstream calls than allowed."""

    def __init__(self, estimated_calls: int, limit: int):
        super().__init__(
            f"Series discovery would require ~{estimated_calls} API calls, "
            f"exceeding limit of {limit}"
        )
        self.estimated_calls = estimated_calls
        self.limit = limit


class EpisodeDiscoveryService:
    """Wires the catalog client, prober, cache store and job queue together.

    Build one per process, call ``start()`` before use and ``stop()`` on
    shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        catalog: EpisodeSource | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        if catalog is None:
            catalog = CatalogClient(settings, store, clock=clock)
        self.catalog = catalog
        self.cache = EpisodeCacheStore(store, settings.cache_duration, clock=clock)
        self.prober = EpisodeProber(catalog, probe_delay=settings.probe_delay)
        self.queue = DiscoveryQueue(store, self.cache, self.prober, settings, clock=clock)

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()
        if hasattr(self.catalog, "aclose"):
            try:
                await self.catalog.aclose()
            except Exception as e:
                logger.error(f"Error closing catalog client: {e}")

    def get_season(self, series_id: str, season: int) -> Optional[List[Episode]]:
        """Cached episodes of a season, None if not (yet) available."""
        return self.cache.get_season(series_id, season)

    async def get_episode(
        self,
        series_id: str,
        season: int,
        episode: int,
        force_refresh: bool = False,
        title: Optional[str] = None,
    ) -> Optional[Episode]:
        """Return one episode, from cache when possible.

        Upstream trouble never fails the read: a stale copy or None is
        returned and the series is queued for background discovery instead.
        """
        if not force_refresh:
            cached = self.cache.peek_episode(series_id, season, episode)
            if cached is not None:
                return cached

        try:
            return await self.catalog.fetch_episode(
                series_id, season, episode, bypass_cache=force_refresh
            )
        except (RateLimitedError, CatalogNetworkError) as exc:
            logger.warning(
                "Episode lookup %s S%sE%s failed: %s", series_id, season, episode, exc
            )
            self.queue.enqueue(series_id, title or series_id, Priority.LOW)
            return self.cache.peek_episode(series_id, season, episode, allow_stale=True)

    async def discover_season(
        self,
        series_id: str,
        season: int,
        on_progress: Iterable[ProgressListener] = (),
    ) -> List[Episode]:
        """Discover the season being viewed right now, in the foreground."""
        cached = self.cache.get_season(series_id, season)
        if cached is not None:
            return cached

        try:
            episodes = await self.prober.discover_season(
                series_id,
                season,
                max_episodes=self.settings.max_episodes_per_season,
                max_consecutive_failures=self.settings.max_consecutive_failures,
                on_progress=on_progress,
            )
        except SeasonNotFoundError:
            return []
        except RateLimitedError as exc:
            if exc.partial:
                self.cache.put_season(series_id, season, exc.partial, fully_loaded=False)
            return list(exc.partial)

        if episodes:
            self.cache.put_season(series_id, season, episodes)
        return episodes

    def discover_series(
        self,
        series_id: str,
        title: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> SeriesDiscoveryResult:
        """Queue a full-series discovery in the background."""
        if self.cache.is_valid(series_id):
            return SeriesDiscoveryResult(queued=False, estimated_calls=0)

        estimated_calls = (
            self.cache.total_episodes(series_id)
            or self.settings.estimated_series_episodes
        )
        if estimated_calls > self.settings.max_series_api_calls:
            raise DiscoveryBudgetExceeded(
                estimated_calls, self.settings.max_series_api_calls
            )

        queued = self.queue.enqueue(series_id, title or series_id, priority)
        return SeriesDiscoveryResult(queued=queued, estimated_calls=estimated_calls)

    def force_refresh(self, series_id: str, title: Optional[str] = None) -> None:
        self.queue.force_refresh(series_id, title or series_id)

    def get_discovery_progress(self, series_id: str) -> DiscoveryProgress:
        discovered = self.cache.total_episodes(series_id)
        for live in self.prober.in_progress(series_id):
            if not self.cache.has_season(series_id, live.season):
                discovered += live.found

        pending = self.queue.is_queued(series_id) or self.cache.is_being_fetched(
            series_id
        )
        if pending:
            total = max(discovered, self.settings.estimated_series_episodes)
        else:
            total = discovered

        if total == 0:
            return DiscoveryProgress()

        return DiscoveryProgress(
            episodes_discovered=discovered,
            total_episodes=total,
            discovery_percentage=round(discovered / total * 100, 2),
            estimated_remaining_calls=max(0, total - discovered),
        )

    def get_series_status(self, series_id: str) -> SeriesStats:
        return self.cache.stats(series_id)

    def get_series_structure(self, series_id: str) -> Optional[SeriesStructure]:
        """Per-season episode counts of a cached series, None if unknown."""
        return self.cache.structure(series_id)

    def get_popular_episodes(self, limit: int = 50) -> List[PopularEpisode]:
        return self.cache.popular_episodes(limit)

    def get_queue_status(self) -> QueueStatus:
        return self.queue.status()

    def get_service_stats(self) -> ServiceStats:
        cached = self.cache.cached_episode_count()
        queue_items = len(self.queue.jobs) + (1 if self.queue.current_job else 0)
        efficiency = round(cached / (cached + queue_items) * 100) if cached else 0
        usage = self.catalog.usage() if hasattr(self.catalog, "usage") else None
        return ServiceStats(
            cached_episodes=cached,
            queue_items=queue_items,
            api_efficiency=efficiency,
            catalog=usage,
        )
