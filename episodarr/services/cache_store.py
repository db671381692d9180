"""Season/series episode cache with TTL validity and persistence."""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from episodarr.core.storage import KeyValueStore
from episodarr.models.media import (
    Episode,
    PopularEpisode,
    SeasonCacheEntry,
    SeasonStructure,
    SeriesCacheEntry,
    SeriesStats,
    SeriesStructure,
)

logger = logging.getLogger(__name__)

_snapshot = TypeAdapter(Dict[str, SeriesCacheEntry])


class EpisodeCacheStore:
    """Holds discovered episodes keyed by (series, season).

    The whole map is written back to the key-value store after every
    mutation, so a restart resumes with the same contents.
    """

    STORAGE_KEY = "tv_episodes_cache"

    def __init__(
        self,
        store: KeyValueStore,
        cache_duration: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache_duration = cache_duration
        self._clock = clock
        self._series: Dict[str, SeriesCacheEntry] = {}
        self._load()

    def _load(self) -> None:
        raw = self.store.get(self.STORAGE_KEY)
        if not raw:
            return
        try:
            self._series = _snapshot.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Failed to load episode cache from storage: %s", exc)
            self._series = {}
            return

        # No worker survives a restart
        for entry in self._series.values():
            entry.is_background_fetching = False
        logger.info("Loaded episode cache: %d series", len(self._series))

    def save(self) -> None:
        self.store.set(self.STORAGE_KEY, _snapshot.dump_json(self._series).decode())

    def _is_fresh(self, season: SeasonCacheEntry) -> bool:
        return self._clock() - season.timestamp < self.cache_duration

    def get_season(self, series_id: str, season: int) -> Optional[List[Episode]]:
        """Episodes of a fully loaded, unexpired season, else None."""
        series = self._series.get(series_id)
        if series is None:
            return None
        entry = series.seasons.get(season)
        if entry is None or not entry.fully_loaded or not self._is_fresh(entry):
            return None
        for cached in entry.episodes:
            self._touch(entry, cached.episode)
        return list(entry.episodes)

    @staticmethod
    def _touch(entry: SeasonCacheEntry, episode: int) -> None:
        # Counted in memory, persisted with the next snapshot
        entry.access_counts[episode] = entry.access_counts.get(episode, 0) + 1

    def peek_episode(
        self, series_id: str, season: int, episode: int, allow_stale: bool = False
    ) -> Optional[Episode]:
        """Find one cached episode, optionally ignoring expiry."""
        series = self._series.get(series_id)
        if series is None:
            return None
        entry = series.seasons.get(season)
        if entry is None:
            return None
        if not allow_stale and not self._is_fresh(entry):
            return None
        for cached in entry.episodes:
            if cached.episode == episode:
                self._touch(entry, episode)
                return cached
        return None

    def is_valid(self, series_id: str) -> bool:
        """True if the series has seasons cached and none is stale or partial."""
        series = self._series.get(series_id)
        if series is None or not series.seasons:
            return False
        return all(
            entry.fully_loaded and self._is_fresh(entry)
            for entry in series.seasons.values()
        )

    def _ensure(self, series_id: str) -> SeriesCacheEntry:
        series = self._series.get(series_id)
        if series is None:
            series = SeriesCacheEntry(last_updated=self._clock())
            self._series[series_id] = series
        return series

    def put_season(
        self,
        series_id: str,
        season: int,
        episodes: List[Episode],
        fully_loaded: bool = True,
    ) -> None:
        """Replace a season entry wholesale."""
        series = self._ensure(series_id)
        now = self._clock()
        ordered = sorted(episodes, key=lambda e: e.episode)
        previous = series.seasons.get(season)
        kept_counts = {}
        if previous is not None:
            numbers = {e.episode for e in ordered}
            kept_counts = {
                number: count
                for number, count in previous.access_counts.items()
                if number in numbers
            }
        series.seasons[season] = SeasonCacheEntry(
            episodes=ordered,
            timestamp=now,
            fully_loaded=fully_loaded,
            episode_count=len(ordered),
            access_counts=kept_counts,
        )
        if ordered and season > series.total_seasons:
            series.total_seasons = season
        series.last_updated = now
        self.save()
        logger.info(
            "Cached season %s of %s: %d episodes%s",
            season,
            series_id,
            len(ordered),
            "" if fully_loaded else " (partial)",
        )

    def has_season(self, series_id: str, season: int) -> bool:
        series = self._series.get(series_id)
        return series is not None and season in series.seasons

    def set_total_seasons(self, series_id: str, total_seasons: int) -> None:
        """Record the season count, dropping seasons beyond it."""
        series = self._ensure(series_id)
        series.total_seasons = total_seasons
        for season in [s for s in series.seasons if s > total_seasons]:
            del series.seasons[season]
        series.last_updated = self._clock()
        self.save()

    def mark_fetching(
        self, series_id: str, fetching: bool, title: Optional[str] = None
    ) -> None:
        series = self._ensure(series_id)
        series.is_background_fetching = fetching
        if title:
            series.title = title
        if not fetching and not series.seasons:
            # Nothing discovered, do not leave an empty shell behind
            del self._series[series_id]
        self.save()

    def invalidate(self, series_id: str) -> None:
        """Delete everything cached for a series."""
        if self._series.pop(series_id, None) is not None:
            self.save()
            logger.info("Invalidated cache for %s", series_id)

    def clear(self) -> None:
        self._series = {}
        self.save()

    def is_being_fetched(self, series_id: str) -> bool:
        series = self._series.get(series_id)
        return series.is_background_fetching if series else False

    def total_seasons(self, series_id: str) -> int:
        series = self._series.get(series_id)
        return series.total_seasons if series else 0

    def total_episodes(self, series_id: str) -> int:
        series = self._series.get(series_id)
        if series is None:
            return 0
        return sum(entry.episode_count for entry in series.seasons.values())

    def cached_episode_count(self) -> int:
        """Episodes cached across every series."""
        return sum(self.total_episodes(series_id) for series_id in self._series)

    def popular_episodes(self, limit: int = 50) -> List[PopularEpisode]:
        """Most read cached episodes, candidates for pre-caching."""
        ranked: List[Tuple[int, Episode]] = []
        for series in self._series.values():
            for entry in series.seasons.values():
                for cached in entry.episodes:
                    count = entry.access_counts.get(cached.episode, 0)
                    if count:
                        ranked.append((count, cached))
        ranked.sort(
            key=lambda item: (-item[0], item[1].series_id, item[1].season, item[1].episode)
        )
        return [
            PopularEpisode(episode=cached, access_count=count)
            for count, cached in ranked[:limit]
        ]

    def structure(self, series_id: str) -> Optional[SeriesStructure]:
        series = self._series.get(series_id)
        if series is None or not series.seasons:
            return None
        return SeriesStructure(
            series_id=series_id,
            title=series.title,
            total_seasons=series.total_seasons,
            total_episodes=self.total_episodes(series_id),
            seasons={
                number: SeasonStructure(
                    episodes=entry.episode_count,
                    discovered=entry.fully_loaded and self._is_fresh(entry),
                )
                for number, entry in sorted(series.seasons.items())
            },
        )

    def stats(self, series_id: str) -> SeriesStats:
        series = self._series.get(series_id)
        if series is None:
            return SeriesStats(cached=False)
        return SeriesStats(
            cached=self.is_valid(series_id),
            total_seasons=series.total_seasons,
            total_episodes=self.total_episodes(series_id),
            last_updated=datetime.fromtimestamp(series.last_updated, tz=timezone.utc),
            is_being_fetched=series.is_background_fetching,
        )
