"""Sequential episode probing for seasons of unknown length."""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol

from episodarr.models.media import Episode
from episodarr.services.catalog import RateLimitedError

logger = logging.getLogger(__name__)


class SeasonNotFoundError(Exception):
    """Episode 1 of the season is absent, the season most likely does not exist."""

    def __init__(self, series_id: str, season: int):
        super().__init__(f"Season {season} of {series_id} not found")
        self.series_id = series_id
        self.season = season


class EpisodeSource(Protocol):
    async def fetch_episode(
        self, series_id: str, season: int, episode: int, bypass_cache: bool = False
    ) -> Optional[Episode]: ...


@dataclass
class ProbeProgress:
    """Live state of one season probe."""

    series_id: str
    season: int
    found: int = 0
    tried: int = 0
    finished: bool = False


ProgressListener = Callable[[ProbeProgress], None]


class EpisodeProber:
    """Enumerates a season one episode at a time.

    Episodes are probed strictly in order. Probing stops after
    ``max_consecutive_failures`` misses in a row, which trades completeness
    for quota: a season with that many genuine gaps before its real end is
    cut short.
    """

    def __init__(
        self,
        catalog: EpisodeSource,
        probe_delay: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.catalog = catalog
        self.probe_delay = probe_delay
        self._sleep = sleep
        self._active: dict[tuple[str, int], ProbeProgress] = {}

    def progress(
        self, series_id: str, season: Optional[int] = None
    ) -> Optional[ProbeProgress]:
        """Snapshot of a season being probed, any season when none is given."""
        if season is not None:
            state = self._active.get((series_id, season))
            return replace(state) if state else None
        active = self.in_progress(series_id)
        return active[0] if active else None

    def in_progress(self, series_id: str) -> List[ProbeProgress]:
        """Snapshots of every season of a series being probed right now."""
        return [
            replace(state)
            for (active_id, _), state in sorted(self._active.items())
            if active_id == series_id
        ]

    async def discover_season(
        self,
        series_id: str,
        season: int,
        max_episodes: int = 30,
        max_consecutive_failures: int = 3,
        on_progress: Iterable[ProgressListener] = (),
    ) -> List[Episode]:
        """Probe episodes 1..max_episodes of a season.

        Raises SeasonNotFoundError if episode 1 is missing. A RateLimitedError
        is re-raised with the episodes found so far attached as ``partial``.
        """
        listeners = list(on_progress)
        state = ProbeProgress(series_id=series_id, season=season)
        key = (series_id, season)
        self._active[key] = state
        episodes: List[Episode] = []
        consecutive_failures = 0

        try:
            for episode_num in range(1, max_episodes + 1):
                if episode_num > 1 and self.probe_delay > 0:
                    await self._sleep(self.probe_delay)

                try:
                    episode = await self.catalog.fetch_episode(
                        series_id, season, episode_num
                    )
                except RateLimitedError as exc:
                    logger.warning(
                        "Rate limited while probing %s S%sE%s, keeping %d episodes",
                        series_id,
                        season,
                        episode_num,
                        len(episodes),
                    )
                    exc.partial = list(episodes)
                    raise

                state.tried += 1
                if episode is not None:
                    episodes.append(episode)
                    state.found += 1
                    consecutive_failures = 0
                else:
                    consecutive_failures += 1

                self._notify(listeners, state)

                if episode is None and episode_num == 1:
                    logger.debug("%s S%s has no episode 1", series_id, season)
                    raise SeasonNotFoundError(series_id, season)

                if consecutive_failures >= max_consecutive_failures:
                    logger.debug(
                        "Stopping %s S%s after %d consecutive misses",
                        series_id,
                        season,
                        consecutive_failures,
                    )
                    break
        finally:
            state.finished = True
            # A concurrent probe of the same season may own the slot by now
            if self._active.get(key) is state:
                del self._active[key]

        logger.info(
            "Season %s of %s: %d episodes found in %d probes",
            season,
            series_id,
            state.found,
            state.tried,
        )
        return episodes

    @staticmethod
    def _notify(listeners: List[ProgressListener], state: ProbeProgress) -> None:
        for listener in listeners:
            try:
                listener(replace(state))
            except Exception as e:
                logger.error(f"Progress listener failed: {e}", exc_info=e)
