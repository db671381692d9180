"""Persisted priority queue of series discoveries and its background worker."""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from pydantic import TypeAdapter, ValidationError

from episodarr.core.config import Settings
from episodarr.core.storage import KeyValueStore
from episodarr.models.media import DiscoveryJob, Priority, QueueStatus
from episodarr.services.cache_store import EpisodeCacheStore
from episodarr.services.catalog import CatalogNetworkError, RateLimitedError
from episodarr.services.prober import EpisodeProber, SeasonNotFoundError

logger = logging.getLogger(__name__)

_snapshot = TypeAdapter(List[DiscoveryJob])


class DiscoveryQueue:
    """Single-worker queue that discovers whole series in the background.

    Jobs are ordered by priority, then by enqueue time. There is at most one
    job per series: a repeated request only escalates the priority. All
    mutation happens on the event loop, and ``enqueue`` never awaits, so the
    check-then-insert cannot interleave with the worker.
    """

    STORAGE_KEY = "tv_fetch_queue"

    def __init__(
        self,
        store: KeyValueStore,
        cache: EpisodeCacheStore,
        prober: EpisodeProber,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.prober = prober
        self._settings = settings
        self._clock = clock
        self.jobs: List[DiscoveryJob] = []
        self.processing: bool = False
        self.current_job: Optional[DiscoveryJob] = None
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._worker_task: Optional[asyncio.Task[None]] = None
        self._load()

    def _load(self) -> None:
        raw = self.store.get(self.STORAGE_KEY)
        if not raw:
            return
        try:
            self.jobs = _snapshot.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Failed to load discovery queue from storage: %s", exc)
            self.jobs = []
            return
        self._sort()
        logger.info("Loaded discovery queue: %d jobs", len(self.jobs))

    def save(self) -> None:
        self.store.set(self.STORAGE_KEY, _snapshot.dump_json(self.jobs).decode())

    def _sort(self) -> None:
        self.jobs.sort(key=lambda job: (job.priority.rank, job.enqueued_at))

    def _find(self, series_id: str) -> Optional[DiscoveryJob]:
        for job in self.jobs:
            if job.series_id == series_id:
                return job
        return None

    def is_queued(self, series_id: str) -> bool:
        return self._find(series_id) is not None

    def enqueue(
        self, series_id: str, title: str, priority: Priority = Priority.MEDIUM
    ) -> bool:
        """Queue a series for background discovery.

        Returns False when nothing needs doing because the cache is valid. A
        request for the series being processed right now only escalates it.
        """
        if self.cache.is_valid(series_id):
            logger.debug("Series already cached: %s", title)
            return False

        existing = self._find(series_id)
        if existing is None and self._is_current(series_id):
            existing = self.current_job
        if existing is not None:
            if priority.rank < existing.priority.rank:
                existing.priority = priority
                self._sort()
                self.save()
                logger.info("Escalated %s to %s priority", title, priority.value)
            return True

        self._add(
            DiscoveryJob(
                series_id=series_id,
                series_title=title,
                priority=priority,
                enqueued_at=self._clock(),
            )
        )
        return True

    def _is_current(self, series_id: str) -> bool:
        return self.current_job is not None and self.current_job.series_id == series_id

    def _add(self, job: DiscoveryJob) -> None:
        self.jobs.append(job)
        self._sort()
        self.save()
        logger.info(
            "Added to queue: %s (%s priority)", job.series_title, job.priority.value
        )
        self._wakeup.set()

    def _push(self, job: DiscoveryJob) -> None:
        """Put a job back, merging with any request that arrived meanwhile."""
        existing = self._find(job.series_id)
        if existing is not None:
            if job.priority.rank < existing.priority.rank:
                existing.priority = job.priority
            existing.attempts = max(existing.attempts, job.attempts)
        else:
            self.jobs.append(job)
        self._sort()
        self.save()
        self._wakeup.set()

    def force_refresh(self, series_id: str, title: str) -> None:
        """Drop the cached series and rediscover it ahead of everything else."""
        self.cache.invalidate(series_id)
        if self._is_current(series_id) and self._find(series_id) is None:
            # The running job may already have written seasons before the drop
            self._add(
                DiscoveryJob(
                    series_id=series_id,
                    series_title=title,
                    priority=Priority.HIGH,
                    enqueued_at=self._clock(),
                    refresh=True,
                )
            )
            return
        self.enqueue(series_id, title, Priority.HIGH)

    def clear(self) -> None:
        """Forget every pending job and every cached series."""
        self.jobs = []
        self.save()
        self.cache.clear()
        logger.info("Cleared all cache and queue")

    def status(self) -> QueueStatus:
        return QueueStatus(
            queue_length=len(self.jobs),
            processing=self.processing,
            current_job=self.current_job.series_title if self.current_job else None,
        )

    async def start(self) -> None:
        """Start the background worker."""
        if self._worker_task is not None and not self._worker_task.done():
            return
        self._stopping.clear()
        self._worker_task = asyncio.create_task(self._worker())

    async def stop(self) -> None:
        """Cancel the worker. An interrupted job goes back to the queue."""
        self._stopping.set()
        self._wakeup.set()
        if self._worker_task is not None:
            self._worker_task.cancel()
            await asyncio.gather(self._worker_task, return_exceptions=True)
            self._worker_task = None

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early if the queue is being stopped."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker(self) -> None:
        """Wait for jobs and drain the queue until stopped."""
        logger.info("Started background discovery worker")
        while not self._stopping.is_set():
            if not self.jobs:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            rate_limited = await self.run_pass()
            if rate_limited is not None:
                wait_s = self._settings.job_delay
                if rate_limited.resets_at is not None:
                    wait_s = rate_limited.resets_at - self._clock()
                wait_s = max(1.0, wait_s)
                logger.warning("Quota exhausted, pausing discovery for %.0fs", wait_s)
                await self._pause(wait_s)

    async def run_pass(self) -> Optional[RateLimitedError]:
        """Process queued jobs until the queue is empty.

        Returns the RateLimitedError that cut the pass short, if any.
        """
        if self.processing:
            return None
        self.processing = True
        try:
            while self.jobs and not self._stopping.is_set():
                job = self.jobs.pop(0)
                if not job.refresh and self.cache.is_valid(job.series_id):
                    self.save()
                    logger.info("Skipping %s, already cached", job.series_title)
                    continue
                self.current_job = job
                self.save()

                try:
                    logger.info("Processing: %s", job.series_title)
                    await self._process_job(job)
                except RateLimitedError as exc:
                    self._push(job)
                    logger.warning(
                        "Rate limited during %s, stopping this pass", job.series_title
                    )
                    return exc
                except CatalogNetworkError as exc:
                    self._requeue_after_network_error(job, exc)
                except asyncio.CancelledError:
                    self._push(job)
                    raise
                except Exception:
                    logger.exception("Failed to process %s, dropping job", job.series_title)
                finally:
                    self.current_job = None

                if self.jobs and self._settings.job_delay > 0:
                    await self._pause(self._settings.job_delay)
        finally:
            self.processing = False
        logger.info("Background processing completed")
        return None

    def _requeue_after_network_error(
        self, job: DiscoveryJob, exc: CatalogNetworkError
    ) -> None:
        job.attempts += 1
        if job.attempts >= self._settings.max_job_attempts:
            logger.error(
                "Dropping %s after %d network failures: %s",
                job.series_title,
                job.attempts,
                exc,
            )
            return
        job.priority = job.priority.demoted()
        logger.warning(
            "Network error for %s, requeued at %s priority (%s)",
            job.series_title,
            job.priority.value,
            exc,
        )
        self._push(job)

    async def _process_job(self, job: DiscoveryJob) -> None:
        """Discover seasons 1..max_seasons of one series."""
        settings = self._settings
        series_id = job.series_id
        total_seasons = 0
        consecutive_empty = 0

        self.cache.mark_fetching(series_id, True, title=job.series_title)
        try:
            for season in range(1, settings.max_seasons + 1):
                try:
                    episodes = await self.prober.discover_season(
                        series_id,
                        season,
                        max_episodes=settings.max_episodes_per_season,
                        max_consecutive_failures=settings.max_consecutive_failures,
                    )
                except SeasonNotFoundError:
                    episodes = []
                except RateLimitedError as exc:
                    if exc.partial:
                        self.cache.put_season(
                            series_id, season, exc.partial, fully_loaded=False
                        )
                    raise

                if episodes:
                    consecutive_empty = 0
                    total_seasons = season
                    self.cache.put_season(series_id, season, episodes)
                else:
                    consecutive_empty += 1
                    logger.info(
                        "Season %s of %s empty (%d/%d)",
                        season,
                        job.series_title,
                        consecutive_empty,
                        settings.max_consecutive_empty_seasons,
                    )
                    if consecutive_empty >= settings.max_consecutive_empty_seasons:
                        break

                if settings.season_delay > 0:
                    await asyncio.sleep(settings.season_delay)

            if total_seasons:
                self.cache.set_total_seasons(series_id, total_seasons)
        finally:
            self.cache.mark_fetching(series_id, False)

        logger.info(
            "Completed: %s (%d seasons, %d episodes)",
            job.series_title,
            total_seasons,
            self.cache.total_episodes(series_id),
        )
