"""Media models for discovered episodes and their cache entries."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class Priority(str, Enum):
    """Discovery job priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, lower is serviced first."""
        return _PRIORITY_RANKS[self]

    def demoted(self) -> "Priority":
        """One tier lower, never below LOW."""
        if self is Priority.HIGH:
            return Priority.MEDIUM
        return Priority.LOW


_PRIORITY_RANKS = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class Episode(BaseModel):
    """A single episode as returned by the catalog."""

    model_config = ConfigDict(frozen=True)

    series_id: str
    season: int
    episode: int
    external_id: Optional[str] = None
    title: str
    plot: Optional[str] = None
    air_date: Optional[str] = None
    year: Optional[int] = None
    runtime: Optional[int] = None  # minutes
    rating: Optional[float] = None
    poster_url: Optional[str] = None
    director: Optional[str] = None
    writer: Optional[str] = None
    actors: Optional[str] = None
    genre: Optional[str] = None
    imdb_votes: Optional[str] = None  # As reported, e.g. "32,511"


class SeasonCacheEntry(BaseModel):
    """Episodes of one season, replaced wholesale on rediscovery."""

    episodes: List[Episode] = []
    timestamp: float
    fully_loaded: bool = True
    episode_count: int = 0
    access_counts: Dict[int, int] = {}  # Cache reads per episode number


class SeriesCacheEntry(BaseModel):
    """All cached seasons of one series."""

    seasons: Dict[int, SeasonCacheEntry] = {}
    total_seasons: int = 0  # Highest season confirmed non-empty
    last_updated: float
    is_background_fetching: bool = False
    title: Optional[str] = None


class DiscoveryJob(BaseModel):
    """A pending request to discover every season of a series."""

    series_id: str
    series_title: str
    priority: Priority = Priority.MEDIUM
    enqueued_at: float
    attempts: int = 0
    refresh: bool = False  # Rediscover even if the cache looks valid


class SeriesStats(BaseModel):
    """Cache status of one series."""

    cached: bool
    total_seasons: int = 0
    total_episodes: int = 0
    last_updated: Optional[datetime] = None
    is_being_fetched: bool = False


class SeasonStructure(BaseModel):
    episodes: int
    discovered: bool  # Fully loaded and not expired


class SeriesStructure(BaseModel):
    """Per-season shape of a cached series."""

    series_id: str
    title: Optional[str] = None
    total_seasons: int
    total_episodes: int
    seasons: Dict[int, SeasonStructure] = {}


class PopularEpisode(BaseModel):
    """A cached episode and how often it has been read from cache."""

    episode: Episode
    access_count: int


class QueueStatus(BaseModel):
    """Snapshot of the background discovery queue."""

    queue_length: int
    processing: bool
    current_job: Optional[str] = None  # Title of the series being discovered


class DiscoveryProgress(BaseModel):
    """How far discovery of a series has come."""

    episodes_discovered: int = 0
    total_episodes: int = 0
    discovery_percentage: float = 0.0
    estimated_remaining_calls: int = 0


class SeriesDiscoveryResult(BaseModel):
    """Outcome of a background series discovery request."""

    queued: bool
    estimated_calls: int


class CatalogUsage(BaseModel):
    """Upstream quota and response cache counters."""

    requests_used: int
    daily_limit: int
    resets_at: Optional[datetime] = None
    cache_hits: int = 0
    cache_misses: int = 0


class ServiceStats(BaseModel):
    """Aggregate health of the discovery service."""

    cached_episodes: int
    queue_items: int
    api_efficiency: int
    catalog: Optional[CatalogUsage] = None
