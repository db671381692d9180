"""API routes returning JSON for the catalog UI or external tools."""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

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
from episodarr.services.catalog import (
    CatalogError,
    CatalogNetworkError,
    RateLimitedError,
)
from episodarr.services.discovery import DiscoveryBudgetExceeded, EpisodeDiscoveryService

router = APIRouter()


def get_discovery_service(request: Request) -> EpisodeDiscoveryService:
    """Dependency that provides the service built by the app lifespan."""
    return request.app.state.discovery


class SeriesRequest(BaseModel):
    """Request body for queueing or refreshing a series."""

    title: Optional[str] = None
    priority: Priority = Priority.MEDIUM


class SeasonResponse(BaseModel):
    """Cached season contents, or a hint that discovery is under way."""

    series_id: str
    season: int
    available: bool
    queued: bool = False
    episodes: List[Episode] = []


class EpisodeResponse(BaseModel):
    """A single episode lookup."""

    episode: Optional[Episode] = None
    queued: bool = False


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "episodarr"}


@router.get("/stats", response_model=ServiceStats)
async def service_stats(
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    return service.get_service_stats()


@router.get("/queue", response_model=QueueStatus)
async def queue_status(
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    return service.get_queue_status()


@router.get("/episodes/popular", response_model=List[PopularEpisode])
async def popular_episodes(
    limit: int = Query(50, ge=1, le=500),
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    """Most read cached episodes, for pre-caching."""
    return service.get_popular_episodes(limit)


@router.get("/series/{series_id}/status", response_model=SeriesStats)
async def series_status(
    series_id: str,
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    return service.get_series_status(series_id)


@router.get("/series/{series_id}/structure", response_model=SeriesStructure)
async def series_structure(
    series_id: str,
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    structure = service.get_series_structure(series_id)
    if structure is None:
        raise HTTPException(status_code=404, detail="Series not cached")
    return structure


@router.get("/series/{series_id}/progress", response_model=DiscoveryProgress)
async def series_progress(
    series_id: str,
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    return service.get_discovery_progress(series_id)


@router.post("/series/{series_id}/discover", response_model=SeriesDiscoveryResult)
async def discover_series(
    series_id: str,
    request: SeriesRequest,
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    """Queue background discovery of every season of a series."""
    try:
        return service.discover_series(series_id, request.title, request.priority)
    except DiscoveryBudgetExceeded as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/series/{series_id}/refresh")
async def refresh_series(
    series_id: str,
    request: SeriesRequest,
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
) -> dict[str, Any]:
    """Drop the cached series and rediscover it with high priority."""
    service.force_refresh(series_id, request.title)
    return {"series_id": series_id, "queued": service.queue.is_queued(series_id)}


@router.get("/series/{series_id}/seasons/{season}", response_model=SeasonResponse)
async def get_season(
    series_id: str,
    season: int,
    title: Optional[str] = Query(None, description="Series title for queue display"),
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    """Read a season from cache, queueing discovery on a miss."""
    episodes = service.get_season(series_id, season)
    if episodes is not None:
        return SeasonResponse(
            series_id=series_id, season=season, available=True, episodes=episodes
        )

    queued = service.queue.enqueue(series_id, title or series_id, Priority.MEDIUM)
    return SeasonResponse(series_id=series_id, season=season, available=False, queued=queued)


@router.post("/series/{series_id}/seasons/{season}/discover", response_model=List[Episode])
async def discover_season(
    series_id: str,
    season: int,
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    """Discover a season right away (the one currently on screen)."""
    try:
        return await service.discover_season(series_id, season)
    except CatalogNetworkError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except CatalogError as exc:
        raise HTTPException(status_code=502, detail=str(exc))


@router.get(
    "/series/{series_id}/seasons/{season}/episodes/{episode}",
    response_model=EpisodeResponse,
)
async def get_episode(
    series_id: str,
    season: int,
    episode: int,
    force_refresh: bool = Query(False, description="Bypass every cache"),
    service: EpisodeDiscoveryService = Depends(get_discovery_service),
):
    try:
        result = await service.get_episode(
            series_id, season, episode, force_refresh=force_refresh
        )
    except RateLimitedError as exc:
        raise HTTPException(status_code=429, detail=str(exc))
    except CatalogError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return EpisodeResponse(episode=result, queued=service.queue.is_queued(series_id))
