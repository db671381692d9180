import asyncio

import pytest

from episodarr.core.config import Settings
from episodarr.core.storage import MemoryKeyValueStore
from episodarr.models.media import Episode


def make_episode(series_id: str, season: int, episode: int) -> Episode:
    return Episode(
        series_id=series_id,
        season=season,
        episode=episode,
        external_id=f"{series_id}-{season}-{episode}",
        title=f"Episode {episode}",
    )


class FakeCatalog:
    """Scripted stand-in for the OMDb client."""

    def __init__(self) -> None:
        self.available: set[tuple[str, int, int]] = set()
        self.errors: dict[tuple[str, int, int], list[Exception]] = {}
        self.calls: list[tuple[str, int, int]] = []
        self.gate: asyncio.Event | None = None

    def add_season(self, series_id: str, season: int, episodes) -> None:
        for episode in episodes:
            self.available.add((series_id, season, episode))

    def fail(self, series_id: str, season: int, episode: int, *errors: Exception):
        self.errors.setdefault((series_id, season, episode), []).extend(errors)

    async def fetch_episode(self, series_id, season, episode, bypass_cache=False):
        key = (series_id, season, episode)
        self.calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors.get(key):
            raise self.errors[key].pop(0)
        if key in self.available:
            return make_episode(series_id, season, episode)
        return None


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        omdb_api_key="test-key",
        catalog_min_interval=0.001,
        catalog_backoff_base=1.0,
        probe_delay=0,
        season_delay=0,
        job_delay=0,
    )


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def clock():
    return FakeClock()
