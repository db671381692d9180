import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import niquests
from aiolimiter import AsyncLimiter
from urllib3.util import Retry

from episodarr.core.storage import MemoryKeyValueStore
from episodarr.services.catalog import (
    QUOTA_WINDOW,
    CatalogClient,
    CatalogError,
    CatalogNetworkError,
    QuotaTracker,
    RateLimitedError,
)

EPISODE_PAYLOAD = {
    "Title": "Pilot",
    "Year": "2008",
    "Released": "20 Jan 2008",
    "Runtime": "58 min",
    "Director": "Vince Gilligan",
    "Writer": "Vince Gilligan",
    "Actors": "Bryan Cranston, Anna Gunn",
    "Plot": "A chemistry teacher turns to crime.",
    "Poster": "N/A",
    "Genre": "Crime, Drama",
    "imdbRating": "9.0",
    "imdbVotes": "32,511",
    "imdbID": "tt0959621",
    "Season": "1",
    "Episode": "1",
    "Response": "True",
}

NOT_FOUND_PAYLOAD = {"Response": "False", "Error": "Series or episode not found!"}
RATE_LIMIT_PAYLOAD = {"Response": "False", "Error": "Request limit reached!"}


def _response(payload=None, status_code=200, json_error=False):
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


def _client(settings, session, store=None, clock=None, limiter=None):
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return CatalogClient(
        settings,
        store or MemoryKeyValueStore(),
        session=session,
        limiter=limiter or AsyncLimiter(1000, 1),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_fetch_episode_parses_payload(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(EPISODE_PAYLOAD))
    client = _client(settings, session)

    episode = await client.fetch_episode("tt0903747", 1, 1)

    assert episode.title == "Pilot"
    assert episode.external_id == "tt0959621"
    assert episode.runtime == 58
    assert episode.rating == 9.0
    assert episode.year == 2008
    assert episode.poster_url is None
    assert episode.genre == "Crime, Drama"
    assert episode.imdb_votes == "32,511"
    assert (episode.series_id, episode.season, episode.episode) == ("tt0903747", 1, 1)

    params = session.get.call_args.kwargs["params"]
    assert params["i"] == "tt0903747"
    assert params["Season"] == "1"
    assert params["Episode"] == "1"
    assert params["apikey"] == "test-key"


@pytest.mark.asyncio
async def test_not_found_returns_none(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(NOT_FOUND_PAYLOAD))
    client = _client(settings, session)

    assert await client.fetch_episode("tt0903747", 1, 99) is None


@pytest.mark.asyncio
async def test_malformed_response_is_treated_as_not_found(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(json_error=True))
    client = _client(settings, session)

    assert await client.fetch_episode("tt0903747", 1, 1) is None
    assert session.get.await_count == 1


@pytest.mark.asyncio
async def test_payload_without_title_is_treated_as_not_found(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response({"Response": "True"}))
    client = _client(settings, session)

    assert await client.fetch_episode("tt0903747", 1, 1) is None


@pytest.mark.asyncio
async def test_responses_are_cached(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(EPISODE_PAYLOAD))
    client = _client(settings, session)

    first = await client.fetch_episode("tt0903747", 1, 1)
    second = await client.fetch_episode("tt0903747", 1, 1)

    assert first == second
    assert session.get.await_count == 1
    assert client.cache_hits == 1

    await client.fetch_episode("tt0903747", 1, 1, bypass_cache=True)
    assert session.get.await_count == 2


@pytest.mark.asyncio
async def test_rate_limit_is_not_retried_and_blocks_further_calls(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(RATE_LIMIT_PAYLOAD, status_code=401))
    client = _client(settings, session)

    with pytest.raises(RateLimitedError):
        await client.fetch_episode("tt0903747", 1, 5)
    assert session.get.await_count == 1

    with pytest.raises(RateLimitedError):
        await client.fetch_episode("tt0903747", 1, 6)
    assert session.get.await_count == 1


def test_default_session_retries_server_errors_only(settings, store):
    with patch("episodarr.services.catalog.niquests.AsyncSession") as session_cls:
        CatalogClient(settings, store)

    retry = session_cls.call_args.kwargs["retries"]
    assert isinstance(retry, Retry)
    assert retry.total == settings.catalog_max_attempts - 1
    assert retry.backoff_factor == settings.catalog_backoff_base
    assert 503 in retry.status_forcelist
    # Quota exhaustion comes back as a 401 and must never be retried
    assert 401 not in retry.status_forcelist
    assert 429 not in retry.status_forcelist


@pytest.mark.asyncio
async def test_failure_after_session_retries_is_a_network_error(settings):
    session = MagicMock()
    session.get = AsyncMock(side_effect=niquests.exceptions.Timeout("read timed out"))
    client = _client(settings, session)

    with pytest.raises(CatalogNetworkError) as excinfo:
        await client.fetch_episode("tt0903747", 1, 1)

    assert session.get.await_count == 1
    assert isinstance(excinfo.value.__cause__, niquests.exceptions.Timeout)
    assert isinstance(excinfo.value.original_exception, niquests.exceptions.Timeout)


@pytest.mark.asyncio
async def test_server_error_response_is_transient(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(json_error=True, status_code=503))
    client = _client(settings, session)

    with pytest.raises(CatalogNetworkError):
        await client.fetch_episode("tt0903747", 1, 1)
    assert client.response_cache.currsize == 0


@pytest.mark.asyncio
async def test_requests_are_spaced_by_the_limiter(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(NOT_FOUND_PAYLOAD))
    client = _client(settings, session, limiter=AsyncLimiter(1, 0.2))
    loop = asyncio.get_running_loop()

    started = loop.time()
    await client.fetch_episode("tt1", 1, 1)
    await client.fetch_episode("tt1", 1, 2)
    elapsed = loop.time() - started

    assert session.get.await_count == 2
    assert elapsed >= 0.15


@pytest.mark.asyncio
async def test_invalid_api_key_is_not_retried(settings):
    session = MagicMock()
    session.get = AsyncMock(
        return_value=_response({"Response": "False", "Error": "Invalid API key!"}, 401)
    )
    client = _client(settings, session)

    with pytest.raises(CatalogError):
        await client.fetch_episode("tt0903747", 1, 1)
    assert session.get.await_count == 1


@pytest.mark.asyncio
async def test_daily_quota_fails_fast_until_window_resets(settings, clock):
    settings = settings.model_copy(update={"catalog_daily_limit": 2})
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(NOT_FOUND_PAYLOAD))
    client = _client(settings, session, clock=clock)

    await client.fetch_episode("tt1", 1, 1)
    await client.fetch_episode("tt1", 1, 2)
    with pytest.raises(RateLimitedError) as excinfo:
        await client.fetch_episode("tt1", 1, 3)
    assert session.get.await_count == 2
    assert excinfo.value.resets_at == clock.now + QUOTA_WINDOW

    clock.advance(QUOTA_WINDOW)
    await client.fetch_episode("tt1", 1, 3)
    assert session.get.await_count == 3


def test_quota_survives_restart(store, clock):
    quota = QuotaTracker(store, daily_limit=10, clock=clock)
    quota.record()
    quota.record()

    reloaded = QuotaTracker(store, daily_limit=10, clock=clock)
    assert reloaded.count == 2
    assert reloaded.seconds_until_reset() == QUOTA_WINDOW


def test_unreadable_quota_snapshot_starts_fresh(clock):
    store = MemoryKeyValueStore({QuotaTracker.STORAGE_KEY: "{not json"})
    quota = QuotaTracker(store, daily_limit=10, clock=clock)
    assert quota.count == 0
    assert quota.resets_at() is None


@pytest.mark.asyncio
async def test_usage_reports_counters(settings):
    session = MagicMock()
    session.get = AsyncMock(return_value=_response(EPISODE_PAYLOAD))
    client = _client(settings, session)

    await client.fetch_episode("tt0903747", 1, 1)
    await client.fetch_episode("tt0903747", 1, 1)
    usage = client.usage()

    assert usage.requests_used == 1
    assert usage.daily_limit == settings.catalog_daily_limit
    assert (usage.cache_hits, usage.cache_misses) == (1, 1)
    assert usage.resets_at is not None
