import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import make_episode
from episodarr.api.routes_api import router
from episodarr.services.catalog import CatalogNetworkError
from episodarr.services.discovery import EpisodeDiscoveryService


@pytest.fixture
def service(settings, store, catalog, clock):
    return EpisodeDiscoveryService(settings, store, catalog=catalog, clock=clock)


@pytest.fixture
def client(service):
    """App without lifespan so the worker never runs during route tests."""
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.state.discovery = service
    return TestClient(app)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_season_miss_queues_background_discovery(client, service):
    response = client.get("/api/series/tt0903747/seasons/1", params={"title": "Breaking Bad"})

    assert response.status_code == 200
    data = response.json()
    assert data["available"] is False
    assert data["queued"] is True
    assert data["episodes"] == []
    assert service.queue.jobs[0].series_title == "Breaking Bad"


def test_season_hit_returns_episodes(client, service):
    service.cache.put_season("tt0903747", 1, [make_episode("tt0903747", 1, n) for n in (1, 2)])

    data = client.get("/api/series/tt0903747/seasons/1").json()

    assert data["available"] is True
    assert [e["episode"] for e in data["episodes"]] == [1, 2]


def test_foreground_season_discovery(client, catalog):
    catalog.add_season("tt0903747", 2, range(1, 4))

    response = client.post("/api/series/tt0903747/seasons/2/discover")

    assert response.status_code == 200
    assert [e["episode"] for e in response.json()] == [1, 2, 3]


def test_foreground_discovery_network_error(client, catalog):
    catalog.fail("tt0903747", 1, 1, CatalogNetworkError("offline"))

    response = client.post("/api/series/tt0903747/seasons/1/discover")

    assert response.status_code == 503


def test_episode_lookup(client, catalog):
    catalog.add_season("tt0903747", 1, [1])

    found = client.get("/api/series/tt0903747/seasons/1/episodes/1").json()
    missing = client.get("/api/series/tt0903747/seasons/1/episodes/2").json()

    assert found["episode"]["title"] == "Episode 1"
    assert missing["episode"] is None


def test_discover_series_and_progress(client, settings):
    response = client.post(
        "/api/series/tt0903747/discover", json={"title": "Breaking Bad", "priority": "high"}
    )
    assert response.status_code == 200
    assert response.json() == {
        "queued": True,
        "estimated_calls": settings.estimated_series_episodes,
    }

    queue = client.get("/api/queue").json()
    assert queue["queue_length"] == 1

    progress = client.get("/api/series/tt0903747/progress").json()
    assert progress["episodes_discovered"] == 0
    assert progress["estimated_remaining_calls"] == settings.estimated_series_episodes


def test_discover_series_over_budget(settings, store, catalog):
    settings = settings.model_copy(update={"estimated_series_episodes": 500})
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.state.discovery = EpisodeDiscoveryService(settings, store, catalog=catalog)

    response = TestClient(app).post("/api/series/tt1/discover", json={})

    assert response.status_code == 422
    assert "exceeding limit" in response.json()["detail"]


def test_invalid_priority_rejected(client):
    response = client.post("/api/series/tt1/discover", json={"priority": "urgent"})
    assert response.status_code == 422


def test_refresh_and_status(client, service):
    service.cache.put_season("tt1", 1, [make_episode("tt1", 1, 1)])
    assert client.get("/api/series/tt1/status").json()["cached"] is True

    response = client.post("/api/series/tt1/refresh", json={"title": "Show"})

    assert response.json() == {"series_id": "tt1", "queued": True}
    assert client.get("/api/series/tt1/status").json()["cached"] is False


def test_stats(client, service):
    service.cache.put_season("tt1", 1, [make_episode("tt1", 1, n) for n in range(1, 4)])

    data = client.get("/api/stats").json()

    assert data["cached_episodes"] == 3
    assert data["queue_items"] == 0
    assert data["api_efficiency"] == 100


def test_series_structure(client, service):
    assert client.get("/api/series/tt0903747/structure").status_code == 404

    service.cache.put_season("tt0903747", 1, [make_episode("tt0903747", 1, n) for n in (1, 2)])

    data = client.get("/api/series/tt0903747/structure").json()
    assert data["total_episodes"] == 2
    assert data["seasons"]["1"] == {"episodes": 2, "discovered": True}


def test_popular_episodes(client, service):
    service.cache.put_season("tt0903747", 1, [make_episode("tt0903747", 1, n) for n in (1, 2)])
    client.get("/api/series/tt0903747/seasons/1/episodes/2")

    data = client.get("/api/episodes/popular", params={"limit": 5}).json()

    assert [(p["episode"]["episode"], p["access_count"]) for p in data] == [(2, 1)]
    assert client.get("/api/episodes/popular", params={"limit": 0}).status_code == 422
