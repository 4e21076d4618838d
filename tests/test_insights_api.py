"""HTTP tests for the insights API."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from khanannetra_insights.config import Settings
from khanannetra_insights.main import create_app
from khanannetra_insights.routers.insights import get_status_client
from khanannetra_insights.services.status_poller import AnalysisStatusClient

PREFIX = "/api/v1/insights"


@pytest.fixture
def app():
    settings = Settings(
        api_base_url="http://backend/api",
        poll_interval_seconds=0,
        initial_poll_delay_seconds=0,
        request_timeout_seconds=1,
        max_polls=0,
        log_level="WARNING",
    )
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def use_session(app):
    def _use(session):
        app.dependency_overrides[get_status_client] = lambda: AnalysisStatusClient(
            base_url="http://backend/api", session=session, timeout=1
        )

    yield _use
    app.dependency_overrides.clear()


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "analysis_api": "http://backend/api"}


def test_normalize(client) -> None:
    response = client.post(f"{PREFIX}/normalize", json={
        "analysis": {
            "analysisId": "abc",
            "results": {
                "tiles": [{"tile_id": "tile_1", "mining_detected": True}],
                "summary": {"mining_area_m2": "12345.6"},
                "startTime": "2024-01-01T00:00:00Z",
                "endTime": "2024-01-01T00:05:00Z",
            },
        }
    })

    assert response.status_code == 200
    body = response.json()
    assert body["totalTiles"] == 1
    assert body["tilesWithMining"] == 1
    assert body["totalMiningArea"]["m2"] == 12345.6
    assert body["durationSeconds"] == 300
    assert body["startTime"] == "2024-01-01T00:00:00Z"
    assert body["startedAt"] == "2024-01-01T00:00:00.000Z"
    assert body["completedAt"] == "2024-01-01T00:05:00.000Z"
    assert body["mergedBlocks"] is None


def test_normalize_without_analysis(client) -> None:
    response = client.post(f"{PREFIX}/normalize", json={})

    assert response.status_code == 200
    assert response.json() is None


def test_tile_metrics(client) -> None:
    response = client.post(f"{PREFIX}/metrics/tiles", json={
        "tiles": [
            {"tile_id": "tile_1", "total_area_m2": 100, "mine_blocks": [{"area_m2": 10}]},
            {"tile_id": "tile_2", "total_area_m2": 300, "mining_percentage": 10},
        ]
    })

    assert response.status_code == 200
    body = response.json()
    assert body["totalTileAreaM2"] == 400
    assert body["totalMiningAreaM2"] == pytest.approx(40)
    assert body["coveragePct"] == pytest.approx(10)


def test_tile_metrics_empty(client) -> None:
    response = client.post(f"{PREFIX}/metrics/tiles", json={"tiles": []})

    assert response.json()["coveragePct"] is None


def test_confidence_metrics(client) -> None:
    response = client.post(f"{PREFIX}/metrics/confidence", json={"results": {"summary": {"confidence": 0.82}}})

    assert response.status_code == 200
    body = response.json()
    assert body["averagePct"] == pytest.approx(82)
    assert body["sampleCount"] == 1
    assert body["source"] == "summary"


def test_summary(client) -> None:
    response = client.post(f"{PREFIX}/summary", json={
        "results": {"totalTiles": 3, "summary": {"mining_percentage": 12.5, "mining_area_m2": 20_000}},
    })

    assert response.status_code == 200
    body = response.json()
    assert body["totalTiles"] == 3
    assert body["coveragePct"] == pytest.approx(12.5)
    assert body["miningAreaHa"] == pytest.approx(2)
    assert body["display"]["coverage"] == "12.5%"
    assert body["display"]["miningArea"] == "2.00 ha"


def test_summary_not_found(client) -> None:
    response = client.post(f"{PREFIX}/summary", json={"results": None})

    assert response.status_code == 404


def test_blocks(client) -> None:
    response = client.post(f"{PREFIX}/blocks", json={
        "results": {"tiles": [{"tile_id": "tile_1", "mine_blocks": [{"block_id": "B1", "area_ha": 0.4}]}]},
    })

    assert response.status_code == 200
    rows = response.json()
    assert len(rows) == 1
    assert rows[0]["id"] == "tile-B1"
    assert rows[0]["tileId"] == "tile_1"
    assert rows[0]["areaHa"] == pytest.approx(0.4)
    assert rows[0]["source"] == "Tile"


def test_progress(client, use_session, make_session, response) -> None:
    session = make_session(response(200, {
        "status": "processing",
        "progress": 42,
        "message": "Fetching tiles",
        "current_step": "preprocessing",
        "tiles_fetched": 3,
        "total_tiles": 10,
        "tiles": [{"tile_id": "tile_1", "total_area_m2": 100, "mining_percentage": 10}],
    }))
    use_session(session)

    result = client.get(f"{PREFIX}/analysis/abc/progress")

    assert result.status_code == 200
    body = result.json()
    assert body["analysisId"] == "abc"
    assert body["progress"] == 42
    assert body["stepIndex"] == 1
    assert [step["state"] for step in body["steps"]] == ["completed", "active", "pending", "pending", "pending"]
    assert body["steps"][1]["progressRange"] == [15, 65]
    assert body["tilesFetched"] == 3
    assert body["tileMetrics"]["coveragePct"] == pytest.approx(10)
    assert body["confidence"]["sampleCount"] == 0
    assert body["isComplete"] is False
    assert body["isFailed"] is False
    assert session.calls[0][1] == "http://backend/api/python/analysis/abc"


def test_progress_backend_error(client, use_session, make_session, response) -> None:
    use_session(make_session(response(503, {"message": "Analysis service unavailable"})))

    result = client.get(f"{PREFIX}/analysis/abc/progress")

    assert result.status_code == 502
    body = result.json()
    assert body["error"] == "analysis_backend_error"
    assert body["message"] == "Analysis service unavailable"
    assert body["details"] == {"status_code": 503}


def test_stop(client, use_session, make_session, response) -> None:
    session = make_session(response(202, {"message": "Stopping"}))
    use_session(session)

    result = client.post(f"{PREFIX}/analysis/abc/stop")

    assert result.status_code == 200
    assert result.json() == {"analysisId": "abc", "status": "cancelled", "backend": {"message": "Stopping"}}
    assert session.calls[0][0] == "POST"


def test_progress_malformed_status_body(client, use_session, make_session, response) -> None:
    use_session(make_session(response(200, {"status": "processing", "tiles": {"a": 1}})))

    result = client.get(f"{PREFIX}/analysis/abc/progress")

    assert result.status_code == 502
    assert result.json()["message"] == "Status endpoint returned an unexpected payload"


def test_tile_metrics_with_overflowing_areas(client) -> None:
    response = client.post(f"{PREFIX}/metrics/tiles", json={
        "tiles": [
            {"tile_id": "a", "total_area_m2": 1e308, "mining_percentage": 1},
            {"tile_id": "b", "total_area_m2": 1e308, "mining_percentage": 1},
        ]
    })

    assert response.status_code == 200
    assert response.json()["coveragePct"] == pytest.approx(100)
