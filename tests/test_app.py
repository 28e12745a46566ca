import time
import uuid
from typing import Dict, Iterator, List

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from datastore.alert_log import AlertLogStore
from services.dispatcher import AlertConfig, AlertDispatcher
from services.notifications import DeliveryResult
from services.pipeline import RiskPipeline, build_default_pipeline
from storage.feature_store import SensorFeatureStore


class FlakyBackend:
    def __init__(self, name: str, success: bool) -> None:
        self.name = name
        self.success = success
        self.calls: List[str] = []

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        self.calls.append(to)
        return DeliveryResult(self.success, None if self.success else f"{self.name} down")


@pytest.fixture
def backends() -> List[FlakyBackend]:
    return [FlakyBackend("primary", success=False), FlakyBackend("secondary", success=True)]


@pytest.fixture
def api_client(tmp_path, monkeypatch, backends) -> Iterator[TestClient]:
    pipelines: Dict[int, RiskPipeline] = {}

    def build_test_pipeline(workers: int | None = None) -> RiskPipeline:
        worker_count = workers or 1
        pipeline = pipelines.get(worker_count)
        if pipeline is None:
            log = AlertLogStore(persistence_path=tmp_path / "log.json")
            pipeline = RiskPipeline(
                store=SensorFeatureStore(persistence_path=tmp_path / "store.json"),
                log=log,
                dispatcher=AlertDispatcher(backends, AlertConfig(), sink=log),
                workers=worker_count,
            )
            pipelines[worker_count] = pipeline
        return pipeline

    def cache_clear() -> None:
        while pipelines:
            _, pipeline = pipelines.popitem()
            pipeline.shutdown()

    build_test_pipeline.cache_clear = cache_clear  # type: ignore[attr-defined]

    monkeypatch.setattr("app.main.build_default_pipeline", build_test_pipeline)
    monkeypatch.setattr("app.api.build_default_pipeline", build_test_pipeline)
    monkeypatch.setattr("services.pipeline.build_default_pipeline", build_test_pipeline)

    app = create_app()
    with TestClient(app) as client:
        yield client

    cache_clear()


def test_lifespan_shuts_down_pipeline_and_clears_cache(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FEATURE_STORE_PATH", str(tmp_path / "store.json"))
    monkeypatch.setenv("ALERT_LOG_PATH", str(tmp_path / "log.json"))
    monkeypatch.setenv("ALERT_BACKENDS", "log")
    from datastore.alert_log import build_default_log
    from settings import get_settings
    from storage.feature_store import build_default_store

    caches = (get_settings, build_default_store, build_default_log, build_default_pipeline)
    for cache in caches:
        cache.cache_clear()

    app = create_app()
    try:
        with TestClient(app):
            pipeline_during = build_default_pipeline()
            assert pipeline_during.executor._shutdown is False

        assert pipeline_during.executor._shutdown is True
        pipeline_after = build_default_pipeline()
        assert pipeline_after is not pipeline_during
        pipeline_after.shutdown()
    finally:
        for cache in caches:
            cache.cache_clear()


def _poll_for_completion(client: TestClient, job_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    last_payload: dict | None = None
    while time.monotonic() < deadline:
        response = client.get(f"/imports/{job_id}")
        assert response.status_code == 200
        payload = response.json()
        last_payload = payload
        if payload["status"] not in {"uploaded", "processing"}:
            return payload
        time.sleep(0.05)
    pytest.fail(f"Import {job_id} did not complete: {last_payload}")


def test_health(api_client: TestClient) -> None:
    assert api_client.get("/health").json() == {"status": "ok"}
    assert api_client.get("/").status_code == 200


def test_assessment_endpoint_scores_reading(api_client: TestClient) -> None:
    response = api_client.post(
        "/assessments",
        json={
            "mine_id": "korba",
            "displacement_mm": 20,
            "strain_microstrain": 500,
            "pore_pressure_kpa": 100,
            "rainfall_mm": 100,
            "temperature_c": 50,
            "slope_deg": 90,
            "crack_score": 10,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["mine_id"] == "korba"
    assert body["probability"] == pytest.approx(1.0)
    assert body["level"] == "critical"


def test_assessment_missing_features_default_to_zero(api_client: TestClient) -> None:
    response = api_client.post("/assessments", json={"mine_id": "goa"})

    assert response.status_code == 200
    assert response.json()["probability"] == 0.0
    assert response.json()["level"] == "low"


def test_assessment_requires_mine_id(api_client: TestClient) -> None:
    response = api_client.post("/assessments", json={"displacement_mm": 3})

    assert response.status_code == 422


def test_prediction_falls_back_to_second_backend(api_client: TestClient, backends) -> None:
    response = api_client.post(
        "/predictions",
        json={
            "reading": {"mine_id": "korba", "displacement_mm": 15, "strain_microstrain": 400},
            "mine_name": "Korba Coalfield",
            "location": "Chhattisgarh",
            "recipient_email": "officer@example.com",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["assessment"]["level"] == "low"
    assert body["notification"]["delivered"] is True
    assert body["notification"]["channel_used"] == "secondary"
    assert [a["channel"] for a in body["notification"]["attempts"]] == ["primary", "secondary"]
    assert backends[0].calls == backends[1].calls == ["officer@example.com"]

    alerts = api_client.get("/alerts").json()
    assert alerts[0]["channel_used"] == "secondary"


def test_prediction_rejects_invalid_email(api_client: TestClient) -> None:
    response = api_client.post(
        "/predictions",
        json={"reading": {"mine_id": "korba"}, "mine_name": "Korba", "recipient_email": "nope"},
    )

    assert response.status_code == 422


def test_latest_for_mine(api_client: TestClient) -> None:
    assert api_client.get("/mines/korba/latest").status_code == 404

    api_client.post(
        "/assessments",
        json={"mine_id": "korba", "displacement_mm": 1, "timestamp": "2024-01-01T00:00:00Z"},
    )
    api_client.post(
        "/assessments",
        json={"mine_id": "korba", "displacement_mm": 20, "timestamp": "2024-01-02T00:00:00"},
    )

    response = api_client.get("/mines/korba/latest")
    assert response.status_code == 200
    body = response.json()
    assert body["reading"]["displacement_mm"] == 20
    assert body["assessment"]["probability"] == pytest.approx(0.25)
    assert api_client.get("/mines").json() == {"mine_ids": ["korba"]}


def test_upload_and_poll_import(api_client: TestClient) -> None:
    csv_content = """mine_id,displacement,strain,timestamp
jharia,8.5,285,2024-01-01T00:00:00Z
talcher,4.2,180,2024-01-01T00:00:00Z
"""

    response = api_client.post(
        "/imports",
        files={"file": ("readings.csv", csv_content, "text/csv")},
    )

    assert response.status_code == 202
    payload = response.json()
    assert set(payload.keys()) == {"job_id"}

    result = _poll_for_completion(api_client, payload["job_id"])

    assert result["status"] == "processed"
    assert result["imported_count"] == 2
    assert set(result["latest_assessments"]) == {"jharia", "talcher"}
    assert result["errors"] == []
    assert isinstance(result["processing_ms"], int)


def test_upload_empty_file_returns_bad_request(api_client: TestClient) -> None:
    response = api_client.post(
        "/imports",
        files={"file": ("empty.csv", b"", "text/csv")},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Uploaded file is empty."


def test_get_missing_import_returns_not_found(api_client: TestClient) -> None:
    missing_id = str(uuid.uuid4())
    response = api_client.get(f"/imports/{missing_id}")

    assert response.status_code == 404
    assert missing_id in response.json()["detail"]


def test_thresholds_endpoint(api_client: TestClient) -> None:
    assert api_client.get("/thresholds").json() == {"critical": 0.8, "high": 0.6, "medium": 0.4}


def _predict(client: TestClient, mine_id: str, displacement: float = 0.0) -> dict:
    response = client.post(
        "/predictions",
        json={
            "reading": {"mine_id": mine_id, "displacement_mm": displacement},
            "mine_name": mine_id.title(),
            "recipient_email": "officer@example.com",
        },
    )
    assert response.status_code == 200
    return response.json()


def test_alerts_are_newest_first_and_limit_is_bounded(api_client: TestClient) -> None:
    _predict(api_client, "korba")
    _predict(api_client, "talcher")

    alerts = api_client.get("/alerts").json()
    assert [row["mine_id"] for row in alerts] == ["talcher", "korba"]
    assert all(row["channel_used"] == "secondary" for row in alerts)

    limited = api_client.get("/alerts", params={"limit": 1}).json()
    assert [row["mine_id"] for row in limited] == ["talcher"]

    assert api_client.get("/alerts", params={"limit": 0}).status_code == 422
    assert api_client.get("/alerts", params={"limit": 501}).status_code == 422


def test_mines_lists_sorted_ids(api_client: TestClient) -> None:
    assert api_client.get("/mines").json() == {"mine_ids": []}

    api_client.post("/assessments", json={"mine_id": "talcher"})
    api_client.post("/assessments", json={"mine_id": "bokaro"})

    assert api_client.get("/mines").json() == {"mine_ids": ["bokaro", "talcher"]}


def test_assessment_log_filters_by_mine(api_client: TestClient) -> None:
    api_client.post("/assessments", json={"mine_id": "korba", "displacement_mm": 20})
    _predict(api_client, "goa")

    rows = api_client.get("/assessments").json()
    assert [(row["mine_id"], row["source"]) for row in rows] == [("goa", "prediction"), ("korba", "api")]

    korba = api_client.get("/assessments", params={"mine_id": "korba"}).json()
    assert len(korba) == 1
    assert korba[0]["probability"] == pytest.approx(0.25)


def test_mine_history_is_newest_first(api_client: TestClient) -> None:
    assert api_client.get("/mines/korba/history").status_code == 404

    for day, displacement in ((1, 2.0), (2, 4.0), (3, 6.0)):
        api_client.post(
            "/assessments",
            json={"mine_id": "korba", "displacement_mm": displacement,
                  "timestamp": f"2024-01-0{day}T00:00:00Z"},
        )

    history = api_client.get("/mines/korba/history", params={"limit": 2}).json()
    assert [row["displacement_mm"] for row in history] == [6.0, 4.0]


def test_latest_includes_feature_contributions(api_client: TestClient) -> None:
    api_client.post(
        "/assessments", json={"mine_id": "korba", "displacement_mm": 10, "crack_score": 10}
    )

    body = api_client.get("/mines/korba/latest").json()
    assert body["contributions"]["displacement_mm"] == pytest.approx(0.125)
    assert body["contributions"]["crack_score"] == pytest.approx(0.05)
    assert sum(body["contributions"].values()) == pytest.approx(body["assessment"]["probability"])


def test_sensor_alert_scores_against_limit(api_client: TestClient, backends) -> None:
    response = api_client.post(
        "/sensor-alerts",
        json={
            "mine_id": "jharia",
            "mine_name": "Jharia Coalfield",
            "location": "Jharkhand",
            "sensor_type": "displacement_mm",
            "current_value": 30,
            "threshold": 20,
            "recipient_email": "officer@example.com",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["probability"] == pytest.approx(1.0)
    assert body["level"] == "critical"
    assert body["notification"]["channel_used"] == "secondary"
    assert backends[1].calls == ["officer@example.com"]
    assert api_client.get("/alerts").json()[0]["mine_id"] == "jharia"


def test_sensor_alert_rejects_non_positive_limit(api_client: TestClient) -> None:
    response = api_client.post(
        "/sensor-alerts",
        json={
            "mine_id": "jharia",
            "mine_name": "Jharia",
            "sensor_type": "strain",
            "current_value": 5,
            "threshold": 0,
            "recipient_email": "officer@example.com",
        },
    )

    assert response.status_code == 422


def test_thresholds_can_be_replaced_at_runtime(api_client: TestClient) -> None:
    before = api_client.post("/assessments", json={"mine_id": "korba", "displacement_mm": 20})
    assert before.json()["level"] == "low"

    response = api_client.put("/thresholds", json={"critical": 0.5, "high": 0.3, "medium": 0.1})

    assert response.status_code == 200
    assert api_client.get("/thresholds").json() == {"critical": 0.5, "high": 0.3, "medium": 0.1}
    after = api_client.post("/assessments", json={"mine_id": "korba", "displacement_mm": 20})
    assert after.json()["level"] == "medium"
    assert api_client.get("/mines/korba/latest").json()["assessment"]["level"] == "medium"


def test_invalid_thresholds_are_rejected(api_client: TestClient) -> None:
    response = api_client.put("/thresholds", json={"critical": 0.3, "high": 0.5, "medium": 0.1})

    assert response.status_code == 400
    assert "medium <= high <= critical" in response.json()["detail"]
    assert api_client.get("/thresholds").json() == {"critical": 0.8, "high": 0.6, "medium": 0.4}


def test_alert_config_update_changes_dispatch(api_client: TestClient, backends) -> None:
    config = api_client.get("/alert-config").json()
    assert config["enabled"] is True
    assert config["min_level"] == "low"
    assert config["backends"] == ["primary", "secondary"]

    updated = api_client.put("/alert-config", json={"min_level": "critical"}).json()
    assert updated["min_level"] == "critical"
    assert updated["enabled"] is True

    body = _predict(api_client, "korba")
    assert body["assessment"]["level"] == "low"
    assert body["notification"]["skipped_reason"] == "level low below minimum critical"
    assert backends[0].calls == backends[1].calls == []

    assert api_client.put("/alert-config", json={"min_level": "extreme"}).status_code == 422


def test_imports_are_listed_newest_first(api_client: TestClient) -> None:
    first = api_client.post(
        "/imports", files={"file": ("a.csv", "mine_id,displacement\nkorba,1\n", "text/csv")}
    ).json()["job_id"]
    _poll_for_completion(api_client, first)
    second = api_client.post(
        "/imports", files={"file": ("b.csv", "mine_id,displacement\ngoa,1\n", "text/csv")}
    ).json()["job_id"]
    _poll_for_completion(api_client, second)

    jobs = api_client.get("/imports").json()
    assert [job["job_id"] for job in jobs] == [second, first]
