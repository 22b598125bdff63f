from fastapi.testclient import TestClient

from backcountry import main
from backcountry.providers import ZoneLayerError

from test_pipeline import make_pipeline

client = TestClient(main.app)


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["name"] == main.APP_NAME
    assert body["version"] == "1.0.0"


def test_safety_report(monkeypatch):
    monkeypatch.setattr(main, "pipeline", make_pipeline())
    r = client.post("/v1/safety", json={"lat": 39.6, "lon": -106.0, "date": "2026-01-15", "start_time": "07:30"})
    assert r.status_code == 200
    body = r.json()
    assert body["selected_date"] == "2026-01-15"
    assert body["partial_failures"] == []
    assert body["safety"]["primary_hazard"] == "Avalanche"
    assert 0 <= body["safety"]["score"] <= 100
    assert body["avalanche"]["relevant"] is True


def test_out_of_range_coordinate_is_400(monkeypatch):
    monkeypatch.setattr(main, "pipeline", make_pipeline())
    r = client.post("/v1/safety", json={"lat": 95.0, "lon": -106.0})
    assert r.status_code == 400


def test_malformed_map_layer_is_502(monkeypatch):
    monkeypatch.setattr(main, "pipeline", make_pipeline(avalanche=ZoneLayerError("layer has no features")))
    r = client.post("/v1/safety", json={"lat": 39.6, "lon": -106.0})
    assert r.status_code == 502
    assert r.json()["detail"].startswith("Avalanche map layer malformed")


def test_unknown_fields_rejected():
    r = client.post("/v1/safety", json={"lat": 39.6, "lon": -106.0, "elevation": 9000})
    assert r.status_code == 422


def test_bad_date_and_window_rejected():
    assert client.post("/v1/safety", json={"lat": 39.6, "lon": -106.0, "date": "01/15/2026"}).status_code == 422
    assert client.post("/v1/safety", json={"lat": 39.6, "lon": -106.0, "travel_window_hours": 48}).status_code == 422
