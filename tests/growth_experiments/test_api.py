"""Tests for the Flask API."""
from datetime import timedelta

import pytest

from src.api.app import create_app
from src.growth_experiments.schema import utcnow
from src.growth_experiments.simulate import run_simulation


@pytest.fixture
def client(engine):
    app = create_app(engine)
    app.config["TESTING"] = True
    return app.test_client()


def _payload(**overrides):
    now = utcnow()
    body = {
        "name": "Pricing multiplier",
        "category": "pricing",
        "variantA": {"multiplier": 1.0},
        "variantB": {"multiplier": 1.2},
        "metric": "revenue_cents",
        "startAt": (now - timedelta(days=1)).isoformat(),
        "endAt": (now + timedelta(days=30)).isoformat(),
    }
    body.update(overrides)
    return body


def _create(client, **overrides):
    resp = client.post("/experiments", json=_payload(**overrides))
    assert resp.status_code == 201
    return resp.get_json()["value"]["id"]


def test_ping(client):
    resp = client.get("/ping")
    assert resp.status_code == 200
    assert resp.data == b"pong"


def test_create_and_get(client):
    exp_id = _create(client)
    resp = client.get(f"/experiments/{exp_id}")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"]
    assert body["value"]["status"] == "DRAFT"
    assert body["value"]["variant_b"] == {"multiplier": 1.2}


def test_create_rejects_bad_input(client):
    assert client.post("/experiments", json={}).status_code == 400
    resp = client.post("/experiments", json=_payload(metric="nope"))
    assert resp.status_code == 400
    assert resp.get_json()["error_kind"] == "validation_error"


def test_unknown_experiment_is_404(client):
    assert client.get("/experiments/missing").status_code == 404
    assert client.post("/experiments/missing/start").status_code == 404


def test_category_conflict_is_409(client):
    first = _create(client, name="first")
    second = _create(client, name="second")
    assert client.post(f"/experiments/{first}/start").status_code == 200
    resp = client.post(f"/experiments/{second}/start")
    assert resp.status_code == 409
    assert resp.get_json()["error_kind"] == "category_conflict"


def test_patch_only_in_draft(client):
    exp_id = _create(client)
    resp = client.patch(f"/experiments/{exp_id}", json=_payload(name="renamed"))
    assert resp.status_code == 200
    assert resp.get_json()["value"]["name"] == "renamed"
    client.post(f"/experiments/{exp_id}/start")
    assert client.patch(f"/experiments/{exp_id}", json=_payload()).status_code == 409


def test_list_with_filters(client):
    a = _create(client, name="a")
    _create(client, name="b", category="messaging")
    client.post(f"/experiments/{a}/start")
    body = client.get("/experiments?status=running").get_json()
    assert [e["id"] for e in body["value"]] == [a]
    assert len(client.get("/experiments?category=messaging").get_json()["value"]) == 1
    assert client.get("/experiments?status=bogus").status_code == 400


def test_full_flow(client, engine):
    exp_id = _create(client)
    client.post(f"/experiments/{exp_id}/start")

    resp = client.get(f"/experiments/{exp_id}/assignments/booking-1")
    assert resp.status_code == 200
    assert resp.get_json()["value"] in ("A", "B")

    run_simulation(engine.store, engine.metric_source, exp_id, n_subjects=300, means={"A": 500, "B": 620})
    results = client.get(f"/experiments/{exp_id}/results").get_json()["value"]
    assert results["winner"] == "B"
    assert results["variant_a"]["assignment_count"] + results["variant_b"]["assignment_count"] == 301

    surface = client.get("/surfaces/pricing/config/booking-1").get_json()["value"]
    assert surface["source"] == "experiment"

    stop = client.post(f"/experiments/{exp_id}/stop", json={"reason": "done"})
    assert stop.get_json()["value"]["changed"] is True
    again = client.post(f"/experiments/{exp_id}/stop")
    assert again.status_code == 200
    assert again.get_json()["value"]["changed"] is False

    assert client.post(f"/experiments/{exp_id}/winner", json={"variant": "B"}).status_code == 200
    assert client.post(f"/experiments/{exp_id}/winner", json={"variant": "A"}).status_code == 409

    promoted = client.post(f"/experiments/{exp_id}/promote", json={"variant": "B"}).get_json()["value"]
    assert promoted["published"]
    assert promoted["payload"] == {"multiplier": 1.2}

    live = client.get("/surfaces/pricing/live").get_json()["value"]
    assert live["payload"] == {"multiplier": 1.2}

    audit = client.get(f"/experiments/{exp_id}/audit").get_json()["value"]
    assert audit[-1]["action"] == "promoted"


def test_promote_running_is_409(client):
    exp_id = _create(client)
    client.post(f"/experiments/{exp_id}/start")
    resp = client.post(f"/experiments/{exp_id}/promote", json={"variant": "B"})
    assert resp.status_code == 409
    assert resp.get_json()["error_kind"] == "invalid_transition"


def test_live_config_missing_is_404(client):
    assert client.get("/surfaces/pricing/live").status_code == 404


def test_snapshot_and_sweep(client):
    exp_id = _create(client)
    client.post(f"/experiments/{exp_id}/start")
    snapshot = client.get("/snapshot").get_json()["value"]
    assert snapshot["running"] == 1

    sweep = client.post("/sweep").get_json()["value"]
    assert sweep["refreshed"] == [exp_id]
    cached = client.get(f"/experiments/{exp_id}/results?cached=true")
    assert cached.status_code == 200


def test_create_rejects_non_string_category(client):
    resp = client.post("/experiments", json=_payload(category=5))
    assert resp.status_code == 400
    assert resp.get_json()["error_kind"] == "validation_error"
    resp = client.post("/experiments", json=_payload(name=123))
    assert resp.status_code == 400
