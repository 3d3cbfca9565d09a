from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from clipflow.core.config import Settings, get_settings
from clipflow.core.security import hash_api_key, load_machine_credentials
from clipflow.main import app
from clipflow.services.runtime import get_runtime

INGEST_HEADERS = {"X-Module-Id": "local-ingest", "X-API-Key": "local-ingest-key"}
PROVIDER_HEADERS = {"X-Module-Id": "local-provider", "X-API-Key": "local-provider-key"}
SWEEPER_HEADERS = {"X-Module-Id": "local-sweeper", "X-API-Key": "local-sweeper-key"}
OPERATOR_HEADERS = {"X-Module-Id": "local-operator", "X-API-Key": "local-operator-key"}

SCORE_EVENT = {"kind": "score", "subjectId": "P1", "minute": 37, "attributes": {"match_id": "m-1"}}


@pytest.fixture
def api(make_harness):
    harness = make_harness(primary=[{"external_ref": "A-1"}], fallback=[{"external_ref": "B-1"}])
    app.dependency_overrides[get_runtime] = lambda: harness.runtime
    app.dependency_overrides[get_settings] = lambda: Settings(environment="dev", machine_credentials_json=None)
    yield TestClient(app), harness
    app.dependency_overrides.clear()


def test_healthz() -> None:
    client = TestClient(app)
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/").status_code == 200


def test_events_require_machine_auth_and_scope(api) -> None:
    client, _ = api
    assert client.post("/events", json=SCORE_EVENT).status_code == 401
    wrong_key = {**INGEST_HEADERS, "X-API-Key": "nope"}
    assert client.post("/events", json=SCORE_EVENT, headers=wrong_key).status_code == 401
    assert client.post("/events", json=SCORE_EVENT, headers=PROVIDER_HEADERS).status_code == 403


def test_event_flow_through_callbacks_to_published(api) -> None:
    client, harness = api

    accepted = client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS)
    assert accepted.status_code == 202
    body = accepted.json()
    assert body["status"] == "accepted"
    job_id = body["job_id"]

    job = client.get(f"/jobs/{job_id}", headers=OPERATOR_HEADERS).json()
    assert job["state"] == "PROCESSING"
    assert job["provider"] == "provider_a"

    in_flight = client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS)
    assert in_flight.status_code == 202
    assert in_flight.json()["status"] == "in_flight"
    assert in_flight.json()["job_id"] == job_id

    failed = client.post(
        "/callbacks",
        json={"externalRef": "A-1", "status": "error", "errorDetail": "render failed"},
        headers=PROVIDER_HEADERS,
    )
    assert failed.status_code == 200
    assert failed.json() == {"accepted": True, "matched": True, "transitioned": True, "job_id": job_id}

    done = client.post(
        "/callbacks",
        json={"external_ref": "B-1", "status": "done", "output_ref": "clip-9"},
        headers=PROVIDER_HEADERS,
    )
    assert done.json()["transitioned"] is True

    repeated = client.post(
        "/callbacks",
        json={"externalRef": "B-1", "status": "done", "outputRef": "clip-9"},
        headers=PROVIDER_HEADERS,
    )
    assert repeated.status_code == 200
    assert repeated.json()["transitioned"] is False

    job = client.get(f"/jobs/{job_id}", headers=OPERATOR_HEADERS).json()
    assert job["state"] == "PUBLISHED"
    assert job["attempt"] == 2
    assert job["publish_ref"] == "https://videos.example.com/v/1"

    duplicate = client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS)
    assert duplicate.status_code == 200
    assert duplicate.json()["status"] == "duplicate"
    assert duplicate.json()["result"]["state"] == "PUBLISHED"
    assert duplicate.json()["job_id"] == job_id
    assert len(harness.publish.requests) == 1


def test_malformed_event_is_rejected_without_job(api) -> None:
    client, harness = api

    bad_kind = client.post("/events", json={**SCORE_EVENT, "kind": "Not A Kind!"}, headers=INGEST_HEADERS)
    assert bad_kind.status_code == 422
    out_of_range = client.post("/events", json={**SCORE_EVENT, "minute": 500}, headers=INGEST_HEADERS)
    assert out_of_range.status_code == 422
    missing = client.post("/events", json={"kind": "goal"}, headers=INGEST_HEADERS)
    assert missing.status_code == 422
    assert harness.repository._jobs == {}


def test_explicit_idempotency_key_header(api) -> None:
    client, _ = api
    headers = {**INGEST_HEADERS, "Idempotency-Key": "relay-77"}

    first = client.post("/events", json=SCORE_EVENT, headers=headers)
    second = client.post("/events", json={**SCORE_EVENT, "minute": 90}, headers=headers)
    assert first.json()["idempotency_key"] == "explicit:relay-77"
    assert second.json()["status"] == "in_flight"
    assert second.json()["job_id"] == first.json()["job_id"]


def test_unknown_callback_still_acknowledged(api) -> None:
    client, _ = api
    response = client.post("/callbacks", json={"externalRef": "nobody", "status": "done"}, headers=PROVIDER_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"accepted": True, "matched": False, "transitioned": False, "job_id": None}


def test_operator_lists_failed_jobs_and_404s(api) -> None:
    client, harness = api
    harness.primary.replies[:] = [{"status": "error", "error_detail": "a down"}]
    harness.fallback.replies[:] = [{"status": "error", "error_detail": "b down"}]

    job_id = client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS).json()["job_id"]

    listed = client.get("/jobs", params={"state": "FAILED"}, headers=OPERATOR_HEADERS)
    assert listed.status_code == 200
    [item] = listed.json()["items"]
    assert item["id"] == job_id
    assert item["error"] == "provider_b: b down"

    assert client.get("/jobs", params={"state": "SIDEWAYS"}, headers=OPERATOR_HEADERS).status_code == 422
    assert client.get("/jobs/not-a-job", headers=OPERATOR_HEADERS).status_code == 404
    assert client.get("/jobs", headers=INGEST_HEADERS).status_code == 403


def test_sweep_endpoint_reports_counts(api) -> None:
    client, harness = api
    client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS)
    harness.clock.advance(901)

    response = client.post("/jobs/sweep", headers=SWEEPER_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"stalled_failed": 1, "dispatched": 0, "published": 0, "errors": []}
    assert client.post("/jobs/sweep", headers=OPERATOR_HEADERS).status_code == 403


def test_rate_limit_evaluate_endpoint(api) -> None:
    client, _ = api
    payload = {"key": "relay:ingest", "limit": 5, "window_seconds": 60, "now": "2026-03-14T12:00:00Z"}

    decisions = [client.post("/rate-limits/evaluate", json=payload, headers=OPERATOR_HEADERS).json() for _ in range(6)]
    assert [decision["allowed"] for decision in decisions] == [True] * 5 + [False]
    assert decisions[5]["reset_seconds"] == 60

    fresh = client.post(
        "/rate-limits/evaluate",
        json={**payload, "now": "2026-03-14T12:01:01"},
        headers=OPERATOR_HEADERS,
    ).json()
    assert fresh == {"key": "relay:ingest", "allowed": True, "remaining": 4, "reset_seconds": 60}


def test_configured_machine_credentials_replace_dev_keys(api) -> None:
    client, _ = api
    credentials = {"ingest-prod": {"key_sha256": hash_api_key("s3cret"), "scopes": ["events:write"]}}
    app.dependency_overrides[get_settings] = lambda: Settings(
        environment="prod",
        machine_credentials_json=json.dumps(credentials),
    )

    assert client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS).status_code == 401
    accepted = client.post("/events", json=SCORE_EVENT, headers={"X-Module-Id": "ingest-prod", "X-API-Key": "s3cret"})
    assert accepted.status_code == 202


def test_dev_keys_are_refused_unless_environment_is_dev(api, monkeypatch) -> None:
    client, _ = api
    monkeypatch.delenv("CLIPFLOW_ENVIRONMENT", raising=False)
    app.dependency_overrides[get_settings] = lambda: Settings(machine_credentials_json=None)

    assert Settings().environment == "production"
    assert load_machine_credentials(Settings(machine_credentials_json=None)) == {}
    assert client.post("/events", json=SCORE_EVENT, headers=INGEST_HEADERS).status_code == 401
