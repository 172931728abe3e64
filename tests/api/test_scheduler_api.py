from __future__ import annotations

import pytest

JOBS = "/api/v1/scheduler/jobs"


def _create(client, **overrides):
    body = {
        "job_type": "cleanup_activities",
        "schedule_type": "interval",
        "schedule_config": {"interval_minutes": 15},
        "name": "nightly cleanup",
    }
    body.update(overrides)
    return client.post(JOBS, json=body)


def test_job_crud_round_trip(client):
    created = _create(client)
    assert created.status_code == 201
    job = created.get_json()["data"]
    assert job["job_type"] == "cleanup_activities"
    assert job["schedule_config"] == {"interval_minutes": 15.0}
    assert job["enabled"] is True
    assert job["next_run_at"] is not None

    listed = client.get(JOBS).get_json()["data"]
    assert [item["id"] for item in listed] == [job["id"]]

    updated = client.put(f"{JOBS}/{job['id']}", json={"schedule_config": {"interval_minutes": 30}})
    assert updated.status_code == 200
    assert updated.get_json()["data"]["schedule_config"] == {"interval_minutes": 30.0}
    assert updated.get_json()["data"]["name"] == "nightly cleanup"

    toggled = client.post(f"{JOBS}/{job['id']}/toggle")
    assert toggled.get_json()["message"] == "Job disabled"
    assert toggled.get_json()["data"]["enabled"] is False

    queued = client.post(f"{JOBS}/{job['id']}/run")
    assert queued.status_code == 202
    assert queued.get_json()["data"]["enabled"] is True

    history = client.get(f"{JOBS}/{job['id']}/history")
    assert history.status_code == 200
    assert history.get_json()["data"] == []

    assert client.delete(f"{JOBS}/{job['id']}").status_code == 200
    missing = client.get(f"{JOBS}/{job['id']}")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "not_found"


@pytest.mark.parametrize(
    "overrides",
    [
        {"job_type": "mine_bitcoin"},
        {"schedule_type": "fortnightly"},
        {"schedule_config": {"interval_minutes": -5}},
        {"schedule_config": {}},
        {"schedule_type": "cron", "schedule_config": {"cron": "every tuesday"}},
        {"schedule_type": "once", "schedule_config": {"run_at": "soon"}},
        {"target_type": "planet"},
    ],
)
def test_invalid_jobs_are_rejected(client, overrides):
    response = _create(client, **overrides)
    assert response.status_code == 400
    body = response.get_json()
    assert body["success"] is False
    assert body["error"] == "invalid_argument"


def test_validation_details_name_the_field(client):
    response = client.post(JOBS, json={"schedule_type": "interval"})
    assert response.status_code == 400
    locations = [item["loc"] for item in response.get_json()["details"]]
    assert "job_type" in locations


def test_body_must_be_an_object(client):
    response = client.post(JOBS, json=[1, 2, 3])
    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_argument"


def test_unknown_job_ids_are_404(client):
    assert client.put(f"{JOBS}/999", json={"name": "x"}).status_code == 404
    assert client.post(f"{JOBS}/999/toggle").status_code == 404
    assert client.post(f"{JOBS}/999/run").status_code == 404
    assert client.delete(f"{JOBS}/999").status_code == 404
    assert client.get(f"{JOBS}/999/history").status_code == 404
