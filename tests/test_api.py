import time

import pytest
from fastapi.testclient import TestClient

from app import main
from app.clients.errors import ConfigurationError, ProviderJobFailed
from app.queue.queue import TaskQueue
from app.services.orchestrator import JobOrchestrator
from app.services.scene_executor import SceneExecutor
from app.services.stitcher import JobStitcher
from app.storage.repository import JobRepository
from conftest import FakeAdapter, FakeMedia, png_base64


@pytest.fixture
def failing():
    return {"the ring"}


@pytest.fixture
def client(monkeypatch, storage, failing):
    def behaviour(request):
        if request.prompt == "misconfigured":
            return ConfigurationError("runpod workflow is not configured")
        if request.prompt in failing:
            return ProviderJobFailed("fake", "FAILED", "content filtered")
        return None

    adapter = FakeAdapter(behaviour=behaviour, delay=0.01)
    media = FakeMedia()
    executor = SceneExecutor(providers={"fake": adapter}, storage=storage, media=media)
    orchestrator = JobOrchestrator(
        repo=JobRepository(),
        executor=executor,
        queue=TaskQueue(),
        storage=storage,
        stitcher=JobStitcher(storage=storage, media=media),
        auto_music=False,
    )
    monkeypatch.setattr(main, "_orchestrator", orchestrator)
    with TestClient(main.app) as test_client:
        yield test_client


def wait_for_status(client, job_id, wanted="completed"):
    payload = None
    for _ in range(40):
        resp = client.get(f"/jobs/{job_id}")
        assert resp.status_code == 200
        payload = resp.json()
        if payload["status"] == wanted:
            break
        time.sleep(0.05)
    return payload


def story():
    return {
        "provider": "fake",
        "scenes": [
            {"title": "First meeting", "description": "coffee shop glance", "frames": [png_base64()]},
            {"title": "Proposal", "description": "the ring", "frames": [{"imageUrl": png_base64("blue")}]},
            {"title": "Wedding", "prompt": "vows at sunset", "image": png_base64("green")},
        ],
    }


def test_job_flow_with_retry(client, failing):
    create_resp = client.post("/jobs", json=story())
    assert create_resp.status_code == 200
    created = create_resp.json()
    assert created["total"] == 3
    job_id = created["job_id"]

    payload = wait_for_status(client, job_id)
    assert payload["status"] == "completed"
    assert payload["completed"] == 3
    results = {item["index"]: item for item in payload["results"]}
    assert results[1]["success"] and results[3]["success"]
    assert results[2]["success"] is False
    assert "content filtered" in results[2]["error"]
    assert payload["elapsed_seconds"] >= 0

    failing.clear()
    retry_resp = client.post(f"/jobs/{job_id}/scenes/2:retry")
    assert retry_resp.status_code == 200
    assert retry_resp.json()["accepted"] is True

    retried = None
    for _ in range(40):
        payload = client.get(f"/jobs/{job_id}").json()
        retried = next(item for item in payload["results"] if item["index"] == 2)
        if retried["success"]:
            break
        time.sleep(0.05)
    assert retried["success"]
    assert len(payload["results"]) == 3
    assert payload["status"] == "completed"

    list_resp = client.get("/jobs")
    assert list_resp.status_code == 200
    assert any(item["job_id"] == job_id for item in list_resp.json()["items"])


def test_validation_errors_are_400(client):
    assert client.post("/jobs", json={"scenes": []}).status_code == 400
    assert client.post("/jobs", json={"provider": "fake"}).status_code == 400
    assert client.post("/jobs", json={"scenes": [{"frames": [42]}], "provider": "fake"}).status_code == 400
    assert client.post("/jobs", json={"scenes": [{"description": "x"}], "provider": "sora"}).status_code == 400


def test_unknown_job_and_bad_ordinal(client):
    assert client.get("/jobs/does-not-exist").status_code == 404
    assert client.post("/jobs/does-not-exist/scenes/1:retry").status_code == 404

    job_id = client.post("/jobs", json=story()).json()["job_id"]
    assert client.post(f"/jobs/{job_id}/scenes/4:retry").status_code == 400
    assert client.post(f"/jobs/{job_id}/scenes/0:retry").status_code == 400
    wait_for_status(client, job_id)


def test_health_and_providers(client):
    assert client.get("/health").json() == {"status": "ok"}
    providers = client.get("/providers").json()
    assert [item["name"] for item in providers["items"]] == ["fake"]
    assert providers["items"][0]["clip_durations"] == [4, 6, 8]


def test_combine_completed_job(client):
    job_id = client.post("/jobs", json=story()).json()["job_id"]
    wait_for_status(client, job_id)

    combine_resp = client.post(f"/jobs/{job_id}:combine")
    assert combine_resp.status_code == 200
    assert combine_resp.json() == {"accepted": True, "job_id": job_id}

    payload = None
    for _ in range(40):
        payload = client.get(f"/jobs/{job_id}").json()
        if payload["final_url"]:
            break
        time.sleep(0.05)
    assert payload["final_url"]
    assert payload["final_error"] is None
    assert client.post("/jobs/does-not-exist:combine").status_code == 404


def test_retry_on_failed_job_is_400(client):
    job_id = client.post("/jobs", json={"provider": "fake", "scenes": [
        {"description": "misconfigured", "frames": [png_base64()]},
    ]}).json()["job_id"]
    payload = wait_for_status(client, job_id, wanted="failed")
    assert payload["status"] == "failed"
    assert payload["completed"] < payload["total"]

    resp = client.post(f"/jobs/{job_id}/scenes/1:retry")

    assert resp.status_code == 400
    assert "failed" in resp.json()["detail"]
