from datetime import datetime, timedelta, timezone

from app.clients.s3_storage import S3StorageClient
from app.models.domain import Job, SceneResult
from app.storage.repository import JobRepository


def test_memory_upload_roundtrip_and_key_extraction():
    storage = S3StorageClient(bucket="media", access_key="", secret_key="", public_url="https://cdn.example.com/",
                              prefix="lovestory")

    url = storage.upload(b"abc", "video/mp4", "jobs/j1/scene_1")

    assert url.startswith("https://cdn.example.com/lovestory/jobs/j1/scene_1/")
    assert url.endswith(".mp4")
    key = storage.extract_key(url + "?v=2")
    assert key.startswith("lovestory/jobs/j1/scene_1/")
    assert storage.download(key) == b"abc"


def test_extract_key_variants():
    storage = S3StorageClient(bucket="media", access_key="", secret_key="", public_url="https://cdn.example.com")

    assert storage.extract_key("https://acct.r2.cloudflarestorage.com/media/uploads/a.png") == "uploads/a.png"
    assert storage.extract_key("https://elsewhere.example.org/uploads/a.png") is None
    assert storage.extract_key("") is None


def test_repository_sweep_ignores_status():
    repo = JobRepository(retention_seconds=3600)
    start = datetime(2026, 2, 14, 12, 0, tzinfo=timezone.utc)
    running = repo.put(Job(id="a", total=2, provider="veo", started_at=start))
    fresh = repo.put(Job(id="b", total=1, provider="veo", started_at=start + timedelta(minutes=59)))

    assert repo.sweep(start + timedelta(minutes=30)) == []
    assert repo.sweep(start + timedelta(hours=1, seconds=1)) == ["a"]
    assert repo.get(running.id) is None
    assert repo.get(fresh.id) is fresh
    assert repo.delete("b") is True
    assert repo.list() == []


def test_upsert_by_index():
    job = Job(id="j", total=2, provider="veo")

    assert job.upsert_result(SceneResult(index=2, success=False, error="boom")) is False
    assert job.upsert_result(SceneResult(index=1, success=True)) is False
    assert job.upsert_result(SceneResult(index=2, success=True)) is True

    assert [(r.index, r.success) for r in job.results] == [(2, True), (1, True)]
