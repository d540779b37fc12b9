from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from app.clients.errors import ConfigurationError
from app.clients.s3_storage import S3StorageClient
from app.clients.tts import ElevenLabsClient
from app.models.domain import Job, JobStatus, SceneDescriptor, SceneResult, utcnow
from app.queue.queue import BaseQueue
from app.services.scene_executor import SceneExecutor
from app.services.stitcher import JobStitcher, scene_videos
from app.storage.repository import JobRepository


class JobNotFound(ValueError):
    pass


class InvalidSceneOrdinal(ValueError):
    pass


class JobStateError(ValueError):
    """The job's current status does not allow the requested action."""


class JobOrchestrator:
    def __init__(
        self,
        repo: JobRepository,
        executor: SceneExecutor,
        queue: BaseQueue,
        storage: S3StorageClient | None = None,
        speech: ElevenLabsClient | None = None,
        stitcher: JobStitcher | None = None,
        worker_pool_width: int = 5,
        auto_music: bool = True,
        music_min_seconds: float = 15,
        music_seconds_per_scene: float = 8,
        music_style: str = "romantic_piano",
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if worker_pool_width < 1:
            raise ValueError("worker pool width must be at least 1")
        self.repo = repo
        self.executor = executor
        self.queue = queue
        self.storage = storage
        self.speech = speech
        self.stitcher = stitcher
        self.width = worker_pool_width
        self.auto_music = auto_music
        self.music_min_seconds = music_min_seconds
        self.music_seconds_per_scene = music_seconds_per_scene
        self.music_style = music_style
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    def submit(
        self,
        scenes: Sequence[SceneDescriptor],
        provider: str,
        settings: dict[str, Any] | None = None,
    ) -> Job:
        if not scenes:
            raise ValueError("at least one scene is required")
        job = Job(
            id=uuid4().hex,
            total=len(scenes),
            scenes=list(scenes),
            provider=provider,
            settings=dict(settings or {}),
            started_at=self.clock(),
        )
        self.repo.put(job)
        self.queue.enqueue(lambda: self.run_job(job.id), name=f"job-{job.id}")
        self.log.info("job submitted", extra={"job_id": job.id, "total": job.total, "provider": provider})
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.repo.get(job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} not found")
        return job

    def list_jobs(self) -> list[Job]:
        return self.repo.list()

    async def run_job(self, job_id: str) -> None:
        """Process a job's scenes in batches of ``worker_pool_width``.

        Each batch settles completely before the next one starts. Scene
        outcomes are recorded as they arrive, so pollers see progress inside a
        batch too.
        """
        job = self.repo.get(job_id)
        if job is None:
            self.log.warning("job vanished before processing", extra={"job_id": job_id})
            return
        try:
            for start in range(0, len(job.scenes), self.width):
                batch = job.scenes[start:start + self.width]
                self.log.info(
                    "batch started",
                    extra={"job_id": job.id, "first_scene": batch[0].index, "size": len(batch)},
                )
                outcomes = await asyncio.gather(
                    *(self._run_scene(job, descriptor) for descriptor in batch),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        raise outcome
        except Exception as exc:
            if job.status == JobStatus.COMPLETED:
                # retries already recorded every scene
                self.log.warning(
                    "job error after all scenes were recorded",
                    extra={"job_id": job.id, "error": str(exc)},
                )
            else:
                job.status = JobStatus.FAILED
                job.error = str(exc)
                job.completed_at = self.clock()
                self.log.error("job failed", extra={"job_id": job.id, "error": str(exc)}, exc_info=True)
                return

        successes = sum(1 for result in job.results if result.success)
        self.log.info(
            "job completed",
            extra={"job_id": job.id, "succeeded": successes, "failed": job.total - successes},
        )
        if successes and self.auto_music and job.settings.get("background_music") is not False:
            self.queue.enqueue(lambda: self._add_background_music(job), name=f"music-{job.id}")

    async def _run_scene(self, job: Job, descriptor: SceneDescriptor) -> None:
        result = await self.executor.process_one_scene(descriptor, descriptor.index, job)
        self._record(job, result)

    def _record(self, job: Job, result: SceneResult) -> None:
        # find, replace and the status flip run without yielding to the loop
        if job.status == JobStatus.FAILED:
            self.log.info("result dropped for failed job", extra={"job_id": job.id, "scene": result.index})
            return
        replaced = job.upsert_result(result)
        if not replaced and job.completed < job.total:
            job.completed += 1
        if job.completed == job.total and job.status == JobStatus.PROCESSING:
            job.status = JobStatus.COMPLETED
            job.completed_at = self.clock()

    def retry_scene(self, job_id: str, ordinal: int) -> None:
        job = self.get_job(job_id)
        if job.status == JobStatus.FAILED:
            raise JobStateError(f"job {job_id} failed: {job.error}; submit it again instead of retrying scenes")
        if ordinal < 1 or ordinal > job.total:
            raise InvalidSceneOrdinal(f"scene {ordinal} is outside 1..{job.total}")
        try:
            descriptor = job.scene(ordinal)
        except KeyError as exc:
            raise InvalidSceneOrdinal(f"scene {ordinal} is not part of job {job_id}") from exc
        self.queue.enqueue(lambda: self._retry(job, descriptor), name=f"retry-{job.id}-{ordinal}")
        self.log.info("scene retry queued", extra={"job_id": job.id, "scene": ordinal})

    async def _retry(self, job: Job, descriptor: SceneDescriptor) -> None:
        try:
            result = await self.executor.process_one_scene(descriptor, descriptor.index, job)
        except ConfigurationError as exc:
            result = SceneResult(index=descriptor.index, title=descriptor.title, success=False, error=str(exc))
        self._record(job, result)
        self.log.info(
            "scene retry finished",
            extra={"job_id": job.id, "scene": descriptor.index, "success": result.success},
        )

    async def _add_background_music(self, job: Job) -> None:
        """Compose one track for the finished job; failures only cost the track."""
        if self.speech is None or self.storage is None or not self.speech.enabled():
            return
        successes = sum(1 for result in job.results if result.success)
        if not successes:
            return
        seconds = max(successes * self.music_seconds_per_scene, self.music_min_seconds)
        style = job.settings.get("music_style") or self.music_style
        try:
            audio = await self.speech.compose_music(int(seconds * 1000), style=style)
            job.music_url = await asyncio.to_thread(self.storage.upload, audio, "audio/mpeg", f"jobs/{job.id}/music")
        except Exception:
            self.log.warning("background music failed", extra={"job_id": job.id}, exc_info=True)
            return
        self.log.info("background music added", extra={"job_id": job.id, "seconds": seconds})

    def combine_job(self, job_id: str) -> None:
        """Queue stitching of a completed job's scene videos into one final video."""
        job = self.get_job(job_id)
        if self.stitcher is None:
            raise JobStateError("final video stitching is not configured")
        if job.status != JobStatus.COMPLETED:
            raise JobStateError(f"job {job_id} is {job.status.value}; only completed jobs can be combined")
        if not scene_videos(job):
            raise JobStateError(f"job {job_id} has no successful scene videos")
        self.queue.enqueue(lambda: self._combine(job), name=f"combine-{job.id}")
        self.log.info("job combine queued", extra={"job_id": job.id})

    async def _combine(self, job: Job) -> None:
        job.final_error = None
        try:
            job.final_url = await self.stitcher.stitch(job)
        except Exception as exc:
            job.final_error = str(exc)
            self.log.warning("job combine failed", extra={"job_id": job.id}, exc_info=True)

    def sweep(self, now: datetime | None = None) -> list[str]:
        expired = self.repo.sweep(now or self.clock())
        if expired:
            self.log.info("expired jobs removed", extra={"count": len(expired)})
        return expired

    async def run_gc_loop(self, interval: float = 60.0, sleep: Callable[[float], Any] = asyncio.sleep) -> None:
        while True:
            await sleep(interval)
            try:
                self.sweep()
            except Exception:
                self.log.error("job sweep failed", exc_info=True)
