from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.clients.media import MediaToolkit
from app.clients.providers.factory import build_providers
from app.clients.s3_storage import S3StorageClient
from app.clients.tts import ElevenLabsClient
from app.config import Settings, get_settings
from app.models.api import (
    CombineAcceptedResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobListResponse,
    JobStatusResponse,
    ProviderInfo,
    ProviderListResponse,
    RetryAcceptedResponse,
)
from app.queue.queue import TaskQueue
from app.services.orchestrator import InvalidSceneOrdinal, JobNotFound, JobOrchestrator, JobStateError
from app.services.scene_executor import SceneExecutor
from app.services.status import job_status, job_summary
from app.services.stitcher import JobStitcher
from app.storage.repository import JobRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

log = logging.getLogger(__name__)

_orchestrator: JobOrchestrator | None = None


def build_orchestrator(settings: Settings) -> JobOrchestrator:
    storage = S3StorageClient(
        bucket=settings.s3_bucket,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        endpoint_url=settings.s3_endpoint_url,
        region_name=settings.s3_region,
        public_url=settings.s3_public_url,
        prefix=settings.storage_folder_prefix,
        addressing_style=settings.s3_addressing_style,
    )
    speech = ElevenLabsClient(
        api_key=settings.elevenlabs_api_key,
        voice_id=settings.elevenlabs_voice_id,
        model_id=settings.elevenlabs_model_id,
        base_url=settings.elevenlabs_base_url,
        music_style=settings.music_style,
    )
    media = MediaToolkit(ffmpeg_binary=settings.ffmpeg_binary)
    executor = SceneExecutor(
        providers=build_providers(settings),
        storage=storage,
        media=media,
        speech=speech,
        scene_timeout=settings.scene_timeout,
        fetch_timeout=settings.fetch_timeout,
        temp_dir=settings.temp_dir,
    )
    stitcher = JobStitcher(
        storage=storage,
        media=media,
        fetch_timeout=settings.fetch_timeout,
        temp_dir=settings.temp_dir,
    )
    return JobOrchestrator(
        repo=JobRepository(retention_seconds=settings.job_retention_seconds),
        executor=executor,
        queue=TaskQueue(),
        storage=storage,
        speech=speech,
        stitcher=stitcher,
        worker_pool_width=settings.worker_pool_width,
        auto_music=settings.auto_music_enabled,
        music_min_seconds=settings.music_min_seconds,
        music_seconds_per_scene=settings.music_seconds_per_scene,
        music_style=settings.music_style,
    )


def get_orchestrator(settings: Settings = Depends(get_settings)) -> JobOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(settings)
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    orchestrator = get_orchestrator(settings)
    gc_task = asyncio.create_task(orchestrator.run_gc_loop(settings.gc_interval_seconds))
    log.info("service started", extra={"default_provider": settings.default_provider})
    try:
        yield
    finally:
        gc_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await gc_task


app = FastAPI(title="lovestory-video-service", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/jobs", response_model=JobCreateResponse)
async def create_job(
    payload: JobCreateRequest,
    settings: Settings = Depends(get_settings),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobCreateResponse:
    provider = (payload.provider or settings.default_provider).strip().lower()
    if provider not in orchestrator.executor.providers:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"unknown provider '{provider}'")
    try:
        job = orchestrator.submit(payload.descriptors(), provider=provider, settings=payload.settings)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return JobCreateResponse(job_id=job.id, total=job.total)


@app.get("/jobs", response_model=JobListResponse)
async def list_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobListResponse:
    return JobListResponse(items=[job_summary(job) for job in orchestrator.list_jobs()])


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobStatusResponse:
    try:
        job = orchestrator.get_job(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return job_status(job)


@app.post("/jobs/{job_id}/scenes/{ordinal}:retry", response_model=RetryAcceptedResponse)
async def retry_scene(
    job_id: str,
    ordinal: int,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> RetryAcceptedResponse:
    try:
        orchestrator.retry_scene(job_id, ordinal)
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidSceneOrdinal, JobStateError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RetryAcceptedResponse(job_id=job_id, scene=ordinal)


@app.post("/jobs/{job_id}:combine", response_model=CombineAcceptedResponse)
async def combine_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> CombineAcceptedResponse:
    try:
        orchestrator.combine_job(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return CombineAcceptedResponse(job_id=job_id)


@app.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    settings: Settings = Depends(get_settings),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ProviderListResponse:
    items = []
    for name, adapter in orchestrator.executor.providers.items():
        caps = adapter.capabilities
        items.append(
            ProviderInfo(
                name=name,
                enabled=adapter.enabled(),
                mode=caps.mode.value,
                output=caps.output.value,
                supports_interpolation=caps.supports_interpolation,
                requires_image=caps.requires_image,
                max_clip_seconds=caps.max_clip_seconds,
                clip_durations=list(caps.clip_durations),
            )
        )
    return ProviderListResponse(default=settings.default_provider, items=items)
