from __future__ import annotations

from datetime import datetime

from app.models.api import JobStatusResponse, JobSummary
from app.models.domain import Job, utcnow


def job_status(job: Job, now: datetime | None = None) -> JobStatusResponse:
    """Snapshot a job for pollers.

    Results are returned as soon as each scene settles, in completion order;
    clients sort by ``index`` when they need scene order.
    """
    end = job.completed_at or now or utcnow()
    return JobStatusResponse(
        job_id=job.id,
        status=job.status,
        provider=job.provider,
        total=job.total,
        completed=job.completed,
        current_scene=job.current_scene,
        current_title=job.current_title,
        results=[result.model_copy(deep=True) for result in job.results],
        music_url=job.music_url,
        final_url=job.final_url,
        final_error=job.final_error,
        error=job.error,
        started_at=job.started_at,
        completed_at=job.completed_at,
        elapsed_seconds=round(max((end - job.started_at).total_seconds(), 0.0), 3),
    )


def job_summary(job: Job) -> JobSummary:
    return JobSummary(
        job_id=job.id,
        status=job.status,
        provider=job.provider,
        total=job.total,
        completed=job.completed,
        started_at=job.started_at,
    )
