from __future__ import annotations

from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List

from app.models.domain import Job


class JobRepository:
    """In-memory job registry.

    Jobs are returned live; the orchestrator mutates them in place and the
    status reporter takes snapshots when answering polls.
    """

    def __init__(self, retention_seconds: float = 3600) -> None:
        self.retention = timedelta(seconds=retention_seconds)
        self._jobs: Dict[str, Job] = {}
        self._lock = Lock()

    def put(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list(self) -> List[Job]:
        with self._lock:
            return list(self._jobs.values())

    def sweep(self, now: datetime) -> list[str]:
        """Drop every job started before ``now - retention``, whatever its status."""
        cutoff = now - self.retention
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if job.started_at < cutoff]
            for job_id in expired:
                del self._jobs[job_id]
        return expired
