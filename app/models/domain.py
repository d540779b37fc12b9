from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SceneDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1)
    title: str = ""
    description: str = ""
    frames: Tuple[str, ...] = ()
    narration: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, gt=0)


class SceneResult(BaseModel):
    index: int
    title: str = ""
    success: bool
    artifact_url: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    clip_urls: List[str] = Field(default_factory=list)
    narration_url: Optional[str] = None
    music_url: Optional[str] = None
    error: Optional[str] = None


class Job(BaseModel):
    id: str
    status: JobStatus = JobStatus.PROCESSING
    total: int
    completed: int = 0
    results: List[SceneResult] = Field(default_factory=list)
    scenes: List[SceneDescriptor] = Field(default_factory=list)
    provider: str
    settings: dict[str, Any] = Field(default_factory=dict)
    current_scene: Optional[int] = None
    current_title: Optional[str] = None
    music_url: Optional[str] = None
    final_url: Optional[str] = None
    final_error: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def upsert_result(self, result: SceneResult) -> bool:
        """Replace the result with the same index, or append it.

        Returns True when an existing entry was replaced.
        """
        for position, existing in enumerate(self.results):
            if existing.index == result.index:
                self.results[position] = result
                return True
        self.results.append(result)
        return False

    def scene(self, ordinal: int) -> SceneDescriptor:
        for descriptor in self.scenes:
            if descriptor.index == ordinal:
                return descriptor
        raise KeyError(ordinal)
