from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from .domain import JobStatus, SceneDescriptor, SceneResult

FRAME_KEYS = ("image_url", "imageUrl", "image", "frame", "url", "data")


class ScenePayload(BaseModel):
    title: str = ""
    description: str = ""
    prompt: Optional[str] = None
    frames: List[Any] = Field(default_factory=list)
    image: Optional[str] = None
    reference_image: Optional[str] = None
    narration: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, gt=0, le=120)

    @field_validator("frames")
    @classmethod
    def validate_frames(cls, value: List[Any]) -> List[str]:
        frames: List[str] = []
        for frame in value:
            if isinstance(frame, str):
                frames.append(frame)
                continue
            if isinstance(frame, dict):
                source = next((frame[key] for key in FRAME_KEYS if isinstance(frame.get(key), str)), None)
                if source:
                    frames.append(source)
                    continue
            raise ValueError("each frame must be a string or an object with an image source")
        return frames

    def to_descriptor(self, index: int) -> SceneDescriptor:
        frames = list(self.frames)
        if not frames:
            fallback = self.image or self.reference_image
            if fallback:
                frames.append(fallback)
        return SceneDescriptor(
            index=index,
            title=self.title,
            description=(self.prompt or self.description or "").strip(),
            frames=tuple(frames),
            narration=self.narration,
            duration_seconds=self.duration_seconds,
        )


class JobCreateRequest(BaseModel):
    scenes: List[ScenePayload] = Field(..., min_length=1)
    provider: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)

    def descriptors(self) -> List[SceneDescriptor]:
        return [scene.to_descriptor(position) for position, scene in enumerate(self.scenes, start=1)]


class JobCreateResponse(BaseModel):
    job_id: str
    total: int


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    provider: str
    total: int
    completed: int
    current_scene: Optional[int] = None
    current_title: Optional[str] = None
    results: List[SceneResult] = Field(default_factory=list)
    music_url: Optional[str] = None
    final_url: Optional[str] = None
    final_error: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    elapsed_seconds: float


class JobSummary(BaseModel):
    job_id: str
    status: JobStatus
    provider: str
    total: int
    completed: int
    started_at: datetime


class JobListResponse(BaseModel):
    items: List[JobSummary]


class RetryAcceptedResponse(BaseModel):
    accepted: bool = True
    job_id: str
    scene: int


class CombineAcceptedResponse(BaseModel):
    accepted: bool = True
    job_id: str


class ProviderInfo(BaseModel):
    name: str
    enabled: bool
    mode: str
    output: str
    supports_interpolation: bool
    requires_image: bool
    max_clip_seconds: Optional[float] = None
    clip_durations: List[float] = Field(default_factory=list)


class ProviderListResponse(BaseModel):
    default: str
    items: List[ProviderInfo]
