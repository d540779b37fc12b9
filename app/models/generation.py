from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union


class ProviderMode(str, Enum):
    SYNCHRONOUS = "synchronous"
    POLLING = "polling"


class OutputKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ImageRole(str, Enum):
    SINGLE = "single"
    FIRST_FRAME = "first_frame"
    LAST_FRAME = "last_frame"


@dataclass(frozen=True)
class ProviderCapabilities:
    mode: ProviderMode
    output: OutputKind
    supports_interpolation: bool = False
    requires_image: bool = False
    max_clip_seconds: Optional[float] = None
    clip_durations: Tuple[float, ...] = ()

    def snap_duration(self, seconds: float | None) -> float | None:
        """Nearest legal clip duration; ties go to the longer option."""
        if not self.clip_durations:
            if seconds is None or self.max_clip_seconds is None:
                return seconds
            return min(seconds, self.max_clip_seconds)
        if seconds is None:
            return max(self.clip_durations)
        return min(self.clip_durations, key=lambda option: (abs(option - seconds), -option))


@dataclass(frozen=True)
class ReferenceImage:
    data: bytes
    role: ImageRole = ImageRole.SINGLE
    mime_type: str = "image/png"


@dataclass
class GenerationRequest:
    prompt: str
    images: list[ReferenceImage] = field(default_factory=list)
    duration_seconds: Optional[float] = None
    settings: dict[str, Any] = field(default_factory=dict)

    def image(self, role: ImageRole) -> ReferenceImage | None:
        for image in self.images:
            if image.role == role:
                return image
        return None


@dataclass(frozen=True)
class ArtifactReference:
    """Pointer to provider output: a fetchable URL or an opaque provider filename."""

    value: str
    kind: str = "url"
    media: OutputKind = OutputKind.VIDEO
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_url(self) -> bool:
        return self.kind == "url"


@dataclass(frozen=True)
class InlineArtifact:
    data: bytes
    content_type: str = "image/png"

    @property
    def media(self) -> OutputKind:
        if self.content_type.startswith("video/"):
            return OutputKind.VIDEO
        return OutputKind.IMAGE


@dataclass(frozen=True)
class NoArtifact:
    snippet: str = ""


Artifact = Union[ArtifactReference, InlineArtifact, NoArtifact]


@dataclass
class ProviderResult:
    artifacts: list[Artifact]
    raw: Any = None

    @property
    def usable(self) -> list[Artifact]:
        return [artifact for artifact in self.artifacts if not isinstance(artifact, NoArtifact)]


@dataclass
class JobHandle:
    provider: str
    job_id: Optional[str] = None
    result: Optional[ProviderResult] = None
