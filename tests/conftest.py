from __future__ import annotations

import asyncio
import base64
import io
from typing import Any, Callable

import pytest
from PIL import Image

from app.clients.providers.base import ProviderAdapter
from app.clients.s3_storage import S3StorageClient
from app.models.generation import (
    GenerationRequest,
    InlineArtifact,
    JobHandle,
    OutputKind,
    ProviderCapabilities,
    ProviderMode,
    ProviderResult,
)


def png_bytes(color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_base64(color: str = "red") -> str:
    return base64.b64encode(png_bytes(color)).decode("ascii")


VIDEO_CAPS = ProviderCapabilities(
    mode=ProviderMode.POLLING,
    output=OutputKind.VIDEO,
    supports_interpolation=True,
    max_clip_seconds=8,
    clip_durations=(4, 6, 8),
)

IMAGE_CAPS = ProviderCapabilities(mode=ProviderMode.SYNCHRONOUS, output=OutputKind.IMAGE)


class FakeAdapter(ProviderAdapter):
    """Scripted provider that records every request and tracks overlap."""

    name = "fake"

    def __init__(
        self,
        capabilities: ProviderCapabilities = VIDEO_CAPS,
        behaviour: Callable[[GenerationRequest], Any] | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__()
        self.capabilities = capabilities
        self.behaviour = behaviour
        self.delay = delay
        self.requests: list[GenerationRequest] = []
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def submit(self, request: GenerationRequest) -> JobHandle:
        self.requests.append(request)
        self.events.append(("start", request.prompt))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.behaviour(request) if self.behaviour else None
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is None:
                outcome = self._default_artifact(len(self.requests))
            if not isinstance(outcome, ProviderResult):
                outcome = ProviderResult(artifacts=[outcome])
            return JobHandle(provider=self.name, result=outcome)
        finally:
            self.active -= 1
            self.events.append(("end", request.prompt))

    def _default_artifact(self, number: int) -> InlineArtifact:
        if self.capabilities.output == OutputKind.IMAGE:
            return InlineArtifact(data=png_bytes(), content_type="image/png")
        return InlineArtifact(data=f"clip-{number}".encode(), content_type="video/mp4")


class FakeMedia:
    def __init__(self) -> None:
        self.merged: list[tuple[str, str | None, str | None]] = []
        self.concatenated: list[list[str]] = []

    def extract_last_frame(self, video_path: str) -> bytes:
        with open(video_path, "rb") as handle:
            return b"last:" + handle.read()

    def concatenate(self, video_paths, output_path=None) -> str:
        self.concatenated.append(list(video_paths))
        with open(output_path, "wb") as out:
            for path in video_paths:
                with open(path, "rb") as handle:
                    out.write(handle.read())
        return output_path

    def merge(self, video_path, narration_path=None, music_path=None, output_path=None) -> str:
        self.merged.append((video_path, narration_path, music_path))
        with open(video_path, "rb") as handle, open(output_path, "wb") as out:
            out.write(handle.read() + b"+audio")
        return output_path

    def normalize(self, video_path, output_path=None) -> str:
        with open(video_path, "rb") as handle, open(output_path, "wb") as out:
            out.write(b"[" + handle.read() + b"]")
        return output_path

    def add_music_bed(self, video_path, music_path, output_path=None) -> str:
        with open(video_path, "rb") as video, open(music_path, "rb") as music, open(output_path, "wb") as out:
            out.write(video.read() + b"+" + music.read())
        return output_path


class FakeSpeech:
    def __init__(self, fail_speech: bool = False, fail_music: bool = False) -> None:
        self.fail_speech = fail_speech
        self.fail_music = fail_music
        self.spoken: list[str] = []
        self.music_lengths: list[int] = []

    def enabled(self) -> bool:
        return True

    def speech_enabled(self) -> bool:
        return True

    async def synthesize(self, text: str, voice_id: str | None = None) -> bytes:
        self.spoken.append(text)
        if self.fail_speech:
            raise RuntimeError("ElevenLabs synthesis failed: HTTP 500")
        return b"voice"

    async def compose_music(self, length_ms: int, style: str | None = None, prompt: str | None = None) -> bytes:
        self.music_lengths.append(length_ms)
        if self.fail_music:
            raise RuntimeError("ElevenLabs music failed: HTTP 503")
        return b"music"


@pytest.fixture
def storage() -> S3StorageClient:
    return S3StorageClient(bucket="lovestory-test", access_key=None, secret_key=None)


@pytest.fixture
def media() -> FakeMedia:
    return FakeMedia()


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
