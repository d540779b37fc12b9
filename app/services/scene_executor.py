from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import math
import os
import tempfile
from typing import Any, Mapping, Optional, Sequence

import httpx
from PIL import Image, UnidentifiedImageError

from app.clients import http
from app.clients.errors import ConfigurationError, ProviderError, SceneInputError
from app.clients.media import MediaToolkit
from app.clients.providers.base import ProviderAdapter
from app.clients.s3_storage import S3StorageClient
from app.clients.tts import ElevenLabsClient
from app.models.domain import Job, SceneDescriptor, SceneResult
from app.models.generation import (
    Artifact,
    ArtifactReference,
    GenerationRequest,
    ImageRole,
    InlineArtifact,
    NoArtifact,
    OutputKind,
    ProviderCapabilities,
    ReferenceImage,
)

DEFAULT_SCENE_MUSIC_SECONDS = 8


def plan_clip_durations(
    target: float | None,
    max_clip: float | None,
    allowed: Sequence[float] = (),
) -> list[float | None]:
    """Split a scene duration into the fewest clips a provider can render.

    ``ceil(target / max_clip)`` clips are planned and each takes an even share
    of what is left; with a discrete ``allowed`` set every share is snapped to
    the nearest legal value.
    """
    if not target or not max_clip or target <= max_clip:
        return [target]
    count = math.ceil(target / max_clip)
    durations: list[float | None] = []
    remaining = float(target)
    for clips_left in range(count, 0, -1):
        share = remaining / clips_left
        if allowed:
            share = min(allowed, key=lambda option: (abs(option - share), -option))
        else:
            share = min(share, max_clip)
        durations.append(share)
        remaining = max(remaining - share, 0.0)
    return durations


class SceneExecutor:
    def __init__(
        self,
        providers: Mapping[str, ProviderAdapter],
        storage: S3StorageClient,
        media: MediaToolkit,
        speech: ElevenLabsClient | None = None,
        scene_timeout: float | None = None,
        fetch_timeout: float = 60.0,
        temp_dir: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.providers = providers
        self.storage = storage
        self.media = media
        self.speech = speech
        self.scene_timeout = scene_timeout
        self.fetch_timeout = fetch_timeout
        self.temp_dir = temp_dir
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    def adapter_for(self, provider: str) -> ProviderAdapter:
        adapter = self.providers.get(provider)
        if adapter is None:
            raise ConfigurationError(f"unknown provider '{provider}'")
        return adapter

    async def process_one_scene(self, descriptor: SceneDescriptor, ordinal: int, job: Job) -> SceneResult:
        """Render one scene and publish its artifacts.

        Every failure becomes an unsuccessful ``SceneResult``. Only
        ``ConfigurationError`` escapes, since no other scene of the job can
        succeed either.
        """
        job.current_scene = ordinal
        job.current_title = descriptor.title
        adapter = self.adapter_for(job.provider)
        extra = {"job_id": job.id, "scene": ordinal, "provider": job.provider}
        self.log.info("scene started", extra=extra)

        try:
            images = await self._resolve_images(descriptor, adapter.capabilities)
            if adapter.capabilities.requires_image and not images:
                raise SceneInputError("Missing image")
            if not (descriptor.description or descriptor.title).strip():
                raise SceneInputError("scene has no description")

            if self.temp_dir:
                os.makedirs(self.temp_dir, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix=f"scene_{ordinal}_", dir=self.temp_dir) as workdir:
                primary, narration, music = await asyncio.gather(
                    self._render(adapter, descriptor, images, job, workdir),
                    self._narration(descriptor, job),
                    self._scene_music(descriptor, adapter.capabilities, job),
                    return_exceptions=True,
                )
                if isinstance(primary, BaseException):
                    raise primary
                result = await self._publish(adapter, descriptor, job, primary, narration, music, workdir)
        except ConfigurationError:
            raise
        except Exception as exc:
            self.log.warning("scene failed", extra={**extra, "error": str(exc)}, exc_info=True)
            return SceneResult(index=descriptor.index, title=descriptor.title, success=False, error=str(exc))

        self.log.info("scene completed", extra={**extra, "artifact_url": result.artifact_url})
        return result

    async def _resolve_images(
        self,
        descriptor: SceneDescriptor,
        capabilities: ProviderCapabilities,
    ) -> list[ReferenceImage]:
        if not descriptor.frames:
            return []
        if capabilities.supports_interpolation and len(descriptor.frames) >= 2:
            first, last = await asyncio.gather(
                self._load_frame(descriptor.frames[0]),
                self._load_frame(descriptor.frames[-1]),
            )
            return [
                ReferenceImage(data=first[0], role=ImageRole.FIRST_FRAME, mime_type=first[1]),
                ReferenceImage(data=last[0], role=ImageRole.LAST_FRAME, mime_type=last[1]),
            ]
        data, mime_type = await self._load_frame(descriptor.frames[0])
        role = ImageRole.FIRST_FRAME if capabilities.output == OutputKind.VIDEO else ImageRole.SINGLE
        return [ReferenceImage(data=data, role=role, mime_type=mime_type)]

    async def _load_frame(self, source: str) -> tuple[bytes, str]:
        source = (source or "").strip()
        if not source:
            raise SceneInputError("Missing image")
        if source.startswith("data:"):
            header, _, payload = source.partition(",")
            if ";base64" not in header:
                raise SceneInputError("reference frame data URI is not base64 encoded")
            data = _b64decode(payload)
        elif source.startswith(("http://", "https://", "/")):
            data = await self._download_frame(source)
        else:
            data = _b64decode(source)
        return data, _image_mime_type(data)

    async def _download_frame(self, url: str) -> bytes:
        key = self.storage.extract_key(url)
        if key:
            try:
                return await asyncio.to_thread(self.storage.download, key)
            except ValueError:
                if not url.startswith(("http://", "https://")):
                    raise SceneInputError(f"reference frame {url} not found in storage")
                self.log.info("storage lookup missed, fetching frame over http", extra={"url": url})
        if not url.startswith(("http://", "https://")):
            raise SceneInputError(f"reference frame {url} is not fetchable")
        try:
            response = await http.request(
                "GET", url, timeout=self.fetch_timeout, transport=self.transport, follow_redirects=True
            )
        except ProviderError as exc:
            raise SceneInputError(f"could not fetch reference frame: {exc}") from exc
        return response.content

    async def _render(
        self,
        adapter: ProviderAdapter,
        descriptor: SceneDescriptor,
        images: list[ReferenceImage],
        job: Job,
        workdir: str,
    ) -> list[Artifact] | list[str]:
        """Run the provider; image providers yield artifacts, video providers yield clip paths."""
        prompt = descriptor.description or descriptor.title
        if adapter.capabilities.output == OutputKind.IMAGE:
            request = GenerationRequest(prompt=prompt, images=images, settings=dict(job.settings))
            result = await adapter.generate(request, timeout=self.scene_timeout)
            return self._usable(result.artifacts, adapter, job, descriptor)

        capabilities = adapter.capabilities
        durations = plan_clip_durations(
            descriptor.duration_seconds,
            capabilities.max_clip_seconds,
            capabilities.clip_durations,
        )
        first = next((image for image in images if image.role != ImageRole.LAST_FRAME), None)
        last = next((image for image in images if image.role == ImageRole.LAST_FRAME), None)
        if len(durations) > 1:
            self.log.info(
                "scene split into clips",
                extra={"job_id": job.id, "scene": descriptor.index, "durations": durations},
            )

        paths: list[str] = []
        for position, seconds in enumerate(durations):
            clip_images = []
            if first is not None:
                clip_images.append(ReferenceImage(first.data, ImageRole.FIRST_FRAME, first.mime_type))
            if last is not None and position == len(durations) - 1:
                clip_images.append(last)
            request = GenerationRequest(
                prompt=prompt,
                images=clip_images,
                duration_seconds=seconds,
                settings=dict(job.settings),
            )
            result = await adapter.generate(request, timeout=self.scene_timeout)
            artifact = self._usable(result.artifacts, adapter, job, descriptor)[0]
            if len(durations) == 1 and isinstance(artifact, ArtifactReference) and artifact.metadata.get("public"):
                return [artifact.value]
            data = await self._artifact_bytes(adapter, artifact)
            path = os.path.join(workdir, f"clip_{position + 1}.mp4")
            await asyncio.to_thread(_write_bytes, path, data)
            paths.append(path)
            if position < len(durations) - 1:
                frame = await asyncio.to_thread(self.media.extract_last_frame, path)
                first = ReferenceImage(data=frame, role=ImageRole.FIRST_FRAME, mime_type="image/png")
        return paths

    def _usable(
        self,
        artifacts: list[Artifact],
        adapter: ProviderAdapter,
        job: Job,
        descriptor: SceneDescriptor,
    ) -> list[Artifact]:
        usable = [artifact for artifact in artifacts if not isinstance(artifact, NoArtifact)]
        if usable:
            return usable
        snippet = next((a.snippet for a in artifacts if isinstance(a, NoArtifact)), "")
        self.log.warning(
            "provider returned no usable artifact",
            extra={"job_id": job.id, "scene": descriptor.index, "provider": adapter.name, "raw": snippet[:300]},
        )
        raise ProviderError(f"{adapter.name} returned no usable artifact")

    async def _artifact_bytes(self, adapter: ProviderAdapter, artifact: Artifact) -> bytes:
        if isinstance(artifact, InlineArtifact):
            return artifact.data
        return await adapter.fetch_artifact(artifact)

    async def _narration(self, descriptor: SceneDescriptor, job: Job) -> bytes | None:
        text = (descriptor.narration or "").strip()
        if not text or self.speech is None or not self.speech.speech_enabled():
            return None
        try:
            return await self.speech.synthesize(text, voice_id=job.settings.get("voice_id"))
        except Exception:
            self.log.warning(
                "narration failed, continuing without it",
                extra={"job_id": job.id, "scene": descriptor.index},
                exc_info=True,
            )
            return None

    async def _scene_music(
        self,
        descriptor: SceneDescriptor,
        capabilities: ProviderCapabilities,
        job: Job,
    ) -> bytes | None:
        if not job.settings.get("scene_music") or self.speech is None or not self.speech.enabled():
            return None
        seconds = descriptor.duration_seconds or capabilities.max_clip_seconds or DEFAULT_SCENE_MUSIC_SECONDS
        try:
            return await self.speech.compose_music(int(seconds * 1000), style=job.settings.get("music_style"))
        except Exception:
            self.log.warning(
                "scene music failed, continuing without it",
                extra={"job_id": job.id, "scene": descriptor.index},
                exc_info=True,
            )
            return None

    async def _upload_audio(
        self,
        audio: bytes | None,
        folder: str,
        job: Job,
        descriptor: SceneDescriptor,
    ) -> str | None:
        # audio is only published once the scene itself rendered
        if audio is None:
            return None
        try:
            return await asyncio.to_thread(self.storage.upload, audio, "audio/mpeg", folder)
        except ValueError:
            self.log.warning(
                "audio upload failed",
                extra={"job_id": job.id, "scene": descriptor.index},
                exc_info=True,
            )
            return None

    async def _publish(
        self,
        adapter: ProviderAdapter,
        descriptor: SceneDescriptor,
        job: Job,
        rendered: list[Any],
        narration: bytes | None,
        music: bytes | None,
        workdir: str,
    ) -> SceneResult:
        folder = _folder(job, descriptor)
        result = SceneResult(
            index=descriptor.index,
            title=descriptor.title,
            success=True,
            narration_url=await self._upload_audio(narration, folder, job, descriptor),
            music_url=await self._upload_audio(music, folder, job, descriptor),
        )

        if adapter.capabilities.output == OutputKind.IMAGE:
            for artifact in rendered:
                data = await self._artifact_bytes(adapter, artifact)
                content_type = artifact.content_type if isinstance(artifact, InlineArtifact) else "image/png"
                result.image_urls.append(await asyncio.to_thread(self.storage.upload, data, content_type, folder))
            result.artifact_url = result.image_urls[0]
            return result

        paths: list[str] = list(rendered)
        if paths[0].startswith(("http://", "https://")):
            if not narration and not music:
                result.artifact_url = paths[0]
                return result
            response = await http.request(
                "GET", paths[0], timeout=self.fetch_timeout, transport=self.transport, follow_redirects=True
            )
            paths = [os.path.join(workdir, "clip_1.mp4")]
            await asyncio.to_thread(_write_bytes, paths[0], response.content)

        if len(paths) > 1:
            for path in paths:
                data = await asyncio.to_thread(_read_bytes, path)
                result.clip_urls.append(await asyncio.to_thread(self.storage.upload, data, "video/mp4", folder))
            video_path = await asyncio.to_thread(
                self.media.concatenate, paths, os.path.join(workdir, "scene.mp4")
            )
        else:
            video_path = paths[0]

        narration_path = music_path = None
        if narration:
            narration_path = os.path.join(workdir, "narration.mp3")
            await asyncio.to_thread(_write_bytes, narration_path, narration)
        if music:
            music_path = os.path.join(workdir, "music.mp3")
            await asyncio.to_thread(_write_bytes, music_path, music)
        if narration_path or music_path:
            video_path = await asyncio.to_thread(
                self.media.merge, video_path, narration_path, music_path, os.path.join(workdir, "final.mp4")
            )

        data = await asyncio.to_thread(_read_bytes, video_path)
        result.artifact_url = await asyncio.to_thread(self.storage.upload, data, "video/mp4", folder)
        return result


def _folder(job: Job, descriptor: SceneDescriptor) -> str:
    return f"jobs/{job.id}/scene_{descriptor.index}"


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SceneInputError("reference frame is not valid base64") from exc


def _image_mime_type(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError) as exc:
        raise SceneInputError("reference frame is not a readable image") from exc
    return Image.MIME.get(image_format or "", "image/png")


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as handle:
        handle.write(data)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()
