from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from typing import Optional

import httpx

from app.clients import http
from app.clients.media import MediaToolkit
from app.clients.s3_storage import S3StorageClient
from app.models.domain import Job, SceneResult


def scene_videos(job: Job) -> list[SceneResult]:
    """Successful video scenes of a job in scene order."""
    return sorted(
        (result for result in job.results if result.success and result.artifact_url and not result.image_urls),
        key=lambda result: result.index,
    )


class JobStitcher:
    """Joins a job's scene videos into one final video."""

    def __init__(
        self,
        storage: S3StorageClient,
        media: MediaToolkit,
        fetch_timeout: float = 60.0,
        temp_dir: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.storage = storage
        self.media = media
        self.fetch_timeout = fetch_timeout
        self.temp_dir = temp_dir
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    async def stitch(self, job: Job) -> str:
        scenes = scene_videos(job)
        if not scenes:
            raise ValueError(f"job {job.id} has no scene videos to combine")
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f"combine_{job.id}_", dir=self.temp_dir) as workdir:
            normalized: list[str] = []
            for scene in scenes:
                raw_path = os.path.join(workdir, f"scene_{scene.index}.mp4")
                await asyncio.to_thread(_write_bytes, raw_path, await self._fetch(scene.artifact_url))
                normalized.append(await asyncio.to_thread(
                    self.media.normalize, raw_path, os.path.join(workdir, f"scene_{scene.index}_norm.mp4")
                ))
            video_path = await asyncio.to_thread(
                self.media.concatenate, normalized, os.path.join(workdir, "combined.mp4")
            )
            if job.music_url:
                music_path = os.path.join(workdir, "music.mp3")
                await asyncio.to_thread(_write_bytes, music_path, await self._fetch(job.music_url))
                video_path = await asyncio.to_thread(
                    self.media.add_music_bed, video_path, music_path, os.path.join(workdir, "final.mp4")
                )
            data = await asyncio.to_thread(_read_bytes, video_path)
            url = await asyncio.to_thread(self.storage.upload, data, "video/mp4", f"jobs/{job.id}/final")
        self.log.info("job videos combined", extra={"job_id": job.id, "scenes": len(scenes), "final_url": url})
        return url

    async def _fetch(self, url: str) -> bytes:
        key = self.storage.extract_key(url)
        if key:
            try:
                return await asyncio.to_thread(self.storage.download, key)
            except ValueError:
                if not url.startswith(("http://", "https://")):
                    raise
        response = await http.request(
            "GET", url, timeout=self.fetch_timeout, transport=self.transport, follow_redirects=True
        )
        return response.content


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as handle:
        handle.write(data)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()
