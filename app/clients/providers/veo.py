from __future__ import annotations

import base64
from typing import Any

from app.clients.errors import ConfigurationError, GenerationTimeout, ProviderError, ProviderJobFailed
from app.clients.providers.base import ProviderAdapter
from app.models.generation import (
    ArtifactReference,
    GenerationRequest,
    ImageRole,
    JobHandle,
    NoArtifact,
    OutputKind,
    ProviderCapabilities,
    ProviderMode,
    ProviderResult,
    ReferenceImage,
)
from app.services.normalizer import snippet


class VeoAdapter(ProviderAdapter):
    """Google Veo long-running video generation over the Gemini REST API."""

    name = "veo"
    capabilities = ProviderCapabilities(
        mode=ProviderMode.POLLING,
        output=OutputKind.VIDEO,
        supports_interpolation=True,
        max_clip_seconds=8,
        clip_durations=(4, 6, 8),
    )

    def __init__(
        self,
        api_key: str | None,
        model: str = "veo-3.1-generate-preview",
        base_url: str = "https://generativelanguage.googleapis.com",
        poll_interval: float = 10.0,
        max_polls: int = 60,
        aspect_ratio: str = "16:9",
        resolution: str = "720p",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = (api_key or "").strip()
        self.model = model.removeprefix("models/")
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.aspect_ratio = aspect_ratio
        self.resolution = resolution

    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not self.enabled():
            raise ConfigurationError("veo api key is not configured")
        instance: dict[str, Any] = {"prompt": request.prompt}
        first = request.image(ImageRole.FIRST_FRAME) or request.image(ImageRole.SINGLE)
        last = request.image(ImageRole.LAST_FRAME)
        if first is not None:
            instance["image"] = _inline_image(first)
        if last is not None:
            instance["lastFrame"] = _inline_image(last)

        duration = self.capabilities.snap_duration(request.duration_seconds)
        parameters = {
            "aspectRatio": request.settings.get("aspect_ratio") or self.aspect_ratio,
            "resolution": request.settings.get("resolution") or self.resolution,
            "durationSeconds": int(duration),
        }
        url = f"{self.base_url}/v1beta/models/{self.model}:predictLongRunning"
        response = await self._call(
            "POST",
            url,
            json={"instances": [instance], "parameters": parameters},
            headers=self._headers(),
        )
        operation = (response.json() or {}).get("name")
        if not operation:
            raise ProviderError(f"veo did not return an operation name: {response.text[:300]}")
        self.log.info(
            "veo generation started",
            extra={"operation": operation, "duration": duration, "interpolation": last is not None},
        )
        return JobHandle(provider=self.name, job_id=operation)

    async def wait(self, handle: JobHandle, timeout: float | None = None) -> ProviderResult:
        if handle.result is not None:
            return handle.result
        budget = self._poll_budget(self.poll_interval, self.max_polls, timeout)
        url = f"{self.base_url}/v1beta/{handle.job_id}"
        for _ in range(budget):
            body = (await self._call("GET", url, headers=self._headers())).json() or {}
            if body.get("done"):
                return self._parse(body)
            await self.sleep(self.poll_interval)
        raise GenerationTimeout(f"veo operation {handle.job_id} did not finish after {budget} polls")

    async def fetch_artifact(self, reference: ArtifactReference) -> bytes:
        response = await self._call("GET", reference.value, headers=self._headers(), follow_redirects=True)
        return response.content

    def _parse(self, body: dict[str, Any]) -> ProviderResult:
        error = body.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else None
            raise ProviderJobFailed(self.name, "FAILED", detail or str(error))
        video_response = (body.get("response") or {}).get("generateVideoResponse") or {}
        samples = video_response.get("generatedSamples") or []
        uri = ((samples[0] if samples else {}).get("video") or {}).get("uri")
        if not uri:
            return ProviderResult(artifacts=[NoArtifact(snippet=snippet(body))], raw=body)
        return ProviderResult(
            artifacts=[ArtifactReference(value=uri, kind="url", media=OutputKind.VIDEO)],
            raw=body,
        )


def _inline_image(image: ReferenceImage) -> dict[str, str]:
    return {
        "bytesBase64Encoded": base64.b64encode(image.data).decode("ascii"),
        "mimeType": image.mime_type,
    }
