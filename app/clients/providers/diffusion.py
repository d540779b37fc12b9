from __future__ import annotations

import base64
import binascii
from typing import Any

from app.clients.errors import ConfigurationError
from app.clients.providers.base import ProviderAdapter
from app.models.generation import (
    GenerationRequest,
    ImageRole,
    InlineArtifact,
    JobHandle,
    NoArtifact,
    OutputKind,
    ProviderCapabilities,
    ProviderMode,
    ProviderResult,
)
from app.services.normalizer import snippet

DEFAULT_NEGATIVE_PROMPT = "blurry, low quality, distorted, watermark, text"


class DiffusionAdapter(ProviderAdapter):
    """Stable Diffusion WebUI style API (``/sdapi/v1/txt2img`` and ``/img2img``)."""

    name = "diffusion"
    capabilities = ProviderCapabilities(
        mode=ProviderMode.SYNCHRONOUS,
        output=OutputKind.IMAGE,
    )

    def __init__(self, base_url: str | None, concurrency: int = 2, **kwargs: Any) -> None:
        super().__init__(concurrency=concurrency, **kwargs)
        self.base_url = (base_url or "").rstrip("/")

    def enabled(self) -> bool:
        return bool(self.base_url)

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not self.enabled():
            raise ConfigurationError("diffusion base url is not configured")
        payload = self._build_payload(request)
        init_image = request.image(ImageRole.SINGLE) or request.image(ImageRole.FIRST_FRAME)
        endpoint = "txt2img"
        if init_image is not None:
            endpoint = "img2img"
            payload["init_images"] = [base64.b64encode(init_image.data).decode("ascii")]
            payload["denoising_strength"] = float(request.settings.get("denoising_strength", 0.55))

        response = await self._gated_call("POST", f"{self.base_url}/sdapi/v1/{endpoint}", json=payload)
        body = response.json()
        self.log.info(
            "diffusion generation finished",
            extra={"endpoint": endpoint, "images": len(body.get("images") or [])},
        )
        return JobHandle(provider=self.name, result=self._parse(body))

    def _build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        settings = request.settings
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "negative_prompt": settings.get("negative_prompt") or DEFAULT_NEGATIVE_PROMPT,
            "steps": int(settings.get("steps", 40)),
            "cfg_scale": float(settings.get("cfg_scale", 9.0)),
            "width": int(settings.get("width", 768)),
            "height": int(settings.get("height", 512)),
            "sampler_name": settings.get("sampler_name") or "DPM++ 2M Karras",
        }
        if settings.get("seed") is not None:
            payload["seed"] = int(settings["seed"])
        if settings.get("model"):
            payload["override_settings"] = {"sd_model_checkpoint": settings["model"]}
        return payload

    def _parse(self, body: dict[str, Any]) -> ProviderResult:
        artifacts = []
        for encoded in body.get("images") or []:
            if not isinstance(encoded, str):
                continue
            if encoded.startswith("data:") and "," in encoded:
                encoded = encoded.split(",", 1)[1]
            try:
                artifacts.append(InlineArtifact(data=base64.b64decode(encoded), content_type="image/png"))
            except (binascii.Error, ValueError):
                self.log.warning("diffusion returned undecodable image payload")
        if not artifacts:
            artifacts.append(NoArtifact(snippet=snippet(body)))
        return ProviderResult(artifacts=artifacts, raw=body)
