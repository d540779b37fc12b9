from __future__ import annotations

import base64
import binascii
from typing import Any

from app.clients.errors import ConfigurationError
from app.clients.providers.base import ProviderAdapter
from app.models.generation import (
    GenerationRequest,
    InlineArtifact,
    JobHandle,
    NoArtifact,
    OutputKind,
    ProviderCapabilities,
    ProviderMode,
    ProviderResult,
)
from app.services.normalizer import snippet


class ImagenAdapter(ProviderAdapter):
    """Gemini image generation through ``generateContent`` with IMAGE modality."""

    name = "imagen"
    capabilities = ProviderCapabilities(
        mode=ProviderMode.SYNCHRONOUS,
        output=OutputKind.IMAGE,
    )

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-2.5-flash-image",
        base_url: str = "https://generativelanguage.googleapis.com",
        aspect_ratio: str = "16:9",
        concurrency: int = 2,
        **kwargs: Any,
    ) -> None:
        super().__init__(concurrency=concurrency, **kwargs)
        self.api_key = (api_key or "").strip()
        self.model = model.removeprefix("models/")
        self.base_url = base_url.rstrip("/")
        self.aspect_ratio = aspect_ratio

    def enabled(self) -> bool:
        return bool(self.api_key)

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not self.enabled():
            raise ConfigurationError("imagen api key is not configured")
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        for image in request.images:
            parts.append(
                {
                    "inlineData": {
                        "mimeType": image.mime_type,
                        "data": base64.b64encode(image.data).decode("ascii"),
                    }
                }
            )
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": {"aspectRatio": request.settings.get("aspect_ratio") or self.aspect_ratio},
            },
        }
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        response = await self._gated_call("POST", url, json=payload, headers={"x-goog-api-key": self.api_key})
        return JobHandle(provider=self.name, result=self._parse(response.json() or {}))

    def _parse(self, body: dict[str, Any]) -> ProviderResult:
        candidates = body.get("candidates") or []
        parts = ((candidates[0] if candidates else {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if not inline:
                continue
            mime_type = inline.get("mimeType") or inline.get("mime_type") or ""
            if not mime_type.startswith("image/"):
                continue
            try:
                data = base64.b64decode(inline.get("data") or "")
            except (binascii.Error, ValueError):
                continue
            if data:
                return ProviderResult(artifacts=[InlineArtifact(data=data, content_type=mime_type)], raw=body)

        text = " ".join(part.get("text", "") for part in parts if part.get("text"))
        self.log.warning("imagen returned no image", extra={"model": self.model, "text": text[:300]})
        return ProviderResult(artifacts=[NoArtifact(snippet=text[:500] or snippet(body))], raw=body)
