from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.clients import http
from app.clients.errors import ProviderError

DEFAULT_MUSIC_PROMPT = "instrumental only, no vocals"


class ElevenLabsClient:
    def __init__(
        self,
        api_key: str | None,
        voice_id: str | None,
        model_id: str = "eleven_multilingual_v2",
        base_url: str = "https://api.elevenlabs.io",
        music_style: str = "romantic_piano",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.voice_id = (voice_id or "").strip()
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self.music_style = music_style
        self.timeout = timeout
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    def enabled(self) -> bool:
        return bool(self.api_key)

    def speech_enabled(self) -> bool:
        return bool(self.api_key and self.voice_id)

    def _headers(self) -> dict[str, str]:
        return {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    async def synthesize(self, text: str, voice_id: str | None = None) -> bytes:
        voice = (voice_id or self.voice_id).strip()
        if not self.api_key or not voice:
            raise RuntimeError("ElevenLabs client is not configured")
        url = f"{self.base_url}/v1/text-to-speech/{voice}"
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
        }
        try:
            response = await http.request("POST", url, timeout=self.timeout, transport=self.transport,
                                          json=payload, headers=self._headers())
        except ProviderError as exc:
            raise RuntimeError(f"ElevenLabs synthesis failed: {exc}") from exc
        audio = response.content
        self.log.info(
            "elevenlabs synthesis completed",
            extra={"voice_id": voice, "model_id": self.model_id, "content_length": len(audio)},
        )
        return audio

    async def compose_music(self, length_ms: int, style: str | None = None, prompt: str | None = None) -> bytes:
        if not self.enabled():
            raise RuntimeError("ElevenLabs client is not configured")
        style = style or self.music_style
        text = prompt or f"{style.replace('_', ' ')}, {DEFAULT_MUSIC_PROMPT}"
        payload = {"prompt": text, "music_length_ms": int(length_ms)}
        try:
            response = await http.request("POST", f"{self.base_url}/v1/music/compose", timeout=self.timeout,
                                          transport=self.transport, json=payload, headers=self._headers())
        except ProviderError as exc:
            raise RuntimeError(f"ElevenLabs music failed: {exc}") from exc
        audio = response.content
        self.log.info(
            "elevenlabs music composed",
            extra={"style": style, "length_ms": length_ms, "content_length": len(audio)},
        )
        return audio
