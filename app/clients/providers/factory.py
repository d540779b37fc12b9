from __future__ import annotations

import logging

import httpx

from app.clients.providers.base import ProviderAdapter
from app.clients.providers.diffusion import DiffusionAdapter
from app.clients.providers.imagen import ImagenAdapter
from app.clients.providers.runpod import RunPodComfyAdapter
from app.clients.providers.veo import VeoAdapter
from app.config import Settings


def build_providers(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, ProviderAdapter]:
    common = {
        "timeout": settings.http_timeout,
        "max_retries": settings.retry_ceiling,
        "base_delay": settings.retry_base_delay,
        "transport": transport,
        "logger": logger,
    }
    adapters: list[ProviderAdapter] = [
        DiffusionAdapter(
            base_url=settings.diffusion_url,
            concurrency=settings.diffusion_concurrency,
            **common,
        ),
        RunPodComfyAdapter(
            base_url=settings.runpod_url,
            api_key=settings.runpod_api_key,
            workflow_path=settings.runpod_workflow_path or None,
            poll_interval=settings.runpod_poll_interval,
            max_polls=settings.runpod_max_polls,
            **common,
        ),
        VeoAdapter(
            api_key=settings.veo_api_key,
            model=settings.veo_model,
            base_url=settings.veo_base_url,
            poll_interval=settings.veo_poll_interval,
            max_polls=settings.veo_max_polls,
            aspect_ratio=settings.veo_aspect_ratio,
            resolution=settings.veo_resolution,
            **common,
        ),
        ImagenAdapter(
            api_key=settings.imagen_api_key,
            model=settings.imagen_model,
            base_url=settings.imagen_base_url,
            concurrency=settings.imagen_concurrency,
            **common,
        ),
    ]
    return {adapter.name: adapter for adapter in adapters}
