from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.clients import http
from app.clients.errors import GenerationTimeout
from app.models.generation import (
    ArtifactReference,
    GenerationRequest,
    JobHandle,
    ProviderCapabilities,
    ProviderResult,
)
from app.services.retry import ConcurrencyGate, retry_with_backoff

Sleep = Callable[[float], Awaitable[None]]


class ProviderAdapter(ABC):
    """Common contract for image and video generation backends.

    ``submit`` starts a generation, ``wait`` blocks until it is terminal and
    ``fetch_artifact`` turns a provider pointer into bytes. Synchronous
    providers finish inside ``submit`` and hand back a completed handle.
    """

    name: str = "provider"
    capabilities: ProviderCapabilities

    def __init__(
        self,
        timeout: float = 180.0,
        max_retries: int = 2,
        base_delay: float = 1.0,
        concurrency: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.gate = ConcurrencyGate(concurrency) if concurrency else None
        self.transport = transport
        self.sleep = sleep
        self.log = logger or logging.getLogger(__name__)

    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> JobHandle: ...

    async def wait(self, handle: JobHandle, timeout: float | None = None) -> ProviderResult:
        if handle.result is not None:
            return handle.result
        raise GenerationTimeout(f"{self.name} handle {handle.job_id} has no result")

    async def fetch_artifact(self, reference: ArtifactReference) -> bytes:
        response = await self._call("GET", reference.value)
        return response.content

    async def generate(self, request: GenerationRequest, timeout: float | None = None) -> ProviderResult:
        handle = await self.submit(request)
        return await self.wait(handle, timeout=timeout)

    async def _call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async def attempt() -> httpx.Response:
            return await http.request(method, url, timeout=self.timeout, transport=self.transport, **kwargs)

        return await retry_with_backoff(
            attempt,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            sleep=self.sleep,
        )

    async def _gated_call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self.gate is None:
            return await self._call(method, url, **kwargs)
        async with self.gate:
            return await self._call(method, url, **kwargs)

    def _poll_budget(self, interval: float, max_polls: int, timeout: float | None) -> int:
        if timeout is None or interval <= 0:
            return max_polls
        return max(1, min(max_polls, math.ceil(timeout / interval)))
