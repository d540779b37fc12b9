from __future__ import annotations

from typing import Any

import httpx

from app.clients.errors import ConnectionFailure, HttpStatusFailure, TransportTimeout


async def request(
    method: str,
    url: str,
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Perform one HTTP call and translate httpx failures into provider errors.

    Non-2xx responses raise ``HttpStatusFailure`` carrying the status code so
    callers can decide retriability without looking at message text.
    """
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransportTimeout(f"{method} {url} timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise HttpStatusFailure(exc.response.status_code, exc.response.text, url=url) from exc
        except httpx.TransportError as exc:
            raise ConnectionFailure(f"{method} {url} failed: {exc}") from exc
        return response
