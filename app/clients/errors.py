from __future__ import annotations

RETRIABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class ProviderError(Exception):
    """Base class for every failure raised by a generation provider."""


class TransportTimeout(ProviderError):
    pass


class ConnectionFailure(ProviderError):
    pass


class HttpStatusFailure(ProviderError):
    def __init__(self, status: int, body: str = "", url: str | None = None) -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status}: {body[:300]}")


class ProviderJobFailed(ProviderError):
    def __init__(self, provider: str, state: str, detail: str | None = None) -> None:
        self.provider = provider
        self.state = state
        self.detail = detail
        message = f"{provider} job {state.lower()}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class GenerationTimeout(ProviderError):
    pass


class SceneInputError(ProviderError):
    """Scene input could not be resolved or validated."""


class ConfigurationError(Exception):
    """Missing configuration that makes a whole job unrunnable."""


def is_retriable(exc: BaseException) -> bool:
    if isinstance(exc, (TransportTimeout, ConnectionFailure)):
        return True
    if isinstance(exc, HttpStatusFailure):
        return exc.status in RETRIABLE_STATUSES
    return False
