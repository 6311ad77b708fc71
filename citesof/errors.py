from typing import Optional


class CitesOfError(Exception):
    """Base class for errors raised inside the citesof core."""


class NotFoundError(CitesOfError):
    """An identifier could not be resolved to a DOI."""


class AmbiguousMatchError(NotFoundError):
    """A title search returned a result that is too dissimilar to the query."""

    def __init__(self, query: str, candidate_title: str, distance: int, threshold: int):
        self.query = query
        self.candidate_title = candidate_title
        self.distance = distance
        self.threshold = threshold
        super().__init__(
            f'Found title "{candidate_title}" dissimilar to query '
            f"(distance {distance} > threshold {threshold})."
        )


class RateLimitedError(CitesOfError):
    """The provider answered HTTP 429."""

    DEFAULT_RETRY_AFTER = 60

    def __init__(self, provider: str, retry_after_seconds: Optional[int] = None):
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds if retry_after_seconds is not None else self.DEFAULT_RETRY_AFTER
        super().__init__(
            f"{provider} rate limit reached. Please wait {self.retry_after_seconds} seconds and try again."
        )


class ProviderUnavailableError(CitesOfError):
    """5xx status or a malformed response body from a provider."""

    # Statuses typically produced by a relay or CDN in front of the provider
    OUTAGE_STATUSES = frozenset({500, 502, 503, 504, 520, 522, 524})

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_outage(self) -> bool:
        return self.status_code in self.OUTAGE_STATUSES


class NetworkError(CitesOfError):
    """Transport-level failure (DNS, connection reset, timeout...)."""
