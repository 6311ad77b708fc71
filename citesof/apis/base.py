# Base API definitions: HTTP transport and provider interfaces
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from ..errors import NetworkError, ProviderUnavailableError, RateLimitedError

logger = logging.getLogger(__name__)

USER_AGENT = 'citesof/0.1.0 (common citation finder; https://github.com/citesof/citesof)'
DEFAULT_TIMEOUT = 30


@dataclass
class HttpResponse:
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return json.loads(self.text)


class HttpTransport(ABC):
    """Performs plain HTTPS GET requests for the provider clients."""

    @abstractmethod
    def get(self, url: str, params: Optional[Dict[str, Any]] = None, use_proxy: bool = False) -> HttpResponse:
        """
        Fetch a URL.

        Args:
            url: Absolute URL.
            params: Query-string parameters.
            use_proxy: Route through the configured relay, if any.

        Returns:
            The response, whatever its status code.

        Raises:
            NetworkError: On transport-level failures.
        """
        pass


class RequestsTransport(HttpTransport):
    """HttpTransport backed by a shared requests.Session."""

    def __init__(self, proxy_url: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.proxy_url = proxy_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        if proxy_url:
            logger.info(f"Citation-graph requests will be relayed through {proxy_url}")

    def _build_url(self, url: str, params: Optional[Dict[str, Any]], use_proxy: bool):
        if use_proxy and self.proxy_url:
            # Relays take the full target URL appended to their own
            prepared = requests.Request('GET', url, params=params).prepare()
            return f"{self.proxy_url}{prepared.url}", None
        return url, params

    def get(self, url: str, params: Optional[Dict[str, Any]] = None, use_proxy: bool = False) -> HttpResponse:
        target, query = self._build_url(url, params, use_proxy)
        try:
            response = self.session.get(target, params=query, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e
        return HttpResponse(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
            url=response.url,
        )


def parse_retry_after(headers: Dict[str, str]) -> Optional[int]:
    for key, value in headers.items():
        if key.lower() == 'retry-after':
            try:
                return int(float(value))
            except (TypeError, ValueError):
                return None
    return None


class ProviderAPI:
    """Shared request handling for the provider clients."""

    NAME = "Provider"

    def __init__(self, transport: HttpTransport):
        self.transport = transport

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None, use_proxy: bool = False) -> HttpResponse:
        """
        GET a URL and translate error statuses into the citesof error taxonomy.

        Returns the response for 2xx and 404; raises otherwise.
        """
        logger.debug(f"[{self.NAME}] GET {url} params={params}")
        response = self.transport.get(url, params=params, use_proxy=use_proxy)

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers)
            logger.warning(f"[{self.NAME}] Rate limited (retry after {retry_after or RateLimitedError.DEFAULT_RETRY_AFTER}s)")
            raise RateLimitedError(self.NAME, retry_after)
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                self.NAME,
                f"{self.NAME} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not response.ok and response.status_code != 404:
            raise ProviderUnavailableError(
                self.NAME,
                f"{self.NAME} request failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, use_proxy: bool = False) -> Optional[Any]:
        """Like _get but decodes the body; returns None for 404."""
        response = self._get(url, params=params, use_proxy=use_proxy)
        if response.status_code == 404:
            logger.debug(f"[{self.NAME}] Not found: {url}")
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(
                self.NAME,
                f"{self.NAME} returned a malformed (non-JSON) response",
                status_code=response.status_code,
            ) from e


class CitationAPI(ABC):
    @abstractmethod
    def get_citations(self, doi: str) -> Optional[List[Dict[str, Any]]]:
        """Fetch the raw records of works citing the given DOI.

        Args:
            doi: A DOI string

        Returns:
            A list of provider records, each carrying at least a ``citing`` value.
            An empty list means the provider knows of no citing works; None means
            the provider does not know the DOI at all.
        """
        pass
