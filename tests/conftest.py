"""Shared fixtures: a scripted HTTP transport, a controllable clock and wired components."""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from citesof.analyzer import CommonCitationFinder
from citesof.apis.arxiv import ArxivAPI
from citesof.apis.base import HttpResponse, HttpTransport
from citesof.apis.crossref import CrossrefAPI
from citesof.apis.opencitations import OpenCitationsAPI
from citesof.apis.pubmed import PubMedIdConverter
from citesof.cache import MemoryCacheStore
from citesof.citations import CitationFetcher
from citesof.errors import NetworkError
from citesof.gate import RequestGate
from citesof.identifiers import IdentifierNormalizer
from citesof.metadata import MetadataResolver

CROSSREF = "https://api.crossref.org/works"
OPENCITATIONS = "https://opencitations.net/index/api/v1/citations"
ARXIV = "https://export.arxiv.org/api/query"
NCBI = "https://www.ncbi.nlm.nih.gov/pmc/utils/idconv/v1.0/"
TEST_EMAIL = "tests@example.org"


class FakeTransport(HttpTransport):
    """
    Serves canned responses keyed by URL (and optionally a subset of params).

    Unmatched requests get a 404. Every request is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.routes: List[Tuple[str, Optional[Dict[str, Any]], Callable[[], HttpResponse]]] = []
        self.calls: List[Tuple[str, Dict[str, Any], bool]] = []
        self._lock = threading.Lock()

    def add(self, url: str, *, json_body: Any = None, text: Optional[str] = None, status: int = 200,
            headers: Optional[Dict[str, str]] = None, params: Optional[Dict[str, Any]] = None) -> None:
        body = text if text is not None else json.dumps(json_body)
        response = HttpResponse(status_code=status, text=body, headers=headers or {}, url=url)
        self.routes.insert(0, (url, params, lambda: response))

    def fail(self, url: str, message: str = "connection reset") -> None:
        def _raise() -> HttpResponse:
            raise NetworkError(message)
        self.routes.insert(0, (url, None, _raise))

    def get(self, url: str, params: Optional[Dict[str, Any]] = None, use_proxy: bool = False) -> HttpResponse:
        params = dict(params or {})
        with self._lock:
            self.calls.append((url, params, use_proxy))
        for route_url, route_params, respond in self.routes:
            if route_url != url:
                continue
            if route_params and any(params.get(k) != v for k, v in route_params.items()):
                continue
            return respond()
        return HttpResponse(status_code=404, text="", url=url)

    def calls_to(self, url_prefix: str) -> List[Tuple[str, Dict[str, Any], bool]]:
        with self._lock:
            return [call for call in self.calls if call[0].startswith(url_prefix)]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def crossref_work(doi: str, title: Optional[str] = None, count: Optional[int] = None,
                  journal: Optional[str] = None, **dates: Any) -> Dict[str, Any]:
    """A Crossref /works/{doi} body; date fields are given as published=2020 etc."""
    message: Dict[str, Any] = {"DOI": doi}
    if title is not None:
        message["title"] = [title]
    if count is not None:
        message["is-referenced-by-count"] = count
    if journal is not None:
        message["container-title"] = [journal]
    for name, year in dates.items():
        message[name.replace("_", "-")] = {"date-parts": [[year, 1, 1]]}
    return {"status": "ok", "message": message}


def crossref_search(*items: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": "ok", "message": {"items": list(items)}}


def citation_rows(*citing: str) -> List[Dict[str, str]]:
    return [
        {"oci": f"oci-{i}", "citing": value, "cited": "x", "creation": "2021-05-01"}
        for i, value in enumerate(citing)
    ]


def arxiv_feed(arxiv_id: str, title: str, published: str = "2017-06-12T17:57:34Z") -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>arXiv Query</title>
  <entry>
    <id>http://arxiv.org/abs/{arxiv_id}</id>
    <published>{published}</published>
    <title>{title}</title>
  </entry>
</feed>"""


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def cache(clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def gate() -> RequestGate:
    return RequestGate(5)


@pytest.fixture()
def crossref(transport: FakeTransport, gate: RequestGate) -> CrossrefAPI:
    return CrossrefAPI(transport, gate, email=TEST_EMAIL)


@pytest.fixture()
def metadata(cache: MemoryCacheStore, crossref: CrossrefAPI, transport: FakeTransport) -> MetadataResolver:
    return MetadataResolver(cache, crossref, ArxivAPI(transport))


@pytest.fixture()
def normalizer(cache: MemoryCacheStore, metadata: MetadataResolver, crossref: CrossrefAPI,
               transport: FakeTransport) -> IdentifierNormalizer:
    return IdentifierNormalizer(cache, metadata, crossref, PubMedIdConverter(transport, email=TEST_EMAIL))


@pytest.fixture()
def fetcher(cache: MemoryCacheStore, metadata: MetadataResolver, transport: FakeTransport) -> CitationFetcher:
    return CitationFetcher(cache, OpenCitationsAPI(transport), metadata)


@pytest.fixture()
def finder(cache: MemoryCacheStore, transport: FakeTransport, gate: RequestGate) -> CommonCitationFinder:
    return CommonCitationFinder(cache=cache, transport=transport, gate=gate, email=TEST_EMAIL)
