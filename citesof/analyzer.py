import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

from .apis.arxiv import ArxivAPI
from .apis.base import HttpTransport, RequestsTransport
from .apis.crossref import CrossrefAPI
from .apis.opencitations import OpenCitationsAPI
from .apis.pubmed import PubMedIdConverter
from .cache import CacheStore, MemoryCacheStore
from .citations import CitationFetcher
from .errors import RateLimitedError
from .gate import RequestGate
from .identifiers import IdentifierNormalizer
from .metadata import MetadataResolver
from .models import (
    CitationResult,
    CitationStatus,
    CitingRecord,
    CommonCitationsReport,
    Doi,
    ProgressCallback,
    ReportStatus,
)
from .results import ResultMaterializer, dedupe
from .utils import DEFAULT_MAX_CONCURRENT, PAGE_SIZE

logger = logging.getLogger(__name__)


def intersect(results: Sequence[CitationResult]) -> List[CitingRecord]:
    """
    Citing records present in every input, in the order of the first input.

    API_ERROR inputs carry no information and are skipped; a NO_DATA input
    has an empty citing set and empties the intersection. A single usable
    input yields its own (deduplicated) set.
    """
    usable = [result for result in results if result.status != CitationStatus.API_ERROR]
    if not usable:
        return []

    candidates = dedupe(usable[0].data if usable[0].ok else [])
    for result in usable[1:]:
        if not candidates:
            break
        citing = {record.citing for record in result.data} if result.ok else set()
        candidates = [record for record in candidates if record.citing in citing]
    return candidates


class CommonCitationFinder:
    """
    Entry points used by the presentation layer.

    Wires the normalizer, citation fetcher and materializer around one
    cache and one Crossref request gate. None of the public methods raise;
    failures are reported through return values.
    """

    def __init__(self, cache: Optional[CacheStore] = None, transport: Optional[HttpTransport] = None,
                 gate: Optional[RequestGate] = None, email: Optional[str] = None,
                 on_rate_limit: Optional[Callable[[RateLimitedError], None]] = None,
                 allow_partial: bool = False, max_workers: int = DEFAULT_MAX_CONCURRENT * 2,
                 page_size: int = PAGE_SIZE):
        self.cache = cache if cache is not None else MemoryCacheStore()
        self.transport = transport if transport is not None else RequestsTransport()
        self.gate = gate if gate is not None else RequestGate(DEFAULT_MAX_CONCURRENT)
        self.allow_partial = allow_partial
        self.max_workers = max_workers

        crossref = CrossrefAPI(self.transport, self.gate, email=email)
        arxiv = ArxivAPI(self.transport)
        self.metadata = MetadataResolver(self.cache, crossref, arxiv, on_rate_limit=on_rate_limit)
        self.normalizer = IdentifierNormalizer(self.cache, self.metadata, crossref,
                                               PubMedIdConverter(self.transport, email=email))
        self.fetcher = CitationFetcher(self.cache, OpenCitationsAPI(self.transport), self.metadata)
        self.materializer = ResultMaterializer(self.metadata, page_size=page_size, max_workers=max_workers)
        logger.debug(f"CommonCitationFinder ready (gate limit {self.gate.limit}, allow_partial={allow_partial})")

    def close(self) -> None:
        """Persist everything cached during this session."""
        self.cache.flush()

    def __enter__(self) -> "CommonCitationFinder":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def resolve_identifier(self, text: str) -> Optional[Doi]:
        """Canonical DOI for a title, DOI, arXiv or PubMed input; None when unresolved."""
        try:
            return self.normalizer.normalize(text)
        except Exception as e:
            logger.error(f"Unexpected error resolving {text!r}: {e}", exc_info=True)
            return None

    def fetch_citing_page(self, doi: Doi, offset: int = 0, limit: int = PAGE_SIZE) -> CitationResult:
        try:
            return self.fetcher.get_citing_publications(doi, offset=offset, limit=limit)
        except Exception as e:
            logger.error(f"Unexpected error fetching citations for {doi}: {e}", exc_info=True)
            return CitationResult(status=CitationStatus.API_ERROR, message=f"Unexpected error: {e}")

    def _fetch_all(self, dois: Sequence[Doi], progress: Optional[ProgressCallback]) -> Dict[Doi, CitationResult]:
        total = len(dois)
        results: Dict[Doi, CitationResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [(doi, executor.submit(self.fetcher.get_all_citing, doi)) for doi in dois]
            for done, (doi, future) in enumerate(futures, start=1):
                results[doi] = future.result()
                logger.info(f"Citing works for {doi}: {results[doi].status.value} ({results[doi].total_count or 0})")
                if progress:
                    progress("Fetching citing works", done, total)
        return results

    def intersect_and_materialize(self, dois: Sequence[Doi], progress: Optional[ProgressCallback] = None,
                                  cursor: int = 0) -> CommonCitationsReport:
        """
        Find the works citing every DOI and materialize one page of them.

        Args:
            dois: Canonical DOIs (duplicates are fetched once).
            progress: Optional (message, current, total) callback.
            cursor: Index of the first result of the page to render.

        Returns:
            A report whose status is API_ERROR only when every input failed,
            NO_DATA when no input has citation data, SUCCESS otherwise (an
            empty intersection is still a success).
        """
        unique_dois = list(dict.fromkeys(dois))
        report = CommonCitationsReport(status=ReportStatus.SUCCESS, dois=unique_dois)
        if not unique_dois:
            report.status = ReportStatus.UNRESOLVED
            report.message = "Please enter at least one title or DOI."
            return report

        try:
            per_input = self._fetch_all(unique_dois, progress)
            report.per_input = per_input
            statuses = [result.status for result in per_input.values()]

            if all(status == CitationStatus.API_ERROR for status in statuses):
                report.status = ReportStatus.API_ERROR
                first_message = next((r.message for r in per_input.values() if r.message), None)
                report.message = first_message or "The citation service is not responding. Please try again later."
                return report
            if all(status == CitationStatus.NO_DATA for status in statuses):
                report.status = ReportStatus.NO_DATA
                report.message = "No citations found for any of the inputs. The index might not have data for these DOIs."
                return report

            report.common = intersect([per_input[doi] for doi in unique_dois])
            logger.info(f"Found {len(report.common)} works citing all {len(unique_dois)} inputs")
            report.page = self.materializer.materialize(report.common, cursor=cursor, progress=progress)
            if not report.common:
                report.message = "No common citations found between these papers."
            return report
        except Exception as e:
            logger.error(f"Unexpected error during common citation search: {e}", exc_info=True)
            report.status = ReportStatus.API_ERROR
            report.message = f"An error occurred: {e}"
            return report

    def find_common_citations(self, texts: Sequence[str], progress: Optional[ProgressCallback] = None,
                              cursor: int = 0) -> CommonCitationsReport:
        """
        Resolve free-form inputs concurrently, then intersect their citing works.

        If any input cannot be resolved the whole search is abandoned (status
        UNRESOLVED) unless ``allow_partial`` is set, in which case unresolved
        inputs are dropped.
        """
        inputs = [text.strip() for text in texts if text and text.strip()]
        if not inputs:
            return CommonCitationsReport(status=ReportStatus.UNRESOLVED,
                                         message="Please enter at least one title or DOI.")

        total = len(inputs)
        resolved: List[Optional[Doi]] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self.resolve_identifier, text) for text in inputs]
            for done, future in enumerate(futures, start=1):
                resolved.append(future.result())
                if progress:
                    progress("Resolving identifiers", done, total)

        unresolved = [text for text, doi in zip(inputs, resolved) if doi is None]
        dois = [doi for doi in resolved if doi is not None]
        if unresolved and (not self.allow_partial or not dois):
            logger.warning(f"Could not resolve {len(unresolved)} of {total} inputs: {unresolved}")
            return CommonCitationsReport(
                status=ReportStatus.UNRESOLVED,
                dois=dois,
                unresolved=unresolved,
                message="Could not find DOI for one or more articles.",
            )
        if unresolved:
            logger.warning(f"Dropping {len(unresolved)} unresolved input(s): {unresolved}")

        report = self.intersect_and_materialize(dois, progress=progress, cursor=cursor)
        report.unresolved = unresolved
        return report
