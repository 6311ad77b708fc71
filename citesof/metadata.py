import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .apis.arxiv import ArxivAPI, arxiv_id_from_doi
from .apis.crossref import CrossrefAPI, extract_year, first_string
from .cache import CacheStore
from .errors import CitesOfError, RateLimitedError
from .models import UNKNOWN_TITLE, Doi, Metadata, PublicationRecord
from .titles import title_cache_key
from .utils import CROSSREF_BATCH_SIZE

logger = logging.getLogger(__name__)


class MetadataResolver:
    """
    Title / journal / date / citation-count lookups for canonical DOIs.

    Lookups hit the cache first. Crossref is consulted for regular DOIs
    (through the request gate owned by the Crossref client) and the arXiv
    API for DOIs under arXiv's DataCite prefix. Everything learned is merged
    into the DOI's cache entry.
    """

    def __init__(self, cache: CacheStore, crossref: CrossrefAPI, arxiv: ArxivAPI,
                 on_rate_limit: Optional[Callable[[RateLimitedError], None]] = None):
        self.cache = cache
        self.crossref = crossref
        self.arxiv = arxiv
        self.on_rate_limit = on_rate_limit

    def remember(self, doi: Doi, title: Optional[str] = None) -> None:
        """Record a resolved DOI, mirrored under its title when one is known."""
        known_title = title if title and title != UNKNOWN_TITLE else None
        self.cache.merge_record(doi, PublicationRecord(doi=doi, title=known_title))
        if known_title:
            self.cache.merge_record(title_cache_key(known_title), PublicationRecord(doi=doi))

    def _persist_work(self, doi: Doi, work: Dict[str, Any]) -> Metadata:
        count = work.get('is-referenced-by-count')
        record = PublicationRecord(
            doi=doi,
            title=first_string(work.get('title')),
            journal=first_string(work.get('container-title')),
            published_date=extract_year(work),
            citation_count=count if isinstance(count, int) and not isinstance(count, bool) else None,
        )
        self.cache.merge_record(doi, record)
        return Metadata(
            title=record.title or UNKNOWN_TITLE,
            journal=record.journal,
            published_date=record.published_date,
        )

    def remember_work(self, doi: Doi, work: Dict[str, Any]) -> Metadata:
        """Record a Crossref work already in hand (a search hit) with all its metadata."""
        metadata = self._persist_work(doi, work)
        self.remember(doi, metadata.title)
        return metadata

    def report_rate_limit(self, error: RateLimitedError) -> None:
        """Surface a rate-limit message to the presentation layer."""
        logger.warning(str(error))
        if self.on_rate_limit is not None:
            self.on_rate_limit(error)

    def _fetch_crossref_work(self, doi: Doi) -> Optional[Dict[str, Any]]:
        try:
            return self.crossref.get_work(doi)
        except RateLimitedError as e:
            self.report_rate_limit(e)
            raise

    def get_metadata(self, doi: Doi) -> Metadata:
        """
        Resolve display metadata for a DOI.

        Args:
            doi: A canonical DOI.

        Returns:
            Metadata with the title set to "Unknown Title" when the provider
            has no title on record.

        Raises:
            RateLimitedError: Crossref answered 429 (the on_rate_limit hook has
                already been notified).
            ProviderUnavailableError, NetworkError: On other provider failures.
        """
        cached = self.cache.get_record(doi)
        if cached is not None and cached.title:
            logger.debug(f"Using cached title for DOI: {doi}")
            return Metadata(title=cached.title, journal=cached.journal, published_date=cached.published_date)

        arxiv_id = arxiv_id_from_doi(doi)
        if arxiv_id:
            entry = self.arxiv.get_entry(arxiv_id)
            if entry is None:
                return Metadata()
            self.cache.merge_record(doi, PublicationRecord(
                doi=doi, title=entry.title, journal="arXiv", published_date=entry.year,
            ))
            return Metadata(title=entry.title, journal="arXiv", published_date=entry.year)

        work = self._fetch_crossref_work(doi)
        if work is None:
            logger.info(f"[Crossref] No metadata found for DOI: {doi}")
            return Metadata()
        return self._persist_work(doi, work)

    def get_title(self, doi: Doi) -> str:
        """Title for a DOI; never raises, returns "Unknown Title" on any failure."""
        if not doi:
            return UNKNOWN_TITLE
        try:
            return self.get_metadata(doi).title
        except CitesOfError as e:
            logger.error(f"Error fetching title for {doi}: {e}")
            return UNKNOWN_TITLE

    def get_citation_count(self, doi: Doi) -> int:
        """
        Number of works citing ``doi`` according to Crossref.

        Raises provider errors; callers decide how to degrade.
        """
        cached = self.cache.get_record(doi)
        if cached is not None and cached.citation_count is not None:
            return cached.citation_count

        if arxiv_id_from_doi(doi):
            # DataCite DOIs are not in Crossref
            self.cache.merge_record(doi, PublicationRecord(doi=doi, citation_count=0))
            return 0

        work = self._fetch_crossref_work(doi)
        if work is None:
            self.cache.merge_record(doi, PublicationRecord(doi=doi, citation_count=0))
            return 0
        self._persist_work(doi, work)
        count = work.get('is-referenced-by-count')
        return count if isinstance(count, int) and not isinstance(count, bool) else 0

    def prefetch(self, dois: Iterable[Doi]) -> int:
        """
        Warm the cache for many DOIs with batched Crossref requests.

        DOIs that already have a cached title, and arXiv DOIs, are skipped.
        Failed batches are logged and left for individual lookups.

        Returns:
            Number of DOIs whose metadata was fetched.
        """
        pending: List[Doi] = []
        for doi in dict.fromkeys(dois):
            cached = self.cache.get_record(doi)
            if cached is not None and cached.title and cached.citation_count is not None:
                continue
            if arxiv_id_from_doi(doi):
                continue
            pending.append(doi)

        fetched = 0
        for start in range(0, len(pending), CROSSREF_BATCH_SIZE):
            batch = pending[start:start + CROSSREF_BATCH_SIZE]
            try:
                works = self.crossref.get_works(batch)
            except CitesOfError as e:
                logger.warning(f"[Crossref] Batch metadata request failed for {len(batch)} DOIs: {e}")
                continue

            # Crossref may return DOIs in a different case than requested
            requested = {doi.lower(): doi for doi in batch}
            for work in works:
                returned = work.get('DOI')
                if not isinstance(returned, str) or returned.lower() not in requested:
                    continue
                self._persist_work(requested[returned.lower()], work)
                fetched += 1

        if pending:
            logger.info(f"[Crossref] Prefetched metadata for {fetched}/{len(pending)} DOIs")
        return fetched
