import logging
from typing import Any, Dict, List, Optional

from .apis.arxiv import arxiv_id_from_doi
from .apis.base import CitationAPI
from .cache import CacheStore
from .errors import CitesOfError, NetworkError, ProviderUnavailableError, RateLimitedError
from .identifiers import arxiv_doi_for
from .metadata import MetadataResolver
from .models import CitationResult, CitationStatus, CitingRecord, Doi, PublicationRecord
from .utils import PAGE_SIZE

logger = logging.getLogger(__name__)


def extract_citing_doi(raw: str) -> str:
    """
    Pull the DOI out of a provider's ``citing`` value.

    Some index versions list every known identifier of the citing work,
    space separated (``"omid:br/06 doi:10.1/x pmid:123"``). The ``doi:``
    token wins; values without one are returned trimmed but otherwise unchanged.
    """
    for token in raw.split():
        if token.lower().startswith('doi:'):
            return token[4:]
    return raw.strip()


def _year_from_creation(creation: Any) -> Optional[str]:
    if isinstance(creation, str) and len(creation) >= 4 and creation[:4].isdigit():
        return creation[:4]
    return None


def to_citing_record(raw: Dict[str, Any]) -> CitingRecord:
    creation = raw.get('creation') if isinstance(raw.get('creation'), str) else None
    return CitingRecord(
        citing=extract_citing_doi(str(raw['citing'])),
        year=_year_from_creation(creation),
        creation=creation,
        oci=raw.get('oci') if isinstance(raw.get('oci'), str) else None,
    )


def no_data_message(doi: Doi) -> str:
    if arxiv_id_from_doi(doi):
        return (f"No citations found for arXiv preprint {doi}. Citation indexes often do not "
                f"cover preprints; try the DOI of the published version instead.")
    return f"No citations found for {doi}. The citation index may not have data for this DOI."


def api_error_message(error: CitesOfError) -> str:
    if isinstance(error, RateLimitedError):
        return f"The citation service is rate limiting requests. Please retry in {error.retry_after_seconds} seconds."
    if isinstance(error, ProviderUnavailableError) and error.is_outage:
        return (f"The citation service or its proxy is temporarily unavailable "
                f"(HTTP {error.status_code}). Please try again later.")
    if isinstance(error, NetworkError):
        return f"Could not reach the citation service: {error}"
    return f"Citation data could not be retrieved: {error}"


def paginate(doi: Doi, records: List[CitingRecord], offset: int, limit: Optional[int]) -> CitationResult:
    """Slice a complete citing list into one page of a CitationResult."""
    total = len(records)
    if total == 0:
        return CitationResult(status=CitationStatus.NO_DATA, total_count=0, has_more=False,
                              message=no_data_message(doi))
    offset = max(0, offset)
    end = total if limit is None else offset + max(0, limit)
    has_more = end < total
    return CitationResult(
        status=CitationStatus.SUCCESS,
        data=records[offset:end],
        total_count=total,
        has_more=has_more,
        next_offset=end if has_more else None,
    )


class CitationFetcher:
    """
    Fetches the works citing a DOI, caching the complete list.

    The citation graph has no offset parameter, so the full list is fetched
    once, cached under the DOI and paginated client-side from then on.
    Results are always returned as a CitationResult; nothing is raised.
    """

    def __init__(self, cache: CacheStore, api: CitationAPI, metadata: MetadataResolver):
        self.cache = cache
        self.api = api
        self.metadata = metadata

    def get_citing_publications(self, doi: Doi, offset: int = 0, limit: Optional[int] = PAGE_SIZE) -> CitationResult:
        """
        One page of the works citing ``doi``.

        Args:
            doi: A canonical DOI; arXiv URLs and ``arxiv:`` IDs are accepted too.
            offset: Index of the first record of the page.
            limit: Page size, or None for everything from offset on.

        Returns:
            SUCCESS with the page and pagination fields, NO_DATA when the
            provider knows no citing works, API_ERROR on any failure.
        """
        doi = (arxiv_doi_for(doi) or doi).strip()

        cached = self.cache.get_record(doi)
        if cached is not None and cached.cited_by is not None:
            logger.debug(f"Using cached citations for DOI: {doi}")
            return paginate(doi, cached.cited_by, offset, limit)

        # The title only feeds the title mirror in the cache
        self.metadata.remember(doi, self.metadata.get_title(doi))

        try:
            raw_records = self.api.get_citations(doi)
        except CitesOfError as e:
            logger.error(f"Error fetching citing publications for {doi}: {e}")
            return CitationResult(status=CitationStatus.API_ERROR, message=api_error_message(e))

        if raw_records is None:
            # Unknown to the index: not cached, it may be indexed later
            return CitationResult(status=CitationStatus.NO_DATA, total_count=0, has_more=False,
                                  message=no_data_message(doi))

        records = [to_citing_record(raw) for raw in raw_records]
        self.cache.merge_record(doi, PublicationRecord(doi=doi, cited_by=records))
        logger.info(f"Cached {len(records)} citing works for DOI: {doi}")
        return paginate(doi, records, offset, limit)

    def get_all_citing(self, doi: Doi) -> CitationResult:
        """The complete citing list for ``doi``."""
        return self.get_citing_publications(doi, offset=0, limit=None)
