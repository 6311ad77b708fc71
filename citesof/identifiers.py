import logging
import re
from typing import Callable, Dict, Optional

from .apis.arxiv import arxiv_doi
from .apis.crossref import CrossrefAPI, first_string
from .apis.pubmed import PubMedIdConverter
from .cache import CacheStore
from .errors import AmbiguousMatchError, CitesOfError, NotFoundError, RateLimitedError
from .metadata import MetadataResolver
from .models import ClassifiedIdentifier, Doi, IdentifierKind, PublicationRecord
from .titles import title_cache_key, title_distance

logger = logging.getLogger(__name__)

# Bare DOI, optionally behind a doi.org / dx.doi.org URL or a "doi:" scheme
DOI_PATTERN = re.compile(r'^(?:https?://)?(?:(?:dx\.)?doi\.org/|doi:\s*)?(10\.\d{4,9}/\S+)$', re.IGNORECASE)
# A DOI anywhere in the input, e.g. www.doi.org links or publisher URLs (.../doi/10.1002/...)
EMBEDDED_DOI_PATTERN = re.compile(r'(?<![\w.])(10\.\d{4,9}/[^\s?#]+)', re.IGNORECASE)
TRAILING_PUNCTUATION = '.,;:\'"'
ARXIV_ID =r'\d{4}\.\d{4,5}(?:v\d+)?'
ARXIV_URL_PATTERN = re.compile(rf'arxiv\.org/(?:abs|pdf|html)/({ARXIV_ID})', re.IGNORECASE)
ARXIV_ID_PATTERN = re.compile(rf'^arxiv:\s*({ARXIV_ID})$', re.IGNORECASE)
PUBMED_PATTERN = re.compile(r'^(?:https?://)?(?:pubmed\.ncbi\.nlm\.nih\.gov/)?(\d{6,8})/?$', re.IGNORECASE)
PMC_PATTERN = re.compile(r'^(?:https?://)?(?:\S*?/pmc/articles/)?(PMC\d+)/?$', re.IGNORECASE)


def clean_doi(doi: str) -> str:
    """Drop sentence punctuation and unbalanced closing brackets trailing a DOI."""
    while doi:
        if doi[-1] in TRAILING_PUNCTUATION:
            doi = doi[:-1]
        elif doi[-1] == ')' and doi.count('(') < doi.count(')'):
            doi = doi[:-1]
        elif doi[-1] == ']' and doi.count('[') < doi.count(']'):
            doi = doi[:-1]
        else:
            break
    return doi


def classify(text: str) -> ClassifiedIdentifier:
    """
    Decide what kind of identifier a raw input is.

    Patterns can overlap (a DOI URL may contain digits that look like a
    PubMed ID, an arXiv DOI is also a DOI), so the checks run in a fixed
    order and the first match wins: DOI, DOI embedded in a longer input,
    arXiv URL, arXiv ID, PubMed/PMC ID, free text.
    """
    raw = text
    text = text.strip()

    match = DOI_PATTERN.match(text)
    if match:
        return ClassifiedIdentifier(IdentifierKind.DOI, clean_doi(match.group(1)), raw)

    match = EMBEDDED_DOI_PATTERN.search(text)
    if match and clean_doi(match.group(1)).split('/', 1)[1]:
        return ClassifiedIdentifier(IdentifierKind.DOI, clean_doi(match.group(1)), raw)

    match = ARXIV_URL_PATTERN.search(text)
    if match:
        return ClassifiedIdentifier(IdentifierKind.ARXIV_URL, match.group(1), raw)

    match = ARXIV_ID_PATTERN.match(text)
    if match:
        return ClassifiedIdentifier(IdentifierKind.ARXIV_ID, match.group(1), raw)

    match = PMC_PATTERN.match(text)
    if match:
        return ClassifiedIdentifier(IdentifierKind.PUBMED_ID, match.group(1).upper(), raw)

    match = PUBMED_PATTERN.match(text)
    if match:
        return ClassifiedIdentifier(IdentifierKind.PUBMED_ID, match.group(1), raw)

    return ClassifiedIdentifier(IdentifierKind.FREE_TEXT, text, raw)


def arxiv_doi_for(text: str) -> Optional[Doi]:
    """Canonical DOI for an arXiv URL or ``arxiv:`` ID, without any network call."""
    classified = classify(text)
    if classified.kind in (IdentifierKind.ARXIV_URL, IdentifierKind.ARXIV_ID):
        return arxiv_doi(classified.value)
    return None


class IdentifierNormalizer:
    """
    Turns free-form user input into a canonical DOI.

    Direct DOIs are returned without any network call. arXiv inputs map onto
    arXiv's DataCite DOI, PubMed/PMC IDs go through the NCBI converter, and
    anything else is looked up with a Crossref bibliographic search whose top
    hit must closely match the query.
    """

    def __init__(self, cache: CacheStore, metadata: MetadataResolver, crossref: CrossrefAPI,
                 pubmed: PubMedIdConverter):
        self.cache = cache
        self.metadata = metadata
        self.crossref = crossref
        self.pubmed = pubmed
        self._resolvers: Dict[IdentifierKind, Callable[[ClassifiedIdentifier], Doi]] = {
            IdentifierKind.DOI: self._resolve_doi,
            IdentifierKind.ARXIV_URL: self._resolve_arxiv,
            IdentifierKind.ARXIV_ID: self._resolve_arxiv,
            IdentifierKind.PUBMED_ID: self._resolve_pubmed,
            IdentifierKind.FREE_TEXT: self._resolve_free_text,
        }

    def resolve(self, text: str) -> Doi:
        """
        Resolve an input to a DOI.

        Raises:
            NotFoundError: When the input cannot be resolved (AmbiguousMatchError
                when a title search produced only a dissimilar match).
        """
        if not text or not text.strip():
            raise NotFoundError("Empty input")
        classified = classify(text)
        logger.debug(f"Classified {text.strip()!r} as {classified.kind.value}")
        return self._resolvers[classified.kind](classified)

    def normalize(self, text: str) -> Optional[Doi]:
        """Resolve an input to a DOI, returning None when it cannot be resolved."""
        try:
            return self.resolve(text)
        except NotFoundError as e:
            logger.info(f"Could not resolve {text!r}: {e}")
            return None

    def _resolve_doi(self, classified: ClassifiedIdentifier) -> Doi:
        doi = classified.value
        self.cache.merge_record(doi, PublicationRecord(doi=doi))
        return doi

    def _resolve_arxiv(self, classified: ClassifiedIdentifier) -> Doi:
        doi = arxiv_doi(classified.value)
        logger.debug(f"Extracted arXiv ID {classified.value}, canonical DOI {doi}")
        # Title lookup is best effort; the synthesized DOI is valid either way
        title = self.metadata.get_title(doi)
        self.metadata.remember(doi, title)
        return doi

    def _resolve_pubmed(self, classified: ClassifiedIdentifier) -> Doi:
        pubmed_key = f"pubmed:{classified.value}"
        cached = self.cache.get_record(pubmed_key)
        if cached is not None and cached.doi:
            logger.debug(f"Using cached DOI for {classified.value}")
            return cached.doi

        doi = None
        try:
            doi = self.pubmed.to_doi(classified.value)
        except CitesOfError as e:
            logger.error(f"[NCBI] Error converting {classified.value}: {e}")

        if doi:
            self.cache.merge_record(pubmed_key, PublicationRecord(doi=doi))
            self.metadata.remember(doi, self.metadata.get_title(doi))
            return doi

        # Numbers that NCBI cannot map may still be part of a title
        logger.info(f"No DOI for PubMed ID {classified.value}, falling back to title search")
        return self._resolve_free_text(classified)

    def _resolve_free_text(self, classified: ClassifiedIdentifier) -> Doi:
        query = classified.raw.strip()
        key = title_cache_key(query)

        cached = self.cache.get_record(key)
        if cached is not None:
            if cached.doi:
                logger.debug(f"Using cached DOI for title: {query}")
                return cached.doi
            if cached.is_not_found:
                raise NotFoundError(cached.message or f"No match for {query!r} (cached)")

        try:
            items = self.crossref.search_bibliographic(query, rows=1)
        except RateLimitedError as e:
            self.metadata.report_rate_limit(e)
            raise NotFoundError(str(e)) from e
        except CitesOfError as e:
            # Transient failures are not cached as "not found"
            logger.error(f"[Crossref] Title search failed for {query!r}: {e}")
            raise NotFoundError(f"Title search failed: {e}") from e

        item = items[0] if items else None
        doi = item.get('DOI') if item else None
        title = first_string(item.get('title')) if item else None
        if not isinstance(doi, str) or not title:
            message = 'No results from Crossref title search.'
            logger.info(f"No usable Crossref result for {query!r}")
            self.cache.merge_record(key, PublicationRecord(status='not_found', message=message))
            raise NotFoundError(message)

        distance, threshold = title_distance(query, title)
        logger.debug(f"Crossref found {title!r} (DOI: {doi}); distance {distance}, threshold {threshold}")
        if distance > threshold:
            error = AmbiguousMatchError(query, title, distance, threshold)
            logger.warning(f"Title match {title!r} is too dissimilar to query {query!r}, discarding")
            self.cache.merge_record(key, PublicationRecord(status='not_found', message=str(error)))
            raise error

        logger.info(f"Resolved title {query!r} to DOI: {doi}")
        self.metadata.remember_work(doi, item)
        if title_cache_key(title) != key:
            self.cache.merge_record(key, PublicationRecord(doi=doi))
        return doi
