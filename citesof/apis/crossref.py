import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

from .base import HttpTransport, ProviderAPI
from ..errors import ProviderUnavailableError
from ..gate import RequestGate
from ..utils import CROSSREF_BATCH_SIZE, get_contact_email

logger = logging.getLogger(__name__)


def first_string(value: Any) -> Optional[str]:
    """Crossref wraps most text fields in lists; return the first non-empty string."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_year(work: Dict[str, Any]) -> Optional[str]:
    """Best-effort publication year from the first present date field."""
    for date_field in ('published', 'published-online', 'published-print'):
        date = work.get(date_field)
        if not isinstance(date, dict):
            continue
        try:
            year = date['date-parts'][0][0]
        except (KeyError, IndexError, TypeError):
            continue
        if year is not None:
            return str(year)
    return None


class CrossrefAPI(ProviderAPI):
    """
    Client for the Crossref REST API (metadata by DOI, bibliographic search).

    Every request is admitted through the shared RequestGate, and carries
    the ``mailto`` courtesy parameter so the calls land in Crossref's
    polite pool.
    """

    NAME = "Crossref"
    BASE_URL = "https://api.crossref.org/works"

    def __init__(self, transport: HttpTransport, gate: RequestGate, email: Optional[str] = None):
        super().__init__(transport)
        self.gate = gate
        self.email = email or get_contact_email()
        logger.debug(f"Initialized Crossref API client with email: {self.email}")

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        query = dict(params or {})
        query['mailto'] = self.email
        data = self.gate.admit(lambda: self._get_json(url, params=query))
        if data is None:
            return None
        if not isinstance(data, dict) or not isinstance(data.get('message'), dict):
            raise ProviderUnavailableError(self.NAME, "Crossref returned an invalid response body")
        return data['message']

    def get_work(self, doi: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the Crossref record for a DOI.

        Returns:
            The ``message`` object, or None when Crossref does not know the DOI.
        """
        work = self._request(f"{self.BASE_URL}/{quote(doi, safe='/')}")
        if work is None:
            logger.debug(f"[Crossref] No record for DOI: {doi}")
        return work

    def search_bibliographic(self, query: str, rows: int = 1) -> List[Dict[str, Any]]:
        """Run a free-text bibliographic query and return the top ``rows`` items."""
        message = self._request(self.BASE_URL, params={'query.bibliographic': query, 'rows': rows})
        items = (message or {}).get('items') or []
        logger.debug(f"[Crossref] Search for {query!r} returned {len(items)} item(s)")
        return [item for item in items if isinstance(item, dict)]

    def get_works(self, dois: Sequence[str]) -> List[Dict[str, Any]]:
        """
        Fetch several records in one request using a ``doi:`` filter.

        Args:
            dois: At most CROSSREF_BATCH_SIZE DOIs.

        Returns:
            The items Crossref found; unknown DOIs are simply absent.
        """
        if not dois:
            return []
        if len(dois) > CROSSREF_BATCH_SIZE:
            raise ValueError(f"Crossref batch requests accept at most {CROSSREF_BATCH_SIZE} DOIs")
        doi_filter = ",".join(f"doi:{doi}" for doi in dois)
        message = self._request(self.BASE_URL, params={'filter': doi_filter, 'rows': len(dois)})
        items = (message or {}).get('items') or []
        logger.debug(f"[Crossref] Batch lookup returned {len(items)}/{len(dois)} records")
        return [item for item in items if isinstance(item, dict)]
