import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .base import CitationAPI, HttpTransport, ProviderAPI
from ..errors import ProviderUnavailableError

logger = logging.getLogger(__name__)


class OpenCitationsAPI(ProviderAPI, CitationAPI):
    """Implementation of CitationAPI using the OpenCitations index.

    The endpoint returns the complete citing list in a single response
    (there is no offset parameter), as a flat JSON array of
    ``{"citing", "cited", "creation", "oci", ...}`` objects.
    """

    NAME = "OpenCitations"
    BASE_URL = "https://opencitations.net/index/api/v1"

    def __init__(self, transport: HttpTransport):
        super().__init__(transport)
        logger.debug("Initialized OpenCitations API client")

    def get_citations(self, doi: str) -> Optional[List[Dict[str, Any]]]:
        url = f"{self.BASE_URL}/citations/{quote(doi, safe='/')}"
        data = self._get_json(url, use_proxy=True)

        if data is None:
            logger.info(f"[OpenCitations] DOI not indexed: {doi}")
            return None
        if not isinstance(data, list):
            raise ProviderUnavailableError(self.NAME, "OpenCitations returned an unexpected response shape")

        records = [item for item in data if isinstance(item, dict) and item.get('citing')]
        if len(records) != len(data):
            logger.debug(f"[OpenCitations] Skipped {len(data) - len(records)} malformed records for {doi}")
        logger.info(f"[OpenCitations] Found {len(records)} citing works for DOI: {doi}")
        return records
