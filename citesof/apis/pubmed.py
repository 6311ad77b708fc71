import logging
from typing import Optional

from .base import HttpTransport, ProviderAPI
from ..utils import get_contact_email

logger = logging.getLogger(__name__)


class PubMedIdConverter(ProviderAPI):
    """Resolves PubMed / PMC identifiers to DOIs with the NCBI ID converter."""

    NAME = "NCBI"
    BASE_URL = "https://www.ncbi.nlm.nih.gov/pmc/utils/idconv/v1.0/"
    TOOL = "citesof"

    def __init__(self, transport: HttpTransport, email: Optional[str] = None):
        super().__init__(transport)
        self.email = email or get_contact_email()

    def to_doi(self, pubmed_id: str) -> Optional[str]:
        """
        Args:
            pubmed_id: A PMID (``12345678``) or PMCID (``PMC1234567``).

        Returns:
            The DOI on record, or None if NCBI has none.
        """
        params = {
            'ids': pubmed_id,
            'format': 'json',
            'versions': 'no',
            'tool': self.TOOL,
            'email': self.email,
        }
        data = self._get_json(self.BASE_URL, params=params)
        records = data.get('records') if isinstance(data, dict) else None
        if not records or not isinstance(records[0], dict):
            logger.info(f"[NCBI] No record for {pubmed_id}")
            return None

        doi = records[0].get('doi')
        if not isinstance(doi, str) or not doi.startswith('10.'):
            logger.info(f"[NCBI] No DOI on record for {pubmed_id}")
            return None

        logger.info(f"[NCBI] Resolved {pubmed_id} to DOI: {doi}")
        return doi
