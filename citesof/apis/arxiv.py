import logging
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass
from typing import Optional

from .base import HttpTransport, ProviderAPI
from ..errors import ProviderUnavailableError

logger = logging.getLogger(__name__)

ATOM_NS = "{http://www.w3.org/2005/Atom}"
# arXiv's registered DataCite prefix
ARXIV_DOI_PREFIX = "10.48550/arXiv."


def arxiv_doi(arxiv_id: str) -> str:
    return f"{ARXIV_DOI_PREFIX}{arxiv_id}"


def arxiv_id_from_doi(doi: str) -> Optional[str]:
    """Return the short arXiv ID if the DOI uses the arXiv DataCite prefix."""
    if doi.lower().startswith(ARXIV_DOI_PREFIX.lower()):
        return doi[len(ARXIV_DOI_PREFIX):]
    return None


@dataclass
class ArxivEntry:
    arxiv_id: str
    title: str
    published: Optional[str] = None

    @property
    def year(self) -> Optional[str]:
        if self.published and len(self.published) >= 4 and self.published[:4].isdigit():
            return self.published[:4]
        return None


class ArxivAPI(ProviderAPI):
    """Client for the arXiv export API (Atom XML)."""

    NAME = "arXiv"
    BASE_URL = "https://export.arxiv.org/api/query"

    def __init__(self, transport: HttpTransport):
        super().__init__(transport)

    def get_entry(self, arxiv_id: str) -> Optional[ArxivEntry]:
        """
        Look up a single preprint by its short ID (e.g. ``2101.00001v2``).

        Returns:
            The entry, or None if arXiv has no such preprint.

        Raises:
            ProviderUnavailableError: If the feed cannot be parsed.
        """
        response = self._get(self.BASE_URL, params={'id_list': arxiv_id})
        if response.status_code == 404:
            return None

        try:
            root = ElementTree.fromstring(response.text)
        except ElementTree.ParseError as e:
            raise ProviderUnavailableError(self.NAME, f"arXiv returned malformed XML: {e}") from e

        entry = root.find(f"{ATOM_NS}entry")
        if entry is None:
            logger.debug(f"[arXiv] No entry for ID: {arxiv_id}")
            return None

        # Unknown IDs come back as a pseudo-entry pointing at the errors endpoint
        entry_id = entry.findtext(f"{ATOM_NS}id") or ""
        if "api/errors" in entry_id:
            logger.debug(f"[arXiv] API reported an error for ID: {arxiv_id}")
            return None

        title = entry.findtext(f"{ATOM_NS}title")
        if not title or not title.strip():
            return None

        published = entry.findtext(f"{ATOM_NS}published")
        entry_data = ArxivEntry(
            arxiv_id=arxiv_id,
            title=" ".join(title.split()),
            published=published.strip() if published else None,
        )
        logger.debug(f"[arXiv] Found {arxiv_id}: {entry_data.title}")
        return entry_data
