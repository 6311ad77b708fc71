from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

# Type alias for clarity
Doi = str
# Progress callback: (message, current_step, total_steps)
ProgressCallback = Callable[[str, int, int], None]

UNKNOWN_TITLE = "Unknown Title"


class IdentifierKind(str, Enum):
    """The kinds of user input the normalizer knows how to resolve."""
    DOI = "doi"
    ARXIV_URL = "arxiv_url"
    ARXIV_ID = "arxiv_id"
    PUBMED_ID = "pubmed_id"
    FREE_TEXT = "free_text"


@dataclass(frozen=True)
class ClassifiedIdentifier:
    """Result of classifying a raw input string.

    ``value`` holds the extracted identifier (bare DOI, arXiv short ID,
    PubMed/PMC ID) or the trimmed input for free text.
    """
    kind: IdentifierKind
    value: str
    raw: str


class CitationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    NO_DATA = "NO_DATA"
    API_ERROR = "API_ERROR"


@dataclass
class CitingRecord:
    """A work citing some DOI, as reported by the citation graph."""
    citing: Doi
    title: Optional[str] = None
    author: Optional[str] = None
    year: Optional[Any] = None
    creation: Optional[str] = None
    oci: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["CitingRecord"]:
        """Build a record from a cached dict; returns None for unusable shapes."""
        if isinstance(payload, str):
            return cls(citing=payload)
        if not isinstance(payload, dict):
            return None
        citing = payload.get("citing")
        if not isinstance(citing, str) or not citing:
            return None
        return cls(
            citing=citing,
            title=payload.get("title") if isinstance(payload.get("title"), str) else None,
            author=payload.get("author") if isinstance(payload.get("author"), str) else None,
            year=payload.get("year") if isinstance(payload.get("year"), (str, int)) else None,
            creation=payload.get("creation") if isinstance(payload.get("creation"), str) else None,
            oci=payload.get("oci") if isinstance(payload.get("oci"), str) else None,
        )


# Maps PublicationRecord attributes to the key names used in cached payloads
_PAYLOAD_KEYS = {
    "doi": "doi",
    "title": "title",
    "journal": "journal",
    "published_date": "publishedDate",
    "cited_by": "cited-by",
    "citation_count": "citationCount",
    "status": "status",
    "message": "message",
}


@dataclass
class PublicationRecord:
    """Typed view of everything the cache knows about one key.

    Records accumulate fields over their lifetime: a title may be cached
    first and the citing list later. ``merge`` is a field-wise union so
    that later enrichments never discard earlier ones.
    """
    doi: Optional[Doi] = None
    title: Optional[str] = None
    journal: Optional[str] = None
    published_date: Optional[str] = None
    cited_by: Optional[List[CitingRecord]] = None
    citation_count: Optional[int] = None
    status: Optional[str] = None
    message: Optional[str] = None

    def merge(self, other: "PublicationRecord") -> "PublicationRecord":
        """Return a new record with the fields set on ``other`` layered over this one."""
        merged = {}
        for f in fields(self):
            new_value = getattr(other, f.name)
            merged[f.name] = new_value if new_value is not None else getattr(self, f.name)
        return PublicationRecord(**merged)

    @property
    def is_not_found(self) -> bool:
        return self.status == "not_found"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for attr, key in _PAYLOAD_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if attr == "cited_by":
                value = [record.to_payload() for record in value]
            payload[key] = value
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> "PublicationRecord":
        """Parse a cached payload, ignoring unknown keys and wrongly typed values."""
        if not isinstance(payload, dict):
            return cls()

        def _str(key: str) -> Optional[str]:
            value = payload.get(key)
            return value if isinstance(value, str) else None

        cited_by = None
        raw_cited_by = payload.get("cited-by")
        if isinstance(raw_cited_by, list):
            cited_by = [r for r in (CitingRecord.from_payload(item) for item in raw_cited_by) if r is not None]

        count = payload.get("citationCount")
        if isinstance(count, bool) or not isinstance(count, int):
            count = None

        published = payload.get("publishedDate")
        if isinstance(published, int):
            published = str(published)
        elif not isinstance(published, str):
            published = None

        return cls(
            doi=_str("doi"),
            title=_str("title"),
            journal=_str("journal"),
            published_date=published,
            cited_by=cited_by,
            citation_count=count,
            status=_str("status"),
            message=_str("message"),
        )


@dataclass
class Metadata:
    title: str = UNKNOWN_TITLE
    journal: Optional[str] = None
    published_date: Optional[str] = None


@dataclass
class CitationResult:
    """Uniform return value of the citation fetcher.

    Callers must switch on ``status``; ``data`` is only meaningful on SUCCESS.
    """
    status: CitationStatus
    data: List[CitingRecord] = field(default_factory=list)
    total_count: Optional[int] = None
    has_more: Optional[bool] = None
    next_offset: Optional[int] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CitationStatus.SUCCESS


@dataclass
class ResultRow:
    """One display row: works sharing a title collapse into a single row."""
    title: str
    dois: List[Doi]
    citation_count: int = 0

    @property
    def doi(self) -> Doi:
        return self.dois[0]


@dataclass
class ResultPage:
    rows: List[ResultRow]
    cursor: int
    next_cursor: Optional[int]
    total: int
    has_more: bool


class ReportStatus(str, Enum):
    SUCCESS = "SUCCESS"
    NO_DATA = "NO_DATA"
    API_ERROR = "API_ERROR"
    UNRESOLVED = "UNRESOLVED"


@dataclass
class CommonCitationsReport:
    """Outcome of a multi-input search, handed to the presentation layer."""
    status: ReportStatus
    dois: List[Doi] = field(default_factory=list)
    page: Optional[ResultPage] = None
    common: List[CitingRecord] = field(default_factory=list)
    per_input: Dict[Doi, CitationResult] = field(default_factory=dict)
    unresolved: List[str] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data rendering used for JSON output."""
        page = None
        if self.page is not None:
            page = {
                "cursor": self.page.cursor,
                "next_cursor": self.page.next_cursor,
                "total": self.page.total,
                "has_more": self.page.has_more,
                "rows": [
                    {"title": row.title, "dois": row.dois, "citation_count": row.citation_count}
                    for row in self.page.rows
                ],
            }
        return {
            "status": self.status.value,
            "dois": self.dois,
            "message": self.message,
            "unresolved": self.unresolved,
            "citations_per_input": {
                doi: {"status": result.status.value, "total": result.total_count or 0}
                for doi, result in self.per_input.items()
            },
            "page": page,
        }
