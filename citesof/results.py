import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import CitesOfError
from .metadata import MetadataResolver
from .models import UNKNOWN_TITLE, CitingRecord, Doi, ProgressCallback, ResultPage, ResultRow
from .utils import PAGE_SIZE

logger = logging.getLogger(__name__)

RankedRecord = Tuple[CitingRecord, int]


def dedupe(records: Sequence[CitingRecord]) -> List[CitingRecord]:
    """Drop repeated citing DOIs, keeping the first occurrence."""
    seen = set()
    unique = []
    for record in records:
        if record.citing in seen:
            continue
        seen.add(record.citing)
        unique.append(record)
    return unique


def group_by_title(ranked: Sequence[RankedRecord], titles: Dict[Doi, str]) -> List[ResultRow]:
    """
    Collapse records that resolved to the same title into one row.

    Versions of one work registered under several DOIs (preprint and
    article, for instance) then show up once. Rows keep the order in which
    their first record appears; untitled records are never merged.
    """
    rows: List[ResultRow] = []
    by_title: Dict[str, ResultRow] = {}
    for record, count in ranked:
        title = titles.get(record.citing) or UNKNOWN_TITLE
        row = by_title.get(title) if title != UNKNOWN_TITLE else None
        if row is None:
            row = ResultRow(title=title, dois=[record.citing], citation_count=count)
            rows.append(row)
            if title != UNKNOWN_TITLE:
                by_title[title] = row
        else:
            row.dois.append(record.citing)
            row.citation_count = max(row.citation_count, count)
    return rows


class ResultMaterializer:
    """
    Turns an intersection into ranked, titled, paginated rows.

    Citation counts are needed for every record (to sort), titles only for
    the page being rendered. Lookups fan out over a thread pool; the
    Crossref request gate keeps the provider within its concurrency limit.
    """

    def __init__(self, metadata: MetadataResolver, page_size: int = PAGE_SIZE, max_workers: int = 8):
        self.metadata = metadata
        self.page_size = page_size
        self.max_workers = max_workers

    def _count_for(self, doi: Doi) -> int:
        try:
            return self.metadata.get_citation_count(doi)
        except CitesOfError as e:
            logger.warning(f"Could not fetch citation count for {doi}, using 0: {e}")
            return 0

    def citation_counts(self, dois: Sequence[Doi], progress: Optional[ProgressCallback] = None) -> Dict[Doi, int]:
        counts: Dict[Doi, int] = {}
        if not dois:
            return counts
        self.metadata.prefetch(dois)
        total = len(dois)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self._count_for, doi): doi for doi in dois}
            for done, future in enumerate(as_completed(futures), start=1):
                counts[futures[future]] = future.result()
                if progress:
                    progress("Fetching citation counts", done, total)
        return counts

    def titles(self, dois: Sequence[Doi], progress: Optional[ProgressCallback] = None) -> Dict[Doi, str]:
        titles: Dict[Doi, str] = {}
        if not dois:
            return titles
        total = len(dois)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self.metadata.get_title, doi): doi for doi in dois}
            for done, future in enumerate(as_completed(futures), start=1):
                titles[futures[future]] = future.result()
                if progress:
                    progress("Fetching titles", done, total)
        return titles

    def rank(self, records: Sequence[CitingRecord], progress: Optional[ProgressCallback] = None) -> List[RankedRecord]:
        """Dedupe and sort by citation count, most cited first (stable for ties)."""
        unique = dedupe(records)
        counts = self.citation_counts([record.citing for record in unique], progress)
        ranked = [(record, counts.get(record.citing, 0)) for record in unique]
        # sorted() is stable, and stays stable with reverse=True
        return sorted(ranked, key=lambda item: item[1], reverse=True)

    def page(self, ranked: Sequence[RankedRecord], cursor: int = 0,
             progress: Optional[ProgressCallback] = None) -> ResultPage:
        """Resolve titles for one page of ranked records and group them."""
        cursor = max(0, cursor)
        window = list(ranked[cursor:cursor + self.page_size])
        self.metadata.prefetch([record.citing for record, _ in window])
        titles = self.titles([record.citing for record, _ in window], progress)
        end = cursor + self.page_size
        has_more = end < len(ranked)
        return ResultPage(
            rows=group_by_title(window, titles),
            cursor=cursor,
            next_cursor=end if has_more else None,
            total=len(ranked),
            has_more=has_more,
        )

    def materialize(self, records: Sequence[CitingRecord], cursor: int = 0,
                    progress: Optional[ProgressCallback] = None) -> ResultPage:
        return self.page(self.rank(records, progress), cursor, progress)

    def pages(self, records: Sequence[CitingRecord],
              progress: Optional[ProgressCallback] = None) -> Iterator[ResultPage]:
        """Yield successive pages; counts are computed once up front."""
        ranked = self.rank(records, progress)
        cursor = 0
        while True:
            result_page = self.page(ranked, cursor, progress)
            yield result_page
            if result_page.next_cursor is None:
                break
            cursor = result_page.next_cursor
