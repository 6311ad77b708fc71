import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from tqdm import tqdm
from typing_extensions import Annotated

from .analyzer import CommonCitationFinder
from .apis.base import RequestsTransport
from .cache import CacheStore, JsonFileCacheStore, MemoryCacheStore
from .errors import NotFoundError, RateLimitedError
from .gate import RequestGate
from .models import CitationStatus, ReportStatus
from .utils import PAGE_SIZE, get_cache_path, get_max_concurrent, get_proxy_url

app = typer.Typer(
    name="citesof",
    help="citesof: find publications that cite all of the given papers.",
)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
logger = logging.getLogger(__name__)


class TqdmProgress:
    """Progress callback rendering each batch step as its own tqdm bar."""

    def __init__(self):
        self._bar: Optional[tqdm] = None
        self._message: Optional[str] = None

    def __call__(self, message: str, current: int, total: int) -> None:
        if message != self._message:
            self.close()
            self._message = message
            self._bar = tqdm(total=total, desc=message, file=sys.stderr, leave=False)
        self._bar.update(current - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
        self._message = None


def setup_logging(verbose: bool, log_file: Optional[Path]) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger = logging.getLogger()
        root_logger.setLevel(min(root_logger.level, file_handler.level))
        root_logger.addHandler(file_handler)
        logger.info(f"CLI log will be saved to: {log_file}")


def build_cache(cache_path: Optional[Path], no_cache: bool) -> CacheStore:
    if no_cache:
        return MemoryCacheStore()
    return JsonFileCacheStore(cache_path or get_cache_path())


def report_rate_limit(error: RateLimitedError) -> None:
    print(f"Warning: {error}", file=sys.stderr)


def build_finder(ctx: typer.Context, allow_partial: bool = False) -> CommonCitationFinder:
    settings = ctx.obj
    return CommonCitationFinder(
        cache=build_cache(settings['cache_path'], settings['no_cache']),
        transport=RequestsTransport(proxy_url=get_proxy_url()),
        gate=RequestGate(get_max_concurrent()),
        on_rate_limit=report_rate_limit,
        allow_partial=allow_partial,
    )


def write_json(filepath: Path, data: dict) -> None:
    """Helper function to write a dictionary to a JSON file."""
    try:
        with filepath.open('w', encoding='utf-8') as jsonfile:
            json.dump(data, jsonfile, indent=4, ensure_ascii=False)
        logger.info(f"Successfully wrote results to {filepath}")
        print(f"Results saved to: {filepath}")
    except OSError as e:
        logger.error(f"Failed to write to {filepath}: {e}")
        print(f"Error: Could not write results to {filepath}. Check permissions.", file=sys.stderr)


@app.callback()
def main_options(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging.")] = False,
    cache_path: Annotated[Optional[Path], typer.Option(
        "--cache", help="Path of the JSON cache file (default: ~/.cache/citesof/cache.json or CITESOF_CACHE_PATH).",
        dir_okay=False,
    )] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Keep the cache in memory for this run only.")] = False,
    log_file: Annotated[Optional[Path], typer.Option("--log-file", help="Also write the log to this file.")] = None,
):
    """Common-citation finder for DOIs, arXiv IDs, PubMed IDs and titles."""
    setup_logging(verbose, log_file)
    ctx.obj = {'cache_path': cache_path, 'no_cache': no_cache}


@app.command()
def resolve(
    ctx: typer.Context,
    inputs: Annotated[List[str], typer.Argument(help="Titles, DOIs, arXiv IDs/URLs or PubMed IDs.")],
):
    """Resolve each input to its canonical DOI."""
    failures = 0
    with build_finder(ctx) as finder:
        for text in inputs:
            try:
                doi = finder.normalizer.resolve(text)
            except NotFoundError as e:
                failures += 1
                print(f"{text}\tNOT FOUND ({e})")
                continue
            print(f"{text}\t{doi}\t{finder.metadata.get_title(doi)}")
    if failures:
        raise typer.Exit(code=1)


@app.command()
def citing(
    ctx: typer.Context,
    identifier: Annotated[str, typer.Argument(help="A DOI (or arXiv ID/URL).")],
    offset: Annotated[int, typer.Option("--offset", min=0, help="Index of the first result.")] = 0,
    limit: Annotated[int, typer.Option("--limit", min=1, help="Page size.")] = PAGE_SIZE,
):
    """List one page of the works citing a DOI."""
    with build_finder(ctx) as finder:
        doi = finder.resolve_identifier(identifier)
        if doi is None:
            print(f"Error: Could not find a DOI for {identifier!r}.", file=sys.stderr)
            raise typer.Exit(code=1)
        result = finder.fetch_citing_page(doi, offset=offset, limit=limit)

    if result.status == CitationStatus.API_ERROR:
        print(f"Error: {result.message}", file=sys.stderr)
        raise typer.Exit(code=1)
    if result.status == CitationStatus.NO_DATA:
        print(result.message)
        return

    print(f"{result.total_count} work(s) cite {doi}; showing {offset + 1}-{offset + len(result.data)}")
    for record in result.data:
        print(f"{record.citing}\t{record.year or ''}")
    if result.has_more:
        print(f"More results: --offset {result.next_offset}")


@app.command()
def common(
    ctx: typer.Context,
    inputs: Annotated[List[str], typer.Argument(help="Two or more titles, DOIs, arXiv IDs/URLs or PubMed IDs.")],
    page: Annotated[int, typer.Option("--page", min=1, help="Result page to show (20 results per page).")] = 1,
    allow_partial: Annotated[bool, typer.Option(
        "--allow-partial", help="Drop inputs that cannot be resolved instead of aborting.",
    )] = False,
    json_output: Annotated[Optional[Path], typer.Option("--json", help="Also write the report to this JSON file.")] = None,
):
    """Find the works that cite all of the inputs."""
    if len(inputs) < 2:
        logger.warning("Only one input given; listing all of its citing works")

    progress = TqdmProgress()
    with build_finder(ctx, allow_partial=allow_partial) as finder:
        try:
            report = finder.find_common_citations(inputs, progress=progress, cursor=(page - 1) * PAGE_SIZE)
        finally:
            progress.close()

    if json_output is not None:
        write_json(json_output, report.to_dict())

    if report.status == ReportStatus.UNRESOLVED:
        print(f"Error: {report.message}", file=sys.stderr)
        for text in report.unresolved:
            print(f"  - {text}", file=sys.stderr)
        raise typer.Exit(code=1)
    if report.status == ReportStatus.API_ERROR:
        print(f"Error: {report.message}", file=sys.stderr)
        raise typer.Exit(code=1)
    if report.status == ReportStatus.NO_DATA or report.page is None or not report.page.rows:
        print(report.message or "No common citations found between these papers.")
        return

    result_page = report.page
    print(f"{result_page.total} result{'' if result_page.total == 1 else 's'}\n")
    for row in result_page.rows:
        extra = f" (+{len(row.dois) - 1} DOI)" if len(row.dois) > 1 else ""
        print(f"[{row.citation_count:>5}] {row.title}\n        https://doi.org/{row.doi}{extra}")
    counts = " | ".join(
        f"{result.total_count or 0} citation(s) found for entry {index}"
        for index, result in enumerate(report.per_input.values(), start=1)
    )
    print(f"\n{counts}")
    if result_page.has_more:
        print(f"More results: --page {page + 1}")


@app.command("clear-cache")
def clear_cache(ctx: typer.Context):
    """Remove every cached entry."""
    cache = build_cache(ctx.obj['cache_path'], ctx.obj['no_cache'])
    cache.clear()
    cache.flush()
    print("Cache cleared.")


# Entry point for the script defined in pyproject.toml
def main():
    app()


if __name__ == "__main__":
    main()
