"""
End-to-end display row pipeline: collect, merge, mark, cap, rank, limit.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable, Sequence

from .cache import atomic_write_text
from .dispatch import Dispatcher
from .logging_config import log_stage
from .merge import annotate_installed, merge_candidates, should_skip_installed
from .models import Candidate
from .rank import apply_result_limit, rank_candidates, round_robin_cap


def process_rows(
    query: str,
    backends: Sequence[str],
    rows: Sequence[Candidate],
    dispatcher: Dispatcher,
    skip_installed: bool | None = None,
) -> list[Candidate]:
    """Run collected rows through merge, markers, capping, ranking and the result limit."""
    settings = dispatcher.settings
    if skip_installed is None:
        skip_installed = should_skip_installed(settings, query, backends)

    started = time.monotonic()
    merged = merge_candidates(rows)
    log_stage("merge", started)

    started = time.monotonic()
    marked = annotate_installed(
        merged, backends, dispatcher.cache, dispatcher.adapters,
        skip=skip_installed, verbose=dispatcher.verbose,
    )
    log_stage("mark", started)

    started = time.monotonic()
    capped = round_robin_cap(marked, settings.rank_candidate_limit, backends)
    ranked = rank_candidates(query, capped)
    log_stage("rank", started)

    started = time.monotonic()
    limited = apply_result_limit(query, ranked, settings.query_result_limit)
    log_stage("limit", started)
    return limited


def build_display_rows(
    query: str,
    backends: Sequence[str],
    dispatcher: Dispatcher,
    with_timeouts: bool = False,
    skip_installed: bool | None = None,
) -> list[Candidate]:
    """
    Build the ranked display rows for a query.

    Args:
        query: Raw user query
        backends: Ordered backend ids
        dispatcher: Dispatcher owning the cache and adapters
        with_timeouts: Bound backend calls by their reload timeouts
        skip_installed: Force markers off/on; None applies the default policy

    Returns:
        Ranked rows, empty when no backend produced anything
    """
    rows = dispatcher.collect(query, backends, with_timeouts=with_timeouts)
    if not rows:
        return []
    return process_rows(query, backends, rows, dispatcher, skip_installed)


def render_rows(rows: Iterable[Candidate]) -> str:
    """Render rows as ``manager<TAB>package<TAB>description`` lines."""
    return "".join(row.to_line() + "\n" for row in rows)


def parse_rows(text: str) -> list[Candidate]:
    rows = []
    for line in text.replace("\r\n", "\n").split("\n"):
        row = Candidate.from_line(line)
        if row is not None:
            rows.append(row)
    return rows


def write_rows(path: Path | str, rows: Iterable[Candidate]) -> None:
    """
    Atomically write display rows to a file.

    Raises:
        OSError: If the file cannot be written
    """
    atomic_write_text(Path(path), render_rows(rows), prefix="rows-")
