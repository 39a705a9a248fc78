"""
Candidate merging and installed-status markers.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Sequence

from .adapters import AdapterRegistry
from .cache import CacheStore
from .common import vlog
from .config import Settings
from .models import EMPTY_DESCRIPTION, BackendError, Candidate

INSTALLED_MARK = "* "
NEUTRAL_MARK = "  "


def merge_candidates(rows: Iterable[Candidate]) -> list[Candidate]:
    """
    Sort, drop incomplete rows and collapse duplicate (manager, package) keys.

    Rows are sorted by (manager, package, description) first, so the row
    kept for a duplicated key does not depend on backend completion order.
    """
    ordered = sorted(rows, key=lambda c: (c.manager, c.package, c.description))
    seen: set[tuple[str, str]] = set()
    merged: list[Candidate] = []
    for candidate in ordered:
        if not candidate.manager or not candidate.package:
            continue
        if candidate.key in seen:
            continue
        seen.add(candidate.key)
        if not candidate.description:
            candidate = candidate.with_description(EMPTY_DESCRIPTION)
        merged.append(candidate)
    return merged


def should_skip_installed(settings: Settings, query: str, backends: Sequence[str]) -> bool:
    """
    Whether installed-set lookups are skipped for this request.

    Explicitly via FPF_SKIP_INSTALLED_MARKERS, or implicitly for an empty
    query across several backends unless FPF_NO_QUERY_INSTALLED_MARKERS is set.
    """
    if settings.skip_installed_markers:
        return True
    return not query.strip() and len(backends) > 1 and not settings.no_query_installed_markers


def load_installed_set(backend: str, cache: CacheStore, adapters: AdapterRegistry, verbose: bool = False) -> set[str]:
    """
    Installed package names for a backend, through the installed cache.

    Adapter failures yield an empty set.
    """
    names, hit = cache.get_installed(backend)
    if hit:
        return names

    try:
        installed = adapters.get(backend).installed()
    except BackendError as e:
        vlog(f"{backend}: installed lookup failed: {e.message}", verbose)
        return set()

    names = {name for name in installed if name}
    cache.put_installed(backend, names)
    return names


def annotate_installed(
    rows: Sequence[Candidate],
    backends: Sequence[str],
    cache: CacheStore,
    adapters: AdapterRegistry,
    skip: bool = False,
    verbose: bool = False,
) -> list[Candidate]:
    """
    Prefix every description with an installed marker.

    With skip set every row gets the neutral two-space prefix and no backend
    is consulted. Otherwise each distinct backend's installed set is fetched
    once, concurrently.
    """
    if skip:
        return [row.with_description(NEUTRAL_MARK + row.description) for row in rows]

    distinct = list(dict.fromkeys(backends))
    installed: dict[str, set[str]] = {}
    if distinct:
        with ThreadPoolExecutor(max_workers=len(distinct)) as executor:
            futures = {
                executor.submit(load_installed_set, backend, cache, adapters, verbose): backend
                for backend in distinct
            }
            for future, backend in futures.items():
                try:
                    installed[backend] = future.result()
                except Exception as e:
                    vlog(f"{backend}: unexpected installed lookup error: {e}", verbose)
                    installed[backend] = set()

    marked = []
    for row in rows:
        mark = INSTALLED_MARK if row.package in installed.get(row.manager, ()) else NEUTRAL_MARK
        marked.append(row.with_description(mark + row.description))
    return marked
