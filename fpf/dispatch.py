"""
Concurrent multi-backend search dispatch.

Every backend gets one worker. Each worker resolves its effective request,
tries the query cache, and on a miss calls the backend adapter. Results land
in a slot indexed by the backend's position in the caller's list, so the
concatenated output order never depends on which backend finished first.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from .adapters import AdapterRegistry
from .backends import get_backend
from .cache import CacheStore
from .common import vlog
from .config import Settings
from .logging_config import log_stage
from .models import EMPTY_DESCRIPTION, BackendError, BackendTimeout, Candidate, SearchRequest

JS_BACKENDS = ("npm", "bun")


def dedupe_rows(rows: Sequence[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop nameless rows and repeated names, keeping the first occurrence."""
    seen: set[str] = set()
    out: list[tuple[str, str]] = []
    for name, description in rows:
        if not name or name in seen:
            continue
        seen.add(name)
        out.append((name, description or EMPTY_DESCRIPTION))
    return out


def to_candidates(backend: str, rows: Sequence[tuple[str, str]]) -> list[Candidate]:
    return [
        Candidate(backend, name, description or EMPTY_DESCRIPTION)
        for name, description in rows
        if name
    ]


class Dispatcher:
    """
    Fans a query out to several backends and fans the rows back in.

    Attributes:
        cache: Query cache consulted before every adapter call
        adapters: Adapter registry keyed by backend id
        settings: Limits, timeouts and fallback policy
    """

    def __init__(
        self,
        cache: CacheStore,
        adapters: AdapterRegistry,
        settings: Settings | None = None,
        verbose: bool = False,
    ):
        self.cache = cache
        self.adapters = adapters
        self.settings = settings or cache.settings
        self.verbose = verbose

    def search_request(self, backend: str, query: str) -> SearchRequest:
        """
        Effective query and limits for one backend.

        An empty query becomes the backend's probe string and uses the
        no-query limit; npm and bun get the larger JS limit for real queries.
        """
        settings = self.settings
        limit = settings.query_limit
        if query and backend in JS_BACKENDS:
            limit = settings.js_query_limit

        effective_query = query
        if not query:
            if settings.no_query_limit > 0:
                limit = settings.no_query_limit
            info = get_backend(backend)
            effective_query = info.probe_query if info else ""

        return SearchRequest(
            backend=backend,
            query=effective_query,
            limit=limit,
            aux_limit=settings.no_query_npm_limit,
        )

    def reload_timeout(self, backend: str, backend_count: int) -> float:
        """
        Per-backend timeout for a live reload.

        Returns 0 (unbounded) when only one backend is queried. Otherwise:
        FPF_<BACKEND>_RELOAD_TIMEOUT → FPF_RELOAD_TIMEOUT → backend default.
        """
        if backend_count <= 1:
            return 0.0
        if backend in self.settings.backend_reload_timeout:
            return self.settings.backend_reload_timeout[backend]
        if self.settings.reload_timeout is not None:
            return self.settings.reload_timeout
        info = get_backend(backend)
        return info.reload_timeout if info else 0.0

    def allow_secondary_fallback(self, backend_count: int) -> bool:
        return backend_count <= 1 or self.settings.bun_npm_fallback

    def collect_backend(
        self,
        backend: str,
        query: str,
        timeout: float = 0.0,
        allow_fallback: bool = False,
    ) -> list[Candidate]:
        """
        Rows for a single backend; adapter failures yield no rows.
        """
        started = time.monotonic()
        try:
            request = self.search_request(backend, query)
            rows, hit = self.cache.get_rows(request)
            if hit:
                return to_candidates(backend, rows)

            try:
                adapter = self.adapters.get(backend)
                rows = adapter.search(request, timeout=timeout or None, allow_fallback=allow_fallback)
            except BackendTimeout as e:
                vlog(f"{backend}: {e.message}", self.verbose)
                return []
            except BackendError as e:
                vlog(f"{backend}: search failed: {e.message}", self.verbose)
                return []

            rows = dedupe_rows(rows)
            if request.limit > 0:
                rows = rows[:request.limit]
            self.cache.put_rows(request, rows)
            return to_candidates(backend, rows)
        finally:
            log_stage("search", started, backend)

    def collect(
        self,
        query: str,
        backends: Sequence[str],
        with_timeouts: bool = False,
    ) -> list[Candidate]:
        """
        Search every backend concurrently.

        Args:
            query: Raw user query
            backends: Ordered backend ids
            with_timeouts: Bound each backend by its reload timeout (live reload)

        Returns:
            Concatenated rows in backend order
        """
        if not backends:
            return []

        count = len(backends)
        allow_fallback = self.allow_secondary_fallback(count)
        slots: list[list[Candidate]] = [[] for _ in backends]

        with ThreadPoolExecutor(max_workers=count) as executor:
            futures = {
                executor.submit(
                    self.collect_backend,
                    backend,
                    query,
                    self.reload_timeout(backend, count) if with_timeouts else 0.0,
                    allow_fallback,
                ): index
                for index, backend in enumerate(backends)
            }
            for future, index in futures.items():
                try:
                    slots[index] = future.result()
                except Exception as e:
                    vlog(f"{backends[index]}: unexpected search error: {e}", self.verbose)

        out: list[Candidate] = []
        for rows in slots:
            out.extend(rows)
        return out
