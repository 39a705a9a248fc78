"""
Relevance ranking.

Candidates are bucketed into tiers (lower is better) and then ordered by a
fixed chain of tie-breaks ending in the lowercased package name, which makes
the result a total order over unique (manager, package) rows.
"""

from __future__ import annotations

import re
from typing import Sequence

from .backends import get_backend
from .models import Candidate, ScoredCandidate

TIER_EXACT = 0
TIER_PREFIX = 1
TIER_ALL_TOKENS = 2
TIER_SUBSTRING = 3
TIER_ANY_TOKEN = 4
TIER_ALL_TOKENS_DESC = 5
TIER_ANY_TOKEN_DESC = 6
TIER_NO_MATCH = 12

LONGER_NAME_PENALTY = 5
NOISE_PENALTY = 2
TOKEN_GAP_BASE = 99

NOISE_PATTERN = re.compile(r"(plugin|template|starter|boilerplate|router|hooks?|mcp|integration)")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_alnum(value: str) -> str:
    """Keep only ASCII lowercase letters and digits."""
    return _NON_ALNUM.sub("", value)


def split_alnum_tokens(value: str) -> list[str]:
    """Split into runs of ASCII lowercase letters and digits."""
    return [token for token in _NON_ALNUM.split(value) if token]


def exact_query_candidates(query: str) -> list[str]:
    """
    Package-name forms that count as an exact match for a query.

    The whitespace-collapsed query, plus hyphen, underscore and concatenated
    joins when it has more than one word.

    >>> exact_query_candidates("foo bar")
    ['foo bar', 'foo-bar', 'foo_bar', 'foobar']
    """
    words = query.split()
    if not words:
        return []

    compact = " ".join(words)
    forms = [compact]
    if len(words) > 1:
        forms.extend(["-".join(words), "_".join(words), "".join(words)])

    return [form for form in dict.fromkeys(forms) if form]


def has_exact_match(query: str, rows: Sequence[Candidate]) -> bool:
    forms = {form.lower() for form in exact_query_candidates(query)}
    return any(row.package.lower() in forms for row in rows)


def manager_bias(manager: str) -> int:
    info = get_backend(manager.lower())
    return info.manager_bias if info else 0


def score_candidates(query: str, rows: Sequence[Candidate], has_exact: bool) -> list[ScoredCandidate]:
    """Compute tier, penalties and tie-break components for every row."""
    q = query.strip().lower()
    q_norm = normalize_alnum(q)
    query_tokens = split_alnum_tokens(q)
    token_count = len(query_tokens)

    scored = []
    for row in rows:
        pkg_lower = row.package.lower()
        desc_lower = row.description.lower()
        pkg_norm = normalize_alnum(pkg_lower)
        desc_norm = normalize_alnum(desc_lower)

        pkg_hits = sum(1 for t in query_tokens if t in pkg_lower or t in pkg_norm)
        desc_hits = sum(1 for t in query_tokens if t in desc_lower or t in desc_norm)

        score = TIER_NO_MATCH
        if q:
            if pkg_lower == q or (q_norm and pkg_norm == q_norm):
                score = TIER_EXACT
            elif q_norm and pkg_norm.startswith(q_norm):
                score = TIER_PREFIX
            elif token_count > 1 and pkg_hits == token_count:
                score = TIER_ALL_TOKENS
            elif q_norm and q_norm in pkg_norm:
                score = TIER_SUBSTRING
            elif token_count > 0 and pkg_hits > 0:
                score = TIER_ANY_TOKEN
            elif token_count > 0 and desc_hits == token_count:
                score = TIER_ALL_TOKENS_DESC
            elif token_count > 0 and desc_hits > 0:
                score = TIER_ANY_TOKEN_DESC

            if (
                has_exact
                and token_count > 0
                and pkg_hits == token_count
                and len(split_alnum_tokens(pkg_lower)) > token_count
            ):
                score += LONGER_NAME_PENALTY

            if NOISE_PATTERN.search(desc_lower):
                score += NOISE_PENALTY

        scored.append(ScoredCandidate(
            candidate=row,
            score=score,
            manager_bias=manager_bias(row.manager),
            pkg_token_gap=TOKEN_GAP_BASE - pkg_hits,
            desc_token_gap=TOKEN_GAP_BASE - desc_hits,
            package_len=len(row.package),
            package_lower=pkg_lower,
        ))
    return scored


def rank_candidates(query: str, rows: Sequence[Candidate]) -> list[Candidate]:
    """
    Order rows from most to least relevant.

    A blank query returns the rows unchanged.
    """
    if not query.strip() or not rows:
        return list(rows)

    scored = score_candidates(query, rows, has_exact_match(query, rows))
    scored.sort(key=ScoredCandidate.sort_key)
    return [item.candidate for item in scored]


def round_robin_cap(
    rows: Sequence[Candidate],
    budget: int,
    order: Sequence[str] | None = None,
) -> list[Candidate]:
    """
    Cap rows to budget by taking one row per backend in rotation.

    Backends rotate in the given order (or first-appearance order); rows
    keep their relative order within a backend. A non-positive budget or a
    list already within budget is returned unchanged.
    """
    if budget <= 0 or len(rows) <= budget:
        return list(rows)

    buckets: dict[str, list[Candidate]] = {}
    for name in order or ():
        buckets.setdefault(name, [])
    for row in rows:
        buckets.setdefault(row.manager, []).append(row)

    queues = [bucket for bucket in buckets.values() if bucket]
    positions = [0] * len(queues)
    out: list[Candidate] = []
    while len(out) < budget:
        progressed = False
        for i, queue in enumerate(queues):
            if positions[i] >= len(queue):
                continue
            out.append(queue[positions[i]])
            positions[i] += 1
            progressed = True
            if len(out) >= budget:
                break
        if not progressed:
            break
    return out


def apply_result_limit(query: str, rows: Sequence[Candidate], limit: int) -> list[Candidate]:
    """Truncate ranked rows for a non-blank query; limit <= 0 means no cap."""
    if not query.strip() or limit <= 0 or len(rows) <= limit:
        return list(rows)
    return list(rows[:limit])
