"""
Core value types and exceptions.

Candidate rows flow from backend adapters through the merger and ranking
engine; ScoredCandidate only exists while a ranking pass runs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

# Placeholder used wherever a backend supplies no description
EMPTY_DESCRIPTION = "-"


@dataclass(frozen=True)
class Candidate:
    """
    A single search result row.

    Attributes:
        manager: Backend id that produced the row (e.g., "apt", "npm")
        package: Package name as the backend reports it
        description: One-line description, "-" when unknown
    """
    manager: str
    package: str
    description: str = EMPTY_DESCRIPTION

    @property
    def key(self) -> tuple[str, str]:
        """Uniqueness key."""
        return (self.manager, self.package)

    def with_description(self, description: str) -> Candidate:
        return replace(self, description=description)

    def to_line(self) -> str:
        """Render as a tab-delimited selector row (without newline)."""
        return f"{self.manager}\t{self.package}\t{self.description or EMPTY_DESCRIPTION}"

    @staticmethod
    def from_line(line: str) -> Candidate | None:
        """
        Parse a tab-delimited row.

        Returns:
            Candidate, or None for blank lines and lines with fewer than two fields
        """
        if not line.strip():
            return None
        parts = line.split("\t", 2)
        if len(parts) < 2:
            return None
        description = parts[2] if len(parts) == 3 and parts[2] else EMPTY_DESCRIPTION
        return Candidate(manager=parts[0], package=parts[1], description=description)


@dataclass(frozen=True)
class SearchRequest:
    """
    Effective search parameters for one backend.

    Attributes:
        backend: Backend id
        query: Effective query (empty queries are rewritten to a probe string)
        limit: Per-backend result limit (0 = unlimited)
        aux_limit: Auxiliary limit passed to npm-style searches
    """
    backend: str
    query: str
    limit: int
    aux_limit: int


@dataclass(frozen=True)
class ScoredCandidate:
    """Ranking artifact: a candidate plus its sort key components."""
    candidate: Candidate
    score: int
    manager_bias: int
    pkg_token_gap: int
    desc_token_gap: int
    package_len: int
    package_lower: str

    def sort_key(self) -> tuple[int, int, int, int, int, str, str, str]:
        # Manager and raw package name only separate rows that tie on everything else
        return (
            self.score,
            self.manager_bias,
            self.pkg_token_gap,
            self.desc_token_gap,
            self.package_len,
            self.package_lower,
            self.candidate.manager,
            self.candidate.package,
        )


class FpfError(Exception):
    """
    Base exception for fpf errors.

    Attributes:
        message: Human-readable error message
        remediation: Suggested fix for the error
    """
    def __init__(self, message: str, remediation: str | None = None):
        self.message = message
        self.remediation = remediation
        super().__init__(message)


class BackendError(FpfError):
    """A backend adapter failed (binary missing, non-zero exit, unparseable output)."""
    def __init__(
        self,
        backend: str,
        message: str,
        exit_code: int | None = None,
        remediation: str | None = None,
    ):
        self.backend = backend
        self.exit_code = exit_code
        super().__init__(message, remediation)


class BackendTimeout(BackendError):
    """A backend call exceeded its reload timeout."""


class ConfigError(FpfError):
    """Required session input is missing or configuration is invalid."""


class NoBackendError(FpfError):
    """No backend is available for the request."""
