"""
On-disk cache for search rows and installed-package sets.

Every entry is a payload file plus a sidecar ``.meta`` file of ``key=value``
lines. An entry is trusted only while it is younger than its TTL and its
stored fingerprint matches one computed now; the fingerprint binds the
resolved path of the backend executable, so installing, upgrading or
removing a backend binary invalidates its entries immediately.

Writes go to a temp file in the target directory and are renamed into place,
so concurrent readers never observe a partial file. Read problems of any kind
are treated as a miss.
"""

from __future__ import annotations

import datetime
import os
import shutil
import tempfile
import time
import zlib
from pathlib import Path
from typing import Callable, Iterable

from .backends import ReadinessProbe, get_backend
from .common import env_str, vlog
from .config import Settings
from .models import EMPTY_DESCRIPTION, SearchRequest

FORMAT_VERSION = 1
CACHE_NAMESPACE_VERSION = "v2"

QUERY_NAMESPACE = "go-query"
INSTALLED_NAMESPACE = "go-installed"
CATALOG_NAMESPACE = "search-catalog"


def cache_root() -> Path:
    """
    Resolve the cache root directory.

    FPF_CACHE_DIR wins; then LOCALAPPDATA/APPDATA on Windows, XDG_CACHE_HOME,
    ~/.cache, and finally a directory under the system temp dir.
    """
    override = env_str("FPF_CACHE_DIR")
    if override:
        return Path(override)

    if os.name == "nt":
        for var in ("LOCALAPPDATA", "APPDATA"):
            base = env_str(var)
            if base:
                return Path(base) / "fpf"

    xdg = env_str("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / "fpf"
    home = env_str("HOME")
    if home:
        return Path(home) / ".cache" / "fpf"
    return Path(tempfile.gettempdir()) / "fpf-cache"


def stable_checksum(payload: str) -> str:
    """CRC32 of a string as 8 lowercase hex digits."""
    return f"{zlib.crc32(payload.encode('utf-8')) & 0xFFFFFFFF:08x}"


def parse_meta(raw: str) -> dict[str, str]:
    """Parse ``key=value`` metadata lines; lines without ``=`` are ignored."""
    meta: dict[str, str] = {}
    for line in raw.replace("\r\n", "\n").split("\n"):
        line = line.strip()
        if not line or "=" not in line:
            continue
        key, value = line.split("=", 1)
        meta[key.strip()] = value.strip()
    return meta


def render_meta(created: float, fingerprint: str, item_count: int) -> str:
    created_at = (
        datetime.datetime.fromtimestamp(int(created), datetime.timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )
    return (
        f"format_version={FORMAT_VERSION}\n"
        f"created_at={created_at}\n"
        f"created_epoch={int(created)}\n"
        f"fingerprint={fingerprint}\n"
        f"item_count={item_count}\n"
    )


def atomic_write_text(path: Path, text: str, prefix: str = "cache-") -> None:
    """
    Write text to path via a temp file in the same directory and a rename.

    Raises:
        OSError: If the directory cannot be created or the write fails
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=prefix, suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class CacheStore:
    """
    Cache rooted at one writable directory.

    Instances are constructed explicitly and passed to the components that
    need them; nothing here is process-global.
    """

    def __init__(
        self,
        root: Path | str | None = None,
        settings: Settings | None = None,
        probe: ReadinessProbe | None = None,
        clock: Callable[[], float] = time.time,
        verbose: bool = False,
    ):
        self.settings = settings or Settings()
        self.root = Path(root) if root is not None else (
            Path(self.settings.cache_dir) if self.settings.cache_dir else cache_root()
        )
        self.probe = probe or ReadinessProbe()
        self.clock = clock
        self.verbose = verbose

    # ------------------------------------------------------------------
    # Generic entry protocol

    def entry_paths(self, namespace: str, backend: str, name: str, suffix: str) -> tuple[Path, Path]:
        """Payload and metadata paths for an entry."""
        if namespace == INSTALLED_NAMESPACE:
            base = self.root / namespace
            return base / f"{backend}{suffix}", base / f"{backend}.meta"
        base = self.root / namespace / backend
        return base / f"{name}{suffix}", base / f"{name}.meta"

    def get(
        self,
        namespace: str,
        backend: str,
        name: str,
        ttl: int,
        fingerprint: str,
        suffix: str = ".tsv",
    ) -> tuple[str | None, bool]:
        """
        Read an entry's payload.

        Returns:
            (payload, hit). payload is None on a miss: disabled TTL, missing
            or malformed metadata, expired entry, fingerprint mismatch, or
            unreadable payload.
        """
        if ttl <= 0:
            return None, False

        payload_path, meta_path = self.entry_paths(namespace, backend, name, suffix)
        try:
            meta = parse_meta(meta_path.read_text(encoding="utf-8"))
        except OSError:
            return None, False

        try:
            created_epoch = int(meta.get("created_epoch", ""))
        except ValueError:
            vlog(f"Malformed cache metadata: {meta_path}", self.verbose)
            return None, False

        if int(self.clock()) - created_epoch >= ttl:
            vlog(f"Cache entry expired: {payload_path}", self.verbose)
            return None, False
        if meta.get("fingerprint") != fingerprint:
            vlog(f"Cache fingerprint mismatch: {payload_path}", self.verbose)
            return None, False

        try:
            payload = payload_path.read_text(encoding="utf-8")
        except OSError:
            return None, False
        return payload, True

    def put(
        self,
        namespace: str,
        backend: str,
        name: str,
        payload: str,
        fingerprint: str,
        item_count: int,
        suffix: str = ".tsv",
    ) -> bool:
        """
        Atomically store an entry (payload first, then metadata).

        Returns:
            True if both files were written
        """
        payload_path, meta_path = self.entry_paths(namespace, backend, name, suffix)
        try:
            atomic_write_text(payload_path, payload, prefix="cache-")
            atomic_write_text(meta_path, render_meta(self.clock(), fingerprint, item_count), prefix="meta-")
        except OSError as e:
            vlog(f"Cache write failed for {payload_path}: {e}", self.verbose)
            return False
        return True

    def invalidate(self, namespace: str, backend: str | None = None) -> None:
        """Remove every entry in a namespace, or only one backend's entries."""
        if namespace == INSTALLED_NAMESPACE and backend:
            for path in self.entry_paths(namespace, backend, "", ".txt"):
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
            return
        target = self.root / namespace
        if backend:
            target = target / backend
        shutil.rmtree(target, ignore_errors=True)

    def resolved_command(self, backend: str) -> str:
        """Resolved path of the backend's fingerprint executable ("missing" if not found)."""
        info = get_backend(backend)
        command = info.fingerprint_command if info else backend
        return self.probe.resolve(command) or "missing"

    # ------------------------------------------------------------------
    # Search rows

    def query_cache_enabled(self, backend: str) -> bool:
        if self.settings.bypass_query_cache:
            return False
        if self.settings.enable_query_cache is not None:
            return self.settings.enable_query_cache
        info = get_backend(backend)
        return bool(info and info.query_cache_default)

    def query_cache_ttl(self, backend: str) -> int:
        """
        TTL for a backend's search rows.

        Resolution: backend override → global override → backend default.
        """
        if backend in self.settings.backend_query_cache_ttl:
            return self.settings.backend_query_cache_ttl[backend]
        if self.settings.query_cache_ttl is not None:
            return self.settings.query_cache_ttl
        info = get_backend(backend)
        return info.query_cache_ttl if info else 0

    def _limits_tag(self, request: SearchRequest) -> str:
        return (
            f"q={request.query}|limit={request.limit}|npm={request.aux_limit}"
            f"|qlim={self.settings.query_result_limit}|nqlim={self.settings.no_query_limit}"
        )

    def query_key(self, request: SearchRequest) -> str:
        return stable_checksum(f"{CACHE_NAMESPACE_VERSION}|mgr={request.backend}|{self._limits_tag(request)}")

    def query_fingerprint(self, request: SearchRequest) -> str:
        return f"2|{request.backend}|{self.resolved_command(request.backend)}|{self._limits_tag(request)}"

    def get_rows(self, request: SearchRequest) -> tuple[list[tuple[str, str]], bool]:
        """
        Cached (name, description) rows for a search request.

        Returns:
            (rows, hit); an entry with no parseable rows is a miss
        """
        if not self.query_cache_enabled(request.backend):
            return [], False
        payload, hit = self.get(
            QUERY_NAMESPACE,
            request.backend,
            self.query_key(request),
            self.query_cache_ttl(request.backend),
            self.query_fingerprint(request),
        )
        if not hit or payload is None:
            return [], False
        rows = parse_name_rows(payload)
        if not rows:
            return [], False
        vlog(f"Query cache hit: {request.backend} q={request.query!r}", self.verbose)
        return rows, True

    def put_rows(self, request: SearchRequest, rows: list[tuple[str, str]]) -> bool:
        if not self.query_cache_enabled(request.backend) or self.settings.skip_query_cache_write:
            return False
        if not rows or self.query_cache_ttl(request.backend) <= 0:
            return False
        return self.put(
            QUERY_NAMESPACE,
            request.backend,
            self.query_key(request),
            render_name_rows(rows),
            self.query_fingerprint(request),
            len(rows),
        )

    # ------------------------------------------------------------------
    # Installed sets

    def installed_cache_enabled(self) -> bool:
        return not self.settings.disable_installed_cache

    def installed_fingerprint(self, backend: str) -> str:
        return f"{backend}|{self.resolved_command(backend)}"

    def get_installed(self, backend: str) -> tuple[set[str], bool]:
        if not self.installed_cache_enabled():
            return set(), False
        payload, hit = self.get(
            INSTALLED_NAMESPACE,
            backend,
            backend,
            self.settings.installed_cache_ttl,
            self.installed_fingerprint(backend),
            suffix=".txt",
        )
        if not hit or payload is None:
            return set(), False
        names = {line.strip() for line in payload.splitlines() if line.strip()}
        if not names:
            return set(), False
        return names, True

    def put_installed(self, backend: str, names: Iterable[str]) -> bool:
        ordered = sorted({name for name in names if name})
        if not self.installed_cache_enabled() or not ordered:
            return False
        return self.put(
            INSTALLED_NAMESPACE,
            backend,
            backend,
            "".join(f"{name}\n" for name in ordered),
            self.installed_fingerprint(backend),
            len(ordered),
            suffix=".txt",
        )


def render_name_rows(rows: Iterable[tuple[str, str]]) -> str:
    """Render (name, description) pairs as tab-delimited lines."""
    lines = []
    for name, description in rows:
        if not name:
            continue
        lines.append(f"{name}\t{description or EMPTY_DESCRIPTION}\n")
    return "".join(lines)


def parse_name_rows(payload: str) -> list[tuple[str, str]]:
    """Parse tab-delimited (name, description) lines."""
    rows: list[tuple[str, str]] = []
    for line in payload.replace("\r\n", "\n").split("\n"):
        if not line.strip():
            continue
        parts = line.split("\t", 1)
        if not parts[0]:
            continue
        description = parts[1] if len(parts) == 2 and parts[1].strip() else EMPTY_DESCRIPTION
        rows.append((parts[0], description))
    return rows
