"""
Backend registry and readiness checks.

Each backend is a package-manager-style program fpf can search. The registry
records the binaries a backend needs, how its cache entries are fingerprinted,
and the defaults the cache and reload layers apply to it.
"""

from __future__ import annotations

import platform
import shutil
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .common import env_str, vlog


@dataclass(frozen=True)
class Backend:
    """
    Backend definition.

    Attributes:
        name: Backend identifier (e.g., "apt", "npm")
        label: Human-readable name
        binaries: Executables that must all resolve on PATH for the backend to be ready
        fingerprint_command: Executable whose resolved path is bound into cache fingerprints
        probe_query: Query substituted for an empty search ("" keeps the empty query)
        query_cache_default: Whether the query cache is on by default
        query_cache_ttl: Default query cache TTL in seconds (0 = never cache)
        reload_timeout: Default per-backend timeout in seconds for multi-backend reloads
        manager_bias: Ranking tie-break bias (higher sorts later)
        platforms: Platforms where this backend is the natural default ("linux", "darwin", "windows")
    """
    name: str
    label: str
    binaries: tuple[str, ...]
    fingerprint_command: str
    probe_query: str = ""
    query_cache_default: bool = False
    query_cache_ttl: int = 0
    reload_timeout: float = 4.0
    manager_bias: int = 0
    platforms: tuple[str, ...] = ()

    @property
    def env_prefix(self) -> str:
        """Prefix used for backend-specific environment overrides."""
        return "FPF_" + self.name.upper()


BACKENDS: tuple[Backend, ...] = (
    Backend(
        name="apt",
        label="APT",
        binaries=("apt-cache", "apt-get", "dpkg-query"),
        fingerprint_command="apt-cache",
        probe_query="a",
        query_cache_default=True,
        query_cache_ttl=180,
        reload_timeout=3.0,
        platforms=("linux",),
    ),
    Backend(
        name="dnf",
        label="DNF",
        binaries=("dnf",),
        fingerprint_command="dnf",
        probe_query="a",
        reload_timeout=5.0,
        platforms=("linux",),
    ),
    Backend(
        name="pacman",
        label="Pacman",
        binaries=("pacman",),
        fingerprint_command="pacman",
        probe_query="a",
        query_cache_default=True,
        query_cache_ttl=180,
        reload_timeout=3.0,
        platforms=("linux",),
    ),
    Backend(
        name="zypper",
        label="Zypper",
        binaries=("zypper",),
        fingerprint_command="zypper",
        probe_query="a",
        reload_timeout=5.0,
        platforms=("linux",),
    ),
    Backend(
        name="emerge",
        label="Portage (emerge)",
        binaries=("emerge",),
        fingerprint_command="emerge",
        probe_query="a",
        reload_timeout=6.0,
        platforms=("linux",),
    ),
    Backend(
        name="brew",
        label="Homebrew",
        binaries=("brew",),
        fingerprint_command="brew",
        probe_query="aa",
        query_cache_default=True,
        query_cache_ttl=120,
        reload_timeout=5.0,
        platforms=("darwin",),
    ),
    Backend(
        name="winget",
        label="WinGet",
        binaries=("winget",),
        fingerprint_command="winget",
        probe_query="aa",
        reload_timeout=5.0,
        platforms=("windows",),
    ),
    Backend(
        name="choco",
        label="Chocolatey",
        binaries=("choco",),
        fingerprint_command="choco",
        probe_query="a",
        reload_timeout=5.0,
        platforms=("windows",),
    ),
    Backend(
        name="scoop",
        label="Scoop",
        binaries=("scoop",),
        fingerprint_command="scoop",
        probe_query="a",
        reload_timeout=5.0,
        platforms=("windows",),
    ),
    Backend(
        name="snap",
        label="Snap",
        binaries=("snap",),
        fingerprint_command="snap",
        probe_query="a",
        reload_timeout=4.0,
        platforms=("linux",),
    ),
    Backend(
        name="flatpak",
        label="Flatpak",
        binaries=("flatpak",),
        fingerprint_command="flatpak",
        reload_timeout=4.0,
        platforms=("linux",),
    ),
    Backend(
        name="bun",
        label="bun",
        binaries=("bun",),
        fingerprint_command="bun",
        probe_query="aa",
        query_cache_default=True,
        query_cache_ttl=300,
        reload_timeout=3.0,
        manager_bias=3,
    ),
    Backend(
        name="npm",
        label="npm",
        binaries=("npm",),
        fingerprint_command="npm",
        probe_query="aa",
        reload_timeout=4.0,
        manager_bias=4,
    ),
)

_BY_NAME = {backend.name: backend for backend in BACKENDS}

BACKEND_NAMES: tuple[str, ...] = tuple(backend.name for backend in BACKENDS)

# Order used when auto-detecting every ready backend
DETECTION_ORDER = (
    "apt", "dnf", "pacman", "zypper", "emerge", "brew", "winget",
    "choco", "scoop", "snap", "flatpak", "bun", "npm",
)

# Preferred primary backend per platform
PRIMARY_ORDER = {
    "darwin": ("brew",),
    "windows": ("winget", "choco", "scoop", "bun", "npm"),
    "linux": ("apt", "dnf", "pacman", "zypper", "emerge", "snap", "flatpak", "bun", "npm"),
}
PRIMARY_FALLBACK_ORDER = ("brew", "winget", "choco", "scoop", "bun", "npm")

_ALIASES = {
    "homebrew": "brew",
    "chocolatey": "choco",
    "chocolate": "choco",
    "portage (emerge)": "emerge",
    "portage-emerge": "emerge",
    "portage": "emerge",
    "win-get": "winget",
}


def get_backend(name: str) -> Backend | None:
    """Look up a backend by id."""
    return _BY_NAME.get(name)


def is_supported(name: str) -> bool:
    return name in _BY_NAME


def backend_label(name: str) -> str:
    backend = _BY_NAME.get(name)
    return backend.label if backend else name


def join_labels(names: Iterable[str]) -> str:
    """Comma-join display labels, e.g. "APT, bun"."""
    return ", ".join(backend_label(name) for name in names)


def normalize_backend_name(value: str) -> str:
    """
    Normalize a user-supplied backend name.

    Lowercases, collapses whitespace, and maps aliases such as
    "homebrew" -> "brew" and "portage" -> "emerge".
    """
    name = " ".join(value.strip().lower().split())
    return _ALIASES.get(name, name)


def split_backend_arg(value: str) -> list[str]:
    """
    Split a comma-separated backend list.

    Entries are trimmed, empty entries dropped, and duplicates removed
    keeping the first occurrence.
    """
    seen: set[str] = set()
    names: list[str] = []
    for part in value.strip().split(","):
        name = part.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        names.append(name)
    return names


class ReadinessProbe:
    """
    Memoized "are this backend's binaries on PATH" checks.

    One instance is owned by whatever drives a session; call invalidate()
    after installing or removing tools to force fresh lookups.
    """

    def __init__(self, which: Callable[[str], str | None] = shutil.which):
        self._which = which
        self._lock = threading.Lock()
        self._ready: dict[str, bool] = {}

    def is_ready(self, name: str) -> bool:
        """Check whether every binary the backend needs resolves on PATH."""
        backend = _BY_NAME.get(name)
        if backend is None:
            return False

        with self._lock:
            if name in self._ready:
                return self._ready[name]

        ready = all(self._which(binary) for binary in backend.binaries)

        with self._lock:
            self._ready[name] = ready
        return ready

    def resolve(self, command: str) -> str:
        """Resolved executable path, or "" when not found."""
        return self._which(command) or ""

    def invalidate(self) -> None:
        with self._lock:
            self._ready.clear()


def current_platform() -> str:
    """
    Platform family used for default backend detection.

    FPF_TEST_UNAME overrides detection (matched loosely against darwin,
    windows/mingw/msys/cygwin and linux).
    """
    mock = env_str("FPF_TEST_UNAME").lower()
    if mock:
        if "darwin" in mock:
            return "darwin"
        if any(marker in mock for marker in ("mingw", "msys", "cygwin", "windows")):
            return "windows"
        if "linux" in mock:
            return "linux"
    return platform.system().lower()


def detect_primary_backend(probe: ReadinessProbe, system: str | None = None) -> str:
    """Pick the platform's preferred ready backend, or "" when none is ready."""
    system = system or current_platform()
    for name in PRIMARY_ORDER.get(system, ()):
        if probe.is_ready(name):
            return name
    for name in PRIMARY_FALLBACK_ORDER:
        if probe.is_ready(name):
            return name
    return ""


def detect_default_backends(
    probe: ReadinessProbe,
    include_npm_with_bun: bool,
    system: str | None = None,
    verbose: bool = False,
) -> list[str]:
    """
    Detect every ready backend, primary first.

    When bun is ready and include_npm_with_bun is false, npm is left out:
    bun searches the same registry faster.

    Args:
        probe: Readiness probe
        include_npm_with_bun: Keep npm alongside bun (used for real queries)
        system: Platform override
        verbose: Enable verbose logging

    Returns:
        Ordered list of ready backend ids
    """
    ordered: list[str] = []

    def add(name: str) -> None:
        if name and name not in ordered and probe.is_ready(name):
            ordered.append(name)

    add(detect_primary_backend(probe, system))
    prefer_bun = not include_npm_with_bun and probe.is_ready("bun")
    for name in DETECTION_ORDER:
        if prefer_bun and name == "npm":
            continue
        add(name)

    vlog(f"Detected backends: {ordered}", verbose)
    return ordered


def resolve_backends(
    override: str,
    probe: ReadinessProbe,
    include_npm_with_bun: bool,
    verbose: bool = False,
) -> list[str]:
    """
    Resolve the active backend list for an invocation.

    An explicit override must name a supported, ready backend; otherwise the
    result is empty. Without an override every ready backend is detected.
    """
    if override:
        name = normalize_backend_name(override)
        if is_supported(name) and probe.is_ready(name):
            return [name]
        vlog(f"Backend override not usable: {override}", verbose)
        return []
    return detect_default_backends(probe, include_npm_with_bun, verbose=verbose)


def validate_backend_list(names: Sequence[str], probe: ReadinessProbe) -> list[str]:
    """
    Return the names that are unsupported or not ready.

    Empty result means the whole list is usable.
    """
    return [name for name in names if not is_supported(name) or not probe.is_ready(name)]
