"""
Backend adapters.

An adapter shells out to one package manager and turns its text output into
(name, description) rows, a list of installed package names, or the
manager's own description of one package. The rest of fpf only sees the
BackendAdapter interface; adapters are selected by backend id through
AdapterRegistry.
"""

from __future__ import annotations

import re
import subprocess
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Callable, Sequence

from .backends import BACKEND_NAMES
from .cache import CATALOG_NAMESPACE, CacheStore, parse_name_rows, render_name_rows, stable_checksum
from .common import vlog
from .models import EMPTY_DESCRIPTION, BackendError, BackendTimeout, SearchRequest

Rows = list[tuple[str, str]]

APT_CATALOG_TTL = 3600

_WIDE_GAP = re.compile(r"\s{2,}")


def run_output(backend: str, argv: Sequence[str], timeout: float | None = None) -> str:
    """
    Run a backend command and return its stdout.

    stderr is discarded. A timeout kills the child process.

    Raises:
        BackendError: Binary missing or non-zero exit
        BackendTimeout: Command exceeded timeout
    """
    try:
        result = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout if timeout else None,
            stdin=subprocess.DEVNULL,
            errors="replace",
        )
    except FileNotFoundError:
        raise BackendError(backend, f"{argv[0]} not found", remediation=f"Install {argv[0]} or choose another --manager")
    except subprocess.TimeoutExpired:
        raise BackendTimeout(backend, f"{argv[0]} timed out after {timeout}s")

    if result.returncode != 0:
        raise BackendError(backend, f"{argv[0]} exited with code {result.returncode}", exit_code=result.returncode)
    return result.stdout


def _lines(out: str) -> list[str]:
    raw = out.replace("\r\n", "\n").rstrip("\n")
    return raw.split("\n") if raw else []


def _desc(value: str) -> str:
    value = value.strip()
    return value or EMPTY_DESCRIPTION


# ----------------------------------------------------------------------
# Search output parsers

def parse_apt_search(out: str) -> Rows:
    rows: Rows = []
    for line in _lines(out):
        line = line.strip()
        if not line:
            continue
        name, _, desc = line.partition(" - ")
        rows.append((name.strip(), _desc(desc)))
    return rows


def parse_apt_dumpavail(out: str) -> Rows:
    """Parse ``apt-cache dumpavail`` stanzas into (Package, Description) rows."""
    rows: Rows = []
    package = ""
    description = ""
    for line in _lines(out) + [""]:
        if line.startswith("Package:"):
            if package:
                rows.append((package, _desc(description)))
            package = line[len("Package:"):].strip()
            description = ""
        elif line.startswith("Description:"):
            description = line[len("Description:"):].strip()
        elif not line.strip() and package:
            rows.append((package, _desc(description)))
            package = ""
            description = ""
    return rows


def parse_dnf_search(out: str) -> Rows:
    rows: Rows = []
    for line in _lines(out):
        line = line.strip()
        if not line or line.startswith(("Available", "Last", "Installed")):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        name = parts[0]
        if name.rfind(".") > 0:
            name = name[:name.rfind(".")]
        rows.append((name, parts[1]))
    return rows


def parse_pacman_search(out: str) -> Rows:
    rows: Rows = []
    lines = _lines(out)
    for i in range(0, len(lines) - 1, 2):
        head = lines[i].strip()
        if not head:
            continue
        package = head.split()[0]
        if "/" in package:
            package = package.split("/", 1)[1]
        rows.append((package, _desc(lines[i + 1])))
    return rows


def parse_zypper_search(out: str) -> Rows:
    rows: Rows = []
    for line in _lines(out):
        parts = line.split("|")
        if len(parts) < 7:
            continue
        name = parts[2].strip()
        if not name:
            continue
        rows.append((name, f"version {parts[4].strip()} from {parts[6].strip()}"))
    return rows


def parse_emerge_search(out: str) -> Rows:
    rows: Rows = []
    atom = ""
    for line in _lines(out):
        if line.startswith("*  "):
            parts = line.split()
            if len(parts) >= 2:
                atom = parts[1]
            continue
        stripped = line.strip()
        if stripped.startswith("Description:") and atom:
            rows.append((atom, _desc(stripped[len("Description:"):])))
            atom = ""
    return rows


def parse_brew_search(out: str) -> Rows:
    return [
        (line.strip(), EMPTY_DESCRIPTION)
        for line in _lines(out)
        if line.strip() and line.strip() != "==>"
    ]


def parse_winget_search(out: str) -> Rows:
    rows: Rows = []
    for line in _lines(out):
        line = line.strip()
        if not line or line.startswith(("Name", "-")):
            continue
        cols = _WIDE_GAP.split(line)
        if len(cols) >= 2:
            rows.append((cols[1], EMPTY_DESCRIPTION))
    return rows


def parse_choco_search(out: str) -> Rows:
    rows: Rows = []
    for line in _lines(out):
        line = line.strip()
        if not line:
            continue
        name, _, version = line.partition("|")
        if name.strip():
            rows.append((name.strip(), "version " + _desc(version)))
    return rows


def _parse_name_rest(out: str, skip_header: bool, skip_prefixes: tuple[str, ...] = ()) -> Rows:
    rows: Rows = []
    for index, line in enumerate(_lines(out)):
        stripped = line.strip()
        if (skip_header and index == 0) or not stripped:
            continue
        if skip_prefixes and stripped.startswith(skip_prefixes):
            continue
        parts = stripped.split()
        rows.append((parts[0], " ".join(parts[1:]) or EMPTY_DESCRIPTION))
    return rows


def parse_scoop_search(out: str) -> Rows:
    return _parse_name_rest(out, skip_header=False, skip_prefixes=("Name", "-"))


def parse_snap_search(out: str) -> Rows:
    return _parse_name_rest(out, skip_header=True)


def parse_bun_search(out: str) -> Rows:
    return _parse_name_rest(out, skip_header=True)


def parse_flatpak_search(out: str) -> Rows:
    rows: Rows = []
    for index, line in enumerate(_lines(out)):
        stripped = line.strip()
        if index == 0 or not stripped:
            continue
        name = stripped.split()[0]
        rows.append((name, _desc(stripped[len(name):])))
    return rows


def parse_npm_search(out: str) -> Rows:
    rows: Rows = []
    for line in _lines(out):
        parts = line.split("\t")
        if len(parts) < 2 or not parts[0].strip():
            continue
        rows.append((parts[0].strip(), _desc(parts[1])))
    return rows


# ----------------------------------------------------------------------
# Installed output parsers

def _first_field(out: str, skip_header: bool = False, skip_prefixes: tuple[str, ...] = ()) -> list[str]:
    names: list[str] = []
    for index, line in enumerate(_lines(out)):
        stripped = line.strip()
        if (skip_header and index == 0) or not stripped:
            continue
        if skip_prefixes and stripped.startswith(skip_prefixes):
            continue
        names.append(stripped.split()[0])
    return names


def parse_apt_installed(out: str) -> list[str]:
    return [line.split("\t")[0] for line in _lines(out) if line.strip() and line.split("\t")[0]]


def parse_dnf_installed(out: str) -> list[str]:
    names = _first_field(out, skip_prefixes=("Installed", "Last", "Available"))
    return [name[:name.rfind(".")] if name.rfind(".") > 0 else name for name in names]


def parse_zypper_installed(out: str) -> list[str]:
    names = []
    for line in _lines(out):
        parts = line.split("|")
        if len(parts) >= 3 and parts[2].strip():
            names.append(parts[2].strip())
    return names


def parse_winget_installed(out: str) -> list[str]:
    return [name for name, _ in parse_winget_search(out)]


def parse_choco_installed(out: str) -> list[str]:
    return [name for name, _ in parse_choco_search(out)]


def parse_scoop_installed(out: str) -> list[str]:
    names: list[str] = []
    in_packages = False
    for line in _lines(out):
        if line.startswith(("Name", "---")):
            in_packages = True
            continue
        if in_packages and line.strip():
            names.append(line.split()[0])
    return names


def parse_npm_installed(out: str) -> list[str]:
    """Parse ``npm ls -g --parseable``: one path per line, first line is the prefix."""
    names: list[str] = []
    for line in _lines(out)[1:]:
        segments = [seg.strip() for seg in line.replace("\r", "").replace("\\", "/").split("/")]
        segments = [seg for seg in segments if seg]
        if not segments:
            continue
        package = segments[-1]
        if len(segments) >= 2 and segments[-2].startswith("@"):
            package = f"{segments[-2]}/{package}"
        names.append(package)
    return names


def parse_bun_installed(out: str) -> list[str]:
    names: list[str] = []
    for line in _lines(out)[1:]:
        line = line.replace("\r", "").strip().lstrip("+-|` ").strip()
        if not line or "node_modules" in line:
            continue
        package = line.split()[0]
        at_count = package.count("@")
        if (package.startswith("@") and at_count >= 2) or (not package.startswith("@") and at_count >= 1):
            cut = package.rfind("@")
            if cut > 0:
                package = package[:cut]
        if package:
            names.append(package)
    return names


# ----------------------------------------------------------------------
# Adapters

class BackendAdapter(ABC):
    """
    Capability interface every backend implements.

    search() returns ordered (name, description) rows, installed() returns
    installed package names and show_info() returns the manager's own
    description of one package. All raise BackendError on failure.
    """

    name: str

    @abstractmethod
    def search(self, request: SearchRequest, timeout: float | None = None, allow_fallback: bool = False) -> Rows:
        ...

    @abstractmethod
    def installed(self, timeout: float | None = None) -> list[str]:
        ...

    @abstractmethod
    def show_info(self, package: str, timeout: float | None = None) -> str:
        ...


@dataclass
class CommandAdapter(BackendAdapter):
    """
    Adapter driven by one search command and one installed command.

    info_commands lists the package-info commands. By default the first one
    that succeeds wins; with combine_info every command runs and the
    successful outputs are joined with a blank line.
    """
    name: str
    search_argv: Callable[[SearchRequest], list[str]]
    search_parser: Callable[[str], Rows]
    installed_argv: list[str]
    installed_parser: Callable[[str], list[str]]
    info_commands: Callable[[str], list[list[str]]]
    combine_info: bool = False

    def search(self, request: SearchRequest, timeout: float | None = None, allow_fallback: bool = False) -> Rows:
        return self.search_parser(run_output(self.name, self.search_argv(request), timeout))

    def installed(self, timeout: float | None = None) -> list[str]:
        return self.installed_parser(run_output(self.name, self.installed_argv, timeout))

    def show_info(self, package: str, timeout: float | None = None) -> str:
        """
        Raises:
            BackendError: If no info command succeeds
        """
        if self.combine_info:
            sections = []
            for argv in self.info_commands(package):
                try:
                    sections.append(run_output(self.name, argv, timeout))
                except BackendTimeout:
                    raise
                except BackendError as e:
                    vlog(f"{self.name}: {e.message}")
            if not sections:
                raise BackendError(self.name, f"no information for {package}")
            return "\n".join(sections)

        error = BackendError(self.name, f"no information for {package}")
        for argv in self.info_commands(package):
            try:
                return run_output(self.name, argv, timeout)
            except BackendTimeout:
                raise
            except BackendError as e:
                error = e
        raise error


def _npm_search_argv(request: SearchRequest) -> list[str]:
    return ["npm", "search", request.query, f"--searchlimit={request.aux_limit}", "--parseable"]


class AptCatalog:
    """
    Full APT package catalog kept in the cache store.

    Built from ``apt-cache dumpavail`` and filtered locally, which is much
    faster than repeated ``apt-cache search`` calls. The catalog is owned by
    its adapter; refresh_async() rebuilds it in the background and returns
    a Future the caller can wait on.
    """

    def __init__(self, cache: CacheStore, ttl: int = APT_CATALOG_TTL):
        self.cache = cache
        self.ttl = ttl

    def fingerprint(self) -> str:
        return f"apt|catalog|{self.cache.resolved_command('apt')}"

    def key(self) -> str:
        return stable_checksum(self.fingerprint())

    def load(self) -> Rows:
        payload, hit = self.cache.get(CATALOG_NAMESPACE, "apt", self.key(), self.ttl, self.fingerprint())
        if hit and payload:
            return parse_name_rows(payload)
        return []

    def rebuild(self, timeout: float | None = None) -> Rows:
        rows = parse_apt_dumpavail(run_output("apt", ["apt-cache", "dumpavail"], timeout))
        if rows:
            self.cache.put(CATALOG_NAMESPACE, "apt", self.key(), render_name_rows(rows), self.fingerprint(), len(rows))
        return rows

    def refresh_async(self, executor: Executor) -> Future:
        return executor.submit(self.rebuild)

    def invalidate(self) -> None:
        self.cache.invalidate(CATALOG_NAMESPACE, "apt")

    @staticmethod
    def filter(rows: Rows, query: str) -> Rows:
        if not query:
            return rows
        needle = query.lower()
        return [row for row in rows if needle in row[0].lower() or needle in row[1].lower()]


class AptAdapter(CommandAdapter):
    """APT: catalog-backed search with ``apt-cache search`` as fallback."""

    def __init__(self, catalog: AptCatalog):
        super().__init__(
            name="apt",
            search_argv=lambda r: ["apt-cache", "search", "--", r.query],
            search_parser=parse_apt_search,
            installed_argv=["dpkg-query", "-W", "-f=${binary:Package}\\t${Version}\\n"],
            installed_parser=parse_apt_installed,
            info_commands=lambda pkg: [["apt-cache", "show", pkg], ["dpkg", "-L", pkg]],
            combine_info=True,
        )
        self.catalog = catalog

    def search(self, request: SearchRequest, timeout: float | None = None, allow_fallback: bool = False) -> Rows:
        rows = self.catalog.load()
        # Cold catalogs are rebuilt outside reloads only
        if not rows and not timeout:
            try:
                rows = self.catalog.rebuild()
            except BackendError as e:
                vlog(f"APT catalog unavailable: {e.message}")
                rows = []
        if rows:
            filtered = AptCatalog.filter(rows, request.query)
            if filtered:
                return filtered
        return super().search(request, timeout)


class FlatpakAdapter(CommandAdapter):
    """Flatpak: remote listing for empty queries, column search with a plain-search retry."""

    def __init__(self):
        super().__init__(
            name="flatpak",
            search_argv=lambda r: ["flatpak", "search", "--columns=application,description", r.query],
            search_parser=parse_flatpak_search,
            installed_argv=["flatpak", "list", "--app", "--columns=application,version"],
            installed_parser=lambda out: _first_field(out, skip_header=True),
            info_commands=lambda pkg: [["flatpak", "info", pkg], ["flatpak", "remote-info", "flathub", pkg]],
        )

    def search(self, request: SearchRequest, timeout: float | None = None, allow_fallback: bool = False) -> Rows:
        if request.query:
            attempts = [
                ["flatpak", "search", "--columns=application,description", request.query],
                ["flatpak", "search", request.query],
            ]
        else:
            attempts = [
                ["flatpak", "remote-ls", "--app", "--columns=application,description", "flathub"],
                ["flatpak", "remote-ls", "--app", "--columns=application,description"],
            ]
        try:
            return parse_flatpak_search(run_output(self.name, attempts[0], timeout))
        except BackendTimeout:
            raise
        except BackendError:
            return parse_flatpak_search(run_output(self.name, attempts[1], timeout))


class BunAdapter(CommandAdapter):
    """
    bun: fast npm-registry search.

    Falls back to npm only when allow_fallback is set; in a session where
    npm is also active the fallback would duplicate its rows.
    """

    def __init__(self):
        super().__init__(
            name="bun",
            search_argv=lambda r: ["bun", "search", r.query],
            search_parser=parse_bun_search,
            installed_argv=["bun", "pm", "ls", "--global"],
            installed_parser=parse_bun_installed,
            info_commands=lambda pkg: [["bun", "info", pkg], ["npm", "view", pkg]],
        )

    def search(self, request: SearchRequest, timeout: float | None = None, allow_fallback: bool = False) -> Rows:
        try:
            return super().search(request, timeout)
        except BackendTimeout:
            raise
        except BackendError:
            if not allow_fallback:
                raise
            vlog("bun search failed, falling back to npm")
            return parse_npm_search(run_output(self.name, _npm_search_argv(request), timeout))

    def installed(self, timeout: float | None = None) -> list[str]:
        try:
            return super().installed(timeout)
        except BackendError:
            out = run_output(self.name, ["npm", "ls", "-g", "--depth=0", "--parseable"], timeout)
            return parse_npm_installed(out)


def _dnf_argv(request: SearchRequest) -> list[str]:
    pattern = f"*{request.query}*" if request.query else "*"
    return ["dnf", "-q", "list", "available", pattern]


class AdapterRegistry:
    """Maps backend ids to adapter instances."""

    def __init__(self, adapters: dict[str, BackendAdapter]):
        self._adapters = dict(adapters)

    def get(self, name: str) -> BackendAdapter:
        """
        Raises:
            BackendError: If no adapter exists for the backend
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            raise BackendError(name, f"unsupported manager: {name}")
        return adapter

    def names(self) -> list[str]:
        return list(self._adapters)


def _single_info(*argv: str) -> Callable[[str], list[list[str]]]:
    """Info command builder for managers with one info command."""
    return lambda pkg: [[*argv, pkg]]


def build_adapters(cache: CacheStore) -> AdapterRegistry:
    """Construct the default adapter for every supported backend."""
    adapters: dict[str, BackendAdapter] = {
        "apt": AptAdapter(AptCatalog(cache)),
        "dnf": CommandAdapter("dnf", _dnf_argv, parse_dnf_search,
                              ["dnf", "-q", "list", "installed"], parse_dnf_installed,
                              lambda pkg: [["dnf", "info", pkg], ["rpm", "-ql", pkg]], combine_info=True),
        "pacman": CommandAdapter("pacman", lambda r: ["pacman", "-Ss", "--", r.query], parse_pacman_search,
                                 ["pacman", "-Q"], _first_field,
                                 lambda pkg: [["pacman", "-Qi", pkg], ["pacman", "-Si", pkg]]),
        "zypper": CommandAdapter(
            "zypper",
            lambda r: ["zypper", "--non-interactive", "--quiet", "search", "--details", "--type", "package", r.query],
            parse_zypper_search,
            ["zypper", "--non-interactive", "--quiet", "search", "--installed-only", "--details", "--type", "package"],
            parse_zypper_installed,
            _single_info("zypper", "--non-interactive", "info"),
        ),
        "emerge": CommandAdapter("emerge", lambda r: ["emerge", "--searchdesc", "--color=n", r.query],
                                 parse_emerge_search, ["qlist", "-ICv"], _first_field,
                                 _single_info("emerge", "--search", "--color=n")),
        "brew": CommandAdapter("brew", lambda r: ["brew", "search", r.query], parse_brew_search,
                               ["brew", "list", "--versions"], _first_field, _single_info("brew", "info")),
        "winget": CommandAdapter(
            "winget",
            lambda r: ["winget", "search", r.query, "--source", "winget",
                       "--accept-source-agreements", "--disable-interactivity"],
            parse_winget_search,
            ["winget", "list", "--source", "winget", "--accept-source-agreements", "--disable-interactivity"],
            parse_winget_installed,
            lambda pkg: [["winget", "show", "--id", pkg, "--exact", "--source", "winget",
                          "--accept-source-agreements", "--disable-interactivity"]],
        ),
        "choco": CommandAdapter("choco", lambda r: ["choco", "search", r.query, "--limit-output"],
                                parse_choco_search, ["choco", "list", "--local-only", "--limit-output"],
                                parse_choco_installed, _single_info("choco", "info")),
        "scoop": CommandAdapter("scoop", lambda r: ["scoop", "search", r.query], parse_scoop_search,
                                ["scoop", "list"], parse_scoop_installed, _single_info("scoop", "info")),
        "snap": CommandAdapter("snap", lambda r: ["snap", "find", r.query], parse_snap_search,
                               ["snap", "list"], lambda out: _first_field(out, skip_header=True),
                               _single_info("snap", "info")),
        "flatpak": FlatpakAdapter(),
        "npm": CommandAdapter("npm", _npm_search_argv, parse_npm_search,
                              ["npm", "ls", "-g", "--depth=0", "--parseable"], parse_npm_installed,
                              _single_info("npm", "view")),
        "bun": BunAdapter(),
    }
    missing = set(BACKEND_NAMES) - set(adapters)
    if missing:
        raise RuntimeError(f"No adapter registered for: {sorted(missing)}")
    return AdapterRegistry(adapters)
