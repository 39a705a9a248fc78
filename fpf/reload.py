"""
Live reload for a running selector session.

The selector re-runs fpf on every query change. Two transports exist:

- sync: the selector's ``change:reload:`` binding runs ``--dynamic-reload``
  and blocks until its stdout becomes the new list.
- ipc: the selector listens on a local HTTP port; ``change:execute-silent:``
  runs ``--ipc-query-notify``, which posts a ``reload(...)`` action to that
  port so keystrokes never wait on backends.

A reload never leaves the selector empty: every failure path re-serves the
session's baseline file.
"""

from __future__ import annotations

import shutil
import sys
import tempfile
import time
import urllib.error
import urllib.request
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Sequence

from .backends import ReadinessProbe, detect_default_backends, normalize_backend_name, split_backend_arg, validate_backend_list
from .common import shell_quote, shell_quote_if_needed, vlog
from .config import Settings
from .dispatch import Dispatcher
from .models import ConfigError, FpfError
from .pipeline import build_display_rows, render_rows

# Controller states
IDLE = "idle"
AWAITING_RELOAD = "awaiting-reload"
SERVED = "served"
FALLBACK_SERVED = "fallback-served"

TRANSPORT_SYNC = "sync"
TRANSPORT_IPC = "ipc"

DISPLAY_FILE = "display.tsv"
FALLBACK_FILE = "reload-fallback.tsv"
HELP_FILE = "help"
KEYBIND_FILE = "keybinds"

PUSH_TIMEOUT = 2.0
DEFAULT_PUSH_HOST = "127.0.0.1"


class ReloadSession:
    """
    Temp directory and files owned by one interactive session.

    The directory is created under ``<tmp>/fpf/session.*`` and removed on
    close. When FPF_SESSION_TMP_ROOT names a directory it is used as-is and
    left in place; cleanup is then the caller's job.

    Attributes:
        directory: Session directory
        backends: Active backend ids
        transport: TRANSPORT_SYNC or TRANSPORT_IPC
        fallback_file: Baseline rows re-served when a reload fails
        owns_directory: Whether close() removes the directory
    """

    def __init__(self, directory: Path, backends: Sequence[str] = (), owns_directory: bool = True):
        self.directory = Path(directory)
        self.backends = list(backends)
        self.owns_directory = owns_directory
        self.transport = TRANSPORT_SYNC
        self.fallback_file = self.display_file

    @classmethod
    def create(cls, settings: Settings, backends: Sequence[str] = ()) -> ReloadSession:
        """
        Raises:
            OSError: If the session directory cannot be created
        """
        if settings.session_tmp_root:
            directory = Path(settings.session_tmp_root)
            directory.mkdir(parents=True, exist_ok=True)
            return cls(directory, backends, owns_directory=False)

        base = Path(tempfile.gettempdir()) / "fpf"
        base.mkdir(parents=True, exist_ok=True)
        return cls(Path(tempfile.mkdtemp(prefix="session.", dir=base)), backends, owns_directory=True)

    @property
    def display_file(self) -> Path:
        return self.directory / DISPLAY_FILE

    @property
    def baseline_file(self) -> Path:
        return self.directory / FALLBACK_FILE

    @property
    def help_file(self) -> Path:
        return self.directory / HELP_FILE

    @property
    def keybind_file(self) -> Path:
        return self.directory / KEYBIND_FILE

    @property
    def manager_list(self) -> str:
        return ",".join(self.backends)

    def close(self) -> None:
        if self.owns_directory:
            shutil.rmtree(self.directory, ignore_errors=True)

    def __enter__(self) -> ReloadSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def choose_transport(settings: Settings, supports_listen: Callable[[], bool]) -> str:
    """Use ipc only when requested and the selector build can listen."""
    if settings.wants_ipc_transport() and supports_listen():
        return TRANSPORT_IPC
    return TRANSPORT_SYNC


def bypass_value(enabled: bool) -> str:
    return "1" if enabled else "0"


def build_reload_command(
    argv0: str,
    manager_override: str,
    fallback_file: str,
    manager_list: str,
    bypass_cache: bool = True,
    query: str | None = None,
) -> str:
    """
    Shell command the selector runs to reload its list.

    With query None the selector substitutes its current query for ``{q}``;
    a concrete query is single-quoted for use in a pushed action.
    """
    quote = shell_quote if query is not None else shell_quote_if_needed
    parts = [
        "FPF_SKIP_INSTALLED_MARKERS=1",
        "FPF_BYPASS_QUERY_CACHE=" + bypass_value(bypass_cache),
        "FPF_SKIP_QUERY_CACHE_WRITE=1",
        "FPF_IPC_MANAGER_OVERRIDE=" + quote(manager_override),
        "FPF_IPC_MANAGER_LIST=" + quote(manager_list),
        "FPF_IPC_FALLBACK_FILE=" + quote(fallback_file),
        shell_quote(argv0),
        "--dynamic-reload",
        "--",
        '"{q}"' if query is None else shell_quote(query),
    ]
    return " ".join(parts)


def build_notify_command(argv0: str, manager_override: str, fallback_file: str, manager_list: str) -> str:
    """Shell command bound to ``change:execute-silent:`` for the ipc transport."""
    parts = [
        "FPF_IPC_MANAGER_OVERRIDE=" + shell_quote_if_needed(manager_override),
        "FPF_IPC_MANAGER_LIST=" + shell_quote_if_needed(manager_list),
        "FPF_IPC_FALLBACK_FILE=" + shell_quote_if_needed(fallback_file),
        shell_quote(argv0),
        "--ipc-query-notify",
        "--",
        '"{q}"',
    ]
    return " ".join(parts)


def reload_action(reload_command: str) -> str:
    return f"change-prompt(Search> )+reload({reload_command})"


def parse_listen_address(fzf_port: str) -> tuple[str, str]:
    """
    Split FZF_PORT into (host, port); a bare port means 127.0.0.1.

    Raises:
        ConfigError: If FZF_PORT is empty
    """
    value = fzf_port.strip()
    if not value:
        raise ConfigError("missing FZF_PORT", remediation="Run inside a selector started with --listen")
    if ":" in value:
        host, port = value.split(":", 1)
        return host.strip() or DEFAULT_PUSH_HOST, port.strip()
    return DEFAULT_PUSH_HOST, value


def push_action(payload: str, fzf_port: str, timeout: float = PUSH_TIMEOUT) -> None:
    """
    POST an action string to the selector's listen endpoint.

    Raises:
        ConfigError: If no endpoint is configured
        FpfError: If the request fails
    """
    host, port = parse_listen_address(fzf_port)
    url = f"http://{host}:{port}"
    req = urllib.request.Request(
        url,
        data=payload.encode("utf-8"),
        headers={"Content-Type": "text/plain"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            response.read()
    except (urllib.error.URLError, OSError) as e:
        raise FpfError(f"selector endpoint {url} unreachable: {e}")


def resolve_reload_backends(settings: Settings, probe: ReadinessProbe) -> list[str] | None:
    """
    Backends for a reload, from the session's override or list.

    Returns:
        Backend ids; [] when the session names none (use detection);
        None when the override or any listed backend is unsupported or not
        ready. A partly usable list fails as a whole so the visible set
        never silently loses a backend.
    """
    override = normalize_backend_name(settings.ipc_manager_override) if settings.ipc_manager_override.strip() else ""
    if override:
        return [override] if not validate_backend_list([override], probe) else None

    names = [normalize_backend_name(name) for name in split_backend_arg(settings.ipc_manager_list)]
    names = list(dict.fromkeys(name for name in names if name))
    if not names:
        return []
    bad = validate_backend_list(names, probe)
    if bad:
        vlog(f"Reload backends unavailable: {bad}")
        return None
    return names


class ReloadController:
    """
    Serves one ``--dynamic-reload`` request.

    State moves IDLE → AWAITING_RELOAD → SERVED, or to FALLBACK_SERVED when
    the query is too short or anything fails. Backends are never invoked
    for queries shorter than reload_min_chars.
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher: Dispatcher,
        probe: ReadinessProbe,
        sleep: Callable[[float], None] = time.sleep,
        verbose: bool = False,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.probe = probe
        self.sleep = sleep
        self.verbose = verbose
        self.state = IDLE

    def fallback_path(self) -> Path:
        """
        Raises:
            ConfigError: If no fallback file is configured or it does not exist
        """
        raw = self.settings.ipc_fallback_file.strip()
        if not raw:
            raise ConfigError("missing FPF_IPC_FALLBACK_FILE")
        path = Path(raw)
        if not path.exists():
            raise ConfigError(f"fallback file not found: {raw}")
        return path

    def serve_fallback(self, path: Path) -> str:
        self.state = FALLBACK_SERVED
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            vlog(f"Fallback file unreadable: {e}", self.verbose)
            return ""

    def handle(self, query: str) -> str:
        """
        Produce the rows for a reload.

        Raises:
            ConfigError: If the session's fallback file is missing
        """
        fallback = self.fallback_path()
        if len(query) < self.settings.reload_min_chars:
            return self.serve_fallback(fallback)

        self.state = AWAITING_RELOAD
        if self.settings.reload_debounce > 0:
            self.sleep(self.settings.reload_debounce)

        backends = resolve_reload_backends(self.settings, self.probe)
        if backends is None:
            return self.serve_fallback(fallback)
        if not backends:
            backends = detect_default_backends(self.probe, include_npm_with_bun=True, verbose=self.verbose)
        if not backends:
            return self.serve_fallback(fallback)

        try:
            rows = build_display_rows(query, backends, self.dispatcher, with_timeouts=True, skip_installed=True)
        except Exception as e:
            vlog(f"Reload pipeline failed: {e}", self.verbose)
            return self.serve_fallback(fallback)

        if not rows:
            return self.serve_fallback(fallback)
        self.state = SERVED
        return render_rows(rows)


class IpcNotifier:
    """
    Pushes reload actions to a listening selector in the background.

    notify() returns a Future; callers wait on it and failures surface
    through future.result().
    """

    def __init__(self, settings: Settings, argv0: str | None = None, executor: Executor | None = None):
        self.settings = settings
        self.argv0 = argv0 or sys.argv[0]
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=1)

    def reload_command(self, query: str) -> str:
        override = normalize_backend_name(self.settings.ipc_manager_override) if self.settings.ipc_manager_override else ""
        return build_reload_command(
            self.argv0,
            override,
            self.settings.ipc_fallback_file,
            self.settings.ipc_manager_list,
            bypass_cache=self.settings.bypass_query_cache,
            query=query,
        )

    def check(self) -> None:
        """
        Raises:
            ConfigError: If the session's fallback file is missing
        """
        raw = self.settings.ipc_fallback_file.strip()
        if not raw:
            raise ConfigError("missing FPF_IPC_FALLBACK_FILE")
        if not Path(raw).exists():
            raise ConfigError(f"fallback file not found: {raw}")

    def notify(self, query: str) -> Future:
        self.check()
        payload = reload_action(self.reload_command(query))
        return self.executor.submit(push_action, payload, self.settings.fzf_port)

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    def __enter__(self) -> IpcNotifier:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
