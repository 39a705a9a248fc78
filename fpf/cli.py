"""
fpf - fuzzy package finder.

Searches every detected package manager at once, ranks the merged results
and lets you pick from them in fzf. The selected rows are printed to stdout.

Usage:
    fpf ripgrep             # Search all detected managers
    fpf -m npm react        # Search one manager
    fpf --feed-search jq    # Print ranked rows without the selector
    fpf -l                  # Browse installed packages
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Sequence

from . import __version__
from .adapters import AdapterRegistry, build_adapters
from .backends import BACKEND_NAMES, ReadinessProbe, join_labels, normalize_backend_name, resolve_backends
from .cache import CacheStore
from .common import vlog
from .config import Settings, load_settings
from .dispatch import Dispatcher
from .logging_config import setup_logging
from .merge import merge_candidates
from .models import BackendError, Candidate, ConfigError, FpfError, NoBackendError
from .pipeline import build_display_rows, render_rows, write_rows
from .preview import build_preview_command, load_preview, session_root
from .reload import (
    TRANSPORT_IPC,
    IpcNotifier,
    ReloadController,
    ReloadSession,
    build_notify_command,
    build_reload_command,
    choose_transport,
)
from .selector import (
    SelectorError,
    SelectorProbe,
    build_header,
    build_help_text,
    build_keybind_text,
    build_selector_args,
    parse_selection,
    run_selector,
)

INSTALLED_DESCRIPTION = "installed"

# Single-manager shortcut flags
MANAGER_FLAGS = {
    "apt": ("-ap", "--apt"),
    "dnf": ("-dn", "--dnf"),
    "pacman": ("-pm", "--pacman"),
    "zypper": ("-zy", "--zypper"),
    "emerge": ("-em", "--emerge"),
    "brew": ("-br", "--brew"),
    "winget": ("-wg", "--winget"),
    "choco": ("-ch", "--choco"),
    "scoop": ("-sc", "--scoop"),
    "snap": ("-sn", "--snap"),
    "flatpak": ("-fp", "--flatpak"),
    "npm": ("-np", "--npm"),
    "bun": ("-bn", "--bun"),
}

UNSUPPORTED_ACTIONS = {
    "remove": "Removing packages is not handled by fpf; pipe the selected rows to your package manager.",
    "update": "Updating packages is not handled by fpf; run your package manager's upgrade command.",
    "refresh": "Refreshing catalogs is not handled by fpf; run your package manager's refresh command.",
}


@dataclass
class Runtime:
    """Explicitly owned collaborators for one invocation."""
    settings: Settings
    probe: ReadinessProbe
    cache: CacheStore
    adapters: AdapterRegistry
    dispatcher: Dispatcher
    verbose: bool = False


def build_runtime(settings: Settings, verbose: bool = False) -> Runtime:
    probe = ReadinessProbe()
    cache = CacheStore(settings=settings, probe=probe, verbose=verbose)
    adapters = build_adapters(cache)
    dispatcher = Dispatcher(cache, adapters, settings, verbose=verbose)
    return Runtime(settings, probe, cache, adapters, dispatcher, verbose)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fpf",
        description="Fuzzy package finder: search and rank packages across package managers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-m", "--manager",
        dest="manager",
        default="",
        help=f"Use a single manager ({', '.join(BACKEND_NAMES)})",
    )
    for name, flags in MANAGER_FLAGS.items():
        parser.add_argument(*flags, dest="manager", action="store_const", const=name, help=argparse.SUPPRESS)
    parser.add_argument("-ad", "--auto", dest="manager", action="store_const", const="", help="Auto-detect managers")

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("-l", "--list-installed", dest="action", action="store_const", const="list",
                         help="Browse installed packages")
    actions.add_argument("-R", "--remove", dest="action", action="store_const", const="remove", help=argparse.SUPPRESS)
    actions.add_argument("-U", "--update", dest="action", action="store_const", const="update", help=argparse.SUPPRESS)
    actions.add_argument("--refresh", dest="action", action="store_const", const="refresh", help=argparse.SUPPRESS)
    actions.add_argument("--feed-search", dest="action", action="store_const", const="feed",
                         help="Print ranked rows without the selector")
    actions.add_argument("--dynamic-reload", dest="action", action="store_const", const="dynamic-reload",
                         help=argparse.SUPPRESS)
    actions.add_argument("--ipc-reload", dest="action", action="store_const", const="ipc-reload",
                         help=argparse.SUPPRESS)
    actions.add_argument("--ipc-query-notify", dest="action", action="store_const", const="ipc-query-notify",
                         help=argparse.SUPPRESS)
    actions.add_argument("--preview-item", dest="action", action="store_const", const="preview-item",
                         help=argparse.SUPPRESS)
    actions.add_argument("-v", "--version", action="version", version=f"fpf {__version__}")

    parser.add_argument("-y", "--yes", action="store_true", help="Assume yes for prompts")
    parser.add_argument("--verbose", action="store_true", help="Verbose output")
    parser.add_argument("query", nargs="*", help="Search query")
    parser.set_defaults(action="search", manager="")
    return parser


def print_rows(rows: Sequence[Candidate]) -> None:
    sys.stdout.write(render_rows(rows))
    sys.stdout.flush()


def collect_installed_rows(backends: Sequence[str], adapters: AdapterRegistry, verbose: bool = False) -> list[Candidate]:
    """Installed packages of every backend as display rows."""
    rows: list[Candidate] = []
    for backend in backends:
        try:
            names = adapters.get(backend).installed()
        except BackendError as e:
            vlog(f"{backend}: installed lookup failed: {e.message}", verbose)
            continue
        rows.extend(Candidate(backend, name, INSTALLED_DESCRIPTION) for name in names if name)
    return merge_candidates(rows)


def cmd_dynamic_reload(runtime: Runtime, query: str) -> int:
    """Serve one selector reload on stdout."""
    controller = ReloadController(runtime.settings, runtime.dispatcher, runtime.probe, verbose=runtime.verbose)
    try:
        output = controller.handle(query)
    except ConfigError as e:
        vlog(f"dynamic reload: {e.message}", runtime.verbose)
        return 1
    sys.stdout.write(output)
    sys.stdout.flush()
    return 0


def cmd_ipc_notify(runtime: Runtime, query: str) -> int:
    """Push a reload action for query to the listening selector."""
    with IpcNotifier(runtime.settings) as notifier:
        try:
            notifier.notify(query).result()
        except FpfError as e:
            vlog(f"ipc reload: {e.message}", runtime.verbose)
            return 1
    return 0


def cmd_preview_item(runtime: Runtime, manager: str, package: str) -> int:
    """Print package info for the selector's preview pane."""
    if not manager or not package:
        return 0
    root = session_root(runtime.settings.session_tmp_root)
    try:
        text = load_preview(runtime.adapters, manager, package, root, runtime.verbose)
    except OSError as e:
        print(f"Could not write preview cache: {e}", file=sys.stderr)
        return 1
    sys.stdout.write(text)
    sys.stdout.flush()
    return 0


def resolve_session_backends(runtime: Runtime, manager: str, action: str, query: str) -> list[str]:
    """
    Raises:
        NoBackendError: If no usable backend is found
    """
    include_npm_with_bun = action in ("search", "feed") and bool(query)
    backends = resolve_backends(manager, runtime.probe, include_npm_with_bun, runtime.verbose)
    if not backends:
        raise NoBackendError("Unable to auto-detect supported package managers. Use --manager.")
    return backends


def report_no_rows(backends: Sequence[str], query: str) -> None:
    labels = join_labels(backends)
    if query:
        print(f"No packages found for {labels} matching '{query}'. Try a broader query or --manager.", file=sys.stderr)
    else:
        print(f"No packages found for {labels}. Try adding a query or using --manager.", file=sys.stderr)


def run_interactive(
    runtime: Runtime,
    action: str,
    query: str,
    manager: str,
    backends: Sequence[str],
    rows: Sequence[Candidate],
    selector: SelectorProbe | None = None,
) -> int:
    """
    Open the selector over rows and print the selected rows.

    Falls back to printing every row when the selector is unavailable.
    """
    selector = selector or SelectorProbe()
    if not selector.available():
        print_rows(rows)
        print("Interactive selection unavailable (fzf not found). Showing results in feed format.", file=sys.stderr)
        return 0

    settings = runtime.settings
    with ReloadSession.create(settings, backends) as session:
        write_rows(session.display_file, rows)
        session.help_file.write_text(build_help_text(backends), encoding="utf-8")
        session.keybind_file.write_text(build_keybind_text(), encoding="utf-8")

        reload_command = ""
        notify_command = ""
        preview_command = build_preview_command(sys.argv[0], session.directory)
        if action == "search" and settings.dynamic_reload_enabled(len(backends)):
            if query:
                baseline = build_display_rows("", backends, runtime.dispatcher)
                if baseline:
                    try:
                        write_rows(session.baseline_file, baseline)
                        session.fallback_file = session.baseline_file
                    except OSError as e:
                        vlog(f"Could not write reload baseline: {e}", runtime.verbose)

            argv0 = sys.argv[0]
            reload_command = build_reload_command(
                argv0, manager, str(session.fallback_file), session.manager_list,
                bypass_cache=settings.dynamic_reload_bypass_cache,
            )
            session.transport = choose_transport(settings, selector.supports_listen)
            if session.transport == TRANSPORT_IPC:
                notify_command = build_notify_command(argv0, manager, str(session.fallback_file), session.manager_list)

        args = build_selector_args(
            query,
            build_header(action, backends),
            session.help_file,
            session.keybind_file,
            reload_command=reload_command,
            notify_command=notify_command,
            result_bind=bool(reload_command) and selector.supports_result_bind(),
            preview_command=preview_command,
        )
        try:
            output = run_selector(args, session.display_file, selector.binary)
        except SelectorError as e:
            print_rows(rows)
            print(f"Interactive selection unavailable ({e.message}). Showing results in feed format.", file=sys.stderr)
            return 0

    selected = parse_selection(output)
    if not selected:
        print("Selection canceled", file=sys.stderr)
        return 0
    print_rows(selected)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for fpf."""
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)

    # Everything after "--" is query text, even when it starts with "-"
    trailing: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, trailing = argv[:split], argv[split + 1:]
    args = parser.parse_intermixed_args(argv)
    args.query = list(args.query) + trailing

    setup_logging(verbose=args.verbose)

    try:
        settings = load_settings(verbose=args.verbose)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    action = args.action
    manager = normalize_backend_name(args.manager) if args.manager else ""
    if action in UNSUPPORTED_ACTIONS:
        print(UNSUPPORTED_ACTIONS[action], file=sys.stderr)
        return 2

    runtime = build_runtime(settings, verbose=args.verbose)

    # Reload sub-invocations receive the raw selector query
    if action == "dynamic-reload":
        return cmd_dynamic_reload(runtime, " ".join(args.query))
    if action in ("ipc-reload", "ipc-query-notify"):
        return cmd_ipc_notify(runtime, " ".join(args.query))
    if action == "preview-item":
        return cmd_preview_item(runtime, manager, " ".join(args.query).strip())

    query = " ".join(args.query).strip()
    try:
        backends = resolve_session_backends(runtime, manager, action, query)
    except NoBackendError as e:
        print(e.message, file=sys.stderr)
        return 1

    if action == "list":
        rows = collect_installed_rows(backends, runtime.adapters, runtime.verbose)
    else:
        rows = build_display_rows(query, backends, runtime.dispatcher)

    if not rows:
        report_no_rows(backends, query)
        return 1

    if action == "feed":
        print_rows(rows)
        return 0

    return run_interactive(runtime, action, query, manager, backends, rows)


def run() -> None:
    """Console script wrapper."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
