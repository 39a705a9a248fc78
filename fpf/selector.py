"""
Driving the external fzf selector.

fpf never renders a UI itself: it writes the display rows to a file, hands
fzf that file plus help/keybind text and reload commands, and reads the
selected rows back from fzf's stdout.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Sequence

from wcwidth import wcswidth

from .backends import is_supported, join_labels, normalize_backend_name
from .common import env_flag, shell_quote, stderr_is_terminal, vlog
from .logging_config import get_logger, log_stage
from .models import Candidate, FpfError

SELECTOR_BINARY = "fzf"
PROBE_TIMEOUT = 5

KEYBINDS = (
    ("ctrl-h", "Show help in preview pane"),
    ("ctrl-k", "Show keybinds in preview pane"),
    ("ctrl-/", "Toggle preview pane"),
    ("ctrl-r", "Reload results for the current query"),
    ("ctrl-n", "Move to next selected package"),
    ("ctrl-b", "Move to previous selected package"),
)

ACTION_OPTIONS = (
    ("-m, --manager NAME", "Search only one manager"),
    ("-l, --list-installed", "Browse installed packages"),
    ("--feed-search", "Print ranked rows without the selector"),
    ("-y, --yes", "Assume yes for prompts"),
    ("-v, --version", "Show version"),
    ("-h, --help", "Show this help"),
)


class SelectorError(FpfError):
    """The selector could not be started or exited abnormally."""


class SelectorProbe:
    """
    Memoized fzf capability checks.

    Each check runs fzf at most once per instance; one instance lives for
    one interactive session.
    """

    def __init__(self, binary: str = SELECTOR_BINARY):
        self.binary = binary
        self._lock = threading.Lock()
        self._results: dict[str, bool] = {}

    def _memo(self, name: str, check) -> bool:
        with self._lock:
            if name in self._results:
                return self._results[name]
        result = check()
        with self._lock:
            self._results[name] = result
        return result

    def available(self) -> bool:
        return self._memo("available", lambda: shutil.which(self.binary) is not None)

    def supports_listen(self) -> bool:
        """Whether ``fzf --help`` advertises ``--listen``."""
        def check() -> bool:
            try:
                result = subprocess.run(
                    [self.binary, "--help"],
                    capture_output=True,
                    text=True,
                    timeout=PROBE_TIMEOUT,
                )
            except (OSError, subprocess.TimeoutExpired):
                return False
            if result.returncode != 0:
                return False
            return "--listen" in (result.stdout + result.stderr)
        return self._memo("listen", check)

    def supports_result_bind(self) -> bool:
        """Whether this fzf build accepts the ``result`` event."""
        def check() -> bool:
            try:
                result = subprocess.run(
                    [self.binary, "--bind=result:abort", "--filter", "probe"],
                    input="probe\n",
                    capture_output=True,
                    text=True,
                    timeout=PROBE_TIMEOUT,
                )
            except (OSError, subprocess.TimeoutExpired):
                return False
            return "unsupported key: result" not in (result.stdout + result.stderr)
        return self._memo("result-bind", check)


def pad_display(text: str, width: int) -> str:
    """Left-justify text to a terminal display width."""
    shown = wcswidth(text)
    if shown < 0:
        shown = len(text)
    return text + " " * max(width - shown, 0)


def _columns(pairs: Sequence[tuple[str, str]], indent: str = "  ") -> str:
    width = max(max(wcswidth(key), len(key)) for key, _ in pairs)
    return "".join(f"{indent}{pad_display(key, width)}  {text}\n" for key, text in pairs)


def build_help_text(backends: Sequence[str]) -> str:
    detected = join_labels(backends) or "None"
    return (
        "fpf - fuzzy package finder\n\n"
        "Syntax:\n"
        "  fpf [manager option] [action option] [query]\n\n"
        "Detected default manager(s):\n"
        f"  {detected}\n\n"
        "Options:\n"
        + _columns(ACTION_OPTIONS)
    )


def build_keybind_text() -> str:
    return "Keybinds:\n\n" + _columns(KEYBINDS)


def build_header(action: str, backends: Sequence[str]) -> str:
    labels = join_labels(backends)
    if action == "search":
        return f"Select package(s) from {labels} (TAB to multi-select, * = installed)"
    if action == "list":
        return f"Select installed package(s) to inspect from {labels}"
    return "Select package(s)"


def build_selector_args(
    query: str,
    header: str,
    help_file: Path | str,
    keybind_file: Path | str,
    reload_command: str = "",
    notify_command: str = "",
    result_bind: bool = False,
    preview_command: str = "",
) -> list[str]:
    """
    Build the fzf argument list.

    With a notify command the ipc transport is used: fzf listens on a free
    port and each query change runs the notify command silently, while
    ctrl-r keeps a synchronous reload. Otherwise query changes reload
    synchronously. A preview command shows package info for the focused
    row; without one the preview pane starts hidden.
    """
    preview_window = "--preview-window=55%:wrap:border-sharp"
    args = [
        "-q", query,
        "-m",
        "-e",
        "--delimiter=\t",
        "--with-nth=1,2,3",
        preview_window if preview_command else preview_window + ":hidden",
        "--layout=reverse",
        "--marker=>>",
        "--prompt=Search> ",
        f"--header={header}",
        "--info=inline",
        "--margin=2%,1%,2%,1%",
        "--cycle",
        "--tiebreak=begin,chunk,length",
        "--bind=ctrl-k:preview:cat " + shell_quote(str(keybind_file)),
        "--bind=ctrl-h:preview:cat " + shell_quote(str(help_file)),
        "--bind=ctrl-/:change-preview-window(hidden|)",
        "--bind=ctrl-n:next-selected,ctrl-b:prev-selected",
    ]
    if preview_command:
        args.append("--preview=" + preview_command)
        args.append("--bind=focus:transform-preview-label:echo [{1}] {2}")

    if notify_command:
        args.append("--listen=0")
        args.append("--bind=change:execute-silent:" + notify_command)
        if reload_command:
            if result_bind:
                args.append("--bind=ctrl-r:change-prompt(Loading> )+reload:" + reload_command)
                args.append("--bind=result:change-prompt(Search> )")
            else:
                args.append("--bind=ctrl-r:reload:" + reload_command)
    elif reload_command:
        if result_bind:
            args.append("--bind=change:change-prompt(Loading> )+reload:" + reload_command)
            args.append("--bind=ctrl-r:change-prompt(Loading> )+reload:" + reload_command)
            args.append("--bind=result:change-prompt(Search> )")
        else:
            args.append("--bind=change:reload:" + reload_command)
            args.append("--bind=ctrl-r:reload:" + reload_command)
    return args


def run_selector(args: Sequence[str], input_file: Path | str, binary: str = SELECTOR_BINARY) -> str:
    """
    Run fzf over input_file and return its stdout.

    Exit codes 1 (no match) and 130 (cancelled) return "".

    Raises:
        SelectorError: If fzf is missing or exits with any other code
    """
    started = time.monotonic()
    direct_stderr = stderr_is_terminal()
    env = dict(os.environ, SHELL="bash")
    try:
        with open(input_file, "r", encoding="utf-8") as stdin:
            result = subprocess.run(
                [binary, *args],
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=None if direct_stderr else subprocess.PIPE,
                text=True,
                env=env,
            )
    except OSError as e:
        raise SelectorError(f"{binary} could not be started: {e}")
    finally:
        log_stage("fzf", started)

    if result.returncode in (1, 130):
        return ""
    if result.returncode != 0:
        detail = "" if direct_stderr else (result.stderr or "").strip()
        message = f"{binary} exited with code {result.returncode}"
        raise SelectorError(f"{message}: {detail}" if detail else message)
    return result.stdout


def parse_selection(output: str) -> list[Candidate]:
    """
    Parse selected rows; unusable lines are skipped.

    Skips are logged when FPF_DEBUG_SELECTION is set.
    """
    debug = bool(env_flag("FPF_DEBUG_SELECTION"))
    selected: list[Candidate] = []
    for number, raw in enumerate(output.replace("\r\n", "\n").split("\n"), start=1):
        line = raw.strip()
        if not line:
            continue
        parts = line.split("\t", 2)
        manager = normalize_backend_name(parts[0]) if parts else ""
        package = parts[1].strip() if len(parts) > 1 else ""
        if not manager or not package:
            if debug:
                get_logger().warning("selection: skipped line %d: missing manager/package fields; raw=%s", number, raw)
            continue
        if not is_supported(manager):
            if debug:
                get_logger().warning("selection: skipped line %d: unsupported manager '%s'; raw=%s", number, manager, raw)
            continue
        description = parts[2] if len(parts) == 3 and parts[2] else "-"
        selected.append(Candidate(manager, package, description))
    vlog(f"Selected {len(selected)} row(s)")
    return selected
