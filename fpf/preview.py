"""
Package info for the selector's preview pane.

The selector runs ``fpf --preview-item --manager {1} -- {2}`` for the focused
row. Info text is cached for the lifetime of the session under
``<session>/preview-cache`` so moving back to a row is instant.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from .adapters import AdapterRegistry
from .cache import atomic_write_text, stable_checksum
from .common import shell_quote, vlog
from .models import BackendError

PREVIEW_CACHE_DIR = "preview-cache"


def session_root(session_tmp_root: str) -> Path:
    return Path(session_tmp_root) if session_tmp_root else Path(tempfile.gettempdir())


def preview_cache_path(root: Path, manager: str, package: str) -> Path:
    """Cache file for one (manager, package) pair."""
    key = stable_checksum(f"{manager}|{package}")
    return root / PREVIEW_CACHE_DIR / f"{manager}.{key}.txt"


def build_preview_command(argv0: str, session_dir: Path | str) -> str:
    """Shell command bound to the selector's ``--preview`` option."""
    return (
        f"FPF_SESSION_TMP_ROOT={shell_quote(str(session_dir))} "
        f"{shell_quote(argv0)} --preview-item --manager {{1}} -- {{2}}"
    )


def load_preview(
    adapters: AdapterRegistry,
    manager: str,
    package: str,
    root: Path,
    verbose: bool = False,
) -> str:
    """
    Info text for one package, served from the session cache when present.

    A manager that cannot describe the package yields "" and nothing is
    cached, so the next focus retries.

    Raises:
        OSError: If the preview cache cannot be written
    """
    path = preview_cache_path(root, manager, package)
    if path.is_file():
        return path.read_text(encoding="utf-8", errors="replace")

    try:
        text = adapters.get(manager).show_info(package)
    except BackendError as e:
        vlog(f"{manager}: no preview for {package}: {e.message}", verbose)
        return ""

    atomic_write_text(path, text, prefix="preview.")
    return text
