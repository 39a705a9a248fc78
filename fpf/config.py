"""
Configuration resolution.

All options are environment-style FPF_* names. An optional YAML config file
can supply defaults for the same names under an ``env:`` mapping; real
environment variables always win. Config files are merged project → user →
system, earlier files taking priority.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

import yaml

from .backends import BACKENDS
from .common import env_flag, env_float, env_int, env_str, vlog


# Configuration file locations (in priority order)
CONFIG_LOCATIONS = [
    ".fpf.yml",                                      # Project root (highest priority)
    ".fpf.yaml",
    os.path.expanduser("~/.config/fpf/config.yml"),  # User global
    os.path.expanduser("~/.config/fpf/config.yaml"),
    "/etc/fpf/config.yml",                           # System global
    "/etc/fpf/config.yaml",
]

DYNAMIC_RELOAD_MODES = {
    "", "always", "auto", "on", "1", "true", "yes",
    "never", "off", "0", "false", "no",
    "single",
}

IPC_TRANSPORTS = {"ipc", "listen", "http", "auto"}

DEFAULT_INSTALLED_CACHE_TTL = 300
DEFAULT_QUERY_LIMIT = 40
DEFAULT_JS_QUERY_LIMIT = 200
DEFAULT_NO_QUERY_LIMIT = 120
DEFAULT_NO_QUERY_NPM_LIMIT = 120
DEFAULT_RANK_CANDIDATE_LIMIT = 1500
DEFAULT_RELOAD_MIN_CHARS = 2
DEFAULT_RELOAD_DEBOUNCE = 0.12


@dataclass(frozen=True)
class Settings:
    """
    Effective runtime configuration.

    Attributes:
        cache_dir: Cache root override (FPF_CACHE_DIR)
        bypass_query_cache: Skip query cache reads and writes (FPF_BYPASS_QUERY_CACHE)
        enable_query_cache: Force query cache on/off; None uses per-backend defaults (FPF_ENABLE_QUERY_CACHE)
        skip_query_cache_write: Read the query cache but never write it (FPF_SKIP_QUERY_CACHE_WRITE)
        query_cache_ttl: Global query cache TTL override in seconds (FPF_QUERY_CACHE_TTL)
        backend_query_cache_ttl: Per-backend TTL overrides (FPF_<BACKEND>_QUERY_CACHE_TTL)
        disable_installed_cache: Turn off the installed-set cache (FPF_DISABLE_INSTALLED_CACHE)
        installed_cache_ttl: Installed-set cache TTL in seconds (FPF_INSTALLED_CACHE_TTL)
        query_limit: Per-backend limit for real queries (FPF_QUERY_PER_MANAGER_LIMIT)
        js_query_limit: npm/bun limit for real queries (FPF_JS_QUERY_PER_MANAGER_LIMIT)
        no_query_limit: Per-backend limit for empty queries (FPF_NO_QUERY_RESULT_LIMIT)
        no_query_npm_limit: Auxiliary npm search limit (FPF_NO_QUERY_NPM_LIMIT)
        query_result_limit: Cap on ranked rows for a real query, 0 = none (FPF_QUERY_RESULT_LIMIT)
        rank_candidate_limit: Round-robin budget applied before ranking, 0 = none (FPF_RANK_CANDIDATE_LIMIT)
        skip_installed_markers: Never look up installed sets (FPF_SKIP_INSTALLED_MARKERS)
        no_query_installed_markers: Look up installed sets for multi-backend empty queries (FPF_NO_QUERY_INSTALLED_MARKERS)
        reload_min_chars: Shortest query that triggers a backend reload (FPF_RELOAD_MIN_CHARS)
        reload_debounce: Seconds to wait before a reload runs (FPF_RELOAD_DEBOUNCE)
        reload_timeout: Global per-backend reload timeout override (FPF_RELOAD_TIMEOUT)
        backend_reload_timeout: Per-backend reload timeout overrides (FPF_<BACKEND>_RELOAD_TIMEOUT)
        ipc_manager_override: Single-backend override for reloads (FPF_IPC_MANAGER_OVERRIDE)
        ipc_manager_list: Comma-separated session backends (FPF_IPC_MANAGER_LIST)
        ipc_fallback_file: Baseline rows re-served on reload failure (FPF_IPC_FALLBACK_FILE)
        dynamic_reload: Live reload mode (FPF_DYNAMIC_RELOAD)
        dynamic_reload_transport: Requested transport (FPF_DYNAMIC_RELOAD_TRANSPORT)
        dynamic_reload_bypass_cache: Bypass the query cache during reloads (FPF_DYNAMIC_RELOAD_BYPASS_QUERY_CACHE)
        bun_npm_fallback: Let bun fall back to npm in multi-backend sessions (FPF_BUN_NPM_FALLBACK)
        session_tmp_root: Externally managed session directory (FPF_SESSION_TMP_ROOT)
        fzf_port: Selector control endpoint, "port" or "host:port" (FZF_PORT)
    """
    cache_dir: str = ""
    bypass_query_cache: bool = False
    enable_query_cache: bool | None = None
    skip_query_cache_write: bool = False
    query_cache_ttl: int | None = None
    backend_query_cache_ttl: dict[str, int] = field(default_factory=dict)
    disable_installed_cache: bool = False
    installed_cache_ttl: int = DEFAULT_INSTALLED_CACHE_TTL
    query_limit: int = DEFAULT_QUERY_LIMIT
    js_query_limit: int = DEFAULT_JS_QUERY_LIMIT
    no_query_limit: int = DEFAULT_NO_QUERY_LIMIT
    no_query_npm_limit: int = DEFAULT_NO_QUERY_NPM_LIMIT
    query_result_limit: int = 0
    rank_candidate_limit: int = DEFAULT_RANK_CANDIDATE_LIMIT
    skip_installed_markers: bool = False
    no_query_installed_markers: bool = False
    reload_min_chars: int = DEFAULT_RELOAD_MIN_CHARS
    reload_debounce: float = DEFAULT_RELOAD_DEBOUNCE
    reload_timeout: float | None = None
    backend_reload_timeout: dict[str, float] = field(default_factory=dict)
    ipc_manager_override: str = ""
    ipc_manager_list: str = ""
    ipc_fallback_file: str = ""
    dynamic_reload: str = ""
    dynamic_reload_transport: str = ""
    dynamic_reload_bypass_cache: bool = True
    bun_npm_fallback: bool = False
    session_tmp_root: str = ""
    fzf_port: str = ""

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.dynamic_reload not in DYNAMIC_RELOAD_MODES:
            raise ValueError(
                f"Invalid FPF_DYNAMIC_RELOAD: {self.dynamic_reload}. "
                "Must be one of: always, auto, never, single"
            )
        if self.reload_debounce < 0:
            raise ValueError(f"Invalid FPF_RELOAD_DEBOUNCE: {self.reload_debounce}. Must be >= 0")

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build Settings from an environment mapping.

        Unparseable numeric values fall back to their defaults; unknown
        dynamic reload modes are treated as the default mode.
        """
        env = os.environ if environ is None else environ

        backend_ttls: dict[str, int] = {}
        backend_timeouts: dict[str, float] = {}
        for backend in BACKENDS:
            ttl = env_int(f"{backend.env_prefix}_QUERY_CACHE_TTL", -1, env)
            if ttl >= 0:
                backend_ttls[backend.name] = ttl
            timeout = env_float(f"{backend.env_prefix}_RELOAD_TIMEOUT", -1.0, env)
            if timeout >= 0:
                backend_timeouts[backend.name] = timeout

        global_ttl = env_int("FPF_QUERY_CACHE_TTL", -1, env)
        global_timeout = env_float("FPF_RELOAD_TIMEOUT", -1.0, env)

        installed_ttl = env_int("FPF_INSTALLED_CACHE_TTL", DEFAULT_INSTALLED_CACHE_TTL, env)
        if installed_ttl < 0:
            installed_ttl = DEFAULT_INSTALLED_CACHE_TTL

        query_limit = env_int("FPF_QUERY_PER_MANAGER_LIMIT", DEFAULT_QUERY_LIMIT, env)
        if query_limit <= 0:
            query_limit = DEFAULT_QUERY_LIMIT

        js_limit = env_int("FPF_JS_QUERY_PER_MANAGER_LIMIT", DEFAULT_JS_QUERY_LIMIT, env)
        if js_limit <= 0:
            js_limit = env_int("FPF_NPM_QUERY_PER_MANAGER_LIMIT", DEFAULT_JS_QUERY_LIMIT, env)
        if js_limit <= 0:
            js_limit = DEFAULT_JS_QUERY_LIMIT

        no_query_limit = max(env_int("FPF_NO_QUERY_RESULT_LIMIT", DEFAULT_NO_QUERY_LIMIT, env), 0)

        npm_limit = env_int("FPF_NO_QUERY_NPM_LIMIT", DEFAULT_NO_QUERY_NPM_LIMIT, env)
        if npm_limit <= 0:
            npm_limit = 500

        dynamic_reload = env_str("FPF_DYNAMIC_RELOAD", env).lower()
        if dynamic_reload not in DYNAMIC_RELOAD_MODES:
            vlog(f"Unknown FPF_DYNAMIC_RELOAD value {dynamic_reload!r}, using default")
            dynamic_reload = ""

        return Settings(
            cache_dir=env_str("FPF_CACHE_DIR", env),
            bypass_query_cache=bool(env_flag("FPF_BYPASS_QUERY_CACHE", False, env)),
            enable_query_cache=env_flag("FPF_ENABLE_QUERY_CACHE", None, env),
            skip_query_cache_write=bool(env_flag("FPF_SKIP_QUERY_CACHE_WRITE", False, env)),
            query_cache_ttl=global_ttl if global_ttl >= 0 else None,
            backend_query_cache_ttl=backend_ttls,
            disable_installed_cache=bool(env_flag("FPF_DISABLE_INSTALLED_CACHE", False, env)),
            installed_cache_ttl=installed_ttl,
            query_limit=query_limit,
            js_query_limit=js_limit,
            no_query_limit=no_query_limit,
            no_query_npm_limit=npm_limit,
            query_result_limit=env_int("FPF_QUERY_RESULT_LIMIT", 0, env),
            rank_candidate_limit=env_int("FPF_RANK_CANDIDATE_LIMIT", DEFAULT_RANK_CANDIDATE_LIMIT, env),
            skip_installed_markers=env_str("FPF_SKIP_INSTALLED_MARKERS", env) == "1",
            no_query_installed_markers=bool(env_flag("FPF_NO_QUERY_INSTALLED_MARKERS", False, env)),
            reload_min_chars=env_int("FPF_RELOAD_MIN_CHARS", DEFAULT_RELOAD_MIN_CHARS, env),
            reload_debounce=max(env_float("FPF_RELOAD_DEBOUNCE", DEFAULT_RELOAD_DEBOUNCE, env), 0.0),
            reload_timeout=global_timeout if global_timeout >= 0 else None,
            backend_reload_timeout=backend_timeouts,
            ipc_manager_override=env_str("FPF_IPC_MANAGER_OVERRIDE", env),
            ipc_manager_list=env_str("FPF_IPC_MANAGER_LIST", env),
            ipc_fallback_file=env_str("FPF_IPC_FALLBACK_FILE", env),
            dynamic_reload=dynamic_reload,
            dynamic_reload_transport=env_str("FPF_DYNAMIC_RELOAD_TRANSPORT", env).lower(),
            dynamic_reload_bypass_cache=env_flag("FPF_DYNAMIC_RELOAD_BYPASS_QUERY_CACHE", True, env) is not False,
            bun_npm_fallback=bool(env_flag("FPF_BUN_NPM_FALLBACK", False, env)),
            session_tmp_root=env_str("FPF_SESSION_TMP_ROOT", env),
            fzf_port=env_str("FZF_PORT", env),
        )

    def with_overrides(self, **changes: Any) -> Settings:
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def dynamic_reload_enabled(self, backend_count: int) -> bool:
        """Whether live reload applies to a session with backend_count backends."""
        if self.dynamic_reload in ("never", "off", "0", "false", "no"):
            return False
        if self.dynamic_reload == "single":
            return backend_count == 1
        return True

    def wants_ipc_transport(self) -> bool:
        """Whether the push transport was requested (capability is probed separately)."""
        return self.dynamic_reload_transport in IPC_TRANSPORTS


def _load_yaml(file_path: str) -> dict[str, Any] | None:
    """
    Load YAML configuration file.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed configuration dictionary, or None if the file is unreadable or invalid
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return None


def load_config_file(file_path: str, verbose: bool = False) -> dict[str, str] | None:
    """
    Load environment defaults from a single config file.

    Args:
        file_path: Path to configuration file
        verbose: Enable verbose logging

    Returns:
        Mapping of FPF_* names to string values, or None if the file cannot be loaded
    """
    if not os.path.exists(file_path):
        return None

    vlog(f"Loading config from: {file_path}", verbose)
    data = _load_yaml(file_path)
    if data is None:
        vlog(f"Invalid config file: {file_path}", verbose)
        return None

    env_section = data.get("env", {})
    if not isinstance(env_section, dict):
        vlog(f"Config 'env' section must be a mapping: {file_path}", verbose)
        return None

    defaults: dict[str, str] = {}
    for name, value in env_section.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "1" if value else "0"
        defaults[str(name)] = str(value)
    return defaults


def load_config(
    custom_path: str | None = None,
    verbose: bool = False,
) -> dict[str, str]:
    """
    Load and merge environment defaults from all config sources.

    Configuration precedence (highest to lowest):
    1. Custom path (argument or FPF_CONFIG)
    2. Project .fpf.yml
    3. User ~/.config/fpf/config.yml
    4. System /etc/fpf/config.yml

    Raises:
        ValueError: If a custom path is given but cannot be loaded
    """
    custom_path = custom_path or env_str("FPF_CONFIG") or None
    layers: list[dict[str, str]] = []

    if custom_path:
        loaded = load_config_file(custom_path, verbose)
        if loaded is None:
            raise ValueError(f"Could not load config from specified path: {custom_path}")
        layers.append(loaded)

    for location in CONFIG_LOCATIONS:
        loaded = load_config_file(location, verbose)
        if loaded is not None:
            layers.append(loaded)
            vlog(f"Found config at: {location}", verbose)

    merged: dict[str, str] = {}
    for layer in reversed(layers):
        merged.update(layer)
    return merged


def load_settings(
    custom_path: str | None = None,
    environ: Mapping[str, str] | None = None,
    verbose: bool = False,
) -> Settings:
    """
    Build Settings from config file defaults overlaid with the environment.
    """
    env = dict(load_config(custom_path, verbose))
    env.update(os.environ if environ is None else environ)
    return Settings.from_env(env)
