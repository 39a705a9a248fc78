"""
fpf - fuzzy package finder.

Core Modules:
- Backends: registry, readiness checks, per-manager adapters
- Aggregation: concurrent dispatch, on-disk cache, merging, installed markers
- Ranking: tiered relevance scoring and round-robin capping
- Live reload: selector session, reload controller, IPC push
"""

__version__ = "1.0.0"

# Version info for backward compatibility
VERSION = __version__
