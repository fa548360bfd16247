"""stati-isg: incremental static generation engine for the Stati site builder.

The site builder runs ``stati_isg.build.build`` for an incremental build and
``stati_isg.invalidate.invalidate`` to drop cache entries ahead of one. The
names re-exported here are the types and decisions it shares with them.
"""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

from stati_isg.build import BuildOptions, BuildStats, setup_logging
from stati_isg.config import Settings
from stati_isg.errors import ErrorCode, StatiError
from stati_isg.invalidate import InvalidationResult
from stati_isg.locks import BuildLockManager, DevServerLockManager
from stati_isg.models import CacheEntry, CacheManifest, PageModel
from stati_isg.rebuild import create_cache_entry, should_rebuild, update_cache_entry

_DISTRIBUTION = "stati-isg"
_FALLBACK_VERSION = "0.0.0+unknown"


def _installed_version() -> str:
    try:
        return version(_DISTRIBUTION)
    except PackageNotFoundError:
        # Running from a source tree that was never installed
        warnings.warn(
            f"Package metadata for {_DISTRIBUTION!r} not found; "
            f"reporting version {_FALLBACK_VERSION!r}.",
            RuntimeWarning,
            stacklevel=3,
        )
        return _FALLBACK_VERSION


__version__ = _installed_version()

__all__ = [
    "__version__",
    # build
    "BuildOptions",
    "BuildStats",
    "setup_logging",
    "Settings",
    # decisions
    "create_cache_entry",
    "should_rebuild",
    "update_cache_entry",
    # cache
    "CacheEntry",
    "CacheManifest",
    "InvalidationResult",
    "PageModel",
    # locks
    "BuildLockManager",
    "DevServerLockManager",
    # errors
    "ErrorCode",
    "StatiError",
]
