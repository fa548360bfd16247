from __future__ import annotations

from stati_isg.models.cache import CacheEntry, CacheManifest
from stati_isg.models.lock import LockInfo
from stati_isg.models.page import PageModel, output_path_for

__all__ = [
    # cache
    "CacheEntry",
    "CacheManifest",
    # locks
    "LockInfo",
    # pages
    "PageModel",
    "output_path_for",
]
