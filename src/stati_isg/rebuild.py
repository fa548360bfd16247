"""Rebuild decision engine.

``should_rebuild`` short-circuits in this order: no/invalid entry, inputs
hash changed, frozen, TTL expired. It fails safe toward freshness: any
dependency-tracking error other than a template cycle means "rebuild".

``create_cache_entry``/``update_cache_entry`` run only after a rebuild was
decided, so they let every error propagate.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from stati_isg.deps import track_dependencies
from stati_isg.errors import CircularDependencyError
from stati_isg.hashing import combine_inputs_hash, hash_content, hash_dependencies
from stati_isg.models.cache import CacheEntry
from stati_isg.ttl import (
    as_utc,
    effective_ttl,
    is_frozen,
    max_age_cap_days,
    next_rebuild_at,
    published_at,
    validate_page_overrides,
)

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from stati_isg.config import Settings
    from stati_isg.deps import TemplateReferenceCache
    from stati_isg.models.page import PageModel

log = structlog.get_logger()


def compute_inputs(
    page: PageModel,
    settings: Settings,
    *,
    cache: TemplateReferenceCache | None = None,
) -> tuple[str, list[Path]]:
    """Return the page's inputs hash and the dependency list it was built from."""
    content_hash = hash_content(page.content, page.front_matter)
    deps = track_dependencies(page, settings, cache=cache)
    return combine_inputs_hash(content_hash, hash_dependencies(deps)), deps


def _coerce_entry(entry: CacheEntry | dict[str, Any] | None, key: str) -> CacheEntry | None:
    if entry is None or isinstance(entry, CacheEntry):
        return entry
    try:
        return CacheEntry.model_validate(entry)
    except ValidationError:
        log.warning("cache_entry_invalid", path=key)
        return None


def should_rebuild(
    page: PageModel,
    entry: CacheEntry | dict[str, Any] | None,
    settings: Settings,
    now: datetime,
    *,
    cache: TemplateReferenceCache | None = None,
) -> bool:
    """Decide whether ``page`` must be re-rendered at ``now``."""
    now = as_utc(now)
    existing = _coerce_entry(entry, page.output_path)
    if existing is None:
        log.debug("rebuild_decision", page=page.url, rebuild=True, reason="no_entry")
        return True

    try:
        inputs_hash, _deps = compute_inputs(page, settings, cache=cache)
    except CircularDependencyError:
        raise
    except Exception:
        # No negative caching: the entry rebuild that follows will surface the error.
        log.warning("dependency_tracking_failed", page=page.url, exc_info=True)
        return True

    if inputs_hash != existing.inputs_hash:
        log.debug("rebuild_decision", page=page.url, rebuild=True, reason="inputs_changed")
        return True

    if is_frozen(existing, now):
        log.debug("rebuild_decision", page=page.url, rebuild=False, reason="frozen")
        return False

    if now >= next_rebuild_at(existing):
        log.debug("rebuild_decision", page=page.url, rebuild=True, reason="ttl_expired")
        return True

    log.debug("rebuild_decision", page=page.url, rebuild=False, reason="fresh")
    return False


def _page_tags(page: PageModel) -> list[str]:
    tags = page.front_matter.get("tags")
    if not isinstance(tags, list):
        return []
    return [tag for tag in tags if isinstance(tag, str)]


def create_cache_entry(
    page: PageModel,
    settings: Settings,
    now: datetime,
    *,
    cache: TemplateReferenceCache | None = None,
) -> CacheEntry:
    """Build a fresh entry for a page rendered at ``now``."""
    validate_page_overrides(page.front_matter, str(page.source_path))
    inputs_hash, deps = compute_inputs(page, settings, cache=cache)

    return CacheEntry(
        path=page.output_path,
        inputs_hash=inputs_hash,
        deps=[str(dep) for dep in deps],
        tags=_page_tags(page),
        rendered_at=now,
        ttl_seconds=effective_ttl(page, settings.isg, now),
        published_at=published_at(page),
        max_age_cap_days=max_age_cap_days(page, settings.isg),
    )


def update_cache_entry(
    entry: CacheEntry,
    page: PageModel,
    settings: Settings,
    now: datetime,
    *,
    cache: TemplateReferenceCache | None = None,
) -> CacheEntry:
    """Like ``create_cache_entry``, keeping the old publish date if the page dropped it."""
    updated = create_cache_entry(page, settings, now, cache=cache)
    if updated.published_at is None and entry.published_at is not None:
        updated = updated.model_copy(update={"published_at": entry.published_at})
    return updated
