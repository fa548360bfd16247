"""Cache invalidation by tag, path, glob or content age.

Query grammar (space separated, quotes group a term):

  tag:<name>        entries carrying the tag
  path:<prefix>     exact path or path prefix
  glob:<pattern>    ``*`` matches within a segment, ``**`` across segments
  age:<n><unit>     entries published (or, lacking a date, rendered) within
                    the last n days/weeks/months/years
  <text>            substring of any tag or of the path

An empty query clears the whole cache. Matching entries are dropped from the
manifest so the next build re-renders them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from stati_isg.manifest import load_manifest, save_manifest
from stati_isg.ttl import as_utc

if TYPE_CHECKING:
    from pathlib import Path

    from stati_isg.models.cache import CacheEntry

log = structlog.get_logger()

_AGE_RE = re.compile(r"^(\d+)\s*(day|week|month|year)s?$", re.IGNORECASE)
_DAYS_PER_UNIT = {"day": 1, "week": 7, "month": 30, "year": 365}


@dataclass
class InvalidationResult:
    invalidated_count: int = 0
    invalidated_paths: list[str] = field(default_factory=list)
    cleared_all: bool = False


def parse_invalidation_query(query: str) -> list[str]:
    """Split a query into terms; single or double quotes group spaces."""
    terms: list[str] = []
    current: list[str] = []
    quote: str | None = None

    for char in query:
        if char in "\"'":
            if quote is None:
                quote = char
                continue
            if char == quote:
                quote = None
                continue
            current.append(char)
        elif char.isspace() and quote is None:
            term = "".join(current).strip()
            if term:
                terms.append(term)
            current = []
        else:
            current.append(char)

    term = "".join(current).strip()
    if term:
        terms.append(term)
    return terms


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def _parse_age(value: str) -> timedelta | None:
    match = _AGE_RE.match(value.strip())
    if match is None:
        return None
    return timedelta(days=int(match.group(1)) * _DAYS_PER_UNIT[match.group(2).lower()])


def matches_term(entry: CacheEntry, path: str, term: str, now: datetime) -> bool:
    """True if the entry stored under ``path`` matches one query term."""
    kind, sep, value = term.partition(":")
    if not sep:
        return any(term in tag for tag in entry.tags) or term in path
    if not kind or not value:
        return False

    match kind.lower():
        case "tag":
            return value in entry.tags
        case "path":
            return path.startswith(value)
        case "glob":
            return glob_to_regex(value).match(path) is not None
        case "age":
            window = _parse_age(value)
            if window is None:
                log.warning("invalidation_term_invalid", term=term)
                return False
            reference = entry.published_at or entry.rendered_at
            return now - reference <= window
        case _:
            log.warning("invalidation_term_unknown", term=term)
            return False


def invalidate(
    cache_dir: Path,
    query: str | None = None,
    *,
    now: datetime | None = None,
) -> InvalidationResult:
    """Drop matching entries from the manifest in ``cache_dir`` and save it."""
    manifest = load_manifest(cache_dir)
    if manifest is None:
        return InvalidationResult()

    if query is None or not query.strip():
        paths = list(manifest.entries)
        manifest.entries = {}
        save_manifest(cache_dir, manifest)
        log.info("cache_invalidated", count=len(paths), cleared_all=True)
        return InvalidationResult(
            invalidated_count=len(paths),
            invalidated_paths=paths,
            cleared_all=True,
        )

    moment = as_utc(now) if now is not None else datetime.now(UTC)
    terms = parse_invalidation_query(query.strip())
    invalidated = [
        path
        for path, entry in manifest.entries.items()
        if any(matches_term(entry, path, term, moment) for term in terms)
    ]
    for path in invalidated:
        del manifest.entries[path]

    if invalidated:
        save_manifest(cache_dir, manifest)
    log.info("cache_invalidated", count=len(invalidated), query=query)
    return InvalidationResult(invalidated_count=len(invalidated), invalidated_paths=invalidated)
