"""Aging policy: effective TTL, next rebuild time and freezing.

Rules are absolute TTLs keyed by content age (see ``AgingRule``). Content
gets longer TTLs as it ages until it passes ``max_age_cap_days``, after which
it is frozen and only an inputs change can rebuild it.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from stati_isg.constants import PUBLISHED_DATE_FIELDS, SECONDS_PER_DAY
from stati_isg.errors import ISGConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from stati_isg.config import AgingRule, ISGSettings
    from stati_isg.models.cache import CacheEntry
    from stati_isg.models.page import PageModel


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    return as_utc(parsed)


def published_at(page: PageModel) -> datetime | None:
    """First parseable publish date in the page's front matter."""
    for name in PUBLISHED_DATE_FIELDS:
        parsed = _coerce_datetime(page.front_matter.get(name))
        if parsed is not None:
            return parsed
    return None


def age_in_days(published: datetime, now: datetime) -> float:
    return (now - published).total_seconds() / SECONDS_PER_DAY


def apply_aging_rules(
    published: datetime,
    rules: Sequence[AgingRule],
    default_ttl: int,
    now: datetime,
) -> int:
    """TTL for content of the given age.

    The first rule (by ``until_days``) that covers the age applies; content
    older than every rule uses the last one.
    """
    if not rules:
        return default_ttl
    age_days = age_in_days(published, now)
    ordered = sorted(rules, key=lambda rule: rule.until_days)
    for rule in ordered:
        if age_days <= rule.until_days:
            return rule.ttl_seconds
    return ordered[-1].ttl_seconds


def effective_ttl(page: PageModel, isg: ISGSettings, now: datetime | None = None) -> float:
    """Resolve a page's TTL: front-matter override, then aging rules, then the default."""
    override = page.front_matter.get("ttlSeconds")
    if _is_number(override) and override > 0:
        return override

    published = published_at(page)
    if published is not None and isg.aging:
        moment = as_utc(now) if now is not None else datetime.now(UTC)
        return apply_aging_rules(published, isg.aging, isg.ttl_seconds, moment)

    return isg.ttl_seconds


def max_age_cap_days(page: PageModel, isg: ISGSettings) -> float | None:
    override = page.front_matter.get("maxAgeCapDays")
    if _is_number(override):
        return override
    return isg.max_age_cap_days


def next_rebuild_at(entry: CacheEntry) -> datetime:
    """When the entry's recorded TTL runs out."""
    return entry.rendered_at + timedelta(seconds=entry.ttl_seconds)


def is_frozen(entry: CacheEntry, now: datetime) -> bool:
    """True once the page is older than its max-age cap."""
    if not entry.max_age_cap_days or entry.published_at is None:
        return False
    return as_utc(now) - entry.published_at > timedelta(days=entry.max_age_cap_days)


def validate_page_overrides(front_matter: dict[str, Any], source_path: str) -> None:
    """Reject malformed ISG overrides in a page's front matter."""
    ttl = front_matter.get("ttlSeconds")
    if ttl is not None and not (isinstance(ttl, int) and not isinstance(ttl, bool) and ttl >= 0):
        raise ISGConfigurationError(
            "ttlSeconds",
            ttl,
            f"Invalid ttlSeconds in front matter of {source_path}. Must be a non-negative integer.",
        )

    cap = front_matter.get("maxAgeCapDays")
    if cap is not None and not (isinstance(cap, int) and not isinstance(cap, bool) and cap > 0):
        raise ISGConfigurationError(
            "maxAgeCapDays",
            cap,
            f"Invalid maxAgeCapDays in front matter of {source_path}. Must be a positive integer.",
        )

    tags = front_matter.get("tags")
    if tags is not None:
        if not isinstance(tags, list):
            raise ISGConfigurationError(
                "tags",
                tags,
                f"Invalid tags in front matter of {source_path}. Must be a list of strings.",
            )
        for index, tag in enumerate(tags):
            if not isinstance(tag, str):
                raise ISGConfigurationError(
                    f"tags[{index}]",
                    tag,
                    f"Invalid tag at index {index} in front matter of {source_path}. "
                    "All tags must be strings.",
                )
