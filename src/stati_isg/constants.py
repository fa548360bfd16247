"""Shared constants for the ISG engine."""

from __future__ import annotations

DEFAULT_SRC_DIR = "site"
CACHE_DIR_NAME = ".stati"

MANIFEST_FILENAME = "manifest.json"
BUILD_LOCK_FILENAME = ".build-lock"
DEV_SERVER_LOCK_FILENAME = ".dev-server-lock"

TEMPLATE_EXTENSION = ".eta"
LAYOUT_TEMPLATE = f"layout{TEMPLATE_EXTENSION}"
INDEX_TEMPLATE = f"index{TEMPLATE_EXTENSION}"

HASH_PREFIX = "sha256-"

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR

DEFAULT_TTL_SECONDS = 6 * SECONDS_PER_HOUR
DEFAULT_MAX_AGE_CAP_DAYS = 365

# Config sanity bounds
MAX_TTL_SECONDS = 365 * SECONDS_PER_DAY
MAX_AGING_RULE_TTL_SECONDS = 30 * SECONDS_PER_DAY
MAX_AGE_CAP_DAYS_LIMIT = 3650

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_POLL_INTERVAL_SECONDS = 1.0
# An unreadable lock file younger than this may still be mid-write by its owner
MALFORMED_LOCK_GRACE_SECONDS = 5.0

# Front-matter keys checked, in order, for a publish date
PUBLISHED_DATE_FIELDS = ("publishedAt", "published", "date", "createdAt")
