from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
)
from pydantic.alias_generators import to_camel


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError("must be an ISO-8601 timestamp string")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require_finite(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    return value


NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]
Timestamp = Annotated[datetime, BeforeValidator(_parse_timestamp)]
FiniteNumber = Annotated[StrictInt | StrictFloat, AfterValidator(_require_finite)]


class CacheEntry(BaseModel):
    """Cache record for one rendered output path.

    Serialised with camelCase keys (``inputsHash``, ``renderedAt`` ...).
    Validation is strict: an entry read back from disk either satisfies the
    whole contract or is discarded by the manifest store.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    path: NonEmptyStr  # Site-relative output path, e.g. "/blog/post.html"
    inputs_hash: NonEmptyStr
    deps: list[StrictStr]  # Absolute template paths, in discovery order
    tags: list[StrictStr]
    rendered_at: Timestamp
    ttl_seconds: FiniteNumber
    published_at: Timestamp | None = None
    max_age_cap_days: FiniteNumber | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CacheManifest(BaseModel):
    """In-memory manifest: output path → cache entry."""

    entries: dict[str, CacheEntry] = {}

    def to_json_dict(self) -> dict[str, Any]:
        return {"entries": {path: entry.to_json_dict() for path, entry in self.entries.items()}}
